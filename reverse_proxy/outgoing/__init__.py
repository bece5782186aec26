from .request_builder import OutgoingRequestDescriptor, build_outgoing

__all__ = ["OutgoingRequestDescriptor", "build_outgoing"]
