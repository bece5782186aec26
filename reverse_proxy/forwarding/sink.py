"""
Response sink over an ASGI ``send`` callable.

Headers are collected with ``set_header`` and committed by ``write_head``; nothing
reaches the client before the first ``write`` or ``end``, which flush the
``http.response.start`` message. ASGI has no field for the reason phrase, so it is
only recorded on the sink.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger("uvicorn.error")

Send = Callable[[Dict[str, Any]], Awaitable[None]]
HeaderValue = Union[str, Sequence[str]]


class HeadersAlreadySentError(RuntimeError):
    pass


class AsgiResponseSink:
    def __init__(self, send: Send):
        self._send = send
        self._headers: Dict[str, Tuple[str, List[str]]] = {}
        self.status_code = 200
        self.reason_phrase: Optional[str] = None
        self.headers_sent = False
        self.finished = False
        self._started = False

    def set_header(self, name: str, value: HeaderValue) -> None:
        """Set (replace) a header; a list value produces one header line per item."""
        if self.headers_sent:
            raise HeadersAlreadySentError(f"Cannot set header '{name}' after headers were sent")
        values = list(value) if isinstance(value, (list, tuple)) else [value]
        self._headers[name.lower()] = (name, [str(v) for v in values])

    def get_header(self, name: str) -> Optional[HeaderValue]:
        entry = self._headers.get(name.lower())
        if entry is None:
            return None
        values = entry[1]
        return values[0] if len(values) == 1 else list(values)

    def remove_header(self, name: str) -> None:
        self._headers.pop(name.lower(), None)

    @property
    def header_items(self) -> List[Tuple[str, str]]:
        """Header lines in the order they were first set, with their given casing."""
        return [(name, value) for name, values in self._headers.values() for value in values]

    def write_head(self, status_code: int, reason_phrase: Optional[str] = None) -> None:
        if self.headers_sent:
            raise HeadersAlreadySentError("Response head already written")
        self.status_code = status_code
        self.reason_phrase = reason_phrase
        self.headers_sent = True

    async def _start(self) -> None:
        if self._started:
            return
        if not self.headers_sent:
            self.write_head(self.status_code)
        self._started = True
        await self._send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": [
                    (name.encode("latin-1"), value.encode("latin-1"))
                    for name, value in self.header_items
                ],
            }
        )

    async def write(self, chunk: bytes) -> None:
        if self.finished:
            raise RuntimeError("Write after end")
        await self._start()
        if chunk:
            await self._send({"type": "http.response.body", "body": chunk, "more_body": True})

    async def end(self, chunk: bytes = b"") -> None:
        """Finish the response; ending twice is a no-op."""
        if self.finished:
            return
        await self._start()
        self.finished = True
        await self._send({"type": "http.response.body", "body": chunk, "more_body": False})
