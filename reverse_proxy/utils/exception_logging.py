"""
Helpers for classifying and logging errors raised while relaying a request.

Transport errors reach the proxy wrapped in several layers (httpx wraps httpcore,
which wraps the OS error; asyncio task groups wrap everything in exception groups),
so classification walks the whole chain instead of looking at the outer type.
"""

import logging
from typing import Optional, Type, TypeVar

E = TypeVar("E", bound=BaseException)


def _safe_str(obj) -> str:
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} (string conversion failed)>"


def _sub_exceptions(exception) -> list:
    try:
        return list(getattr(exception, "exceptions", None) or [])
    except Exception:
        return []


def find_exception_in_chain(
    exception: Optional[BaseException], target_type: Type[E]
) -> Optional[E]:
    """
    Search an exception, its exception-group members and its ``__cause__`` /
    ``__context__`` chain for the first instance of ``target_type``.

    Args:
        exception: The exception to search through
        target_type: The exception type to look for

    Returns:
        The first exception matching the target type, or None if not found
    """
    seen = set()
    pending = [exception]
    while pending:
        current = pending.pop(0)
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, target_type):
            return current
        pending.extend(_sub_exceptions(current))
        pending.append(getattr(current, "__cause__", None))
        pending.append(getattr(current, "__context__", None))
    return None


def is_connection_reset(exception: Optional[BaseException]) -> bool:
    """True when the peer reset the connection somewhere along the chain."""
    return find_exception_in_chain(exception, ConnectionResetError) is not None


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception, one extra line per member when it is an exception group.
    Never raises, even for exceptions whose ``__str__`` is broken.
    """
    try:
        sub_exceptions = _sub_exceptions(exception)
        if sub_exceptions:
            logger.log(
                level,
                f"{prefix} Exception with {len(sub_exceptions)} sub-exceptions: "
                f"{_safe_str(exception)}",
            )
            for i, sub_exc in enumerate(sub_exceptions):
                logger.log(
                    level,
                    f"{prefix} Sub-exception {i + 1}: "
                    f"{type(sub_exc).__name__}: {_safe_str(sub_exc)}",
                    exc_info=sub_exc,
                )
        else:
            logger.log(
                level,
                f"{prefix} Exception: {_safe_str(exception)}",
                exc_info=exception if exception is not None else False,
            )
    except Exception:
        try:
            logger.log(logging.ERROR, f"{prefix} Exception (logging failed)")
        except Exception:
            pass


def format_exception_message(exception: Optional[BaseException]) -> str:
    """One-line description including exception-group members."""
    if exception is None:
        return "None"
    main = f"{type(exception).__name__}: {_safe_str(exception)}"
    sub_exceptions = _sub_exceptions(exception)
    if not sub_exceptions:
        return main
    joined = "; ".join(
        f"{type(sub).__name__}: {_safe_str(sub)}" for sub in sub_exceptions
    )
    return f"{main} (Sub-exceptions: {joined})"
