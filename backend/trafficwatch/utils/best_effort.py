import logging
from typing import Any, Callable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


def best_effort(operation: Callable[..., T], *args: Any, default: T = None, **kwargs: Any) -> T:
    """
    Run a side effect whose failure must never reach the caller.
    Returns the operation's result, or ``default`` when it raised.
    """
    try:
        return operation(*args, **kwargs)
    except Exception as exc:
        name = getattr(operation, "__qualname__", repr(operation))
        log.debug("Best-effort operation %s failed: %s", name, exc, exc_info=True)
        return default
