"""Log context carried through contextvars.

The fetch run binds ``run_id`` once and ``client_id`` inside each client task;
the outbox worker binds ``outbox_id`` per delivered row. asyncio copies the
context into every task it creates, so bindings made inside a client task do
not leak into its siblings.
"""

import contextlib
from contextvars import ContextVar
from typing import Any, Iterator, Mapping

_log_context: ContextVar[Mapping[str, Any]] = ContextVar("log_context", default={})


def get_log_context() -> dict[str, Any]:
    return dict(_log_context.get())


@contextlib.contextmanager
def log_context(**values: Any) -> Iterator[dict[str, Any]]:
    """Bind values for the duration of a block. ``None`` unbinds a key."""
    merged = {**_log_context.get(), **values}
    token = _log_context.set({k: v for k, v in merged.items() if v is not None})
    try:
        yield get_log_context()
    finally:
        _log_context.reset(token)
