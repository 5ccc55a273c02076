from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# read by Audit and DecisionLog; asyncio.to_thread copies the context into the worker
_run_id: ContextVar[Optional[str]] = ContextVar("spotforge_run_id", default=None)
_cycle_id: ContextVar[Optional[str]] = ContextVar("spotforge_cycle_id", default=None)


def set_run_id(run_id: Optional[str]) -> None:
    _run_id.set(run_id)


def get_run_id() -> Optional[str]:
    return _run_id.get()


def get_cycle_id() -> Optional[str]:
    return _cycle_id.get()


@contextmanager
def cycle_scope(cycle_id: str) -> Iterator[str]:
    """Tags every audit event and decision row written inside the block."""
    token = _cycle_id.set(cycle_id)
    try:
        yield cycle_id
    finally:
        _cycle_id.reset(token)
