"""Actions and transactions — batched counter writes.

Settling a call touches several marks and data keys. Inside an @action or
`with transaction()` every projection still reads the newest marks, but
reactions wait until the outermost scope exits and then run once, so they
never observe a half-settled tracker.
"""

from __future__ import annotations

import functools
from contextlib import contextmanager
from typing import Callable, Iterator, ParamSpec, TypeVar

from racetrack._tracking import begin_batch, end_batch

P = ParamSpec("P")
R = TypeVar("R")


@contextmanager
def transaction() -> Iterator[None]:
    """Hold back reactions until the block (and any enclosing batch) exits.

    Usage:
        with transaction():
            track.fulfill(value)
            track.set_data(LOADING, False)
            track.is_latest_finish()  # already reflects the fulfill
        # reactions run here, once
    """
    begin_batch()
    try:
        yield
    finally:
        end_batch()


def action(fn: Callable[P, R]) -> Callable[P, R]:
    """Decorator form of transaction(): every call of fn is one batch."""

    @functools.wraps(fn)
    def batched(*args: P.args, **kwargs: P.kwargs) -> R:
        with transaction():
            return fn(*args, **kwargs)

    return batched
