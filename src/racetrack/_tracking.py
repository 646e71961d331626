"""Dependency tracking for marks, projections and reactions.

A ContextVar holds the derivation currently being evaluated. Any
HighWaterMark or Projection read while it is set registers that derivation
as an observer, so a later counter change invalidates it.

Batching: projections are marked dirty as soon as a source moves, but
reactions scheduled inside an @action or `with transaction()` wait and run
once when the outermost scope exits.
"""

from __future__ import annotations

import contextvars
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from racetrack.marks import Projection
    from racetrack.reaction import Reaction

    Derivation = Projection | Reaction

current_derivation: contextvars.ContextVar[Derivation | None] = contextvars.ContextVar(
    "racetrack_current_derivation", default=None
)

_batch_depth: int = 0

# Reactions invalidated while batching, in first-scheduled order.
_pending: dict[Reaction, None] = {}


def begin_batch() -> None:
    global _batch_depth
    _batch_depth += 1


def end_batch() -> None:
    """Leave a batching scope; the outermost exit runs pending reactions."""
    global _batch_depth
    _batch_depth -= 1
    if _batch_depth == 0:
        _flush_pending()


def track_read(source) -> None:
    """Register the evaluating derivation (if any) as an observer of source."""
    derivation = current_derivation.get()
    if derivation is not None:
        source._observers.add(derivation)
        derivation._dependencies.add(source)


def schedule(reaction: Reaction) -> None:
    """Run a reaction now, or defer it until the current batch ends."""
    if _batch_depth > 0:
        _pending[reaction] = None
    else:
        reaction._run()


def _flush_pending() -> None:
    while _pending:
        batch = list(_pending)
        _pending.clear()
        for reaction in batch:
            reaction._run()


def get_pending_count() -> int:
    """Number of reactions waiting for the current batch to end."""
    return len(_pending)
