"""Exceptions raised by racetrack.

Only misuse of the ambient context raises. Invalid track transitions are
silent no-ops, and errors from tracked functions travel as opaque payloads
through Track.reject().
"""


class RacetrackError(Exception):
    """Base class for racetrack errors."""


class ContextError(RacetrackError, RuntimeError):
    """The ambient call context was used out of its nesting discipline."""


class ContextOrderError(ContextError):
    """restore() was called while a more recently prepared context is still current."""


class ContextReleasedError(ContextError):
    """restore() was called a second time for the same prepared context."""


class NoActiveContextError(ContextError):
    """A strict context lookup found no active context."""
