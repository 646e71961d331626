"""racetrack: call sequencing and race resolution for cooperative async code."""

from importlib.metadata import version as _version

__version__ = _version("racetrack")

from racetrack._tracking import get_pending_count
from racetrack.tracker import Tracker, Track, TrackState, TrackData, TrackSnapshot
from racetrack.context import (
    CallContext,
    ContextStack,
    default_stack,
    get_current_context,
    prepare_context,
)
from racetrack.exceptions import (
    RacetrackError,
    ContextError,
    ContextOrderError,
    ContextReleasedError,
    NoActiveContextError,
)
from racetrack.marks import HighWaterMark, Projection
from racetrack.reaction import Reaction, autorun, reaction
from racetrack.action import action, transaction
from racetrack.stream import EventStream
from racetrack.monitor import FunctionMonitor, MonitorEvent, MonitoredFunction, with_function_monitor

__all__ = [
    "Tracker",
    "Track",
    "TrackState",
    "TrackData",
    "TrackSnapshot",
    "CallContext",
    "ContextStack",
    "default_stack",
    "get_current_context",
    "prepare_context",
    "RacetrackError",
    "ContextError",
    "ContextOrderError",
    "ContextReleasedError",
    "NoActiveContextError",
    "HighWaterMark",
    "Projection",
    "Reaction",
    "autorun",
    "reaction",
    "action",
    "transaction",
    "get_pending_count",
    "EventStream",
    "FunctionMonitor",
    "MonitorEvent",
    "MonitoredFunction",
    "with_function_monitor",
]
