"""
Device-side proximity tracking for an open shift.

Each poll samples the device position, classifies it against the shift's
site and, on an inside/outside change, emits an enter or exit event. The
first sample of a shift only seeds the state. Emission is throttled per
project and is fire-and-forget.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Protocol, Set

import structlog

from ..config import settings
from ..services.geofence import Coordinate, effective_radius, haversine_distance, is_inside, round_meters
from ..services.time_rules import utcnow


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TrackedShift:
    time_entry_id: str
    project_id: str
    site_lat: float
    site_lng: float
    radius_m: Optional[float] = None

    @property
    def key(self) -> str:
        return f"{self.time_entry_id}:{self.project_id}"


@dataclass
class TrackerState:
    """
    Mutable bookkeeping shared by the ticks of one tracking session.

    last_inside_by_shift is keyed by TrackedShift.key; a missing key means the
    shift has no resolved sample yet. last_emit_at_by_project holds clock
    readings (seconds) of the last emitted event per project.
    """
    last_inside_by_shift: Dict[str, bool] = field(default_factory=dict)
    last_emit_at_by_project: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class Transition:
    time_entry_id: str
    project_id: str
    event_type: str  # enter|exit
    lat: float
    lng: float
    distance_m: int
    inside: bool
    occurred_at: datetime


class PositionProvider(Protocol):
    async def get_position(self) -> Coordinate:
        """Current device position. Raises when denied or unavailable."""


class EventEmitter(Protocol):
    async def emit(self, transition: Transition) -> None:
        ...


def evaluate_sample(
    state: TrackerState,
    shift: TrackedShift,
    position: Coordinate,
    now: float,
    min_emit_interval: float,
    occurred_at: Optional[datetime] = None,
) -> Optional[Transition]:
    """
    Apply one resolved position sample to `state`.

    Returns the transition to emit, or None. The stored inside flag always
    follows the latest sample, including when a change is throttled, so a
    steady reading after the window does not fire late.
    """
    # Classify on the reported integer distance, as the server does when storing it
    distance_m = round_meters(haversine_distance(position, Coordinate(shift.site_lat, shift.site_lng)))
    inside = is_inside(distance_m, effective_radius(shift.radius_m))

    previous = state.last_inside_by_shift.get(shift.key)
    state.last_inside_by_shift[shift.key] = inside

    if previous is None or previous == inside:
        return None

    last_emit = state.last_emit_at_by_project.get(shift.project_id)
    if last_emit is not None and now - last_emit < min_emit_interval:
        return None

    state.last_emit_at_by_project[shift.project_id] = now
    return Transition(
        time_entry_id=shift.time_entry_id,
        project_id=shift.project_id,
        event_type="enter" if inside else "exit",
        lat=position.lat,
        lng=position.lng,
        distance_m=distance_m,
        inside=inside,
        occurred_at=occurred_at or utcnow(),
    )


def single_open_shift(open_shifts: Iterable[TrackedShift]) -> Optional[TrackedShift]:
    """Tracking only runs while exactly one shift is open for the employee."""
    shifts = list(open_shifts)
    return shifts[0] if len(shifts) == 1 else None


class ProximityTracker:
    """One polling task per active shift."""

    def __init__(
        self,
        shift: TrackedShift,
        positions: PositionProvider,
        emitter: EventEmitter,
        state: Optional[TrackerState] = None,
        shift_is_open: Optional[Callable[[], bool]] = None,
        poll_interval: Optional[float] = None,
        min_emit_interval: Optional[float] = None,
        position_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.shift = shift
        self.positions = positions
        self.emitter = emitter
        self.state = state if state is not None else TrackerState()
        self.shift_is_open = shift_is_open
        self.poll_interval = settings.tracker_poll_interval_seconds if poll_interval is None else poll_interval
        self.min_emit_interval = settings.tracker_min_emit_interval_seconds if min_emit_interval is None else min_emit_interval
        self.position_timeout = settings.tracker_position_timeout_seconds if position_timeout is None else position_timeout
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self._stopped = False

    @classmethod
    def for_open_shifts(
        cls,
        open_shifts: Iterable[TrackedShift],
        positions: PositionProvider,
        emitter: EventEmitter,
        **kwargs,
    ) -> Optional["ProximityTracker"]:
        """Tracker for the employee's only open shift; None when zero or several are open."""
        shift = single_open_shift(open_shifts)
        if shift is None:
            return None
        return cls(shift, positions, emitter, **kwargs)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> Optional[Transition]:
        try:
            position = await asyncio.wait_for(self.positions.get_position(), timeout=self.position_timeout)
        except asyncio.TimeoutError:
            self._debug("position_timeout")
            return None
        except Exception as e:
            # Denied or unavailable: skip this tick
            self._debug("position_unavailable", error=str(e))
            return None

        if position is None or not position.is_finite():
            return None

        transition = evaluate_sample(self.state, self.shift, position, self.clock(), self.min_emit_interval)
        if transition is not None:
            self._fire(transition)
        return transition

    async def run(self) -> None:
        while not self._stopped:
            if self.shift_is_open is not None and not self.shift_is_open():
                self._debug("tracker_shift_closed")
                break
            await self.tick()
            await asyncio.sleep(self.poll_interval)

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stopped = False
        self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Stop polling, cancelling any in-flight position request. Submitted events are left to finish."""
        self._stopped = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def drain(self) -> None:
        """Wait for submitted events (tests and orderly shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _fire(self, transition: Transition) -> None:
        task = asyncio.get_running_loop().create_task(self.emitter.emit(transition))
        self._pending.add(task)
        task.add_done_callback(self._on_emitted)

    def _on_emitted(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._debug("geofence_event_emit_failed", error=str(error))

    def _debug(self, event: str, **kw) -> None:
        # Tracking is silent in production
        if not settings.is_production:
            logger.warning(event, time_entry_id=self.shift.time_entry_id, project_id=self.shift.project_id, **kw)
