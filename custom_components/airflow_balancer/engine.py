"""Event-driven DAB control loop."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import logging
from typing import Any, Callable, Mapping, Protocol, Sequence, Union

from .dab import (
    DEFAULT_SETTINGS,
    DabSettings,
    adjust_for_minimum_airflow,
    apply_change_dampening,
    calculate_longest_minutes_to_target,
    calculate_open_percentage_for_all_rooms,
    clamp_percent,
    expand_room_percentages,
    finalize_with_minimum_airflow,
    is_within_setpoint_tolerance,
    resolve_global_setpoint,
)
from .feedback import CycleFeedbackRecorder, FeedbackResult
from .history import RateHistoryStore
from .mode_detector import TemperatureTrendTracker, calculate_hvac_mode
from .models import (
    ACTIVE_HVAC_MODES,
    HVAC_IDLE,
    CycleRecord,
    Decision,
    EfficiencyState,
    RoomSnapshot,
    RoomState,
)

_LOGGER = logging.getLogger(__name__)

MIN_EVALUATION_INTERVAL = timedelta(minutes=1)
MAX_ERRORS = 50


class DeviceDirectory(Protocol):
    """Source of readings and setpoints for every vent and room."""

    def get_vents_by_room(self) -> Mapping[str, Sequence[str]]: ...

    def get_room_temperature(self, vent_id: str) -> float | None: ...

    def get_duct_temperature(self, vent_id: str) -> float | None: ...

    def get_setpoint(self, room_id: str) -> float | None: ...

    def is_room_active(self, room_id: str) -> bool: ...

    def get_current_open_percent(self, vent_id: str) -> int | None: ...

    def get_vent_weight(self, vent_id: str) -> float: ...

    def get_thermostat_action(self) -> str | None: ...

    def get_thermostat_setpoint(self, hvac_mode: str) -> float | None: ...


class VentActuator(Protocol):
    """Sink for commanded vent positions."""

    def set_open_percent(self, vent_id: str, percent: int) -> None: ...


@dataclass(frozen=True)
class TimerFired:
    now: datetime


@dataclass(frozen=True)
class ReadingUpdated:
    now: datetime
    room_id: str | None = None


@dataclass(frozen=True)
class CycleEnded:
    now: datetime
    cycle: CycleRecord
    full_cycle: bool = True


@dataclass(frozen=True)
class RebalanceRequested:
    now: datetime


EngineEvent = Union[TimerFired, ReadingUpdated, CycleEnded, RebalanceRequested]


class DabEngine:
    """Single-threaded DAB control loop.

    Callers :meth:`post` events and then :meth:`process` the inbox. Each event
    runs to completion before the next one is taken, and events posted while
    processing are handled in the same drain. A failing event is logged and
    recorded in the diagnostics; it never stops the loop.
    """

    def __init__(
        self,
        directory: DeviceDirectory,
        actuator: VentActuator,
        history: RateHistoryStore,
        efficiency: EfficiencyState | None = None,
        settings: DabSettings = DEFAULT_SETTINGS,
        control_enabled: bool = True,
        on_activity: Callable[[dict[str, Any]], None] | None = None,
        manual_overrides: dict[str, int] | None = None,
    ) -> None:
        self.directory = directory
        self.actuator = actuator
        self.history = history
        self.efficiency = efficiency or EfficiencyState()
        self.settings = settings
        self.control_enabled = control_enabled
        self.recorder = CycleFeedbackRecorder(history, self.efficiency, settings)
        self.hvac_mode = HVAC_IDLE
        self.longest_time_to_target: float | None = None
        self.error_count = 0
        self._on_activity = on_activity
        self._inbox: deque[EngineEvent] = deque()
        self._processing = False
        self._dirty = False
        self._cycle: CycleRecord | None = None
        self._pending_end: tuple[CycleRecord, datetime] | None = None
        self._awaiting_feedback: list[CycleRecord] = []
        self._next_rebalance_check: datetime | None = None
        self._next_full_rebalance: datetime | None = None
        self._last_evaluation: datetime | None = None
        self._trend = TemperatureTrendTracker(
            settings.trend_window_minutes, settings.trend_min_change
        )
        self._targets: dict[str, int] = {}
        self.manual_overrides: dict[str, int] = (
            manual_overrides if manual_overrides is not None else {}
        )
        self._last_feedback: dict[str, dict[str, Any]] = {}
        self._decisions: deque[Decision] = deque(maxlen=settings.decision_trace_size)
        self._activity: deque[dict[str, Any]] = deque(maxlen=settings.activity_log_size)
        self._errors: deque[dict[str, Any]] = deque(maxlen=MAX_ERRORS)

    @property
    def cycle(self) -> CycleRecord | None:
        return self._cycle

    @property
    def pending_end_at(self) -> datetime | None:
        """When the last finished cycle will be recorded."""
        return self._pending_end[1] if self._pending_end else None

    @property
    def targets(self) -> dict[str, int]:
        return dict(self._targets)

    def post(self, event: EngineEvent) -> None:
        self._inbox.append(event)

    def set_manual_override(self, vent_id: str, percent: float | None) -> None:
        """Pin a vent to a fixed opening, or release it with ``None``."""
        if percent is None:
            if self.manual_overrides.pop(vent_id, None) is not None:
                _LOGGER.info("Cleared manual override for %s", vent_id)
            return
        self.manual_overrides[vent_id] = int(clamp_percent(percent))
        _LOGGER.info("Pinned %s to %s%%", vent_id, self.manual_overrides[vent_id])

    def process(self) -> int:
        """Drain the inbox; return how many events were handled."""
        if self._processing:
            return 0
        self._processing = True
        handled = 0
        try:
            while self._inbox:
                event = self._inbox.popleft()
                try:
                    self._dispatch(event)
                except Exception as err:  # noqa: BLE001
                    _LOGGER.exception("DAB %s handling failed: %s", type(event).__name__, err)
                    self.error_count += 1
                    self._errors.append(
                        {
                            "at": event.now.isoformat(),
                            "event": type(event).__name__,
                            "error": str(err),
                        }
                    )
                handled += 1
        finally:
            self._processing = False
        return handled

    def consume_dirty(self) -> bool:
        """Return True once after learned state changed."""
        dirty, self._dirty = self._dirty, False
        return dirty

    def decision_trace(self) -> list[dict[str, Any]]:
        return [decision.as_dict() for decision in self._decisions]

    def diagnostics(self) -> dict[str, Any]:
        pending = self._pending_end[1].isoformat() if self._pending_end else None
        return {
            "hvac_mode": self.hvac_mode,
            "control_enabled": self.control_enabled,
            "cycle": self._cycle.as_dict() if self._cycle else None,
            "pending_cycle_end": pending,
            "longest_time_to_target": self.longest_time_to_target,
            "targets": dict(self._targets),
            "manual_overrides": dict(self.manual_overrides),
            "decisions": self.decision_trace(),
            "effective_rates": self.history.diagnostics_rows(),
            "efficiency": self.efficiency.as_dict(),
            "last_feedback": dict(self._last_feedback),
            "activity": list(self._activity),
            "errors": list(self._errors),
        }

    def _dispatch(self, event: EngineEvent) -> None:
        if isinstance(event, TimerFired):
            self._on_timer(event.now)
        elif isinstance(event, ReadingUpdated):
            self._on_reading_updated(event.now)
        elif isinstance(event, CycleEnded):
            self._on_cycle_ended(event)
        elif isinstance(event, RebalanceRequested):
            self._on_rebalance_requested(event.now)
        else:
            _LOGGER.warning("Unknown DAB event %s", event)

    def _on_timer(self, now: datetime) -> None:
        snapshots = self._collect_snapshots(now)
        self._transition(self._detect_mode(snapshots), snapshots, now)

        if self._pending_end and now >= self._pending_end[1]:
            self._flush_pending_end(now)

        if self._cycle is None:
            return

        if self._next_full_rebalance and now >= self._next_full_rebalance:
            self._start_segment(snapshots, now, "periodic rebalance")
        elif self._next_rebalance_check and now >= self._next_rebalance_check:
            self._next_rebalance_check = now + timedelta(minutes=self.settings.rebalance_check_minutes)
            if self._should_rebalance(snapshots, now):
                self._start_segment(snapshots, now, "room reached setpoint")

        self._evaluate(snapshots, now)

    def _on_reading_updated(self, now: datetime) -> None:
        snapshots = self._collect_snapshots(now)
        if self._cycle is None:
            return
        if self._last_evaluation and now - self._last_evaluation < MIN_EVALUATION_INTERVAL:
            return
        self._evaluate(snapshots, now)

    def _on_rebalance_requested(self, now: datetime) -> None:
        snapshots = self._collect_snapshots(now)
        self._transition(self._detect_mode(snapshots), snapshots, now)
        if self._cycle is None:
            _LOGGER.debug("Rebalance requested while idle; nothing to do")
            return
        self._evaluate(snapshots, now)

    def _on_cycle_ended(self, event: CycleEnded) -> None:
        cycle = event.cycle
        if not any(item is cycle for item in self._awaiting_feedback):
            _LOGGER.debug("Ignoring end of a cycle that was already recorded")
            return
        self._awaiting_feedback = [item for item in self._awaiting_feedback if item is not cycle]

        finished_at = cycle.finished_at or event.now
        snapshots = {snapshot.room_id: snapshot for snapshot in self._collect_snapshots(event.now)}
        setpoints = self._resolve_setpoints(snapshots, cycle.hvac_mode)
        results = self.recorder.record_cycle(
            cycle, snapshots, finished_at, setpoints, full_cycle=event.full_cycle
        )
        self._dirty = True
        self._last_feedback = {room_id: _feedback_dict(result) for room_id, result in results.items()}
        for result in results.values():
            if result.changed and abs(result.live_rate - result.previous_rate) * 100 >= 1.0:
                self._log_activity(
                    event.now,
                    f"{result.room_id} {result.hvac_mode} efficiency "
                    f"{result.previous_rate * 100:.1f}% -> {result.live_rate * 100:.1f}%",
                    "efficiency",
                )
        self._log_activity(
            event.now,
            f"Recorded {cycle.hvac_mode} {'cycle' if event.full_cycle else 'segment'} "
            f"of {cycle.segment_minutes(finished_at):.1f} min for {len(results)} rooms",
            "feedback",
        )

    def _transition(self, mode: str, snapshots: list[RoomSnapshot], now: datetime) -> None:
        previous = self.hvac_mode
        if mode == previous:
            return
        self.hvac_mode = mode
        _LOGGER.info("HVAC mode changed from %s to %s", previous, mode)
        self._log_activity(now, f"HVAC mode {previous} -> {mode}", "mode")

        if self._cycle is not None:
            ended = replace(self._cycle, finished_at=now)
            self._cycle = None
            self._next_rebalance_check = None
            self._next_full_rebalance = None
            self._pending_end = (ended, now + timedelta(seconds=self.settings.finalize_delay_seconds))

        if mode in ACTIVE_HVAC_MODES:
            if self._pending_end:
                self._flush_pending_end(now)
            self._start_cycle(mode, snapshots, now)

    def _start_cycle(self, mode: str, snapshots: list[RoomSnapshot], now: datetime) -> None:
        self._cycle = self._new_record(mode, snapshots, now, now)
        self._reset_deadlines(now)
        self._last_evaluation = None
        self._log_activity(now, f"Started {mode} cycle for {len(snapshots)} rooms", "cycle")

    def _start_segment(self, snapshots: list[RoomSnapshot], now: datetime, reason: str) -> None:
        """Record feedback for the running segment and begin a new one."""
        cycle = self._cycle
        if cycle is None:
            return
        finished = replace(cycle, finished_at=now)
        self._awaiting_feedback.append(finished)
        self.post(CycleEnded(now, finished, full_cycle=False))
        self._cycle = self._new_record(cycle.hvac_mode, snapshots, now, cycle.cycle_started_at)
        self._reset_deadlines(now)
        self._log_activity(now, f"Rebalancing: {reason}", "rebalance")

    def _flush_pending_end(self, now: datetime) -> None:
        ended, _ = self._pending_end
        self._pending_end = None
        self._awaiting_feedback.append(ended)
        self.post(CycleEnded(now, ended, full_cycle=True))

    def _new_record(
        self,
        mode: str,
        snapshots: list[RoomSnapshot],
        now: datetime,
        cycle_started_at: datetime,
    ) -> CycleRecord:
        rooms = self._build_room_states(snapshots, mode, now)
        return CycleRecord(
            vent_ids_by_room={snapshot.room_id: snapshot.vent_ids for snapshot in snapshots},
            hvac_mode=mode,
            started_at=now,
            cycle_started_at=cycle_started_at,
            starting_temps={
                snapshot.room_id: snapshot.temp for snapshot in snapshots if snapshot.temp is not None
            },
            starting_open={
                snapshot.room_id: snapshot.open_percent
                for snapshot in snapshots
                if snapshot.open_percent is not None
            },
            predicted_rates={room_id: room.rate for room_id, room in rooms.items()},
        )

    def _reset_deadlines(self, now: datetime) -> None:
        self._next_rebalance_check = now + timedelta(minutes=self.settings.rebalance_check_minutes)
        self._next_full_rebalance = now + timedelta(minutes=self.settings.full_rebalance_minutes)

    def _should_rebalance(self, snapshots: list[RoomSnapshot], now: datetime) -> bool:
        cycle = self._cycle
        if cycle is None:
            return False
        if cycle.segment_minutes(now) < self.settings.min_runtime_for_rate_calc:
            return False
        setpoints = self._resolve_setpoints(
            {snapshot.room_id: snapshot for snapshot in snapshots}, cycle.hvac_mode
        )
        for snapshot in snapshots:
            if not snapshot.active:
                continue
            if is_within_setpoint_tolerance(
                cycle.hvac_mode, setpoints.get(snapshot.room_id), snapshot.temp, self.settings
            ):
                return True
        return False

    def _evaluate(self, snapshots: list[RoomSnapshot], now: datetime) -> None:
        settings = self.settings
        mode = self.hvac_mode
        if mode not in ACTIVE_HVAC_MODES:
            return
        self._last_evaluation = now
        rooms = self._build_room_states(snapshots, mode, now)
        max_running = self.efficiency.max_running_minutes.get(mode, settings.max_minutes_to_setpoint)
        longest = calculate_longest_minutes_to_target(rooms, mode, max_running, settings)
        self.longest_time_to_target = longest

        room_percents, decisions = calculate_open_percentage_for_all_rooms(
            rooms, mode, longest, settings, now
        )
        self._decisions.extend(decisions)
        for decision in decisions:
            _LOGGER.debug(
                "Room %s: temp=%s setpoint=%s rate=%s -> %s (%s)",
                decision.room_id,
                decision.temp,
                decision.setpoint,
                decision.rate,
                decision.percent,
                decision.reason,
            )

        current: dict[str, float | None] = {}
        for snapshot in snapshots:
            current.update(snapshot.open_percents)

        pinned = {
            vent_id: int(clamp_percent(percent))
            for vent_id, percent in self.manual_overrides.items()
            if vent_id in current
        }
        targets = {
            vent_id: value
            for vent_id, value in expand_room_percentages(rooms, room_percents, settings).items()
            if vent_id not in pinned
        }
        # Vents left out of this evaluation still move air.
        fixed: dict[str, float | None] = {
            vent_id: percent for vent_id, percent in current.items() if vent_id not in targets
        }
        fixed.update(pinned)
        vent_temps = {
            vent_id: rooms[room_id].temp
            for room_id in room_percents
            for vent_id in rooms[room_id].vent_ids
        }
        targets = adjust_for_minimum_airflow(
            vent_temps, mode, targets, settings.conventional_vents, settings, fixed
        )

        settled: set[str] = set()
        for snapshot in snapshots:
            room = rooms[snapshot.room_id]
            if snapshot.room_id not in room_percents:
                continue
            anomalous = self.history.get_effective_rate_info(
                snapshot.room_id, mode, now.hour
            ).anomaly_flag
            if not anomalous and is_within_setpoint_tolerance(mode, room.setpoint, room.temp, settings):
                settled.update(room.vent_ids)
        targets = apply_change_dampening(targets, current, settled, settings)
        targets = adjust_for_minimum_airflow(
            vent_temps, mode, targets, settings.conventional_vents, settings, fixed
        )

        commanded = finalize_with_minimum_airflow(
            targets, vent_temps, mode, settings.conventional_vents, settings, fixed
        )
        commanded.update(pinned)
        for vent_id, percent in commanded.items():
            self._targets[vent_id] = percent
            if self.control_enabled:
                self.actuator.set_open_percent(vent_id, percent)
        if self.control_enabled:
            self._record_commanded_open(rooms, commanded)

    def _record_commanded_open(
        self, rooms: Mapping[str, RoomState], commanded: Mapping[str, int]
    ) -> None:
        """Learn from the opening sent at the start of a segment, not the one found there."""
        cycle = self._cycle
        if cycle is None or cycle.open_commanded:
            return
        for room_id, room in rooms.items():
            sent = [commanded[vent_id] for vent_id in room.vent_ids if vent_id in commanded]
            if sent:
                cycle.starting_open[room_id] = sum(sent) / len(sent)
        cycle.open_commanded = True

    def _collect_snapshots(self, now: datetime) -> list[RoomSnapshot]:
        directory = self.directory
        snapshots: list[RoomSnapshot] = []
        for room_id, vent_ids in directory.get_vents_by_room().items():
            vents = tuple(vent_ids)
            temps = [directory.get_room_temperature(vent_id) for vent_id in vents]
            temps = [temp for temp in temps if temp is not None]
            snapshot = RoomSnapshot(
                room_id=room_id,
                vent_ids=vents,
                temp=sum(temps) / len(temps) if temps else None,
                setpoint=directory.get_setpoint(room_id),
                active=directory.is_room_active(room_id),
                duct_temps={vent_id: directory.get_duct_temperature(vent_id) for vent_id in vents},
                open_percents={vent_id: directory.get_current_open_percent(vent_id) for vent_id in vents},
                vent_weights={vent_id: directory.get_vent_weight(vent_id) for vent_id in vents},
            )
            self._trend.record(room_id, snapshot.temp, now)
            snapshots.append(snapshot)
        return snapshots

    def _detect_mode(self, snapshots: list[RoomSnapshot]) -> str:
        readings = [reading for snapshot in snapshots for reading in snapshot.readings()]
        return calculate_hvac_mode(
            readings,
            self.settings.duct_temp_threshold,
            self.directory.get_thermostat_action(),
            self._trend.infer(),
            self.settings.hvac_mode_override,
        )

    def _resolve_setpoints(
        self, snapshots: Mapping[str, RoomSnapshot], hvac_mode: str
    ) -> dict[str, float]:
        global_setpoint = resolve_global_setpoint(
            hvac_mode,
            self.directory.get_thermostat_setpoint(hvac_mode),
            [snapshot.setpoint for snapshot in snapshots.values()],
            self.settings,
        )
        setpoints: dict[str, float] = {}
        for room_id, snapshot in snapshots.items():
            if self.settings.use_room_setpoints and snapshot.setpoint is not None:
                setpoints[room_id] = snapshot.setpoint
            else:
                setpoints[room_id] = global_setpoint
        return setpoints

    def _build_room_states(
        self, snapshots: list[RoomSnapshot], hvac_mode: str, now: datetime
    ) -> dict[str, RoomState]:
        setpoints = self._resolve_setpoints(
            {snapshot.room_id: snapshot for snapshot in snapshots}, hvac_mode
        )
        return {
            snapshot.room_id: RoomState(
                room_id=snapshot.room_id,
                vent_ids=snapshot.vent_ids,
                active=snapshot.active,
                temp=snapshot.temp,
                setpoint=setpoints[snapshot.room_id],
                rate=self._learned_rate(snapshot.room_id, hvac_mode, now.hour),
                vent_weights=dict(snapshot.vent_weights),
            )
            for snapshot in snapshots
        }

    def _learned_rate(self, room_id: str, hvac_mode: str, hour: int) -> float:
        """History first, then the live efficiency, then a seeded guess."""
        info = self.history.get_effective_rate_info(room_id, hvac_mode, hour)
        if not info.floor_used:
            return info.effective_rate
        live = self.efficiency.get_rate(room_id, hvac_mode)
        if live > 0:
            return live
        scale = self.efficiency.max_rates.get(hvac_mode) or 1.0
        percent = max(0.0, min(100.0, self.settings.initial_efficiency_percent))
        return scale * percent / 100

    def _log_activity(self, now: datetime, message: str, category: str) -> None:
        entry = {"at": now.isoformat(), "category": category, "message": message}
        self._activity.append(entry)
        if self._on_activity is not None:
            self._on_activity(entry)


def _feedback_dict(result: FeedbackResult) -> dict[str, Any]:
    return {
        "outcome": result.outcome,
        "previous_rate": result.previous_rate,
        "live_rate": result.live_rate,
        "sample": result.sample,
        "reason": result.reason,
    }
