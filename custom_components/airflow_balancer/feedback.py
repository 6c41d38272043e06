"""Turn finished HVAC cycles into learned room rates."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Mapping

from .dab import (
    DEFAULT_SETTINGS,
    DabSettings,
    assess_room_change_rate,
    has_room_reached_setpoint,
    rolling_average,
    round_big_decimal,
)
from .history import RateHistoryStore
from .models import CycleRecord, EfficiencyState, RoomSnapshot

_LOGGER = logging.getLogger(__name__)

OUTCOME_MEASURED = "measured"
OUTCOME_FLOOR = "floor"
OUTCOME_PRESERVED = "preserved"
OUTCOME_SEEDED = "seeded"
OUTCOME_SKIPPED = "skipped"


@dataclass(frozen=True)
class FeedbackResult:
    """What one room learned from a cycle segment."""

    room_id: str
    hvac_mode: str
    outcome: str
    previous_rate: float
    live_rate: float
    sample: float | None = None
    reason: str | None = None

    @property
    def changed(self) -> bool:
        return self.outcome in (OUTCOME_MEASURED, OUTCOME_FLOOR, OUTCOME_SEEDED)


class CycleFeedbackRecorder:
    """Close the learning loop at the end of a cycle or segment."""

    def __init__(
        self,
        history: RateHistoryStore,
        efficiency: EfficiencyState,
        settings: DabSettings = DEFAULT_SETTINGS,
    ) -> None:
        self.history = history
        self.efficiency = efficiency
        self.settings = settings

    def record_cycle(
        self,
        cycle: CycleRecord,
        snapshots: Mapping[str, RoomSnapshot],
        finished_at: datetime,
        setpoints: Mapping[str, float] | None = None,
        full_cycle: bool = True,
    ) -> dict[str, FeedbackResult]:
        settings = self.settings
        mode = cycle.hvac_mode
        setpoints = setpoints or {}
        minutes = cycle.segment_minutes(finished_at)
        hour = cycle.cycle_started_at.hour

        if full_cycle:
            previous = self.efficiency.max_running_minutes.get(
                mode, settings.max_minutes_to_setpoint
            )
            self.efficiency.max_running_minutes[mode] = round_big_decimal(
                rolling_average(
                    previous, cycle.cycle_minutes(finished_at), 1, settings.running_time_entries
                ),
                3,
            )

        results: dict[str, FeedbackResult] = {}
        for room_id in cycle.vent_ids_by_room:
            snapshot = snapshots.get(room_id)
            current_rate = self.efficiency.get_rate(room_id, mode)
            start_temp = cycle.starting_temps.get(room_id)
            current_temp = snapshot.temp if snapshot else None
            percent_open = cycle.starting_open.get(room_id)

            if start_temp is None or current_temp is None:
                results[room_id] = FeedbackResult(
                    room_id, mode, OUTCOME_SKIPPED, current_rate, current_rate, reason="missing_reading"
                )
                continue

            outcome = assess_room_change_rate(
                start_temp, current_temp, minutes, percent_open, current_rate, settings
            )
            new_rate = outcome.rate
            kind = OUTCOME_MEASURED
            if new_rate is None:
                setpoint = setpoints.get(room_id)
                at_setpoint = setpoint is not None and has_room_reached_setpoint(
                    mode, setpoint, current_temp
                )
                if at_setpoint and current_rate > 0:
                    results[room_id] = FeedbackResult(
                        room_id, mode, OUTCOME_PRESERVED, current_rate, current_rate, reason=outcome.reason
                    )
                    continue
                if outcome.reason in ("too_brief", "above_max"):
                    results[room_id] = FeedbackResult(
                        room_id, mode, OUTCOME_SKIPPED, current_rate, current_rate, reason=outcome.reason
                    )
                    continue
                if not at_setpoint and percent_open and percent_open > 0:
                    new_rate, kind = settings.min_temp_change_rate, OUTCOME_FLOOR
                elif current_rate == 0:
                    max_rate = self.efficiency.max_rates.get(mode) or settings.max_temp_change_rate
                    new_rate, kind = max_rate * 0.1, OUTCOME_SEEDED
                else:
                    results[room_id] = FeedbackResult(
                        room_id, mode, OUTCOME_SKIPPED, current_rate, current_rate, reason=outcome.reason
                    )
                    continue

            weight = (percent_open or 0) / 100 if kind != OUTCOME_SEEDED else 1
            averaged = rolling_average(
                current_rate, new_rate, weight, settings.rolling_average_entries
            )
            cleaned = round_big_decimal(averaged, 6)
            self.efficiency.set_rate(room_id, mode, cleaned)
            if cleaned > self.efficiency.max_rates.get(mode, 0):
                self.efficiency.max_rates[mode] = cleaned

            if kind in (OUTCOME_MEASURED, OUTCOME_FLOOR):
                self.history.append(room_id, mode, hour, new_rate, finished_at)
            if kind == OUTCOME_MEASURED:
                self.history.record_outcome(
                    room_id, mode, cycle.predicted_rates.get(room_id), new_rate
                )

            _LOGGER.debug(
                "Room %s %s rate %s: %.4f -> %.4f (sample %.4f over %.1f min)",
                room_id,
                mode,
                kind,
                current_rate,
                cleaned,
                new_rate,
                minutes,
            )
            results[room_id] = FeedbackResult(
                room_id, mode, kind, current_rate, cleaned, sample=new_rate, reason=outcome.reason
            )
        return results
