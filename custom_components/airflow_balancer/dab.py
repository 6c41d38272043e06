"""Dynamic Airflow Balancing (DAB) algorithm helpers."""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import datetime
import math
import statistics
from typing import Any, Iterable, Mapping

from .const import (
    CONF_ALLOW_FULL_CLOSE,
    CONF_CLOSE_INACTIVE_ROOMS,
    CONF_CONVENTIONAL_VENTS,
    CONF_DUCT_TEMP_THRESHOLD,
    CONF_ENABLE_ADAPTIVE_BOOST,
    CONF_ENABLE_EWMA,
    CONF_ENABLE_OUTLIER_REJECTION,
    CONF_EWMA_HALF_LIFE_DAYS,
    CONF_HISTORY_RETENTION_DAYS,
    CONF_HVAC_MODE_OVERRIDE,
    CONF_INITIAL_EFFICIENCY_PERCENT,
    CONF_MAX_CHANGE_PERCENT,
    CONF_MIN_COMBINED_VENT_FLOW,
    CONF_MIN_VENT_FLOOR_PERCENT,
    CONF_OUTLIER_MODE,
    CONF_OUTLIER_THRESHOLD_MAD,
    CONF_USE_ROOM_SETPOINTS,
    CONF_VENT_GRANULARITY,
    HVAC_MODE_OVERRIDES,
    OUTLIER_MODES,
)
from .models import HVAC_COOLING, HVAC_HEATING, Decision, RoomState

_OPTION_FIELDS: dict[str, str] = {
    CONF_CLOSE_INACTIVE_ROOMS: "close_inactive_rooms",
    CONF_VENT_GRANULARITY: "vent_granularity",
    CONF_INITIAL_EFFICIENCY_PERCENT: "initial_efficiency_percent",
    CONF_MIN_VENT_FLOOR_PERCENT: "min_vent_floor_percent",
    CONF_ALLOW_FULL_CLOSE: "allow_full_close",
    CONF_MAX_CHANGE_PERCENT: "max_change_percent",
    CONF_MIN_COMBINED_VENT_FLOW: "min_combined_vent_flow",
    CONF_CONVENTIONAL_VENTS: "conventional_vents",
    CONF_HVAC_MODE_OVERRIDE: "hvac_mode_override",
    CONF_USE_ROOM_SETPOINTS: "use_room_setpoints",
    CONF_DUCT_TEMP_THRESHOLD: "duct_temp_threshold",
    CONF_HISTORY_RETENTION_DAYS: "history_retention_days",
    CONF_ENABLE_EWMA: "enable_ewma",
    CONF_EWMA_HALF_LIFE_DAYS: "ewma_half_life_days",
    CONF_ENABLE_OUTLIER_REJECTION: "enable_outlier_rejection",
    CONF_OUTLIER_MODE: "outlier_mode",
    CONF_OUTLIER_THRESHOLD_MAD: "outlier_threshold_mad",
    CONF_ENABLE_ADAPTIVE_BOOST: "enable_adaptive_boost",
}


@dataclass(frozen=True)
class DabSettings:
    """Configuration values for DAB calculations (Celsius-based)."""

    max_temp_change_rate: float = 1.5
    min_temp_change_rate: float = 0.001
    setpoint_offset: float = 0.7
    max_minutes_to_setpoint: float = 60.0
    min_minutes_to_setpoint: float = 1.0
    min_runtime_for_rate_calc: float = 5.0
    min_detectable_temp_change: float = 0.1
    min_combined_vent_flow: float = 30.0
    increment_percentage: float = 1.5
    max_standard_vents: int = 15
    max_iterations: int = 500
    standard_vent_default_open: float = 50.0
    rebalancing_tolerance: float = 0.5
    temp_boundary_adjustment: float = 0.1
    thermostat_hysteresis: float = 0.6
    base_const: float = 0.0991
    exp_const: float = 2.3

    default_cooling_setpoint: float = 24.0
    default_heating_setpoint: float = 20.0
    use_room_setpoints: bool = False
    close_inactive_rooms: bool = True
    conventional_vents: int = 0
    vent_granularity: int = 5
    min_vent_floor_percent: float = 10.0
    allow_full_close: bool = False
    initial_efficiency_percent: float = 50.0
    rolling_average_entries: int = 4
    running_time_entries: int = 6

    max_change_percent: float = 25.0
    min_dampening_step: float = 5.0

    duct_temp_threshold: float = 0.5
    hvac_mode_override: str = "auto"
    trend_window_minutes: float = 10.0
    trend_min_change: float = 0.3

    history_retention_days: int = 10
    enable_ewma: bool = False
    ewma_half_life_days: float = 3.0
    enable_outlier_rejection: bool = True
    outlier_mode: str = "clip"
    outlier_threshold_mad: float = 3.0
    min_samples_for_outlier: int = 4
    outlier_min_scale_fraction: float = 0.05
    anomaly_decay_commits: int = 4
    enable_adaptive_boost: bool = True
    adaptive_lookback_periods: int = 3
    adaptive_threshold_percent: float = 25.0
    adaptive_boost_percent: float = 12.5
    adaptive_max_boost_percent: float = 25.0

    rebalance_check_minutes: float = 5.0
    full_rebalance_minutes: float = 30.0
    finalize_delay_seconds: float = 30.0
    decision_trace_size: int = 200
    activity_log_size: int = 200

    @property
    def floor_percent(self) -> float:
        """Lowest opening any vent may be commanded to."""
        if self.allow_full_close:
            return 0.0
        return max(0.0, min(50.0, float(self.min_vent_floor_percent)))

    @property
    def retention_days(self) -> int:
        return max(1, min(365, int(self.history_retention_days)))

    @classmethod
    def from_options(
        cls, options: Mapping[str, Any], base: DabSettings | None = None
    ) -> DabSettings:
        """Build settings from config entry options, ignoring malformed values."""
        settings = base or cls()
        types = {item.name: type(getattr(settings, item.name)) for item in fields(settings)}
        overrides: dict[str, Any] = {}
        for option_key, field_name in _OPTION_FIELDS.items():
            if option_key not in options or options[option_key] is None:
                continue
            value = _coerce_option(options[option_key], types[field_name])
            if value is not None:
                overrides[field_name] = value

        if overrides.get("hvac_mode_override", "auto") not in HVAC_MODE_OVERRIDES:
            overrides.pop("hvac_mode_override")
        if overrides.get("outlier_mode", "clip") not in OUTLIER_MODES:
            overrides.pop("outlier_mode")
        if "conventional_vents" in overrides:
            overrides["conventional_vents"] = max(
                0, min(settings.max_standard_vents, overrides["conventional_vents"])
            )
        return replace(settings, **overrides)


def _coerce_option(value: Any, expected: type) -> Any:
    try:
        if expected is bool:
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            return bool(value)
        if expected is int:
            return int(float(value))
        if expected is float:
            number = float(value)
            return number if math.isfinite(number) else None
        return str(value)
    except (TypeError, ValueError):
        return None


DEFAULT_SETTINGS = DabSettings()


@dataclass(frozen=True)
class RateOutcome:
    """Result of a room change-rate calculation.

    ``rate`` is None when the cycle did not produce usable data; ``reason``
    says why.
    """

    rate: float | None
    reason: str | None = None

    @property
    def valid(self) -> bool:
        return self.rate is not None


def round_big_decimal(value: float, scale: int = 3) -> float:
    return round(float(value), scale)


def round_to_nearest_multiple(value: float, granularity: int) -> int:
    if granularity <= 0:
        return int(round(value))
    quotient = value / granularity
    if quotient >= 0:
        rounded = math.floor(quotient + 0.5)
    else:
        rounded = math.ceil(quotient - 0.5)
    return int(rounded * granularity)


def rolling_average(current_average: float | None, new_number: float, weight: float = 1, num_entries: int = 10) -> float:
    if num_entries <= 0:
        return 0
    base = new_number if not current_average else current_average
    total = base * (num_entries - 1)
    weighted_value = (new_number - base) * weight
    total += base + weighted_value
    return total / num_entries


def has_room_reached_setpoint(hvac_mode: str, setpoint: float, current_temp: float, offset: float = 0) -> bool:
    if hvac_mode == HVAC_COOLING:
        return current_temp <= setpoint - offset
    return current_temp >= setpoint + offset


def is_within_setpoint_tolerance(
    hvac_mode: str,
    setpoint: float | None,
    current_temp: float | None,
    settings: DabSettings = DEFAULT_SETTINGS,
) -> bool:
    if setpoint is None or current_temp is None:
        return False
    return has_room_reached_setpoint(
        hvac_mode, setpoint, current_temp, -settings.rebalancing_tolerance
    )


def clamp_percent(value: float, floor: float = 0.0) -> float:
    return max(floor, min(100.0, value))


def resolve_global_setpoint(
    hvac_mode: str,
    thermostat_setpoint: float | None,
    room_setpoints: list[float | None],
    settings: DabSettings = DEFAULT_SETTINGS,
) -> float:
    """Pick the setpoint every room balances toward.

    The thermostat setpoint wins (nudged past by ``setpoint_offset`` so rooms
    finish before the thermostat stops the cycle), then the median of the
    configured room setpoints, then a per-mode default.
    """
    if thermostat_setpoint is not None:
        if hvac_mode == HVAC_COOLING:
            return thermostat_setpoint - settings.setpoint_offset
        return thermostat_setpoint + settings.setpoint_offset

    configured = [value for value in room_setpoints if value is not None]
    if configured:
        return statistics.median(configured)

    if hvac_mode == HVAC_COOLING:
        return settings.default_cooling_setpoint
    return settings.default_heating_setpoint


def assess_room_change_rate(
    last_start_temp: float | None,
    current_temp: float | None,
    total_minutes: float,
    percent_open: float | None,
    current_rate: float,
    settings: DabSettings = DEFAULT_SETTINGS,
) -> RateOutcome:
    if last_start_temp is None or current_temp is None or percent_open is None:
        return RateOutcome(None, "missing_reading")
    if total_minutes < settings.min_minutes_to_setpoint:
        return RateOutcome(None, "too_brief")
    if total_minutes < settings.min_runtime_for_rate_calc:
        return RateOutcome(None, "too_brief")
    if percent_open <= 0:
        return RateOutcome(None, "vent_closed")

    diff_temps = abs(last_start_temp - current_temp)
    if diff_temps < settings.min_detectable_temp_change:
        return RateOutcome(None, "below_noise")

    rate = diff_temps / total_minutes
    p_open = percent_open / 100
    max_rate = max(rate, current_rate)
    approx_rate = (rate / max_rate) / p_open if max_rate else 0

    if approx_rate > settings.max_temp_change_rate:
        return RateOutcome(None, "above_max")
    if approx_rate < settings.min_temp_change_rate:
        return RateOutcome(settings.min_temp_change_rate)
    return RateOutcome(approx_rate)


def calculate_room_change_rate(
    last_start_temp: float | None,
    current_temp: float | None,
    total_minutes: float,
    percent_open: float | None,
    current_rate: float,
    settings: DabSettings = DEFAULT_SETTINGS,
) -> float | None:
    return assess_room_change_rate(
        last_start_temp, current_temp, total_minutes, percent_open, current_rate, settings
    ).rate


def calculate_vent_open_percentage(
    room_name: str,
    start_temp: float,
    setpoint: float,
    hvac_mode: str,
    max_rate: float,
    longest_time: float | None,
    settings: DabSettings = DEFAULT_SETTINGS,
) -> float:
    if has_room_reached_setpoint(hvac_mode, setpoint, start_temp):
        return 0.0
    if max_rate <= 0 or not longest_time or longest_time <= 0:
        return 100.0

    target_rate = abs(setpoint - start_temp) / longest_time
    exponent = (target_rate / max_rate) * settings.exp_const
    if exponent > 700:
        return 100.0
    percentage_open = settings.base_const * math.exp(exponent)
    percentage_open = round_big_decimal(percentage_open * 100, 3)

    if percentage_open < 0:
        return 0.0
    if percentage_open > 100:
        return 100.0
    return percentage_open


def calculate_longest_minutes_to_target(
    rooms: Mapping[str, RoomState],
    hvac_mode: str,
    max_running_time: float,
    settings: DabSettings = DEFAULT_SETTINGS,
) -> float | None:
    """Return the slowest room's minutes to setpoint, or None if no room needs air."""
    longest_time: float | None = None
    for room in rooms.values():
        if room.temp is None:
            continue
        if settings.close_inactive_rooms and not room.active:
            continue
        if has_room_reached_setpoint(hvac_mode, room.setpoint, room.temp):
            continue
        if room.rate <= 0:
            # Unknown rates carry no signal; the room opens fully on its own.
            continue

        minutes_to_target = abs(room.setpoint - room.temp) / room.rate
        if minutes_to_target > max_running_time:
            minutes_to_target = max_running_time

        if longest_time is None or minutes_to_target > longest_time:
            longest_time = minutes_to_target

    return longest_time


def calculate_open_percentage_for_all_rooms(
    rooms: Mapping[str, RoomState],
    hvac_mode: str,
    longest_time: float | None,
    settings: DabSettings = DEFAULT_SETTINGS,
    decided_at: datetime | None = None,
) -> tuple[dict[str, float], list[Decision]]:
    """Compute raw room openings plus a decision record for each room.

    Rooms without a temperature reading are left out of the result so the
    caller keeps their vents where they are.
    """
    floor = settings.floor_percent
    percent_open_map: dict[str, float] = {}
    decisions: list[Decision] = []

    for room_id, room in rooms.items():
        if settings.close_inactive_rooms and not room.active:
            percent, reason = clamp_percent(0.0, floor), "inactive"
        elif room.temp is None:
            decisions.append(
                Decision(room_id, hvac_mode, None, room.setpoint, room.rate, None, "missing_temperature", decided_at)
            )
            continue
        elif has_room_reached_setpoint(hvac_mode, room.setpoint, room.temp):
            percent, reason = floor, "at_setpoint"
        elif room.rate < settings.min_temp_change_rate:
            percent, reason = 100.0, "unknown_rate"
        else:
            percent = clamp_percent(
                calculate_vent_open_percentage(
                    room_id,
                    room.temp,
                    room.setpoint,
                    hvac_mode,
                    room.rate,
                    longest_time,
                    settings,
                ),
                floor,
            )
            reason = "computed"

        percent_open_map[room_id] = percent
        decisions.append(
            Decision(room_id, hvac_mode, room.temp, room.setpoint, room.rate, percent, reason, decided_at)
        )
    return percent_open_map, decisions


def expand_room_percentages(
    rooms: Mapping[str, RoomState],
    room_percents: Mapping[str, float],
    settings: DabSettings = DEFAULT_SETTINGS,
) -> dict[str, float]:
    """Spread each room's opening over its vents according to vent weight."""
    floor = settings.floor_percent
    vent_percents: dict[str, float] = {}
    for room_id, percent in room_percents.items():
        room = rooms[room_id]
        if not room.vent_ids:
            continue
        weights = [max(0.0, room.vent_weights.get(vent_id, 1.0)) for vent_id in room.vent_ids]
        mean_weight = sum(weights) / len(weights)
        for vent_id, weight in zip(room.vent_ids, weights):
            scale = weight / mean_weight if mean_weight > 0 else 1.0
            vent_percents[vent_id] = clamp_percent(percent * scale, floor)
    return vent_percents


def _combined_flow(
    percents: Mapping[str, float | None],
    additional_standard_vents: int,
    fixed_percents: Mapping[str, float | None] | None,
    settings: DabSettings,
) -> tuple[int, float]:
    """Return the device count and summed opening across every vent."""
    total_device_count = additional_standard_vents if additional_standard_vents > 0 else 0
    sum_percentages = total_device_count * settings.standard_vent_default_open
    for percent in percents.values():
        total_device_count += 1
        sum_percentages += percent or 0
    for vent_id, percent in (fixed_percents or {}).items():
        if vent_id in percents or percent is None:
            continue
        total_device_count += 1
        sum_percentages += percent
    return total_device_count, sum_percentages


def _temperature_proportions(
    vent_temps: Mapping[str, float | None],
    hvac_mode: str,
    vent_ids: Iterable[str],
    settings: DabSettings,
) -> dict[str, float]:
    """How far each vent's room is from the best-served room, 0..1."""
    temps = [temp for temp in vent_temps.values() if temp is not None]
    if temps:
        min_temp = min(temps) - settings.temp_boundary_adjustment
        max_temp = max(temps) + settings.temp_boundary_adjustment
    else:
        min_temp = max_temp = 0.0

    proportions: dict[str, float] = {}
    for vent_id in vent_ids:
        temp = vent_temps.get(vent_id)
        if temp is None or max_temp == min_temp:
            proportions[vent_id] = 0.5
        elif hvac_mode == HVAC_COOLING:
            proportions[vent_id] = (temp - min_temp) / (max_temp - min_temp)
        else:
            proportions[vent_id] = (max_temp - temp) / (max_temp - min_temp)
    return proportions


def adjust_for_minimum_airflow(
    vent_temps: Mapping[str, float | None],
    hvac_mode: str,
    calculated_percent_open: dict[str, float],
    additional_standard_vents: int,
    settings: DabSettings = DEFAULT_SETTINGS,
    fixed_percents: Mapping[str, float | None] | None = None,
) -> dict[str, float]:
    """Raise vents until the combined opening reaches ``min_combined_vent_flow``.

    ``fixed_percents`` are vents that count toward the combined flow at their
    given opening but are never moved here.
    """
    total_device_count, sum_percentages = _combined_flow(
        calculated_percent_open, additional_standard_vents, fixed_percents, settings
    )
    if total_device_count <= 0:
        return calculated_percent_open

    combined_flow_percentage = sum_percentages / total_device_count
    if combined_flow_percentage >= settings.min_combined_vent_flow:
        return calculated_percent_open

    proportions = _temperature_proportions(
        vent_temps, hvac_mode, calculated_percent_open, settings
    )
    target_percent_sum = settings.min_combined_vent_flow * total_device_count
    diff_percentage_sum = target_percent_sum - sum_percentages

    iterations = 0
    while diff_percentage_sum > 0 and iterations < settings.max_iterations:
        iterations += 1
        progressed = False
        for vent_id in calculated_percent_open:
            percent_open_val = calculated_percent_open.get(vent_id) or 0
            if percent_open_val >= 100:
                continue

            proportion = proportions[vent_id]
            increment = min(settings.increment_percentage * proportion, 100 - percent_open_val)
            if increment <= 0:
                continue
            calculated_percent_open[vent_id] = percent_open_val + increment
            diff_percentage_sum -= increment
            progressed = True
            if diff_percentage_sum <= 0:
                break
        if not progressed:
            break

    return calculated_percent_open


def apply_change_dampening(
    targets: Mapping[str, float],
    current_percents: Mapping[str, float | None],
    dampened_vents: set[str],
    settings: DabSettings = DEFAULT_SETTINGS,
) -> dict[str, float]:
    """Limit how far settled vents may move from their reported position.

    Only vents in ``dampened_vents`` (rooms at setpoint with no active
    anomaly) are limited; every other target passes through unchanged.
    """
    result: dict[str, float] = {}
    for vent_id, target in targets.items():
        current = current_percents.get(vent_id)
        if vent_id not in dampened_vents or current is None:
            result[vent_id] = target
            continue
        max_delta = max(
            abs(current) * settings.max_change_percent / 100, settings.min_dampening_step
        )
        delta = target - current
        if abs(delta) > max_delta:
            target = current + math.copysign(max_delta, delta)
        result[vent_id] = clamp_percent(target)
    return result


def finalize_vent_percent(value: float, settings: DabSettings = DEFAULT_SETTINGS) -> int:
    """Round to the vent granularity without dropping under the floor."""
    floor = settings.floor_percent
    rounded = round_to_nearest_multiple(clamp_percent(value, floor), settings.vent_granularity)
    if rounded < floor:
        granularity = settings.vent_granularity if settings.vent_granularity > 0 else 1
        rounded = int(math.ceil(floor / granularity) * granularity)
    return int(clamp_percent(rounded))


def finalize_with_minimum_airflow(
    targets: Mapping[str, float],
    vent_temps: Mapping[str, float | None],
    hvac_mode: str,
    additional_standard_vents: int,
    settings: DabSettings = DEFAULT_SETTINGS,
    fixed_percents: Mapping[str, float | None] | None = None,
) -> dict[str, int]:
    """Round every target to the vent granularity and keep the combined minimum.

    Rounding down can undo part of what the enforcer added, so vents with the
    largest temperature proportion are stepped up one granularity unit at a
    time until the combined flow is back at ``min_combined_vent_flow``.
    """
    rounded = {vent_id: finalize_vent_percent(value, settings) for vent_id, value in targets.items()}
    total_device_count, sum_percentages = _combined_flow(
        rounded, additional_standard_vents, fixed_percents, settings
    )
    if total_device_count <= 0:
        return rounded
    shortfall = settings.min_combined_vent_flow * total_device_count - sum_percentages
    if shortfall <= 0:
        return rounded

    step = settings.vent_granularity if settings.vent_granularity > 0 else 1
    proportions = _temperature_proportions(vent_temps, hvac_mode, rounded, settings)
    order = sorted(rounded, key=lambda vent_id: (-proportions[vent_id], -targets[vent_id]))
    while shortfall > 0:
        progressed = False
        for vent_id in order:
            current = rounded[vent_id]
            if current >= 100:
                continue
            raised = min(100, (current // step + 1) * step)
            shortfall -= raised - current
            rounded[vent_id] = raised
            progressed = True
            if shortfall <= 0:
                break
        if not progressed:
            break
    return rounded


def normalize_hvac_action(action: str | None) -> str | None:
    """Map a thermostat operating state to cooling/heating, if it is one."""
    if not action:
        return None
    normalized = str(action).strip().lower().replace("_", " ")
    if normalized in {"heating", "pending heat", "heat"}:
        return HVAC_HEATING
    if normalized in {"cooling", "pending cool", "cool"}:
        return HVAC_COOLING
    return None
