"""Typed records shared by the DAB engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .utils import coerce_rate

HVAC_COOLING = "cooling"
HVAC_HEATING = "heating"
HVAC_IDLE = "idle"
ACTIVE_HVAC_MODES = (HVAC_COOLING, HVAC_HEATING)


@dataclass(frozen=True)
class VentReading:
    """Duct and room temperature pair for one vent."""

    vent_id: str
    room_id: str
    duct_temp: float | None
    room_temp: float | None

    @property
    def delta(self) -> float | None:
        if self.duct_temp is None or self.room_temp is None:
            return None
        return self.duct_temp - self.room_temp


@dataclass(frozen=True)
class RoomSnapshot:
    """Readings for one room, collected once per evaluation."""

    room_id: str
    vent_ids: tuple[str, ...]
    temp: float | None
    setpoint: float | None = None
    active: bool = True
    duct_temps: dict[str, float | None] = field(default_factory=dict)
    open_percents: dict[str, int | None] = field(default_factory=dict)
    vent_weights: dict[str, float] = field(default_factory=dict)

    def readings(self) -> list[VentReading]:
        return [
            VentReading(vent_id, self.room_id, self.duct_temps.get(vent_id), self.temp)
            for vent_id in self.vent_ids
        ]

    @property
    def open_percent(self) -> float | None:
        """Mean reported opening of the room's vents."""
        known = [value for value in self.open_percents.values() if value is not None]
        if not known:
            return None
        return sum(known) / len(known)


@dataclass
class RoomState:
    """Per-room input to the target calculator."""

    room_id: str
    vent_ids: tuple[str, ...]
    active: bool
    temp: float | None
    setpoint: float
    rate: float
    vent_weights: dict[str, float] = field(default_factory=dict)


@dataclass
class CycleRecord:
    """An HVAC cycle segment awaiting feedback."""

    vent_ids_by_room: dict[str, tuple[str, ...]]
    hvac_mode: str
    started_at: datetime
    cycle_started_at: datetime
    finished_at: datetime | None = None
    starting_temps: dict[str, float] = field(default_factory=dict)
    starting_open: dict[str, float] = field(default_factory=dict)
    predicted_rates: dict[str, float] = field(default_factory=dict)
    open_commanded: bool = False

    def segment_minutes(self, end: datetime) -> float:
        return max(0.0, (end - self.started_at).total_seconds() / 60)

    def cycle_minutes(self, end: datetime) -> float:
        return max(0.0, (end - self.cycle_started_at).total_seconds() / 60)

    def as_dict(self) -> dict[str, Any]:
        return {
            "hvac_mode": self.hvac_mode,
            "started_at": self.started_at.isoformat(),
            "cycle_started_at": self.cycle_started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "rooms": sorted(self.vent_ids_by_room),
            "starting_temps": dict(self.starting_temps),
        }


@dataclass(frozen=True)
class Decision:
    """One raw calculator decision kept for diagnostics."""

    room_id: str
    hvac_mode: str
    temp: float | None
    setpoint: float | None
    rate: float | None
    percent: float | None
    reason: str
    decided_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "hvac_mode": self.hvac_mode,
            "temp": self.temp,
            "setpoint": self.setpoint,
            "rate": self.rate,
            "percent": self.percent,
            "reason": self.reason,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }


@dataclass
class EfficiencyState:
    """Live efficiencies and global baselines learned from cycle feedback."""

    room_rates: dict[str, dict[str, float]] = field(default_factory=dict)
    max_rates: dict[str, float] = field(
        default_factory=lambda: {HVAC_COOLING: 0.0, HVAC_HEATING: 0.0}
    )
    max_running_minutes: dict[str, float] = field(default_factory=dict)

    def get_rate(self, room_id: str, hvac_mode: str) -> float:
        return self.room_rates.get(room_id, {}).get(hvac_mode, 0.0)

    def set_rate(self, room_id: str, hvac_mode: str, value: float) -> None:
        self.room_rates.setdefault(room_id, {})[hvac_mode] = value

    def as_dict(self) -> dict[str, Any]:
        return {
            "room_rates": self.room_rates,
            "max_rates": self.max_rates,
            "max_running_minutes": self.max_running_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> EfficiencyState:
        state = cls()
        if not isinstance(data, dict):
            return state
        for room_id, modes in (data.get("room_rates") or {}).items():
            if not isinstance(modes, dict):
                continue
            for mode, value in modes.items():
                rate = coerce_rate(value)
                if mode in ACTIVE_HVAC_MODES and rate is not None:
                    state.set_rate(str(room_id), mode, rate)
        for mode, value in (data.get("max_rates") or {}).items():
            rate = coerce_rate(value)
            if mode in ACTIVE_HVAC_MODES and rate is not None:
                state.max_rates[mode] = rate
        for mode, value in (data.get("max_running_minutes") or {}).items():
            minutes = coerce_rate(value)
            if mode in ACTIVE_HVAC_MODES and minutes:
                state.max_running_minutes[mode] = minutes
        return state
