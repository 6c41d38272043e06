"""HVAC mode inference from duct and room temperatures."""
from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta
import logging
from typing import Iterable

from .const import HVAC_MODE_AUTO
from .dab import normalize_hvac_action
from .models import ACTIVE_HVAC_MODES, HVAC_COOLING, HVAC_HEATING, HVAC_IDLE, VentReading

_LOGGER = logging.getLogger(__name__)


def calculate_hvac_mode(
    readings: Iterable[VentReading],
    threshold: float = 0.5,
    thermostat_action: str | None = None,
    trend_mode: str | None = None,
    override: str = HVAC_MODE_AUTO,
) -> str:
    """Infer heating, cooling or idle from one snapshot of vent readings.

    Any vent whose duct air is more than ``threshold`` colder than its room
    means cooling, more than ``threshold`` warmer means heating. Without such
    a vent the thermostat's operating state decides, then the room trend,
    then idle. A non-auto ``override`` wins outright.
    """
    if override and override != HVAC_MODE_AUTO:
        if override in (*ACTIVE_HVAC_MODES, HVAC_IDLE):
            return override
        _LOGGER.debug("Ignoring unknown HVAC mode override %s", override)

    deltas = [reading.delta for reading in readings]
    deltas = [delta for delta in deltas if delta is not None]
    if any(delta < -threshold for delta in deltas):
        return HVAC_COOLING
    if any(delta > threshold for delta in deltas):
        return HVAC_HEATING

    thermostat_mode = normalize_hvac_action(thermostat_action)
    if thermostat_mode:
        return thermostat_mode

    if trend_mode in ACTIVE_HVAC_MODES:
        return trend_mode
    return HVAC_IDLE


class TemperatureTrendTracker:
    """Watch raw room temperatures for a sustained rise or fall."""

    def __init__(self, window_minutes: float = 10.0, min_change: float = 0.3) -> None:
        self._window = timedelta(minutes=window_minutes)
        self._min_change = min_change
        self._samples: dict[str, deque[tuple[datetime, float]]] = {}

    def record(self, room_id: str, temp: float | None, now: datetime) -> None:
        if temp is None:
            return
        samples = self._samples.setdefault(room_id, deque())
        if samples and samples[-1][0] >= now:
            return
        samples.append((now, temp))
        # Keep one sample older than the window so the span can cover it.
        while len(samples) > 2 and now - samples[1][0] >= self._window:
            samples.popleft()

    def forget(self, room_id: str) -> None:
        self._samples.pop(room_id, None)

    def room_trend(self, room_id: str) -> str | None:
        samples = self._samples.get(room_id)
        if not samples or len(samples) < 3:
            return None
        span = samples[-1][0] - samples[0][0]
        if span < self._window:
            return None
        temps = [temp for _, temp in samples]
        steps = [later - earlier for earlier, later in zip(temps, temps[1:])]
        change = temps[-1] - temps[0]
        if change >= self._min_change and all(step >= 0 for step in steps):
            return HVAC_HEATING
        if change <= -self._min_change and all(step <= 0 for step in steps):
            return HVAC_COOLING
        return None

    def infer(self) -> str | None:
        """Return the trend shared by the rooms, or None if mixed or flat."""
        trends = {self.room_trend(room_id) for room_id in self._samples}
        trends.discard(None)
        if len(trends) == 1:
            return trends.pop()
        return None
