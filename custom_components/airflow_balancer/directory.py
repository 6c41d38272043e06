"""Home Assistant backed device directory and vent actuator."""
from __future__ import annotations

import logging
from typing import Any

from homeassistant.config_entries import ConfigEntry
from homeassistant.const import STATE_UNAVAILABLE, STATE_UNKNOWN
from homeassistant.core import HomeAssistant

from .const import (
    CONF_ACTIVE_ENTITY,
    CONF_DUCT_SENSOR_ENTITY,
    CONF_ROOM_ID,
    CONF_SET_POINT_C,
    CONF_SETPOINT_ENTITY,
    CONF_TEMP_SENSOR_ENTITY,
    CONF_THERMOSTAT_ENTITY,
    CONF_VENT_ASSIGNMENTS,
    CONF_VENT_WEIGHT,
    DEFAULT_VENT_WEIGHT,
)
from .models import HVAC_COOLING
from .utils import coerce_float, coerce_temperature

_LOGGER = logging.getLogger(__name__)

UNAVAILABLE_STATES = {STATE_UNKNOWN, STATE_UNAVAILABLE}


class HassDeviceDirectory:
    """Read vent, room and thermostat state from the Home Assistant state machine."""

    def __init__(self, hass: HomeAssistant, entry: ConfigEntry) -> None:
        self.hass = hass
        self.entry = entry

    @property
    def assignments(self) -> dict[str, dict[str, Any]]:
        return self.entry.options.get(CONF_VENT_ASSIGNMENTS, {})

    @property
    def thermostat_entity(self) -> str | None:
        return self.entry.data.get(CONF_THERMOSTAT_ENTITY)

    def tracked_entities(self) -> list[str]:
        """Entities whose changes should trigger a re-evaluation."""
        entities: set[str] = set()
        for vent_id, assignment in self.assignments.items():
            entities.add(vent_id)
            for key in (CONF_TEMP_SENSOR_ENTITY, CONF_DUCT_SENSOR_ENTITY, CONF_SETPOINT_ENTITY, CONF_ACTIVE_ENTITY):
                if assignment.get(key):
                    entities.add(assignment[key])
        if self.thermostat_entity:
            entities.add(self.thermostat_entity)
        return sorted(entities)

    def room_for_entity(self, entity_id: str) -> str | None:
        for vent_id, assignment in self.assignments.items():
            if entity_id == vent_id or entity_id in assignment.values():
                return self._room_id(vent_id, assignment)
        return None

    def get_vents_by_room(self) -> dict[str, list[str]]:
        rooms: dict[str, list[str]] = {}
        for vent_id, assignment in self.assignments.items():
            rooms.setdefault(self._room_id(vent_id, assignment), []).append(vent_id)
        return rooms

    def get_room_temperature(self, vent_id: str) -> float | None:
        assignment = self.assignments.get(vent_id, {})
        temp = self._sensor_temperature(assignment.get(CONF_TEMP_SENSOR_ENTITY))
        if temp is not None:
            return temp
        return self._attribute_temperature(vent_id, "current_temperature")

    def get_duct_temperature(self, vent_id: str) -> float | None:
        assignment = self.assignments.get(vent_id, {})
        temp = self._sensor_temperature(assignment.get(CONF_DUCT_SENSOR_ENTITY))
        if temp is not None:
            return temp
        return self._attribute_temperature(vent_id, "duct_temperature")

    def get_setpoint(self, room_id: str) -> float | None:
        for vent_id, assignment in self.assignments.items():
            if self._room_id(vent_id, assignment) != room_id:
                continue
            entity_id = assignment.get(CONF_SETPOINT_ENTITY)
            if entity_id:
                state = self.hass.states.get(entity_id)
                if state and state.state not in UNAVAILABLE_STATES:
                    value = coerce_temperature(
                        state.attributes.get("temperature", state.state),
                        self._resolve_unit(state.attributes.get("unit_of_measurement")),
                    )
                    if value is not None:
                        return value
            fixed = coerce_float(assignment.get(CONF_SET_POINT_C))
            if fixed is not None:
                return fixed
        return None

    def is_room_active(self, room_id: str) -> bool:
        for vent_id, assignment in self.assignments.items():
            if self._room_id(vent_id, assignment) != room_id:
                continue
            entity_id = assignment.get(CONF_ACTIVE_ENTITY)
            if not entity_id:
                continue
            state = self.hass.states.get(entity_id)
            if not state or state.state in UNAVAILABLE_STATES:
                continue
            return state.state == "on"
        return True

    def get_current_open_percent(self, vent_id: str) -> int | None:
        state = self.hass.states.get(vent_id)
        if not state or state.state in UNAVAILABLE_STATES:
            return None
        position = coerce_float(state.attributes.get("current_position"))
        if position is None:
            return None
        return int(max(0.0, min(100.0, position)))

    def get_vent_weight(self, vent_id: str) -> float:
        weight = coerce_float(self.assignments.get(vent_id, {}).get(CONF_VENT_WEIGHT))
        if weight is None or weight <= 0:
            return DEFAULT_VENT_WEIGHT
        return weight

    def get_thermostat_action(self) -> str | None:
        if not self.thermostat_entity:
            return None
        state = self.hass.states.get(self.thermostat_entity)
        if not state or state.state in UNAVAILABLE_STATES:
            return None
        return state.attributes.get("hvac_action")

    def get_thermostat_setpoint(self, hvac_mode: str) -> float | None:
        if not self.thermostat_entity:
            return None
        state = self.hass.states.get(self.thermostat_entity)
        if not state or state.state in UNAVAILABLE_STATES:
            return None
        attrs = state.attributes
        cool = attrs.get("target_temp_high") or attrs.get("cooling_setpoint")
        heat = attrs.get("target_temp_low") or attrs.get("heating_setpoint")
        target = attrs.get("temperature")
        if hvac_mode == HVAC_COOLING:
            setpoint = cool if cool is not None else target
        else:
            setpoint = heat if heat is not None else target
        return coerce_temperature(setpoint, self._resolve_unit(attrs.get("temperature_unit")))

    def _room_id(self, vent_id: str, assignment: dict[str, Any]) -> str:
        return str(assignment.get(CONF_ROOM_ID) or vent_id)

    def _resolve_unit(self, unit: str | None) -> str | None:
        if unit:
            return unit
        return self.hass.config.units.temperature_unit

    def _sensor_temperature(self, entity_id: str | None) -> float | None:
        if not entity_id:
            return None
        state = self.hass.states.get(entity_id)
        if not state or state.state in UNAVAILABLE_STATES:
            return None
        return coerce_temperature(
            state.state, self._resolve_unit(state.attributes.get("unit_of_measurement"))
        )

    def _attribute_temperature(self, entity_id: str, attribute: str) -> float | None:
        state = self.hass.states.get(entity_id)
        if not state or state.state in UNAVAILABLE_STATES:
            return None
        return coerce_temperature(
            state.attributes.get(attribute),
            self._resolve_unit(state.attributes.get("temperature_unit")),
        )


class HassVentActuator:
    """Send vent positions through the cover.set_cover_position service."""

    def __init__(self, hass: HomeAssistant, directory: HassDeviceDirectory) -> None:
        self.hass = hass
        self.directory = directory

    def set_open_percent(self, vent_id: str, percent: int) -> None:
        current = self.directory.get_current_open_percent(vent_id)
        if current == percent:
            return
        _LOGGER.debug("Setting %s to %s%% (was %s)", vent_id, percent, current)
        self.hass.async_create_task(
            self.hass.services.async_call(
                "cover",
                "set_cover_position",
                {"entity_id": vent_id, "position": percent},
                blocking=False,
            )
        )
