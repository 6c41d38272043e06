"""Sensor platform for the Airflow Balancer."""
from __future__ import annotations

from dataclasses import dataclass

from homeassistant.components.sensor import SensorEntity, SensorEntityDescription, SensorStateClass
from homeassistant.const import PERCENTAGE, UnitOfTime
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .const import DOMAIN

DECISION_TAIL = 10


@dataclass(frozen=True)
class RoomSensorDescription(SensorEntityDescription):
    """Describe a per-room DAB sensor."""

    efficiency_mode: str | None = None


ROOM_SENSOR_DESCRIPTIONS: tuple[RoomSensorDescription, ...] = (
    RoomSensorDescription(
        key="cooling_efficiency",
        name="Cooling Efficiency",
        native_unit_of_measurement=PERCENTAGE,
        efficiency_mode="cooling",
        state_class=SensorStateClass.MEASUREMENT,
    ),
    RoomSensorDescription(
        key="heating_efficiency",
        name="Heating Efficiency",
        native_unit_of_measurement=PERCENTAGE,
        efficiency_mode="heating",
        state_class=SensorStateClass.MEASUREMENT,
    ),
    RoomSensorDescription(
        key="target_opening",
        name="Target Opening",
        native_unit_of_measurement=PERCENTAGE,
        icon="mdi:air-filter",
    ),
)

HVAC_MODE_DESCRIPTION = SensorEntityDescription(
    key="hvac_mode",
    name="HVAC Mode",
    icon="mdi:hvac",
)

DIAGNOSTICS_DESCRIPTION = SensorEntityDescription(
    key="dab_diagnostics",
    name="DAB Diagnostics",
    native_unit_of_measurement=UnitOfTime.MINUTES,
    icon="mdi:chart-timeline-variant",
)


async def async_setup_entry(hass, entry, async_add_entities):
    coordinator = hass.data[DOMAIN][entry.entry_id]
    entities: list[SensorEntity] = []

    for room_id in coordinator.get_rooms():
        for description in ROOM_SENSOR_DESCRIPTIONS:
            entities.append(RoomSensor(coordinator, entry.entry_id, room_id, description))

    entities.append(HvacModeSensor(coordinator, entry.entry_id))
    entities.append(DabDiagnosticsSensor(coordinator, entry.entry_id))

    async_add_entities(entities)


class RoomSensor(CoordinatorEntity, SensorEntity):
    """Learned efficiency or commanded opening for one room."""

    entity_description: RoomSensorDescription

    def __init__(self, coordinator, entry_id: str, room_id: str, description: RoomSensorDescription) -> None:
        super().__init__(coordinator)
        self.entity_description = description
        self._entry_id = entry_id
        self._room_id = room_id
        self._attr_unique_id = f"{entry_id}_room_{room_id}_{description.key}"

    @property
    def name(self):
        return f"{self.coordinator.get_room_name(self._room_id)} {self.entity_description.name}"

    @property
    def device_info(self):
        return self.coordinator.get_room_device_info(self._room_id)

    @property
    def available(self) -> bool:
        if not self.coordinator.last_update_success:
            return False
        return self._room_id in self.coordinator.get_rooms()

    @property
    def native_value(self):
        if self.entity_description.efficiency_mode:
            return self.coordinator.get_room_efficiency_percent(
                self._room_id, self.entity_description.efficiency_mode
            )
        return self.coordinator.get_room_target_percent(self._room_id)


class HvacModeSensor(CoordinatorEntity, SensorEntity):
    """Currently detected HVAC mode."""

    def __init__(self, coordinator, entry_id: str) -> None:
        super().__init__(coordinator)
        self._entry_id = entry_id
        self.entity_description = HVAC_MODE_DESCRIPTION
        self._attr_unique_id = f"{entry_id}_hvac_mode"

    @property
    def name(self):
        return self.entity_description.name

    @property
    def device_info(self):
        return self.coordinator.get_system_device_info()

    @property
    def native_value(self):
        return self.coordinator.engine.hvac_mode


class DabDiagnosticsSensor(CoordinatorEntity, SensorEntity):
    """Longest predicted time to setpoint, with recent decisions as attributes."""

    def __init__(self, coordinator, entry_id: str) -> None:
        super().__init__(coordinator)
        self._entry_id = entry_id
        self.entity_description = DIAGNOSTICS_DESCRIPTION
        self._attr_unique_id = f"{entry_id}_dab_diagnostics"

    @property
    def name(self):
        return self.entity_description.name

    @property
    def device_info(self):
        return self.coordinator.get_system_device_info()

    @property
    def native_value(self):
        value = self.coordinator.engine.longest_time_to_target
        return round(value, 1) if value is not None else None

    @property
    def extra_state_attributes(self):
        data = self.coordinator.data or {}
        return {
            "cycle": data.get("cycle"),
            "pending_cycle_end": data.get("pending_cycle_end"),
            "targets": data.get("targets", {}),
            "decisions": (data.get("decisions") or [])[-DECISION_TAIL:],
            "errors": data.get("errors", []),
        }
