import asyncio
from types import SimpleNamespace

import pytest

from airflow_balancer.const import (
    CONF_ACTIVE_ENTITY,
    CONF_DUCT_SENSOR_ENTITY,
    CONF_ROOM_ID,
    CONF_SET_POINT_C,
    CONF_SETPOINT_ENTITY,
    CONF_TEMP_SENSOR_ENTITY,
    CONF_THERMOSTAT_ENTITY,
    CONF_VENT_ASSIGNMENTS,
    CONF_VENT_WEIGHT,
)
from airflow_balancer.directory import HassDeviceDirectory, HassVentActuator


class _FakeState:
    def __init__(self, state, attributes=None, entity_id=None):
        self.state = state
        self.attributes = attributes or {}
        self.entity_id = entity_id


class _FakeStates:
    def __init__(self, mapping):
        self._mapping = mapping

    def get(self, entity_id):
        return self._mapping.get(entity_id)


class _FakeServices:
    def __init__(self):
        self.calls = []

    async def async_call(self, domain, service, data, blocking=False):
        self.calls.append((domain, service, data))


class _FakeHass:
    def __init__(self, states, unit="°C"):
        self.states = _FakeStates(states)
        self.services = _FakeServices()
        self.config = SimpleNamespace(units=SimpleNamespace(temperature_unit=unit))
        self.tasks = []

    def async_create_task(self, coro):
        self.tasks.append(coro)


class _FakeEntry:
    def __init__(self, data=None, options=None):
        self.data = data or {}
        self.options = options or {}
        self.entry_id = "entry1"
        self.title = "Home"


ASSIGNMENTS = {
    "cover.den_1": {
        CONF_ROOM_ID: "den",
        CONF_TEMP_SENSOR_ENTITY: "sensor.den_temp",
        CONF_DUCT_SENSOR_ENTITY: "sensor.den_duct",
        CONF_SETPOINT_ENTITY: "climate.den",
        CONF_ACTIVE_ENTITY: "input_boolean.den_active",
        CONF_VENT_WEIGHT: 2.0,
    },
    "cover.den_2": {CONF_ROOM_ID: "den"},
    "cover.hall": {CONF_SET_POINT_C: 21.5},
}


def _directory(states, unit="°C", thermostat="climate.main"):
    hass = _FakeHass(states, unit)
    entry = _FakeEntry(
        data={CONF_THERMOSTAT_ENTITY: thermostat},
        options={CONF_VENT_ASSIGNMENTS: ASSIGNMENTS},
    )
    return HassDeviceDirectory(hass, entry), hass


def test_vents_grouped_by_room():
    directory, _ = _directory({})
    assert directory.get_vents_by_room() == {
        "den": ["cover.den_1", "cover.den_2"],
        "cover.hall": ["cover.hall"],
    }


def test_tracked_entities_and_room_lookup():
    directory, _ = _directory({})
    entities = directory.tracked_entities()
    assert "sensor.den_temp" in entities
    assert "climate.main" in entities
    assert "cover.hall" in entities
    assert directory.room_for_entity("sensor.den_duct") == "den"
    assert directory.room_for_entity("cover.hall") == "cover.hall"
    assert directory.room_for_entity("sensor.unknown") is None


def test_room_temperature_prefers_sensor():
    directory, _ = _directory(
        {
            "sensor.den_temp": _FakeState("22.5", {"unit_of_measurement": "°C"}),
            "cover.den_1": _FakeState("open", {"current_temperature": 30.0}),
            "cover.hall": _FakeState("open", {"current_temperature": 20.0}),
        }
    )
    assert directory.get_room_temperature("cover.den_1") == 22.5
    assert directory.get_room_temperature("cover.hall") == 20.0
    assert directory.get_room_temperature("cover.den_2") is None


def test_unavailable_sensor_falls_back_to_vent_attribute():
    directory, _ = _directory(
        {
            "sensor.den_temp": _FakeState("unavailable"),
            "cover.den_1": _FakeState("open", {"current_temperature": 21.0}),
        }
    )
    assert directory.get_room_temperature("cover.den_1") == 21.0


def test_fahrenheit_readings_are_converted():
    directory, _ = _directory(
        {
            "sensor.den_temp": _FakeState("77", {"unit_of_measurement": "°F"}),
            "sensor.den_duct": _FakeState("59"),
        },
        unit="°F",
    )
    assert directory.get_room_temperature("cover.den_1") == pytest.approx(25.0)
    assert directory.get_duct_temperature("cover.den_1") == pytest.approx(15.0)


def test_duct_temperature_from_vent_attribute():
    directory, _ = _directory({"cover.hall": _FakeState("open", {"duct_temperature": 14.0})})
    assert directory.get_duct_temperature("cover.hall") == 14.0


def test_setpoints():
    directory, _ = _directory({"climate.den": _FakeState("heat", {"temperature": 22.0})})
    assert directory.get_setpoint("den") == 22.0
    assert directory.get_setpoint("cover.hall") == 21.5
    assert directory.get_setpoint("missing") is None


def test_room_active_state():
    directory, _ = _directory({"input_boolean.den_active": _FakeState("off")})
    assert directory.is_room_active("den") is False
    assert directory.is_room_active("cover.hall") is True


def test_open_percent_and_weight():
    directory, _ = _directory(
        {
            "cover.den_1": _FakeState("open", {"current_position": 55}),
            "cover.den_2": _FakeState("unknown", {"current_position": 20}),
        }
    )
    assert directory.get_current_open_percent("cover.den_1") == 55
    assert directory.get_current_open_percent("cover.den_2") is None
    assert directory.get_vent_weight("cover.den_1") == 2.0
    assert directory.get_vent_weight("cover.den_2") == 1.0


def test_thermostat_readings():
    directory, _ = _directory(
        {
            "climate.main": _FakeState(
                "heat_cool",
                {"hvac_action": "cooling", "target_temp_high": 77, "target_temp_low": 68},
            )
        },
        unit="°F",
    )
    assert directory.get_thermostat_action() == "cooling"
    assert directory.get_thermostat_setpoint("cooling") == pytest.approx(25.0)
    assert directory.get_thermostat_setpoint("heating") == pytest.approx(20.0)


def test_thermostat_missing():
    directory, _ = _directory({}, thermostat=None)
    assert directory.get_thermostat_action() is None
    assert directory.get_thermostat_setpoint("cooling") is None


def test_actuator_skips_unchanged_position():
    directory, hass = _directory({"cover.den_1": _FakeState("open", {"current_position": 40})})
    actuator = HassVentActuator(hass, directory)

    actuator.set_open_percent("cover.den_1", 40)
    assert hass.tasks == []

    actuator.set_open_percent("cover.den_1", 65)
    assert len(hass.tasks) == 1
    asyncio.run(hass.tasks[0])
    assert hass.services.calls == [
        ("cover", "set_cover_position", {"entity_id": "cover.den_1", "position": 65})
    ]
