"""Test configuration for the Airflow Balancer."""
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from types import SimpleNamespace, ModuleType
from unittest.mock import MagicMock

# Import the integration as ``airflow_balancer`` without Home Assistant installed.
sys.path.insert(
    0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "custom_components"))
)

# Provide minimal Home Assistant mocks so package imports don't fail.
homeassistant = sys.modules.get("homeassistant")
if homeassistant is None:
    homeassistant = MagicMock()
    sys.modules["homeassistant"] = homeassistant

homeassistant.helpers = getattr(homeassistant, "helpers", MagicMock())
homeassistant.helpers.update_coordinator = getattr(
    homeassistant.helpers, "update_coordinator", MagicMock()
)
homeassistant.helpers.event = getattr(homeassistant.helpers, "event", MagicMock())
homeassistant.helpers.storage = getattr(homeassistant.helpers, "storage", MagicMock())
homeassistant.components = getattr(homeassistant, "components", MagicMock())
homeassistant.components.sensor = getattr(homeassistant.components, "sensor", MagicMock())
homeassistant.components.persistent_notification = getattr(
    homeassistant.components, "persistent_notification", MagicMock()
)
homeassistant.components.logbook = getattr(homeassistant.components, "logbook", MagicMock())
homeassistant.const = getattr(homeassistant, "const", MagicMock())

config_entries_module = ModuleType("homeassistant.config_entries")


class _ConfigFlow:
    def __init_subclass__(cls, domain=None, **kwargs):
        super().__init_subclass__(**kwargs)
        cls.domain = domain

    async def async_set_unique_id(self, unique_id):
        self._unique_id = unique_id

    def _abort_if_unique_id_configured(self):
        return None

    def async_show_form(self, step_id, data_schema, errors=None, description_placeholders=None):
        return {
            "type": "form",
            "step_id": step_id,
            "data_schema": data_schema,
            "errors": errors or {},
            "description_placeholders": description_placeholders,
        }

    def async_show_menu(self, step_id, menu_options):
        return {"type": "menu", "step_id": step_id, "menu_options": menu_options}

    def async_create_entry(self, title, data):
        return {"type": "create_entry", "title": title, "data": data}


class _OptionsFlowWithConfigEntry(_ConfigFlow):
    def __init__(self, config_entry):
        self.config_entry = config_entry
        self.hass = getattr(config_entry, "hass", None)


class _ConfigEntry:
    def __init__(self, data=None, options=None):
        self.data = data or {}
        self.options = options or {}


config_entries_module.ConfigFlow = _ConfigFlow
config_entries_module.OptionsFlowWithConfigEntry = _OptionsFlowWithConfigEntry
config_entries_module.ConfigEntry = _ConfigEntry
sys.modules["homeassistant.config_entries"] = config_entries_module
homeassistant.config_entries = config_entries_module

core_module = ModuleType("homeassistant.core")


def _callback(func):
    return func


core_module.callback = _callback
class _HomeAssistant:
    pass


class _ServiceCall:
    def __init__(self, data=None):
        self.data = data or {}


core_module.HomeAssistant = _HomeAssistant
core_module.ServiceCall = _ServiceCall
core_module.SupportsResponse = SimpleNamespace(OPTIONAL="optional", ONLY="only")
sys.modules["homeassistant.core"] = core_module
homeassistant.core = core_module

selector_module = ModuleType("homeassistant.helpers.selector")


class _SelectorBase:
    def __init__(self, config):
        self.config = config

    def __call__(self, value):
        return value


class _EntitySelector(_SelectorBase):
    pass


class _EntitySelectorConfig:
    def __init__(self, **kwargs):
        self.__dict__.update(kwargs)


class _SelectSelector(_SelectorBase):
    pass


class _SelectSelectorConfig:
    def __init__(self, **kwargs):
        self.__dict__.update(kwargs)


class _SelectSelectorMode:
    DROPDOWN = "dropdown"


selector_module.EntitySelector = _EntitySelector
selector_module.EntitySelectorConfig = _EntitySelectorConfig
selector_module.SelectSelector = _SelectSelector
selector_module.SelectSelectorConfig = _SelectSelectorConfig
selector_module.SelectSelectorMode = _SelectSelectorMode
sys.modules["homeassistant.helpers.selector"] = selector_module
homeassistant.helpers.selector = selector_module

util_module = ModuleType("homeassistant.util")
dt_module = ModuleType("homeassistant.util.dt")


def _now():
    return datetime.now(timezone.utc)


dt_module.now = _now
dt_module.utcnow = _now
util_module.dt = dt_module
sys.modules["homeassistant.util"] = util_module
sys.modules["homeassistant.util.dt"] = dt_module
homeassistant.util = util_module

sys.modules.setdefault("homeassistant.helpers", homeassistant.helpers)
sys.modules.setdefault("homeassistant.helpers.update_coordinator", homeassistant.helpers.update_coordinator)
sys.modules.setdefault("homeassistant.helpers.event", homeassistant.helpers.event)
sys.modules.setdefault("homeassistant.helpers.storage", homeassistant.helpers.storage)
sys.modules.setdefault("homeassistant.helpers.selector", selector_module)
sys.modules.setdefault("homeassistant.components", homeassistant.components)
sys.modules.setdefault("homeassistant.components.sensor", homeassistant.components.sensor)
sys.modules.setdefault(
    "homeassistant.components.persistent_notification",
    homeassistant.components.persistent_notification,
)
sys.modules.setdefault("homeassistant.components.logbook", homeassistant.components.logbook)
sys.modules.setdefault("homeassistant.const", homeassistant.const)


class _DummyCoordinator:
    def __init__(self, *args, **kwargs):
        self.hass = args[0] if args else None
        self.update_interval = kwargs.get("update_interval")
        self.data = None
        self.last_update_success = True
        self.refresh_requests = 0

    @classmethod
    def __class_getitem__(cls, item):
        return cls

    def async_set_updated_data(self, data):
        self.data = data

    async def async_request_refresh(self):
        self.refresh_requests += 1

    async def async_config_entry_first_refresh(self):
        self.data = await self._async_update_data()


homeassistant.helpers.update_coordinator.DataUpdateCoordinator = _DummyCoordinator
homeassistant.helpers.update_coordinator.UpdateFailed = Exception


class _CoordinatorEntity:
    def __init__(self, coordinator):
        self.coordinator = coordinator

    def async_write_ha_state(self):
        return None


class _SensorEntity:
    pass


@dataclass(frozen=True)
class _SensorEntityDescription:
    key: str
    name: str | None = None
    native_unit_of_measurement: str | None = None
    device_class: str | None = None
    state_class: str | None = None
    icon: str | None = None


homeassistant.helpers.update_coordinator.CoordinatorEntity = _CoordinatorEntity
homeassistant.components.sensor.SensorEntity = _SensorEntity
homeassistant.components.sensor.SensorEntityDescription = _SensorEntityDescription
homeassistant.components.sensor.SensorStateClass = SimpleNamespace(MEASUREMENT="measurement")

homeassistant.const.STATE_UNKNOWN = "unknown"
homeassistant.const.STATE_UNAVAILABLE = "unavailable"
homeassistant.const.UnitOfTemperature = SimpleNamespace(CELSIUS="C", FAHRENHEIT="F")
homeassistant.const.UnitOfTime = SimpleNamespace(MINUTES="min")
homeassistant.const.PERCENTAGE = "%"


class _DummyStore:
    def __init__(self, *args, **kwargs):
        self.data = None

    async def async_load(self):
        return self.data

    async def async_save(self, data):
        self.data = data


homeassistant.helpers.storage.Store = _DummyStore


def _track_state_change_event(hass, entity_id, callback):
    return lambda: None


def _call_later(hass, delay, action):
    return lambda: None


homeassistant.helpers.event.async_track_state_change_event = _track_state_change_event
homeassistant.helpers.event.async_call_later = _call_later
