import asyncio

import airflow_balancer as integration


class _FakeConfigEntries:
    def __init__(self):
        self.forward_called = False
        self.unload_called = False
        self.reload_called = False

    async def async_forward_entry_setups(self, entry, platforms):
        self.forward_called = platforms
        return True

    async def async_unload_platforms(self, entry, platforms):
        self.unload_called = True
        return True

    async def async_reload(self, entry_id):
        self.reload_called = True


class _FakeHass:
    def __init__(self):
        self.data = {}
        self.config_entries = _FakeConfigEntries()


class _FakeCoordinator:
    def __init__(self, hass, entry):
        self.hass = hass
        self.entry = entry
        self.steps = []

    async def async_initialize(self):
        self.steps.append("initialize")

    async def async_config_entry_first_refresh(self):
        self.steps.append("refresh")

    async def async_setup_listeners(self):
        self.steps.append("listeners")

    def async_stop_listeners(self):
        self.steps.append("stop")


class _FakeEntry:
    def __init__(self):
        self.data = {"name": "Home"}
        self.options = {}
        self.entry_id = "entry1"
        self.title = "Home"

    def add_update_listener(self, listener):
        self._listener = listener
        return lambda: None

    def async_on_unload(self, func):
        self._unload = func


def test_async_setup_and_unload_entry(monkeypatch):
    hass = _FakeHass()
    entry = _FakeEntry()
    registered = []

    monkeypatch.setattr(integration, "AirflowBalancerCoordinator", _FakeCoordinator)

    async def fake_register(_):
        registered.append(True)

    async def fake_unregister(_):
        registered.pop()

    monkeypatch.setattr(integration, "async_register_services", fake_register)
    monkeypatch.setattr(integration, "async_unregister_services", fake_unregister)

    assert asyncio.run(integration.async_setup_entry(hass, entry)) is True
    coordinator = hass.data[integration.DOMAIN][entry.entry_id]
    assert coordinator.steps == ["initialize", "refresh", "listeners"]
    assert hass.config_entries.forward_called == integration.PLATFORMS
    assert registered == [True]

    assert asyncio.run(integration.async_unload_entry(hass, entry)) is True
    assert hass.config_entries.unload_called is True
    assert coordinator.steps[-1] == "stop"
    assert entry.entry_id not in hass.data[integration.DOMAIN]
    assert registered == []


def test_update_listener_triggers_reload():
    hass = _FakeHass()
    entry = _FakeEntry()

    asyncio.run(integration._async_update_listener(hass, entry))
    assert hass.config_entries.reload_called is True
