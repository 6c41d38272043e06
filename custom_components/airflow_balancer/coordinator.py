"""Coordinator for the Airflow Balancer."""
from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta
import logging
from typing import Any

from homeassistant.components import logbook, persistent_notification
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.event import async_call_later, async_track_state_change_event
from homeassistant.helpers.storage import Store
from homeassistant.helpers.update_coordinator import DataUpdateCoordinator
from homeassistant.util import dt as dt_util

from .const import (
    CONF_DAB_ENABLED,
    CONF_INITIAL_EFFICIENCY_PERCENT,
    CONF_LOG_EFFICIENCY_CHANGES,
    CONF_POLL_INTERVAL_ACTIVE,
    CONF_POLL_INTERVAL_IDLE,
    CONF_ROOM_NAME,
    DEFAULT_DAB_ENABLED,
    DEFAULT_INITIAL_EFFICIENCY_PERCENT,
    DEFAULT_LOG_EFFICIENCY_CHANGES,
    DEFAULT_POLL_INTERVAL_ACTIVE,
    DEFAULT_POLL_INTERVAL_IDLE,
    DOMAIN,
    STORAGE_VERSION,
)
from .dab import DabSettings
from .directory import HassDeviceDirectory, HassVentActuator
from .engine import DabEngine, ReadingUpdated, RebalanceRequested, TimerFired
from .history import RateHistoryStore
from .models import ACTIVE_HVAC_MODES, EfficiencyState
from .utils import coerce_float

_LOGGER = logging.getLogger(__name__)


class AirflowBalancerCoordinator(DataUpdateCoordinator[dict[str, Any]]):
    """Drives the DAB engine from Home Assistant polling and state changes."""

    def __init__(self, hass: HomeAssistant, entry: ConfigEntry) -> None:
        self.entry = entry
        self.settings = DabSettings.from_options(entry.options)
        self.directory = HassDeviceDirectory(hass, entry)
        self.actuator = HassVentActuator(hass, self.directory)
        self.history = RateHistoryStore(self.settings)
        self.efficiency = EfficiencyState()
        self._store = Store(hass, STORAGE_VERSION, f"{DOMAIN}_{entry.entry_id}_dab.json")
        self._save_lock = asyncio.Lock()
        self._unsub_listeners: list[callable] = []
        self._unsub_finalize: callable | None = None
        self._last_maintenance: date | None = None
        self._notified_errors = 0
        self._error_counter = 0
        self.vent_overrides: dict[str, int] = {}

        poll_active = entry.options.get(CONF_POLL_INTERVAL_ACTIVE, DEFAULT_POLL_INTERVAL_ACTIVE)
        poll_idle = entry.options.get(CONF_POLL_INTERVAL_IDLE, DEFAULT_POLL_INTERVAL_IDLE)
        self._poll_interval_active = timedelta(minutes=poll_active)
        self._poll_interval_idle = timedelta(minutes=poll_idle)
        self._initial_efficiency_percent = float(
            entry.options.get(CONF_INITIAL_EFFICIENCY_PERCENT, DEFAULT_INITIAL_EFFICIENCY_PERCENT)
        )
        self._log_efficiency_changes = bool(
            entry.options.get(CONF_LOG_EFFICIENCY_CHANGES, DEFAULT_LOG_EFFICIENCY_CHANGES)
        )
        self.engine = self._build_engine()

        super().__init__(
            hass,
            _LOGGER,
            name=f"{DOMAIN}-{entry.title}",
            update_interval=self._poll_interval_idle,
        )

    @property
    def dab_enabled(self) -> bool:
        return bool(self.entry.options.get(CONF_DAB_ENABLED, DEFAULT_DAB_ENABLED))

    def _build_engine(self) -> DabEngine:
        return DabEngine(
            self.directory,
            self.actuator,
            self.history,
            self.efficiency,
            self.settings,
            control_enabled=self.dab_enabled,
            on_activity=self._handle_activity,
            manual_overrides=self.vent_overrides,
        )

    async def async_initialize(self) -> None:
        """Load persisted DAB state."""
        stored = await self._store.async_load()
        if not stored:
            return
        self.history = RateHistoryStore.from_dict(stored.get("history"), self.settings)
        self.efficiency = EfficiencyState.from_dict(stored.get("efficiency"))
        self.vent_overrides = _load_overrides(stored.get("vent_overrides"))
        last = stored.get("last_maintenance")
        try:
            self._last_maintenance = date.fromisoformat(last) if last else None
        except (TypeError, ValueError):
            self._last_maintenance = None
        self.engine = self._build_engine()

    async def _async_update_data(self) -> dict[str, Any]:
        """Run one DAB tick."""
        now = dt_util.now()
        try:
            self.engine.post(TimerFired(now))
            self.engine.process()
            await self._async_run_daily_maintenance(now)
            if self.engine.consume_dirty():
                await self._async_save_state()
        except Exception as err:  # noqa: BLE001 - keep sensors available
            _LOGGER.exception("DAB processing failed: %s", err)
            self._async_notify_error("DAB processing failed", str(err))

        self._report_engine_errors()
        self._schedule_finalize()
        self.update_interval = (
            self._poll_interval_active
            if self.engine.hvac_mode in ACTIVE_HVAC_MODES
            else self._poll_interval_idle
        )
        return self.engine.diagnostics()

    async def async_setup_listeners(self) -> None:
        """Track sensor, vent and thermostat changes."""
        self.async_stop_listeners()
        entities = self.directory.tracked_entities()
        if not entities:
            _LOGGER.debug("No entities configured for change tracking")
            return
        self._unsub_listeners.append(
            async_track_state_change_event(self.hass, entities, self._handle_state_event)
        )

    def async_stop_listeners(self) -> None:
        """Clean up listeners when unloading."""
        for unsub in self._unsub_listeners:
            unsub()
        self._unsub_listeners.clear()
        if self._unsub_finalize is not None:
            self._unsub_finalize()
            self._unsub_finalize = None

    @callback
    def _handle_state_event(self, event) -> None:
        new_state = event.data.get("new_state")
        if not new_state:
            return
        entity_id = new_state.entity_id
        if entity_id == self.directory.thermostat_entity:
            self.hass.async_create_task(self.async_request_refresh())
            return
        self.engine.post(ReadingUpdated(dt_util.now(), self.directory.room_for_entity(entity_id)))
        self.engine.process()
        self._report_engine_errors()

    def _schedule_finalize(self) -> None:
        due = self.engine.pending_end_at
        if due is None or self._unsub_finalize is not None:
            return
        delay = max(0.0, (due - dt_util.now()).total_seconds())
        self._unsub_finalize = async_call_later(self.hass, delay, self._handle_finalize_due)

    @callback
    def _handle_finalize_due(self, _now: datetime) -> None:
        self._unsub_finalize = None
        self.hass.async_create_task(self.async_request_refresh())

    async def async_run_dab(self) -> None:
        """Manually trigger DAB adjustments."""
        if not self.dab_enabled:
            _LOGGER.info("DAB is disabled; ignoring manual run request")
            return
        self.engine.post(RebalanceRequested(dt_util.now()))
        self.engine.process()
        if self.engine.consume_dirty():
            await self._async_save_state()
        self._report_engine_errors()
        self.async_set_updated_data(self.engine.diagnostics())

    async def async_purge_history(self, retention_days: int | None = None) -> int:
        """Purge stored rate history now; return removed sample count."""
        removed = self.history.purge(dt_util.now(), retention_days)
        _LOGGER.info("Purged %s rate history samples", removed)
        await self._async_save_state()
        self.async_set_updated_data(self.engine.diagnostics())
        return removed

    async def async_set_vent_override(self, vent_id: str, percent: float | None) -> None:
        """Pin a vent to a fixed opening, or clear the pin when percent is None."""
        if percent is not None and vent_id not in self.directory.assignments:
            raise ValueError(f"{vent_id} is not an assigned vent")
        self.engine.set_manual_override(vent_id, percent)
        await self._async_save_state()
        await self.async_request_refresh()

    async def _async_run_daily_maintenance(self, now: datetime) -> None:
        today = now.date()
        if self._last_maintenance == today:
            return
        rows = self.history.aggregate_daily(today - timedelta(days=1))
        removed = self.history.purge(now)
        self._last_maintenance = today
        _LOGGER.debug("Daily maintenance: %s aggregates, %s samples purged", rows, removed)
        await self._async_save_state()

    def build_diagnostics_export(self) -> dict[str, Any]:
        """Build the diagnostics payload written by the export service."""
        return {
            "exportMetadata": {
                "version": STORAGE_VERSION,
                "exportDate": dt_util.utcnow().replace(microsecond=0).isoformat(),
                "entryId": self.entry.entry_id,
                "title": self.entry.title,
            },
            "diagnostics": self.engine.diagnostics(),
        }

    def get_rooms(self) -> dict[str, list[str]]:
        return self.directory.get_vents_by_room()

    def get_room_name(self, room_id: str) -> str:
        for vent_id in self.get_rooms().get(room_id, []):
            name = self.directory.assignments.get(vent_id, {}).get(CONF_ROOM_NAME)
            if name:
                return name
        return f"Room {room_id}"

    def get_room_efficiency_percent(self, room_id: str, mode: str) -> float | None:
        rate = self.efficiency.get_rate(room_id, mode)
        if rate <= 0:
            return round(self._clamp_efficiency_percent(self._initial_efficiency_percent), 1)
        percent = max(0.0, min(100.0, rate * 100))
        return round(percent, 1)

    def get_room_target_percent(self, room_id: str) -> float | None:
        targets = self.engine.targets
        values = [targets[vent_id] for vent_id in self.get_rooms().get(room_id, []) if vent_id in targets]
        if not values:
            return None
        return round(sum(values) / len(values), 1)

    def get_room_device_info(self, room_id: str) -> dict[str, Any]:
        return {
            "identifiers": {(DOMAIN, f"room_{room_id}")},
            "name": self.get_room_name(room_id),
            "manufacturer": "Airflow Balancer",
            "model": "Room",
        }

    def get_system_device_info(self) -> dict[str, Any]:
        return {
            "identifiers": {(DOMAIN, f"system_{self.entry.entry_id}")},
            "name": self.entry.title,
            "manufacturer": "Airflow Balancer",
            "model": "DAB Controller",
        }

    def _handle_activity(self, entry: dict[str, Any]) -> None:
        if entry.get("category") in ("cycle", "feedback", "mode"):
            _LOGGER.info("%s", entry["message"])
        if entry.get("category") == "efficiency" and self._log_efficiency_changes:
            logbook.async_log_entry(
                self.hass,
                self.entry.title,
                entry["message"],
                domain=DOMAIN,
            )

    def _report_engine_errors(self) -> None:
        if self.engine.error_count <= self._notified_errors:
            return
        self._notified_errors = self.engine.error_count
        errors = self.engine.diagnostics()["errors"]
        if errors:
            last = errors[-1]
            self._async_notify_error(
                "DAB processing failed", f"{last['event']}: {last['error']}"
            )

    def _async_notify_error(self, title: str, message: str) -> None:
        self._error_counter += 1
        notification_id = f"{DOMAIN}_{self.entry.entry_id}_error_{self._error_counter}"
        persistent_notification.async_create(
            self.hass,
            message,
            title=title,
            notification_id=notification_id,
        )

    @staticmethod
    def _clamp_efficiency_percent(value: float) -> float:
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0.0
        return max(0.0, min(100.0, value))

    async def _async_save_state(self) -> None:
        async with self._save_lock:
            await self._store.async_save(
                {
                    "history": self.history.as_dict(),
                    "efficiency": self.efficiency.as_dict(),
                    "vent_overrides": dict(self.vent_overrides),
                    "last_maintenance": (
                        self._last_maintenance.isoformat() if self._last_maintenance else None
                    ),
                }
            )


def _load_overrides(data: Any) -> dict[str, int]:
    overrides: dict[str, int] = {}
    if not isinstance(data, dict):
        return overrides
    for vent_id, value in data.items():
        percent = coerce_float(value)
        if percent is not None:
            overrides[str(vent_id)] = int(max(0.0, min(100.0, percent)))
    return overrides
