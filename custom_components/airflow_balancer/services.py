"""Service handlers for the Airflow Balancer."""
from __future__ import annotations

import csv
import io
import json
import logging
import os
from typing import Any

import voluptuous as vol
from homeassistant.core import HomeAssistant, ServiceCall
try:
    from homeassistant.core import SupportsResponse  # type: ignore
except ImportError:  # pragma: no cover - older HA versions
    SupportsResponse = None
from homeassistant.components import persistent_notification

from .const import (
    CONF_ENTRY_ID,
    CONF_FORMAT,
    CONF_PATH,
    CONF_PERCENT,
    CONF_RETENTION_DAYS,
    CONF_VENT_ID,
    DOMAIN,
    EXPORT_FORMATS,
    SERVICE_EXPORT_DIAGNOSTICS,
    SERVICE_PURGE_HISTORY,
    SERVICE_RUN_DAB,
    SERVICE_SET_VENT_OVERRIDE,
)
from .coordinator import AirflowBalancerCoordinator

_LOGGER = logging.getLogger(__name__)

CSV_FIELDS = [
    "room_id",
    "hvac_mode",
    "hour",
    "rate",
    "raw_average",
    "sample_count",
    "anomaly_flag",
    "carry_forward_used",
    "floor_used",
    "ewma_used",
    "boost_percent",
]

RUN_DAB_SCHEMA = vol.Schema({vol.Optional(CONF_ENTRY_ID): str})

EXPORT_DIAGNOSTICS_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_ENTRY_ID): str,
        vol.Optional(CONF_FORMAT, default="json"): vol.In(EXPORT_FORMATS),
        vol.Optional(CONF_PATH): str,
    }
)

PURGE_HISTORY_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_ENTRY_ID): str,
        vol.Optional(CONF_RETENTION_DAYS): vol.All(vol.Coerce(int), vol.Range(min=0, max=365)),
    }
)

SET_VENT_OVERRIDE_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_ENTRY_ID): str,
        vol.Required(CONF_VENT_ID): str,
        vol.Optional(CONF_PERCENT): vol.All(vol.Coerce(int), vol.Range(min=0, max=100)),
    }
)


async def async_register_services(hass: HomeAssistant) -> None:
    """Register integration services."""
    domain_data = hass.data.setdefault(DOMAIN, {})
    if domain_data.get("_services_registered"):
        return

    async def handle_run_dab(call: ServiceCall) -> None:
        coordinator = _get_coordinator(hass, call.data.get(CONF_ENTRY_ID))
        if not coordinator:
            return
        try:
            await coordinator.async_run_dab()
        except Exception as err:  # noqa: BLE001
            _LOGGER.exception("Failed to run DAB: %s", err)
            persistent_notification.async_create(
                hass,
                f"Failed to run DAB: {err}",
                title="Airflow Balancer error",
            )

    async def handle_export_diagnostics(call: ServiceCall) -> dict[str, Any]:
        coordinator = _get_coordinator(hass, call.data.get(CONF_ENTRY_ID))
        if not coordinator:
            return {"error": "No coordinator found"}

        export_format = call.data.get(CONF_FORMAT, "json")
        try:
            payload = coordinator.build_diagnostics_export()
            path_input = call.data.get(CONF_PATH)
            if path_input:
                path = _resolve_export_path(
                    hass,
                    path_input,
                    f"{DOMAIN}_diagnostics_{coordinator.entry.entry_id}.{export_format}",
                )
                if export_format == "csv":
                    await hass.async_add_executor_job(_save_text, path, _build_csv(payload))
                else:
                    await hass.async_add_executor_job(_save_json, path, payload)
                _LOGGER.info("Exported DAB diagnostics to %s", path)
                return {"saved_to": path}
            if export_format == "csv":
                return {"csv": _build_csv(payload)}
            return payload
        except Exception as err:  # noqa: BLE001
            _LOGGER.exception("Failed to export diagnostics: %s", err)
            persistent_notification.async_create(
                hass,
                f"Failed to export diagnostics: {err}",
                title="Airflow Balancer error",
            )
            return {"error": str(err)}

    async def handle_purge_history(call: ServiceCall) -> None:
        coordinator = _get_coordinator(hass, call.data.get(CONF_ENTRY_ID))
        if not coordinator:
            return
        try:
            await coordinator.async_purge_history(call.data.get(CONF_RETENTION_DAYS))
        except Exception as err:  # noqa: BLE001
            _LOGGER.exception("Failed to purge history: %s", err)
            persistent_notification.async_create(
                hass,
                f"Failed to purge history: {err}",
                title="Airflow Balancer error",
            )

    async def handle_set_vent_override(call: ServiceCall) -> None:
        coordinator = _get_coordinator(hass, call.data.get(CONF_ENTRY_ID))
        if not coordinator:
            return
        try:
            await coordinator.async_set_vent_override(
                call.data[CONF_VENT_ID], call.data.get(CONF_PERCENT)
            )
        except Exception as err:  # noqa: BLE001
            _LOGGER.exception("Failed to set vent override: %s", err)
            persistent_notification.async_create(
                hass,
                f"Failed to set vent override: {err}",
                title="Airflow Balancer error",
            )

    hass.services.async_register(
        DOMAIN,
        SERVICE_RUN_DAB,
        handle_run_dab,
        schema=RUN_DAB_SCHEMA,
    )
    export_kwargs = {}
    if SupportsResponse is not None:
        export_kwargs["supports_response"] = SupportsResponse.OPTIONAL
    hass.services.async_register(
        DOMAIN,
        SERVICE_EXPORT_DIAGNOSTICS,
        handle_export_diagnostics,
        schema=EXPORT_DIAGNOSTICS_SCHEMA,
        **export_kwargs,
    )
    hass.services.async_register(
        DOMAIN,
        SERVICE_PURGE_HISTORY,
        handle_purge_history,
        schema=PURGE_HISTORY_SCHEMA,
    )
    hass.services.async_register(
        DOMAIN,
        SERVICE_SET_VENT_OVERRIDE,
        handle_set_vent_override,
        schema=SET_VENT_OVERRIDE_SCHEMA,
    )

    domain_data["_services_registered"] = True


async def async_unregister_services(hass: HomeAssistant) -> None:
    """Unregister services if no entries remain."""
    domain_data = hass.data.get(DOMAIN, {})
    remaining = [
        value
        for value in domain_data.values()
        if isinstance(value, AirflowBalancerCoordinator)
    ]
    if remaining:
        return

    if domain_data.pop("_services_registered", None):
        hass.services.async_remove(DOMAIN, SERVICE_RUN_DAB)
        hass.services.async_remove(DOMAIN, SERVICE_EXPORT_DIAGNOSTICS)
        hass.services.async_remove(DOMAIN, SERVICE_PURGE_HISTORY)
        hass.services.async_remove(DOMAIN, SERVICE_SET_VENT_OVERRIDE)


def _get_coordinator(hass: HomeAssistant, entry_id: str | None) -> AirflowBalancerCoordinator | None:
    domain_data = hass.data.get(DOMAIN, {})
    if entry_id:
        coordinator = domain_data.get(entry_id)
        if isinstance(coordinator, AirflowBalancerCoordinator):
            return coordinator
        _LOGGER.error("No coordinator found for entry_id=%s", entry_id)
        return None

    coordinators = [
        value
        for value in domain_data.values()
        if isinstance(value, AirflowBalancerCoordinator)
    ]
    if len(coordinators) == 1:
        return coordinators[0]

    _LOGGER.error("Expected exactly one Airflow Balancer entry; specify entry_id")
    return None


def _resolve_export_path(hass: HomeAssistant, path: str | None, default_name: str) -> str:
    base_path = hass.config.path("")
    if not path:
        path = hass.config.path(default_name)
    elif not os.path.isabs(path):
        path = hass.config.path(path)

    base_real = os.path.realpath(base_path)
    path_real = os.path.realpath(path)

    if os.path.commonpath([base_real, path_real]) != base_real:
        if not hass.config.is_allowed_path(path_real):
            raise ValueError("Path is not allowed by Home Assistant")

    return path_real


def _build_csv(payload: dict[str, Any]) -> str:
    """Effective-rate table as CSV."""
    rows = (payload.get("diagnostics") or {}).get("effective_rates") or []
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_FIELDS, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buffer.getvalue()


def _save_json(path: str, payload: dict[str, Any]) -> None:
    with open(path, "w", encoding="utf-8") as file:
        json.dump(payload, file, indent=2, sort_keys=True)


def _save_text(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as file:
        file.write(text)
