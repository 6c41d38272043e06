"""Config flow for the Airflow Balancer integration."""
from __future__ import annotations

import logging
from typing import Any

import voluptuous as vol
from homeassistant import config_entries
from homeassistant.core import callback
from homeassistant.helpers import selector

from .const import (
    CONF_ACTIVE_ENTITY,
    CONF_ALLOW_FULL_CLOSE,
    CONF_CLOSE_INACTIVE_ROOMS,
    CONF_CONVENTIONAL_VENTS,
    CONF_DAB_ENABLED,
    CONF_DUCT_SENSOR_ENTITY,
    CONF_DUCT_TEMP_THRESHOLD,
    CONF_ENABLE_ADAPTIVE_BOOST,
    CONF_ENABLE_EWMA,
    CONF_ENABLE_OUTLIER_REJECTION,
    CONF_EWMA_HALF_LIFE_DAYS,
    CONF_HISTORY_RETENTION_DAYS,
    CONF_HVAC_MODE_OVERRIDE,
    CONF_INITIAL_EFFICIENCY_PERCENT,
    CONF_LOG_EFFICIENCY_CHANGES,
    CONF_MAX_CHANGE_PERCENT,
    CONF_MIN_COMBINED_VENT_FLOW,
    CONF_MIN_VENT_FLOOR_PERCENT,
    CONF_NAME,
    CONF_OUTLIER_MODE,
    CONF_OUTLIER_THRESHOLD_MAD,
    CONF_POLL_INTERVAL_ACTIVE,
    CONF_POLL_INTERVAL_IDLE,
    CONF_ROOM_ID,
    CONF_ROOM_NAME,
    CONF_SET_POINT_C,
    CONF_SETPOINT_ENTITY,
    CONF_TEMP_SENSOR_ENTITY,
    CONF_THERMOSTAT_ENTITY,
    CONF_USE_ROOM_SETPOINTS,
    CONF_VENT_ASSIGNMENTS,
    CONF_VENT_ENTITY,
    CONF_VENT_GRANULARITY,
    CONF_VENT_WEIGHT,
    DEFAULT_ALLOW_FULL_CLOSE,
    DEFAULT_CLOSE_INACTIVE_ROOMS,
    DEFAULT_CONVENTIONAL_VENTS,
    DEFAULT_DAB_ENABLED,
    DEFAULT_DUCT_TEMP_THRESHOLD,
    DEFAULT_ENABLE_ADAPTIVE_BOOST,
    DEFAULT_ENABLE_EWMA,
    DEFAULT_ENABLE_OUTLIER_REJECTION,
    DEFAULT_EWMA_HALF_LIFE_DAYS,
    DEFAULT_HISTORY_RETENTION_DAYS,
    DEFAULT_HVAC_MODE_OVERRIDE,
    DEFAULT_INITIAL_EFFICIENCY_PERCENT,
    DEFAULT_LOG_EFFICIENCY_CHANGES,
    DEFAULT_MAX_CHANGE_PERCENT,
    DEFAULT_MIN_COMBINED_VENT_FLOW,
    DEFAULT_MIN_VENT_FLOOR_PERCENT,
    DEFAULT_NAME,
    DEFAULT_OUTLIER_MODE,
    DEFAULT_OUTLIER_THRESHOLD_MAD,
    DEFAULT_POLL_INTERVAL_ACTIVE,
    DEFAULT_POLL_INTERVAL_IDLE,
    DEFAULT_USE_ROOM_SETPOINTS,
    DEFAULT_VENT_GRANULARITY,
    DEFAULT_VENT_WEIGHT,
    DOMAIN,
    HVAC_MODE_OVERRIDES,
    OUTLIER_MODES,
)

_LOGGER = logging.getLogger(__name__)


class AirflowBalancerConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle a config flow for the Airflow Balancer."""

    VERSION = 1

    async def async_step_user(self, user_input: dict[str, Any] | None = None):
        """Handle the initial step."""
        errors: dict[str, str] = {}

        if user_input is not None:
            name = str(user_input.get(CONF_NAME) or "").strip()
            if not name:
                errors["base"] = "name_required"
            else:
                await self.async_set_unique_id(name.lower())
                self._abort_if_unique_id_configured()
                data = {CONF_NAME: name}
                if user_input.get(CONF_THERMOSTAT_ENTITY):
                    data[CONF_THERMOSTAT_ENTITY] = user_input[CONF_THERMOSTAT_ENTITY]
                return self.async_create_entry(title=name, data=data)

        return self.async_show_form(
            step_id="user",
            data_schema=vol.Schema(
                {
                    vol.Required(CONF_NAME, default=DEFAULT_NAME): str,
                    vol.Optional(CONF_THERMOSTAT_ENTITY): selector.EntitySelector(
                        selector.EntitySelectorConfig(domain="climate")
                    ),
                }
            ),
            errors=errors,
        )

    @staticmethod
    @callback
    def async_get_options_flow(config_entry: config_entries.ConfigEntry):
        """Get the options flow for this handler."""
        return AirflowBalancerOptionsFlow(config_entry)


class AirflowBalancerOptionsFlow(config_entries.OptionsFlowWithConfigEntry):
    """Handle options for the Airflow Balancer."""

    async def async_step_init(self, user_input: dict[str, Any] | None = None):
        return await self.async_step_menu()

    async def async_step_menu(self, user_input: dict[str, Any] | None = None):
        return self.async_show_menu(
            step_id="menu",
            menu_options={
                "algorithm_settings": "Dynamic Airflow Balancing & Polling",
                "learning_settings": "Rate Learning & History",
                "add_vent": "Add or Update a Vent",
                "remove_vent": "Remove a Vent",
            },
        )

    async def async_step_algorithm_settings(self, user_input: dict[str, Any] | None = None):
        errors: dict[str, str] = {}
        options = dict(self.config_entry.options)

        if user_input is not None:
            options.update(
                {
                    CONF_DAB_ENABLED: user_input[CONF_DAB_ENABLED],
                    CONF_CLOSE_INACTIVE_ROOMS: user_input[CONF_CLOSE_INACTIVE_ROOMS],
                    CONF_VENT_GRANULARITY: int(user_input[CONF_VENT_GRANULARITY]),
                    CONF_POLL_INTERVAL_ACTIVE: user_input[CONF_POLL_INTERVAL_ACTIVE],
                    CONF_POLL_INTERVAL_IDLE: user_input[CONF_POLL_INTERVAL_IDLE],
                    CONF_INITIAL_EFFICIENCY_PERCENT: user_input[CONF_INITIAL_EFFICIENCY_PERCENT],
                    CONF_MIN_VENT_FLOOR_PERCENT: user_input[CONF_MIN_VENT_FLOOR_PERCENT],
                    CONF_ALLOW_FULL_CLOSE: user_input[CONF_ALLOW_FULL_CLOSE],
                    CONF_MAX_CHANGE_PERCENT: user_input[CONF_MAX_CHANGE_PERCENT],
                    CONF_MIN_COMBINED_VENT_FLOW: user_input[CONF_MIN_COMBINED_VENT_FLOW],
                    CONF_CONVENTIONAL_VENTS: user_input[CONF_CONVENTIONAL_VENTS],
                    CONF_HVAC_MODE_OVERRIDE: user_input[CONF_HVAC_MODE_OVERRIDE],
                    CONF_USE_ROOM_SETPOINTS: user_input[CONF_USE_ROOM_SETPOINTS],
                    CONF_DUCT_TEMP_THRESHOLD: user_input[CONF_DUCT_TEMP_THRESHOLD],
                    CONF_LOG_EFFICIENCY_CHANGES: user_input[CONF_LOG_EFFICIENCY_CHANGES],
                }
            )
            return self.async_create_entry(title="", data=options)

        return self.async_show_form(
            step_id="algorithm_settings",
            data_schema=vol.Schema(
                {
                    vol.Required(
                        CONF_DAB_ENABLED,
                        default=options.get(CONF_DAB_ENABLED, DEFAULT_DAB_ENABLED),
                    ): bool,
                    vol.Required(
                        CONF_CLOSE_INACTIVE_ROOMS,
                        default=options.get(
                            CONF_CLOSE_INACTIVE_ROOMS, DEFAULT_CLOSE_INACTIVE_ROOMS
                        ),
                    ): bool,
                    vol.Required(
                        CONF_VENT_GRANULARITY,
                        default=str(
                            options.get(CONF_VENT_GRANULARITY, DEFAULT_VENT_GRANULARITY)
                        ),
                    ): selector.SelectSelector(
                        selector.SelectSelectorConfig(
                            options=["5", "10", "25", "50", "100"],
                            mode=selector.SelectSelectorMode.DROPDOWN,
                        )
                    ),
                    vol.Required(
                        CONF_POLL_INTERVAL_ACTIVE,
                        default=options.get(
                            CONF_POLL_INTERVAL_ACTIVE, DEFAULT_POLL_INTERVAL_ACTIVE
                        ),
                    ): vol.All(vol.Coerce(int), vol.Range(min=1)),
                    vol.Required(
                        CONF_POLL_INTERVAL_IDLE,
                        default=options.get(
                            CONF_POLL_INTERVAL_IDLE, DEFAULT_POLL_INTERVAL_IDLE
                        ),
                    ): vol.All(vol.Coerce(int), vol.Range(min=1)),
                    vol.Required(
                        CONF_INITIAL_EFFICIENCY_PERCENT,
                        default=options.get(
                            CONF_INITIAL_EFFICIENCY_PERCENT,
                            DEFAULT_INITIAL_EFFICIENCY_PERCENT,
                        ),
                    ): vol.All(vol.Coerce(int), vol.Range(min=0, max=100)),
                    vol.Required(
                        CONF_MIN_VENT_FLOOR_PERCENT,
                        default=options.get(
                            CONF_MIN_VENT_FLOOR_PERCENT, DEFAULT_MIN_VENT_FLOOR_PERCENT
                        ),
                    ): vol.All(vol.Coerce(int), vol.Range(min=0, max=50)),
                    vol.Required(
                        CONF_ALLOW_FULL_CLOSE,
                        default=options.get(CONF_ALLOW_FULL_CLOSE, DEFAULT_ALLOW_FULL_CLOSE),
                    ): bool,
                    vol.Required(
                        CONF_MAX_CHANGE_PERCENT,
                        default=options.get(CONF_MAX_CHANGE_PERCENT, DEFAULT_MAX_CHANGE_PERCENT),
                    ): vol.All(vol.Coerce(int), vol.Range(min=1, max=100)),
                    vol.Required(
                        CONF_MIN_COMBINED_VENT_FLOW,
                        default=options.get(
                            CONF_MIN_COMBINED_VENT_FLOW, DEFAULT_MIN_COMBINED_VENT_FLOW
                        ),
                    ): vol.All(vol.Coerce(int), vol.Range(min=0, max=100)),
                    vol.Required(
                        CONF_CONVENTIONAL_VENTS,
                        default=options.get(CONF_CONVENTIONAL_VENTS, DEFAULT_CONVENTIONAL_VENTS),
                    ): vol.All(vol.Coerce(int), vol.Range(min=0, max=15)),
                    vol.Required(
                        CONF_HVAC_MODE_OVERRIDE,
                        default=options.get(CONF_HVAC_MODE_OVERRIDE, DEFAULT_HVAC_MODE_OVERRIDE),
                    ): selector.SelectSelector(
                        selector.SelectSelectorConfig(
                            options=HVAC_MODE_OVERRIDES,
                            mode=selector.SelectSelectorMode.DROPDOWN,
                        )
                    ),
                    vol.Required(
                        CONF_USE_ROOM_SETPOINTS,
                        default=options.get(CONF_USE_ROOM_SETPOINTS, DEFAULT_USE_ROOM_SETPOINTS),
                    ): bool,
                    vol.Required(
                        CONF_DUCT_TEMP_THRESHOLD,
                        default=options.get(
                            CONF_DUCT_TEMP_THRESHOLD, DEFAULT_DUCT_TEMP_THRESHOLD
                        ),
                    ): vol.All(vol.Coerce(float), vol.Range(min=0.1, max=5)),
                    vol.Required(
                        CONF_LOG_EFFICIENCY_CHANGES,
                        default=options.get(
                            CONF_LOG_EFFICIENCY_CHANGES,
                            DEFAULT_LOG_EFFICIENCY_CHANGES,
                        ),
                    ): bool,
                }
            ),
            errors=errors,
        )

    async def async_step_learning_settings(self, user_input: dict[str, Any] | None = None):
        errors: dict[str, str] = {}
        options = dict(self.config_entry.options)

        if user_input is not None:
            options.update(
                {
                    CONF_HISTORY_RETENTION_DAYS: user_input[CONF_HISTORY_RETENTION_DAYS],
                    CONF_ENABLE_EWMA: user_input[CONF_ENABLE_EWMA],
                    CONF_EWMA_HALF_LIFE_DAYS: user_input[CONF_EWMA_HALF_LIFE_DAYS],
                    CONF_ENABLE_OUTLIER_REJECTION: user_input[CONF_ENABLE_OUTLIER_REJECTION],
                    CONF_OUTLIER_MODE: user_input[CONF_OUTLIER_MODE],
                    CONF_OUTLIER_THRESHOLD_MAD: user_input[CONF_OUTLIER_THRESHOLD_MAD],
                    CONF_ENABLE_ADAPTIVE_BOOST: user_input[CONF_ENABLE_ADAPTIVE_BOOST],
                }
            )
            return self.async_create_entry(title="", data=options)

        return self.async_show_form(
            step_id="learning_settings",
            data_schema=vol.Schema(
                {
                    vol.Required(
                        CONF_HISTORY_RETENTION_DAYS,
                        default=options.get(
                            CONF_HISTORY_RETENTION_DAYS, DEFAULT_HISTORY_RETENTION_DAYS
                        ),
                    ): vol.All(vol.Coerce(int), vol.Range(min=1, max=365)),
                    vol.Required(
                        CONF_ENABLE_EWMA,
                        default=options.get(CONF_ENABLE_EWMA, DEFAULT_ENABLE_EWMA),
                    ): bool,
                    vol.Required(
                        CONF_EWMA_HALF_LIFE_DAYS,
                        default=options.get(CONF_EWMA_HALF_LIFE_DAYS, DEFAULT_EWMA_HALF_LIFE_DAYS),
                    ): vol.All(vol.Coerce(float), vol.Range(min=0.5, max=60)),
                    vol.Required(
                        CONF_ENABLE_OUTLIER_REJECTION,
                        default=options.get(
                            CONF_ENABLE_OUTLIER_REJECTION, DEFAULT_ENABLE_OUTLIER_REJECTION
                        ),
                    ): bool,
                    vol.Required(
                        CONF_OUTLIER_MODE,
                        default=options.get(CONF_OUTLIER_MODE, DEFAULT_OUTLIER_MODE),
                    ): selector.SelectSelector(
                        selector.SelectSelectorConfig(
                            options=OUTLIER_MODES,
                            mode=selector.SelectSelectorMode.DROPDOWN,
                        )
                    ),
                    vol.Required(
                        CONF_OUTLIER_THRESHOLD_MAD,
                        default=options.get(
                            CONF_OUTLIER_THRESHOLD_MAD, DEFAULT_OUTLIER_THRESHOLD_MAD
                        ),
                    ): vol.All(vol.Coerce(float), vol.Range(min=1, max=10)),
                    vol.Required(
                        CONF_ENABLE_ADAPTIVE_BOOST,
                        default=options.get(
                            CONF_ENABLE_ADAPTIVE_BOOST, DEFAULT_ENABLE_ADAPTIVE_BOOST
                        ),
                    ): bool,
                }
            ),
            errors=errors,
        )

    async def async_step_add_vent(self, user_input: dict[str, Any] | None = None):
        errors: dict[str, str] = {}
        options = dict(self.config_entry.options)

        if user_input is not None:
            vent_id = user_input.get(CONF_VENT_ENTITY)
            room_id = str(user_input.get(CONF_ROOM_ID) or "").strip()
            if not vent_id:
                errors["base"] = "vent_required"
            elif not room_id:
                errors["base"] = "room_required"
            else:
                assignment: dict[str, Any] = {
                    CONF_ROOM_ID: room_id,
                    CONF_ROOM_NAME: user_input.get(CONF_ROOM_NAME) or room_id,
                    CONF_VENT_WEIGHT: float(
                        user_input.get(CONF_VENT_WEIGHT) or DEFAULT_VENT_WEIGHT
                    ),
                }
                for key in (
                    CONF_TEMP_SENSOR_ENTITY,
                    CONF_DUCT_SENSOR_ENTITY,
                    CONF_SETPOINT_ENTITY,
                    CONF_SET_POINT_C,
                    CONF_ACTIVE_ENTITY,
                ):
                    if user_input.get(key) not in (None, ""):
                        assignment[key] = user_input[key]
                assignments = dict(options.get(CONF_VENT_ASSIGNMENTS, {}))
                assignments[vent_id] = assignment
                options[CONF_VENT_ASSIGNMENTS] = assignments
                return self.async_create_entry(title="", data=options)

        temp_sensor_selector = selector.EntitySelector(
            selector.EntitySelectorConfig(domain="sensor", device_class="temperature")
        )
        return self.async_show_form(
            step_id="add_vent",
            data_schema=vol.Schema(
                {
                    vol.Required(CONF_VENT_ENTITY): selector.EntitySelector(
                        selector.EntitySelectorConfig(domain="cover")
                    ),
                    vol.Required(CONF_ROOM_ID): str,
                    vol.Optional(CONF_ROOM_NAME): str,
                    vol.Optional(CONF_TEMP_SENSOR_ENTITY): temp_sensor_selector,
                    vol.Optional(CONF_DUCT_SENSOR_ENTITY): temp_sensor_selector,
                    vol.Optional(CONF_SETPOINT_ENTITY): selector.EntitySelector(
                        selector.EntitySelectorConfig(
                            domain=["climate", "number", "input_number", "sensor"]
                        )
                    ),
                    vol.Optional(CONF_SET_POINT_C): vol.All(
                        vol.Coerce(float), vol.Range(min=5, max=35)
                    ),
                    vol.Optional(CONF_ACTIVE_ENTITY): selector.EntitySelector(
                        selector.EntitySelectorConfig(
                            domain=["binary_sensor", "input_boolean", "switch"]
                        )
                    ),
                    vol.Optional(CONF_VENT_WEIGHT, default=DEFAULT_VENT_WEIGHT): vol.All(
                        vol.Coerce(float), vol.Range(min=0.1, max=10)
                    ),
                }
            ),
            errors=errors,
        )

    async def async_step_remove_vent(self, user_input: dict[str, Any] | None = None):
        errors: dict[str, str] = {}
        options = dict(self.config_entry.options)
        assignments = dict(options.get(CONF_VENT_ASSIGNMENTS, {}))

        if not assignments:
            errors["base"] = "no_assignments"
            return self.async_show_form(
                step_id="remove_vent",
                data_schema=vol.Schema({}),
                errors=errors,
            )

        if user_input is not None:
            removed = assignments.pop(user_input.get(CONF_VENT_ENTITY), None)
            if removed is None:
                errors["base"] = "unknown_vent"
            else:
                options[CONF_VENT_ASSIGNMENTS] = assignments
                return self.async_create_entry(title="", data=options)

        return self.async_show_form(
            step_id="remove_vent",
            data_schema=vol.Schema(
                {
                    vol.Required(CONF_VENT_ENTITY): selector.SelectSelector(
                        selector.SelectSelectorConfig(
                            options=sorted(assignments),
                            mode=selector.SelectSelectorMode.DROPDOWN,
                        )
                    ),
                }
            ),
            errors=errors,
        )
