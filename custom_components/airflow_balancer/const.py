"""Constants for the Airflow Balancer integration."""
from __future__ import annotations

DOMAIN = "airflow_balancer"

CONF_NAME = "name"
CONF_ENTRY_ID = "entry_id"
CONF_THERMOSTAT_ENTITY = "thermostat_entity"

CONF_DAB_ENABLED = "dab_enabled"
CONF_CLOSE_INACTIVE_ROOMS = "close_inactive_rooms"
CONF_VENT_GRANULARITY = "vent_granularity"
CONF_POLL_INTERVAL_ACTIVE = "poll_interval_active"
CONF_POLL_INTERVAL_IDLE = "poll_interval_idle"
CONF_INITIAL_EFFICIENCY_PERCENT = "initial_efficiency_percent"
CONF_MIN_VENT_FLOOR_PERCENT = "min_vent_floor_percent"
CONF_ALLOW_FULL_CLOSE = "allow_full_close"
CONF_MAX_CHANGE_PERCENT = "max_change_percent"
CONF_MIN_COMBINED_VENT_FLOW = "min_combined_vent_flow"
CONF_CONVENTIONAL_VENTS = "conventional_vents"
CONF_HVAC_MODE_OVERRIDE = "hvac_mode_override"
CONF_USE_ROOM_SETPOINTS = "use_room_setpoints"
CONF_DUCT_TEMP_THRESHOLD = "duct_temp_threshold"
CONF_LOG_EFFICIENCY_CHANGES = "log_efficiency_changes"

CONF_HISTORY_RETENTION_DAYS = "history_retention_days"
CONF_ENABLE_EWMA = "enable_ewma"
CONF_EWMA_HALF_LIFE_DAYS = "ewma_half_life_days"
CONF_ENABLE_OUTLIER_REJECTION = "enable_outlier_rejection"
CONF_OUTLIER_MODE = "outlier_mode"
CONF_OUTLIER_THRESHOLD_MAD = "outlier_threshold_mad"
CONF_ENABLE_ADAPTIVE_BOOST = "enable_adaptive_boost"

CONF_VENT_ASSIGNMENTS = "vent_assignments"
CONF_VENT_ENTITY = "vent_entity"
CONF_ROOM_ID = "room_id"
CONF_ROOM_NAME = "room_name"
CONF_TEMP_SENSOR_ENTITY = "temp_sensor_entity"
CONF_DUCT_SENSOR_ENTITY = "duct_sensor_entity"
CONF_SETPOINT_ENTITY = "setpoint_entity"
CONF_SET_POINT_C = "set_point_c"
CONF_ACTIVE_ENTITY = "active_entity"
CONF_VENT_WEIGHT = "vent_weight"

CONF_PATH = "path"
CONF_FORMAT = "format"
CONF_RETENTION_DAYS = "retention_days"
CONF_VENT_ID = "entity_id"
CONF_PERCENT = "percent"

SERVICE_RUN_DAB = "run_dab"
SERVICE_EXPORT_DIAGNOSTICS = "export_diagnostics"
SERVICE_PURGE_HISTORY = "purge_history"
SERVICE_SET_VENT_OVERRIDE = "set_vent_override"

HVAC_MODE_AUTO = "auto"
HVAC_MODE_OVERRIDES = ["auto", "cooling", "heating", "idle"]
OUTLIER_MODES = ["clip", "reject"]
EXPORT_FORMATS = ["json", "csv"]

DEFAULT_NAME = "Airflow Balancer"
DEFAULT_DAB_ENABLED = False
DEFAULT_CLOSE_INACTIVE_ROOMS = True
DEFAULT_VENT_GRANULARITY = 5
DEFAULT_POLL_INTERVAL_ACTIVE = 1
DEFAULT_POLL_INTERVAL_IDLE = 5
DEFAULT_INITIAL_EFFICIENCY_PERCENT = 50
DEFAULT_MIN_VENT_FLOOR_PERCENT = 10
DEFAULT_ALLOW_FULL_CLOSE = False
DEFAULT_MAX_CHANGE_PERCENT = 25
DEFAULT_MIN_COMBINED_VENT_FLOW = 30
DEFAULT_CONVENTIONAL_VENTS = 0
DEFAULT_HVAC_MODE_OVERRIDE = HVAC_MODE_AUTO
DEFAULT_USE_ROOM_SETPOINTS = False
DEFAULT_DUCT_TEMP_THRESHOLD = 0.5
DEFAULT_LOG_EFFICIENCY_CHANGES = True

DEFAULT_HISTORY_RETENTION_DAYS = 10
DEFAULT_ENABLE_EWMA = False
DEFAULT_EWMA_HALF_LIFE_DAYS = 3
DEFAULT_ENABLE_OUTLIER_REJECTION = True
DEFAULT_OUTLIER_MODE = "clip"
DEFAULT_OUTLIER_THRESHOLD_MAD = 3.0
DEFAULT_ENABLE_ADAPTIVE_BOOST = True

DEFAULT_VENT_WEIGHT = 1.0

STORAGE_VERSION = 1

PLATFORMS: list[str] = ["sensor"]
