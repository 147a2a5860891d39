"""Constants and defaults for the PV Loadpoint Controller."""

# Electrical
DEFAULT_VOLTAGE = 230
DEFAULT_MIN_CURRENT = 6.0  # Amperes
DEFAULT_MAX_CURRENT = 16.0  # Amperes
DEFAULT_MAX_CURRENT_LIMIT = 32.0  # Ceiling accepted for SetMaxCurrent
DEFAULT_CURRENT_STEP = 1.0  # Allocation granularity (A)
DEFAULT_PHASES = 3
VALID_PHASES = (1, 3)

# Site
DEFAULT_RESIDUAL_POWER = 0.0  # Watts, negative allows some grid import

# Cycle timing
DEFAULT_CYCLE_INTERVAL = 10.0  # seconds
DEFAULT_CYCLE_DEADLINE = 8.0  # seconds to wait for all device reads
DEFAULT_DEVICE_TIMEOUT = 1.5  # seconds per device operation
MAX_DEVICE_READS = 5  # serial reads per loadpoint and cycle

# Hysteresis
DEFAULT_PV_DEBOUNCE = 60.0  # seconds surplus must hold before PV enable/disable
DEFAULT_PHASE_DWELL = 120.0  # seconds between phase transitions

# Failure handling
DEFAULT_FAILURE_THRESHOLD = 3  # consecutive failures -> Fault

# SoC
DEFAULT_TARGET_SOC = 100
DEFAULT_MIN_SOC = 0

# MQTT
MQTT_RECONNECT_DELAY = 5  # seconds
DEFAULT_TOPIC_PREFIX = "pvlc"
DEFAULT_RELAY_PREFIX = "pvlc/relay"
DEFAULT_RELAY_SOURCE = "relay"

# Status / error topics (relative to topic prefix)
TOPIC_STATUS = "{}/status"
TOPIC_ERROR = "{}/error"
TOPIC_SITE = "{}/site/{}"
TOPIC_LOADPOINT = "{}/loadpoints/{}/{}"
TOPIC_LOADPOINT_SET = "{}/loadpoints/{}/{}/set"

# Relay topics (relative to relay prefix)
RELAY_TOPIC_REQUEST = "{}/request"
RELAY_TOPIC_RESPONSE = "{}/response"
RELAY_TOPIC_UPDATE = "{}/update"

# HA Supervisor API
HA_SUPERVISOR_API_URL = "http://supervisor/core/api"
HA_API_STATES = HA_SUPERVISOR_API_URL + "/states/{}"
HA_API_SERVICES = HA_SUPERVISOR_API_URL + "/services/{}/{}"
HA_REQUEST_TIMEOUT = 10  # seconds

# Persistence
STATE_FILE = "/data/state.json"

# HA Discovery
DEFAULT_HA_DISCOVERY_PREFIX = "homeassistant"
DEVICE_IDENTIFIER = "pv_loadpoint_controller"
DEVICE_NAME = "PV Loadpoint Controller"
DEVICE_MANUFACTURER = "Custom"
DEVICE_MODEL = "PV Loadpoint Controller v1.0"
