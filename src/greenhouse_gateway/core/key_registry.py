"""
Platform key registry.

Single source of the wire identifiers used against the IoT platform:
telemetry keys (read only time series), attribute keys (device state) and
RPC method names (commands), plus the attribute changes that confirm each
RPC. New device types are added here and nowhere else.

Every table is built once at import time and exposed read only.
"""
import re
from types import MappingProxyType
from typing import Any, List, Mapping, Tuple

from ..models.control import ControlTarget, RpcConfirmation

SOIL_NODE_COUNT = 10
MOTOR_COUNT = 4

RELAYS: Tuple[str, ...] = ("fan_1", "fan_2", "valve_2", "pump_1", "light_1")
MOTORS: Tuple[str, ...] = tuple(f"motor_{i}" for i in range(1, MOTOR_COUNT + 1))

# Motor direction parameter
MOTOR_STOP = 0
MOTOR_FORWARD = 1
MOTOR_REVERSE = 2

# ============================================================
# Telemetry keys
# ============================================================

AIR_TELEMETRY_KEYS: Tuple[str, ...] = ("air_temp", "air_humidity", "air_co2", "air_light")
SYSTEM_TELEMETRY_KEYS: Tuple[str, ...] = ("wifi_ssid", "rssi", "firmware_version", "stats_read_time_ms")
SOIL_MEASUREMENTS: Tuple[str, ...] = ("moisture", "temp", "ec", "ph", "n", "p", "k")


def soil_keys(node_index: int) -> Tuple[str, ...]:
    if not 1 <= node_index <= SOIL_NODE_COUNT:
        raise ValueError(f"Soil node {node_index} is out of range 1-{SOIL_NODE_COUNT}")
    return tuple(f"soil{node_index}_{m}" for m in SOIL_MEASUREMENTS)


ALL_SOIL_KEYS: Tuple[str, ...] = tuple(
    key for i in range(1, SOIL_NODE_COUNT + 1) for key in soil_keys(i)
)

# ============================================================
# Attribute keys
# ============================================================

STATUS_ATTRIBUTE = "status"
LAST_SEEN_ATTRIBUTE = "last_seen"

RELAY_ATTRIBUTE_KEYS: Tuple[str, ...] = tuple(f"{r}_cmd" for r in RELAYS)
MOTOR_ATTRIBUTE_KEYS: Tuple[str, ...] = tuple(
    f"{m}_{d}" for m in MOTORS for d in ("fw", "re")
)
AUTO_ATTRIBUTE_KEYS: Tuple[str, ...] = tuple(f"{r}_auto" for r in RELAYS) + ("global_motor_auto",)
TIMER_ATTRIBUTE_KEYS: Tuple[str, ...] = tuple(
    f"{r}_{edge}" for r in RELAYS for edge in ("on", "off")
) + ("global_fw_time", "global_re_time")

ALL_CONTROL_ATTRIBUTES: Tuple[str, ...] = (
    (STATUS_ATTRIBUTE,)
    + RELAY_ATTRIBUTE_KEYS
    + MOTOR_ATTRIBUTE_KEYS
    + AUTO_ATTRIBUTE_KEYS
    + TIMER_ATTRIBUTE_KEYS
)

# ============================================================
# RPC methods
# ============================================================

RELAY_RPC_METHODS: Tuple[str, ...] = tuple(f"set_{r}_cmd" for r in RELAYS)
MOTOR_RPC_METHODS: Tuple[str, ...] = tuple(f"set_{m}_status" for m in MOTORS)
AUTO_RPC_METHODS: Tuple[str, ...] = tuple(f"set_{r}_auto" for r in RELAYS) + ("set_global_motor_auto",)
TIMER_RPC_METHODS: Tuple[str, ...] = tuple(
    f"set_{r}_{edge}_time" for r in RELAYS for edge in ("on", "off")
) + ("set_global_fw_time", "set_global_re_time")


def _build_confirmations() -> Mapping[str, Tuple[RpcConfirmation, ...]]:
    table = {}
    for relay in RELAYS:
        table[f"set_{relay}_cmd"] = (RpcConfirmation(attribute=f"{relay}_cmd"),)
        table[f"set_{relay}_auto"] = (RpcConfirmation(attribute=f"{relay}_auto"),)
        table[f"set_{relay}_on_time"] = (RpcConfirmation(attribute=f"{relay}_on"),)
        table[f"set_{relay}_off_time"] = (RpcConfirmation(attribute=f"{relay}_off"),)
    table["set_global_motor_auto"] = (RpcConfirmation(attribute="global_motor_auto"),)
    table["set_global_fw_time"] = (RpcConfirmation(attribute="global_fw_time"),)
    table["set_global_re_time"] = (RpcConfirmation(attribute="global_re_time"),)
    return MappingProxyType(table)


RPC_CONFIRMATIONS = _build_confirmations()

_MOTOR_METHOD = re.compile(r'^set_motor_(\d+)_status$')

# direction -> (forward attribute, reverse attribute)
_MOTOR_STATES = MappingProxyType({
    MOTOR_FORWARD: (True, False),
    MOTOR_REVERSE: (False, True),
    MOTOR_STOP: (False, False),
})

_MOTOR_ACTIONS = MappingProxyType({
    MOTOR_FORWARD: "forward",
    MOTOR_REVERSE: "reverse",
    MOTOR_STOP: "stop",
})


def _motor_direction(params: Any) -> int:
    try:
        direction = int(params)
    except (TypeError, ValueError):
        return MOTOR_STOP
    return direction if direction in _MOTOR_STATES else MOTOR_STOP


def motor_confirmation(motor_index: int, params: Any) -> List[RpcConfirmation]:
    fw, re_ = _MOTOR_STATES[_motor_direction(params)]
    return [
        RpcConfirmation(attribute=f"motor_{motor_index}_fw", expected_value=fw),
        RpcConfirmation(attribute=f"motor_{motor_index}_re", expected_value=re_),
    ]


def resolve_confirmation(method: str, params: Any = None) -> List[RpcConfirmation]:
    """
    Attribute rules that must hold for `method` to count as confirmed.

    Motor methods are computed from the direction parameter, every other
    known method is a static lookup. Unknown methods have no rules.
    """
    match = _MOTOR_METHOD.match(method)
    if match:
        return motor_confirmation(int(match.group(1)), params)
    return list(RPC_CONFIRMATIONS.get(method, ()))


# ============================================================
# Control keys (history and notifications)
# ============================================================

_SUFFIX_ACTIONS: Tuple[Tuple[str, str], ...] = (
    ("_condition_auto", "set_condition_auto"),
    ("_interval_auto", "set_interval_auto"),
    ("_on_time", "set_on_time"),
    ("_off_time", "set_off_time"),
    ("_auto", "auto"),
    ("_cmd", "set"),
)

_GLOBAL_ACTIONS = MappingProxyType({
    "set_global_motor_auto": "auto",
    "set_global_fw_time": "set_fw_time",
    "set_global_re_time": "set_re_time",
})


def resolve_control(method: str, params: Any = None) -> ControlTarget:
    """Map an RPC method to the control key and action recorded in history"""
    match = _MOTOR_METHOD.match(method)
    if match:
        return ControlTarget(
            control_key=f"motor_{match.group(1)}",
            action=_MOTOR_ACTIONS[_motor_direction(params)],
            value=_motor_direction(params),
        )

    if method in _GLOBAL_ACTIONS:
        return ControlTarget(control_key="global_motor", action=_GLOBAL_ACTIONS[method], value=params)

    if method.startswith("set_"):
        body = method[len("set_"):]
        for suffix, action in _SUFFIX_ACTIONS:
            if body.endswith(suffix) and len(body) > len(suffix):
                return ControlTarget(control_key=body[:-len(suffix)], action=action, value=params)

    return ControlTarget(control_key=method, action="set", value=params)


# ============================================================
# Display names
# ============================================================

DISPLAY_NAMES: Mapping[str, str] = MappingProxyType({
    "air_temp": "Air temperature",
    "air_humidity": "Air humidity",
    "air_co2": "CO2",
    "air_light": "Light",
    "moisture": "Soil moisture",
    "temp": "Soil temperature",
    "ec": "EC",
    "ph": "pH",
    "n": "Nitrogen (N)",
    "p": "Phosphorus (P)",
    "k": "Potassium (K)",
    "fan_1": "Fan 1",
    "fan_2": "Fan 2",
    "valve_2": "Valve 2",
    "pump_1": "Pump 1",
    "light_1": "Light 1",
    "motor_1": "Motor 1",
    "motor_2": "Motor 2",
    "motor_3": "Motor 3",
    "motor_4": "Motor 4",
    "global_motor": "All motors",
    "wifi_ssid": "WiFi SSID",
    "rssi": "WiFi signal",
    "firmware_version": "Firmware",
    "stats_read_time_ms": "Read time",
})


def display_name(key: str) -> str:
    return DISPLAY_NAMES.get(key, key)
