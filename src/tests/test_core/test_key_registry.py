import pytest
from greenhouse_gateway.core import key_registry
from greenhouse_gateway.core.key_registry import (
    RPC_CONFIRMATIONS,
    display_name,
    resolve_confirmation,
    resolve_control,
    soil_keys,
)


@pytest.mark.parametrize("direction", [0, 1, 2, 7, "1", None])
def test_motor_rules_never_set_both_directions(direction):
    rules = resolve_confirmation("set_motor_3_status", direction)
    assert [r.attribute for r in rules] == ["motor_3_fw", "motor_3_re"]
    assert not (rules[0].expected_value and rules[1].expected_value)


def test_motor_rules_follow_direction():
    forward = resolve_confirmation("set_motor_1_status", 1)
    reverse = resolve_confirmation("set_motor_1_status", 2)
    stop = resolve_confirmation("set_motor_1_status", 0)
    assert [r.expected_value for r in forward] == [True, False]
    assert [r.expected_value for r in reverse] == [False, True]
    assert [r.expected_value for r in stop] == [False, False]


def test_static_confirmations():
    assert [r.attribute for r in resolve_confirmation("set_fan_1_cmd", 1)] == ["fan_1_cmd"]
    assert [r.attribute for r in resolve_confirmation("set_pump_1_on_time", "06:00")] == ["pump_1_on"]
    assert [r.attribute for r in resolve_confirmation("set_global_re_time", 30)] == ["global_re_time"]
    assert resolve_confirmation("reboot") == []


def test_tables_are_read_only():
    with pytest.raises(TypeError):
        RPC_CONFIRMATIONS["set_fan_1_cmd"] = ()
    with pytest.raises(TypeError):
        key_registry.DISPLAY_NAMES["fan_1"] = "Changed"


def test_soil_keys_range():
    assert soil_keys(3)[0] == "soil3_moisture"
    assert len(key_registry.ALL_SOIL_KEYS) == 70
    with pytest.raises(ValueError):
        soil_keys(11)


@pytest.mark.parametrize("method,params,expected", [
    ("set_fan_1_cmd", 1, ("fan_1", "set", 1)),
    ("set_light_1_auto", True, ("light_1", "auto", True)),
    ("set_pump_1_off_time", "18:00", ("pump_1", "set_off_time", "18:00")),
    ("set_motor_2_status", 2, ("motor_2", "reverse", 2)),
    ("set_motor_4_status", 0, ("motor_4", "stop", 0)),
    ("set_global_fw_time", 45, ("global_motor", "set_fw_time", 45)),
    ("reboot", None, ("reboot", "set", None)),
])
def test_resolve_control(method, params, expected):
    target = resolve_control(method, params)
    assert (target.control_key, target.action, target.value) == expected


def test_display_name_falls_back_to_key():
    assert display_name("fan_1") == "Fan 1"
    assert display_name("mystery_valve") == "mystery_valve"
