from dataclasses import replace

import pytest

from airflow_balancer.dab import (
    DEFAULT_SETTINGS,
    DabSettings,
    adjust_for_minimum_airflow,
    apply_change_dampening,
    calculate_longest_minutes_to_target,
    calculate_open_percentage_for_all_rooms,
    calculate_room_change_rate,
    calculate_vent_open_percentage,
    expand_room_percentages,
    finalize_vent_percent,
    finalize_with_minimum_airflow,
    has_room_reached_setpoint,
    normalize_hvac_action,
    resolve_global_setpoint,
    rolling_average,
    round_big_decimal,
    round_to_nearest_multiple,
)
from airflow_balancer.models import RoomState

FULL_CLOSE = replace(DEFAULT_SETTINGS, allow_full_close=True)


def _rooms(rate_and_temp, setpoint):
    return {
        room_id: RoomState(
            room_id=room_id,
            vent_ids=(room_id,),
            active=values["active"],
            temp=values["temp"],
            setpoint=setpoint,
            rate=values["rate"],
        )
        for room_id, values in rate_and_temp.items()
    }


SURVEY = {
    "1222bc5e": {"rate": 0.123, "temp": 26.444, "active": True},
    "00f65b12": {"rate": 0.070, "temp": 25.784, "active": True},
    "d3f411b2": {"rate": 0.035, "temp": 26.277, "active": True},
    "472379e6": {"rate": 0.318, "temp": 24.892, "active": True},
    "6ee4c352": {"rate": 0.318, "temp": 24.892, "active": True},
    "c5e770b6": {"rate": 0.009, "temp": 23.666, "active": True},
    "e522531c": {"rate": 0.061, "temp": 25.444, "active": False},
    "acb0b95d": {"rate": 0.432, "temp": 25.944, "active": True},
}

VENT_TEMPS = {
    "122127": 80,
    "122129": 70,
    "122128": 75,
    "122133": 72,
    "129424": 78,
    "122132": 79,
    "122131": 76,
}


def test_has_room_reached_setpoint():
    assert has_room_reached_setpoint("cooling", 80, 75) is True
    assert has_room_reached_setpoint("cooling", 80, 81) is False
    assert has_room_reached_setpoint("heating", 70, 69) is False
    assert has_room_reached_setpoint("heating", 70, 70.01) is True


def test_round_to_nearest_multiple():
    assert round_to_nearest_multiple(12.4, 5) == 10
    assert round_to_nearest_multiple(12.5, 5) == 15
    assert round_to_nearest_multiple(95.6, 5) == 95
    assert round_to_nearest_multiple(97.5, 5) == 100
    assert round_to_nearest_multiple(-12.4, 5) == -10
    assert round_to_nearest_multiple(-12.6, 5) == -15


def test_rolling_average():
    assert rolling_average(10, 15, 1, 2) == 12.5
    assert rolling_average(10, 15, 0.5, 2) == 11.25
    assert rolling_average(10, 15, 0, 2) == 10
    assert rolling_average(10, 5, 1, 2) == 7.5
    assert rolling_average(10, 5, 0.5, 2) == 8.75
    assert rolling_average(10, 5, 1, 1000) == pytest.approx(9.995)
    assert rolling_average(10, 5, 1, 0) == 0
    assert rolling_average(0, 15, 1, 2) == 15
    assert rolling_average(None, 10, 1, 2) == 10


def test_calculate_room_change_rate_values():
    assert round_big_decimal(calculate_room_change_rate(20, 30, 5.0, 100, 0.03), 3) == 1.0
    assert round_big_decimal(calculate_room_change_rate(20, 20.1, 60.0, 100, 0.03), 3) == 0.056
    assert calculate_room_change_rate(20.768, 21, 5, 25, 0.03) is None
    assert round_big_decimal(calculate_room_change_rate(19, 21, 5.2, 70, 0.03), 3) == 1.429
    assert round_big_decimal(calculate_room_change_rate(19, 29, 10, 100, 0.03), 3) == 1.0


def test_calculate_room_change_rate_edge_cases():
    assert calculate_room_change_rate(0, 0, 0, 4, 0.03) is None
    assert calculate_room_change_rate(20, 25, -5, 100, 0.03) is None
    assert calculate_room_change_rate(20, 25, 0.5, 100, 0.03) is None
    assert calculate_room_change_rate(20, 22, 3, 100, 0.03) is None
    assert calculate_room_change_rate(20, 21, 10, 0, 0.5) is None
    assert calculate_room_change_rate(None, 21, 10, 50, 0.5) is None


def test_calculate_vent_open_percentage_values():
    expected_vals = [35.518, 65.063, 86.336, 12.625, 14.249, 10.324, 9.961, 32.834, 100.0]
    ret_vals = [
        calculate_vent_open_percentage("", 65, 70, "heating", 0.715, 12.6),
        calculate_vent_open_percentage("", 61, 70, "heating", 0.550, 20),
        calculate_vent_open_percentage("", 98, 82, "cooling", 0.850, 20),
        calculate_vent_open_percentage("", 84, 82, "cooling", 0.950, 20),
        calculate_vent_open_percentage("", 85, 82, "cooling", 0.950, 20),
        calculate_vent_open_percentage("", 86, 82, "cooling", 2.5, 90),
        calculate_vent_open_percentage("", 87, 82, "cooling", 2.5, 900),
        calculate_vent_open_percentage("", 87, 85, "cooling", 0.384, 10),
        calculate_vent_open_percentage("", 87, 85, "cooling", 0, 10),
    ]
    for expected, actual in zip(expected_vals, ret_vals, strict=True):
        assert actual == pytest.approx(expected, abs=0.01)


def test_vent_open_percentage_uses_configured_constants():
    settings = replace(DEFAULT_SETTINGS, base_const=0.2)
    default = calculate_vent_open_percentage("", 84, 82, "cooling", 0.950, 20)
    tuned = calculate_vent_open_percentage("", 84, 82, "cooling", 0.950, 20, settings)
    assert tuned > default


def test_calculate_open_percentage_for_all_rooms():
    expected = {
        "1222bc5e": 23.554,
        "00f65b12": 31.608,
        "d3f411b2": 100.0,
        "472379e6": 11.488,
        "6ee4c352": 11.488,
        "c5e770b6": 0.0,
        "e522531c": 0.0,
        "acb0b95d": 12.130,
    }
    result, decisions = calculate_open_percentage_for_all_rooms(
        _rooms(SURVEY, 23.666), "cooling", 60, FULL_CLOSE
    )
    for key, val in expected.items():
        assert result[key] == pytest.approx(val, abs=0.01)
    reasons = {decision.room_id: decision.reason for decision in decisions}
    assert reasons["c5e770b6"] == "at_setpoint"
    assert reasons["e522531c"] == "inactive"
    assert reasons["1222bc5e"] == "computed"


def test_open_percentages_respect_floor():
    result, _ = calculate_open_percentage_for_all_rooms(
        _rooms(SURVEY, 23.666), "cooling", 60
    )
    assert result["c5e770b6"] == 10.0
    assert result["e522531c"] == 10.0
    assert min(result.values()) >= DEFAULT_SETTINGS.floor_percent


def test_open_percentage_inactive_when_not_closing():
    rooms = _rooms({"vent1": {"rate": 0.2, "temp": 24.0, "active": False}}, 22.0)
    settings = replace(DEFAULT_SETTINGS, close_inactive_rooms=False)
    result, _ = calculate_open_percentage_for_all_rooms(rooms, "cooling", 30, settings)
    assert result["vent1"] > 10


def test_open_percentage_unknown_rate_and_missing_temperature():
    rooms = _rooms(
        {
            "fresh": {"rate": 0.0, "temp": 26.0, "active": True},
            "dark": {"rate": 0.2, "temp": None, "active": True},
        },
        23.0,
    )
    result, decisions = calculate_open_percentage_for_all_rooms(rooms, "cooling", 30)
    assert result == {"fresh": 100.0}
    assert [d.reason for d in decisions if d.room_id == "dark"] == ["missing_temperature"]


def test_calculate_longest_minutes_to_target():
    rooms = _rooms(SURVEY, 23.666)
    assert calculate_longest_minutes_to_target(rooms, "cooling", 72) == pytest.approx(72)


def test_longest_minutes_with_zero_rate():
    rooms = _rooms({"vent1": {"rate": 0.0, "temp": 24.0, "active": True}}, 22.0)
    assert calculate_longest_minutes_to_target(rooms, "cooling", 60) is None


def test_longest_minutes_all_rooms_at_setpoint():
    rooms = _rooms({"vent1": {"rate": 0.1, "temp": 21.0, "active": True}}, 22.0)
    assert calculate_longest_minutes_to_target(rooms, "cooling", 60) is None


def test_expand_room_percentages_by_weight():
    rooms = {
        "den": RoomState("den", ("a", "b"), True, 25.0, 22.0, 0.1, {"a": 1.5, "b": 0.5}),
        "hall": RoomState("hall", ("c",), True, 25.0, 22.0, 0.1),
    }
    result = expand_room_percentages(rooms, {"den": 40.0, "hall": 60.0})
    assert result == {"a": 60.0, "b": 20.0, "c": 60.0}


def test_adjust_for_minimum_airflow_single_vent():
    result = adjust_for_minimum_airflow({"122127": 80}, "cooling", {"122127": 5}, 0)
    assert result["122127"] == pytest.approx(30.5, abs=0.01)


def test_adjust_for_minimum_airflow_multiple_vents():
    percent_per_vent = {
        "122127": 10,
        "122129": 5,
        "122128": 10,
        "122133": 25,
        "129424": 100,
        "122132": 5,
        "122131": 5,
    }
    expected = {
        "122127": 26.33823529360,
        "122129": 5.16176470640,
        "122128": 18.25,
        "122133": 28.08823529350,
        "129424": 100,
        "122132": 18.38235294050,
        "122131": 13.97058823550,
    }
    result = adjust_for_minimum_airflow(VENT_TEMPS, "cooling", percent_per_vent, 0)
    for key, val in expected.items():
        assert result[key] == pytest.approx(val, abs=0.01)


def test_adjust_for_minimum_airflow_with_conventional():
    percent_per_vent = {
        "122127": 0,
        "122129": 5,
        "122128": 0,
        "122133": 5,
        "129424": 20,
        "122132": 0,
        "122131": 5,
    }
    expected = {
        "122127": 23.76470588160,
        "122129": 5.23529411840,
        "122128": 12.00,
        "122133": 9.94117646960,
        "129424": 39.05882353040,
        "122132": 21.41176470480,
        "122131": 19.35294117680,
    }
    result = adjust_for_minimum_airflow(VENT_TEMPS, "cooling", percent_per_vent, 4)
    for key, val in expected.items():
        assert result[key] == pytest.approx(val, abs=0.01)


def test_adjust_for_minimum_airflow_no_vents():
    assert adjust_for_minimum_airflow({}, "cooling", {}, 5) == {}


def test_adjust_for_minimum_airflow_already_sufficient():
    percents = {"a": 40.0, "b": 35.0}
    assert adjust_for_minimum_airflow({"a": 22, "b": 23}, "cooling", dict(percents), 0) == percents


def test_adjust_for_minimum_airflow_temperature_proportions():
    result = adjust_for_minimum_airflow(
        {"hotRoom": 30, "coldRoom": 15}, "cooling", {"hotRoom": 5, "coldRoom": 5}, 0
    )
    assert result["hotRoom"] > result["coldRoom"]


def test_adjust_for_minimum_airflow_heating_vs_cooling():
    temps = {"room1": 25, "room2": 20}
    cooling_result = adjust_for_minimum_airflow(temps, "cooling", {"room1": 5, "room2": 5}, 0)
    heating_result = adjust_for_minimum_airflow(temps, "heating", {"room1": 5, "room2": 5}, 0)
    assert cooling_result["room1"] > cooling_result["room2"]
    assert heating_result["room2"] > heating_result["room1"]


def test_adjust_for_minimum_airflow_iteration_limit():
    percent_per_vent = {f"vent{i}": 1 for i in range(10)}
    temps = {f"vent{i}": 20 + i for i in range(10)}
    result = adjust_for_minimum_airflow(temps, "cooling", percent_per_vent, 0)
    assert len(result) == 10
    assert all(val > 1 for val in result.values())
    assert all(val <= 100 for val in result.values())


def test_adjust_for_minimum_airflow_default_temps():
    result = adjust_for_minimum_airflow(
        {"vent1": None, "vent2": None}, "cooling", {"vent1": 5, "vent2": 5}, 0
    )
    assert result["vent1"] > 5
    assert result["vent2"] > 5


def test_adjust_for_minimum_airflow_counts_fixed_vents():
    temps = {"a": 22.0, "b": 22.5}
    result = adjust_for_minimum_airflow(temps, "cooling", {"a": 10.0, "b": 10.0}, 0, fixed_percents={"x": 100})
    assert result == {"a": 10.0, "b": 10.0}

    unknown = adjust_for_minimum_airflow(temps, "cooling", {"a": 10.0, "b": 10.0}, 0, fixed_percents={"x": None})
    assert "x" not in unknown
    assert unknown["a"] + unknown["b"] > 59.99


def test_apply_change_dampening_limits_settled_vents():
    targets = {"a": 20.0, "b": 20.0, "c": 90.0}
    current = {"a": 80.0, "b": 80.0, "c": 30.0}
    result = apply_change_dampening(targets, current, {"a", "c"})
    assert result["a"] == pytest.approx(60.0)
    assert result["b"] == 20.0
    assert result["c"] == pytest.approx(37.5)


def test_apply_change_dampening_minimum_step_and_unknown_position():
    result = apply_change_dampening({"a": 50.0, "b": 50.0}, {"a": 0.0, "b": None}, {"a", "b"})
    assert result["a"] == pytest.approx(5.0)
    assert result["b"] == 50.0


def test_finalize_vent_percent():
    assert finalize_vent_percent(12.4) == 10
    assert finalize_vent_percent(97.6) == 100
    assert finalize_vent_percent(3.0) == 10
    assert finalize_vent_percent(3.0, FULL_CLOSE) == 5
    assert finalize_vent_percent(150.0) == 100
    odd_floor = replace(DEFAULT_SETTINGS, min_vent_floor_percent=12)
    assert finalize_vent_percent(11.0, odd_floor) == 15


def test_resolve_global_setpoint():
    assert resolve_global_setpoint("cooling", 23.0, [21.0]) == pytest.approx(22.3)
    assert resolve_global_setpoint("heating", 20.0, []) == pytest.approx(20.7)
    assert resolve_global_setpoint("cooling", None, [21.0, 25.0, None, 22.0]) == 22.0
    assert resolve_global_setpoint("heating", None, [20.0, None, 21.0]) == 20.5
    assert resolve_global_setpoint("cooling", None, []) == DEFAULT_SETTINGS.default_cooling_setpoint
    assert resolve_global_setpoint("heating", None, []) == DEFAULT_SETTINGS.default_heating_setpoint


def test_normalize_hvac_action():
    assert normalize_hvac_action("Cooling") == "cooling"
    assert normalize_hvac_action("pending_heat") == "heating"
    assert normalize_hvac_action("fan") is None
    assert normalize_hvac_action(None) is None


def test_settings_from_options_ignores_bad_values():
    settings = DabSettings.from_options(
        {
            "vent_granularity": "10",
            "min_vent_floor_percent": "nan",
            "allow_full_close": "yes",
            "hvac_mode_override": "turbo",
            "outlier_mode": "reject",
            "conventional_vents": 99,
            "max_change_percent": None,
        }
    )
    assert settings.vent_granularity == 10
    assert settings.min_vent_floor_percent == DEFAULT_SETTINGS.min_vent_floor_percent
    assert settings.allow_full_close is True
    assert settings.floor_percent == 0.0
    assert settings.hvac_mode_override == "auto"
    assert settings.outlier_mode == "reject"
    assert settings.conventional_vents == DEFAULT_SETTINGS.max_standard_vents
    assert settings.max_change_percent == DEFAULT_SETTINGS.max_change_percent


def test_floor_percent_is_bounded():
    assert replace(DEFAULT_SETTINGS, min_vent_floor_percent=80).floor_percent == 50.0
    assert replace(DEFAULT_SETTINGS, min_vent_floor_percent=-5).floor_percent == 0.0


def test_finalize_with_minimum_airflow_steps_up_warmest_vent():
    targets = {"a": 27.4, "b": 27.4, "c": 35.2}
    temps = {"a": 22.0, "b": 22.0, "c": 22.05}

    result = finalize_with_minimum_airflow(targets, temps, "cooling", 0)

    assert result == {"a": 25, "b": 25, "c": 40}
    assert sum(result.values()) / 3 >= DEFAULT_SETTINGS.min_combined_vent_flow


def test_finalize_with_minimum_airflow_counts_fixed_vents():
    assert finalize_with_minimum_airflow({"a": 27.4}, {"a": 22.0}, "cooling", 0, fixed_percents={"x": 10}) == {"a": 50}
    assert finalize_with_minimum_airflow({"a": 27.4}, {"a": 22.0}, "cooling", 0, fixed_percents={"x": 80}) == {"a": 25}


def test_finalize_with_minimum_airflow_leaves_sufficient_flow():
    result = finalize_with_minimum_airflow({"a": 40.2, "b": 29.9}, {"a": 23.0, "b": 22.0}, "heating", 0)
    assert result == {"a": 40, "b": 30}
    assert finalize_with_minimum_airflow({}, {}, "cooling", 0) == {}


def test_open_percentages_from_learned_rates():
    rooms = {
        "A": RoomState(room_id="A", vent_ids=("A",), active=True, temp=25.0, setpoint=22.0, rate=0.5),
        "B": RoomState(room_id="B", vent_ids=("B",), active=True, temp=24.0, setpoint=21.0, rate=0.3),
    }
    longest = calculate_longest_minutes_to_target(rooms, "cooling", 60.0)
    assert longest == pytest.approx(10.0)

    percents, _ = calculate_open_percentage_for_all_rooms(rooms, "cooling", longest)

    assert all(0 <= value <= 100 for value in percents.values())
    assert percents["B"] >= percents["A"]
