import json
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from kardex.config import EngineSettings, load_settings
from kardex.core import ConfigurationError
from kardex.main import KardexPlatform, main


def test_defaults():
    settings = EngineSettings()
    assert settings.max_cycle == 10
    assert settings.pass_threshold_raw == Decimal("10.5")
    assert settings.pass_threshold_rounded == 11
    assert settings.min_attendance_percent == 70.0
    assert settings.gated_labels == ["Final", "Final Exam", "Examen Final", "ExamenFinal", "EF"]


def test_load_from_file_with_overrides(tmp_path):
    path = tmp_path / "kardex.json"
    path.write_text(json.dumps({"max_cycle": 8, "log_level": "debug"}))

    settings = load_settings(path, overrides={"allow_score_discard": False})

    assert settings.max_cycle == 8
    assert settings.log_level == "DEBUG"
    assert settings.allow_score_discard is False


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_settings(tmp_path / "missing.json")


def test_file_must_hold_an_object(tmp_path):
    path = tmp_path / "kardex.json"
    path.write_text("[1, 2]")
    with pytest.raises(ConfigurationError):
        load_settings(path)
    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_settings(path)


@pytest.mark.parametrize("overrides", [
    {"min_cycle": 5, "max_cycle": 4},
    {"log_level": "LOUD"},
    {"lock_wait_timeout": 0},
    {"pass_threshold_raw": "25"},
    {"max_cycle": 12},
    {"min_cycle": 11},
    {"weight_tolerance": 0},
])
def test_invalid_values(overrides):
    with pytest.raises(ConfigurationError) as excinfo:
        load_settings(overrides=overrides)
    assert excinfo.value.details['errors']


def test_platform_accepts_a_dict():
    platform = KardexPlatform({"max_cycle": 6})
    assert platform.settings.max_cycle == 6
    assert platform.notification_sink is not None


def test_cli_prints_settings(capsys):
    assert main([]) == 0
    output = json.loads(capsys.readouterr().out)
    assert output["settings"]["max_cycle"] == 10
    assert output["default_scheme"][0]["label"] == "Midterm1"


def test_cycle_cap_cannot_be_raised():
    with pytest.raises(PydanticValidationError):
        EngineSettings(max_cycle=15)


def test_cli_rejects_bad_config(tmp_path, capsys):
    path = tmp_path / "kardex.json"
    path.write_text(json.dumps({"max_cycle": 0}))
    assert main(["--config", str(path)]) == 2
    assert json.loads(capsys.readouterr().err)["error"] == "configuration_error"


def test_cli_demo(capsys):
    assert main(["--demo", "--log-level", "warning"]) == 0
    assert "Demo completed" in capsys.readouterr().out
