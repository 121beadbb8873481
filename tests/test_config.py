import sys

import pytest

from scry.scry_config import CONFIG_ENV_VAR, ScryConfig, load_config


def test_defaults():
    config = ScryConfig()
    assert config.timeout_ms == 1000
    assert (config.max_depth, config.max_array_length, config.max_object_keys) == (10, 100, 50)
    assert config.console_name == "console"
    assert config.python_executable == sys.executable


def test_from_mapping_accepts_kebab_case():
    config = ScryConfig.from_mapping({'timeout-ms': 250, 'max_depth': 3})
    assert config.timeout_ms == 250
    assert config.max_depth == 3


def test_unknown_key_rejected():
    with pytest.raises(ValueError, match="unknown configuration key"):
        ScryConfig.from_mapping({'timeout': 5})


@pytest.mark.parametrize("settings", [
    {'timeout_ms': 0},
    {'timeout_ms': True},
    {'max_array_length': -1},
    {'drain_grace_ms': -1},
    {'console_name': 'not a name'},
])
def test_invalid_values_rejected(settings):
    with pytest.raises(ValueError):
        ScryConfig(**settings)


def test_worker_settings_round_trip():
    config = ScryConfig(max_depth=4, console_name="out")
    restored = ScryConfig.from_mapping(config.worker_settings())
    assert restored.max_depth == 4
    assert restored.console_name == "out"
    assert restored.timeout_ms == ScryConfig().timeout_ms


def test_load_yaml_file(tmp_path):
    path = tmp_path / "scry.yaml"
    path.write_text("timeout-ms: 2500\nmax-object-keys: 5\n", encoding="utf-8")
    config = load_config(path)
    assert config.timeout_ms == 2500
    assert config.max_object_keys == 5


def test_load_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "env.yaml"
    path.write_text("console_name: out\n", encoding="utf-8")
    monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
    assert load_config().console_name == "out"


def test_no_file_means_defaults(monkeypatch, tmp_path):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    assert load_config() == ScryConfig()
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_config(empty) == ScryConfig()


def test_non_mapping_file_rejected(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError, match="expected a mapping"):
        load_config(path)
