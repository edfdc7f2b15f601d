"""Unit tests for configuration loading.

Tests cover:
- Boolean parsing (_parse_bool)
- YAML file layout
- Environment variable overrides
- Validation
"""

from pathlib import Path

import pytest

from tm_controller.config import (
    ControllerConfig,
    _parse_bool,
    load_config,
    load_config_file,
    validate_config,
)

CONFIG_YAML = """\
namespace: fleet-system
workers: 8
reconcile_timeout_seconds: 30
backoff:
  base_seconds: 2
  max_seconds: 120
azure:
  subscription_id: sub-1
  resource_group: rg-1
  api_version: "2018-08-01"
  verify_tls: false
"""


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "tm-controller.yaml"
    path.write_text(CONFIG_YAML)
    return path


def valid_config(**overrides) -> ControllerConfig:
    config = ControllerConfig(
        azure_subscription_id="sub-1", azure_resource_group="rg-1", azure_access_token="t"
    )
    for name, value in overrides.items():
        setattr(config, name, value)
    return config


# =============================================================================
# Boolean Parsing Tests
# =============================================================================


@pytest.mark.parametrize("value", ["1", "true", "TRUE", "yes", "y", "on", True])
def test_parse_bool_truthy(value) -> None:
    assert _parse_bool(value) is True


@pytest.mark.parametrize("value", ["0", "false", "no", "off", "", False])
def test_parse_bool_falsy(value) -> None:
    assert _parse_bool(value) is False


def test_parse_bool_none_uses_default() -> None:
    assert _parse_bool(None, default=False) is False


# =============================================================================
# Loading Tests
# =============================================================================


def test_defaults_without_file_or_env(tmp_path: Path) -> None:
    config = load_config(str(tmp_path / "missing.yaml"), environ={})

    assert config == ControllerConfig()


def test_load_config_file_flattens_sections(config_file: Path) -> None:
    assert load_config_file(str(config_file)) == {
        "namespace": "fleet-system",
        "workers": 8,
        "reconcile_timeout_seconds": 30,
        "backoff_base_seconds": 2,
        "backoff_max_seconds": 120,
        "azure_subscription_id": "sub-1",
        "azure_resource_group": "rg-1",
        "api_version": "2018-08-01",
        "verify_tls": False,
    }


def test_load_config_from_file(config_file: Path) -> None:
    config = load_config(str(config_file), environ={})

    assert config.namespace == "fleet-system"
    assert config.workers == 8
    assert config.reconcile_timeout_seconds == 30.0
    assert config.backoff_base_seconds == 2.0
    assert config.azure_subscription_id == "sub-1"
    assert config.api_version == "2018-08-01"
    assert config.verify_tls is False


def test_environment_overrides_file(config_file: Path) -> None:
    config = load_config(
        str(config_file),
        environ={"WORKERS": "2", "AZURE_RESOURCE_GROUP": "rg-env", "ARM_VERIFY_TLS": "true"},
    )

    assert config.workers == 2
    assert config.azure_resource_group == "rg-env"
    assert config.verify_tls is True
    assert config.namespace == "fleet-system"


def test_access_token_file_from_environment_and_file(tmp_path: Path) -> None:
    path = tmp_path / "tm-controller.yaml"
    path.write_text("azure:\n  access_token_file: /var/run/secrets/arm/token\n")

    from_file = load_config(str(path), environ={})
    from_env = load_config(str(path), environ={"AZURE_ACCESS_TOKEN_FILE": "/tmp/token"})

    assert from_file.azure_access_token_file == "/var/run/secrets/arm/token"
    assert from_env.azure_access_token_file == "/tmp/token"


def test_validate_accepts_token_file_without_token() -> None:
    assert validate_config(valid_config(azure_access_token="", azure_access_token_file="/tmp/token")) == []


def test_config_path_from_environment(config_file: Path) -> None:
    config = load_config(environ={"TM_CONTROLLER_CONFIG": str(config_file)})

    assert config.workers == 8


def test_empty_environment_values_are_ignored(config_file: Path) -> None:
    config = load_config(str(config_file), environ={"WATCH_NAMESPACE": ""})

    assert config.namespace == "fleet-system"


def test_invalid_number_keeps_default(tmp_path: Path) -> None:
    config = load_config(str(tmp_path / "missing.yaml"), environ={"WORKERS": "many"})

    assert config.workers == 4


def test_modes_are_normalized(tmp_path: Path) -> None:
    config = load_config(
        str(tmp_path / "missing.yaml"), environ={"SYNC_MODE": "ONCE", "LOG_LEVEL": "debug"}
    )

    assert config.sync_mode == "once"
    assert config.log_level == "DEBUG"


def test_malformed_file_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("workers: [unclosed\n")

    assert load_config_file(str(path)) == {}


def test_non_mapping_file_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")

    assert load_config_file(str(path)) == {}


# =============================================================================
# Validation Tests
# =============================================================================


def test_validate_accepts_complete_config() -> None:
    assert validate_config(valid_config()) == []


def test_validate_requires_azure_coordinates() -> None:
    errors = validate_config(ControllerConfig())

    assert "AZURE_SUBSCRIPTION_ID is required" in errors
    assert "AZURE_RESOURCE_GROUP is required" in errors


@pytest.mark.parametrize(
    "overrides",
    [
        {"sync_mode": "poll"},
        {"workers": 0},
        {"reconcile_timeout_seconds": 0},
        {"backoff_base_seconds": 0},
        {"backoff_base_seconds": 10, "backoff_max_seconds": 5},
    ],
)
def test_validate_rejects_bad_values(overrides) -> None:
    assert len(validate_config(valid_config(**overrides))) == 1
