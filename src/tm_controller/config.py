"""Controller configuration.

Settings come from an optional YAML file and from environment variables;
environment variables win. Example file:

    namespace: fleet-system
    workers: 4
    reconcile_timeout_seconds: 60
    backoff:
      base_seconds: 1
      max_seconds: 300
    azure:
      subscription_id: 00000000-0000-0000-0000-000000000000
      resource_group: fleet-traffic
      arm_endpoint: https://management.azure.com
      api_version: "2022-04-01"

Environment variables:

    TM_CONTROLLER_CONFIG           Path to the YAML file (default: /config/tm-controller.yaml)
    WATCH_NAMESPACE                Namespace to watch, empty for all (default: "")
    WORKERS                        Concurrent reconcile workers (default: 4)
    RECONCILE_TIMEOUT_SECONDS      Deadline for a single reconcile (default: 60)
    BACKOFF_BASE_SECONDS           First retry delay after a failure (default: 1)
    BACKOFF_MAX_SECONDS            Retry delay cap (default: 300)
    CONFLICT_RETRIES               Immediate retries on write conflicts (default: 5)
    AZURE_SUBSCRIPTION_ID          Subscription holding the traffic manager profiles
    AZURE_RESOURCE_GROUP           Resource group holding the traffic manager profiles
    AZURE_ACCESS_TOKEN             Bearer token for the ARM API
    AZURE_ACCESS_TOKEN_FILE        File holding a rotated bearer token, re-read on every request
    ARM_ENDPOINT                   ARM base URL (default: https://management.azure.com)
    ARM_API_VERSION                Traffic Manager API version (default: 2022-04-01)
    REQUEST_TIMEOUT_SECONDS        Per-call provider timeout (default: 10)
    ARM_VERIFY_TLS                 Verify the ARM endpoint certificate (default: true)
    SYNC_MODE                      "once" or "watch" (default: watch)
    LOG_LEVEL                      DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/config/tm-controller.yaml"

SYNC_MODES = ("once", "watch")


@dataclass
class ControllerConfig:
    namespace: str = ""
    workers: int = 4
    reconcile_timeout_seconds: float = 60.0
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    conflict_retries: int = 5
    azure_subscription_id: str = ""
    azure_resource_group: str = ""
    azure_access_token: str = ""
    azure_access_token_file: str = ""
    arm_endpoint: str = "https://management.azure.com"
    api_version: str = "2022-04-01"
    request_timeout_seconds: float = 10.0
    verify_tls: bool = True
    sync_mode: str = "watch"
    log_level: str = "INFO"


# Environment variable -> config field
ENV_VARS = {
    "WATCH_NAMESPACE": "namespace",
    "WORKERS": "workers",
    "RECONCILE_TIMEOUT_SECONDS": "reconcile_timeout_seconds",
    "BACKOFF_BASE_SECONDS": "backoff_base_seconds",
    "BACKOFF_MAX_SECONDS": "backoff_max_seconds",
    "CONFLICT_RETRIES": "conflict_retries",
    "AZURE_SUBSCRIPTION_ID": "azure_subscription_id",
    "AZURE_RESOURCE_GROUP": "azure_resource_group",
    "AZURE_ACCESS_TOKEN": "azure_access_token",
    "AZURE_ACCESS_TOKEN_FILE": "azure_access_token_file",
    "ARM_ENDPOINT": "arm_endpoint",
    "ARM_API_VERSION": "api_version",
    "REQUEST_TIMEOUT_SECONDS": "request_timeout_seconds",
    "ARM_VERIFY_TLS": "verify_tls",
    "SYNC_MODE": "sync_mode",
    "LOG_LEVEL": "log_level",
}


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _flatten_yaml(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map the nested YAML layout onto config field names."""
    flat: Dict[str, Any] = {}
    for key in ("namespace", "workers", "reconcile_timeout_seconds", "conflict_retries",
                "request_timeout_seconds", "sync_mode", "log_level"):
        if key in data:
            flat[key] = data[key]

    backoff = data.get("backoff") or {}
    if isinstance(backoff, dict):
        if "base_seconds" in backoff:
            flat["backoff_base_seconds"] = backoff["base_seconds"]
        if "max_seconds" in backoff:
            flat["backoff_max_seconds"] = backoff["max_seconds"]

    azure = data.get("azure") or {}
    if isinstance(azure, dict):
        for key in ("subscription_id", "resource_group", "access_token", "access_token_file"):
            if key in azure:
                flat[f"azure_{key}"] = azure[key]
        for key in ("arm_endpoint", "api_version", "verify_tls"):
            if key in azure:
                flat[key] = azure[key]
    return flat


def load_config_file(config_path: str) -> Dict[str, Any]:
    path = Path(config_path)
    if not path.is_file():
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config file {config_path} is not a mapping, ignoring it")
        return {}
    return _flatten_yaml(data)


def _coerce(config: ControllerConfig, values: Dict[str, Any]) -> None:
    types = {f.name: f.type for f in fields(ControllerConfig)}
    for name, raw in values.items():
        if name not in types or raw is None:
            continue
        kind = types[name]
        try:
            if kind == "int":
                value: Any = int(raw)
            elif kind == "float":
                value = float(raw)
            elif kind == "bool":
                value = _parse_bool(raw, default=getattr(config, name))
            else:
                value = str(raw).strip()
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid value for {name}: {raw!r}")
            continue
        setattr(config, name, value)


def load_config(
    config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> ControllerConfig:
    env = os.environ if environ is None else environ
    path = config_path or env.get("TM_CONTROLLER_CONFIG", DEFAULT_CONFIG_PATH)

    config = ControllerConfig()
    _coerce(config, load_config_file(path))
    _coerce(config, {field: env[var] for var, field in ENV_VARS.items() if env.get(var, "") != ""})

    config.sync_mode = config.sync_mode.lower()
    config.log_level = config.log_level.upper()
    return config


def validate_config(config: ControllerConfig) -> List[str]:
    """Return a list of configuration errors, empty when valid."""
    errors = []
    if not config.azure_subscription_id:
        errors.append("AZURE_SUBSCRIPTION_ID is required")
    if not config.azure_resource_group:
        errors.append("AZURE_RESOURCE_GROUP is required")
    if not config.azure_access_token and not config.azure_access_token_file:
        logger.warning(
            "Neither AZURE_ACCESS_TOKEN nor AZURE_ACCESS_TOKEN_FILE is set. "
            "Requests to the ARM API will be unauthenticated."
        )
    if config.sync_mode not in SYNC_MODES:
        errors.append(f"Invalid SYNC_MODE: {config.sync_mode}. Use 'once' or 'watch'")
    if config.workers < 1:
        errors.append("WORKERS must be at least 1")
    if config.reconcile_timeout_seconds <= 0:
        errors.append("RECONCILE_TIMEOUT_SECONDS must be positive")
    if config.backoff_base_seconds <= 0 or config.backoff_max_seconds < config.backoff_base_seconds:
        errors.append("BACKOFF_BASE_SECONDS must be positive and not exceed BACKOFF_MAX_SECONDS")
    return errors
