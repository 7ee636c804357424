from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

import yaml

import rdma_device_plugin.defaults as defaults
from rdma_device_plugin.errors import ConfigError

log = logging.getLogger(__name__)

CONFIG_ENVAR = "RDMA_DP_CONFIG"


@dataclass
class RegistrationConfig:
    max_attempts: int = defaults.REGISTRATION_MAX_ATTEMPTS
    initial_backoff: float = defaults.REGISTRATION_INITIAL_BACKOFF
    max_backoff: float = defaults.REGISTRATION_MAX_BACKOFF
    timeout: float = defaults.REGISTRATION_TIMEOUT


@dataclass
class DiscoveryConfig:
    # Name of a ConfigMap listing pools. Unset means the static pool list.
    config_map: Optional[str] = None
    namespace: str = defaults.DISCOVERY_NAMESPACE
    key: str = defaults.DISCOVERY_KEY


@dataclass
class PluginConfig:
    resource_namespace: str = defaults.RESOURCE_NAMESPACE
    pools: list = field(default_factory=lambda: list(defaults.POOLS))
    device_count: int = defaults.DEVICE_COUNT
    device_prefix: str = defaults.DEVICE_PREFIX
    host_path: str = defaults.RDMA_DEVICE_DIR
    container_path: str = defaults.RDMA_DEVICE_DIR
    permissions: str = defaults.RDMA_PERMISSIONS
    kubelet_socket: str = defaults.KUBELET_SOCKET_PATH
    plugin_dir: str = defaults.DEVICE_PLUGIN_DIR
    shutdown_timeout: float = defaults.SHUTDOWN_TIMEOUT
    broadcast_unhealthy_on_stop: bool = False
    log_level: str = "INFO"
    registration: RegistrationConfig = field(default_factory=RegistrationConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)


def _require(where, name, value, kind):
    """
    Raise ConfigError unless value is of the given kind: "str", "int",
    "number", "bool", "optional-str" or "pools".
    """
    if kind == "pools":
        ok = isinstance(value, list) and all(isinstance(p, str) and p for p in value)
        expected = "a list of pool names"
    elif kind == "bool":
        ok = isinstance(value, bool)
        expected = "true or false"
    elif kind == "int":
        ok = isinstance(value, int) and not isinstance(value, bool)
        expected = "an integer"
    elif kind == "number":
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        expected = "a number"
    elif kind == "optional-str":
        ok = value is None or isinstance(value, str)
        expected = "a string"
    else:
        ok = isinstance(value, str)
        expected = "a string"
    if not ok:
        raise ConfigError(f"{where}.{name} must be {expected}, got {value!r}.")


FIELD_KINDS = {
    PluginConfig: {
        "pools": "pools",
        "device_count": "int",
        "shutdown_timeout": "number",
        "broadcast_unhealthy_on_stop": "bool",
    },
    RegistrationConfig: {
        "max_attempts": "int",
        "initial_backoff": "number",
        "max_backoff": "number",
        "timeout": "number",
    },
    DiscoveryConfig: {"config_map": "optional-str"},
}


def _build(cls, data, where):
    if not isinstance(data, dict):
        raise ConfigError(f"{where} must be a mapping, got {type(data).__name__}.")
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown {where} keys: {', '.join(unknown)}")
    kinds = FIELD_KINDS.get(cls, {})
    for name, value in data.items():
        _require(where, name, value, kinds.get(name, "str"))
    return cls(**data)


def from_dict(data: dict) -> PluginConfig:
    data = dict(data)
    registration = _build(RegistrationConfig, data.pop("registration", {}) or {}, "registration")
    discovery = _build(DiscoveryConfig, data.pop("discovery", {}) or {}, "discovery")
    cfg = _build(PluginConfig, data, "config")
    cfg.registration = registration
    cfg.discovery = discovery
    if not cfg.pools and not discovery.config_map:
        raise ConfigError("No pools configured and no discovery ConfigMap set.")
    if cfg.device_count < 0:
        raise ConfigError(f"device_count must not be negative, got {cfg.device_count}.")
    if registration.max_attempts < 1:
        raise ConfigError(f"registration.max_attempts must be at least 1, got {registration.max_attempts}.")
    return cfg


def read_file(path) -> dict:
    log.info(f"Reading configuration from {path}...")
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read configuration {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {path} must be a mapping.")
    return data


def env_overrides(environ=None) -> dict:
    environ = os.environ if environ is None else environ
    overrides = {}
    if environ.get("RESOURCE_NAMESPACE"):
        overrides["resource_namespace"] = environ["RESOURCE_NAMESPACE"]
    if environ.get("RESOURCE_POOLS"):
        overrides["pools"] = [p.strip() for p in environ["RESOURCE_POOLS"].split(",") if p.strip()]
    if environ.get("KUBELET_SOCKET"):
        overrides["kubelet_socket"] = environ["KUBELET_SOCKET"]
    if environ.get("DEVICE_PLUGIN_DIR"):
        overrides["plugin_dir"] = environ["DEVICE_PLUGIN_DIR"]
    if environ.get("DEVICE_COUNT"):
        try:
            overrides["device_count"] = int(environ["DEVICE_COUNT"])
        except ValueError as e:
            raise ConfigError(f"DEVICE_COUNT must be an integer: {e}") from e
    if environ.get("LOG_LEVEL"):
        overrides["log_level"] = environ["LOG_LEVEL"]
    return overrides


def load(path=None, environ=None) -> PluginConfig:
    """
    Load configuration from an optional YAML file, then the environment.
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get(CONFIG_ENVAR)
    data = read_file(path) if path else {}
    data.update(env_overrides(environ))
    return from_dict(data)
