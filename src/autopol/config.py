# src/autopol/config.py
"""
Configuration loading.

Settings come from a YAML file validated by pydantic schemas, with a few
environment variables taking precedence:

    AUTOPOL_CONFIG   path of the YAML file
    HUBBLE_SERVER    hubble relay address
    CLUSTER_NAME     cluster name stamped on network logs
    AUTOPOL_TRIGGER  minimum buffered flows before a discovery cycle runs
"""
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, validator

from .errors import ConfigError
from .utils.logging import setup_logger

logger = setup_logger(__name__)

DEFAULT_CONFIG_PATH = "config/autopol.yaml"


class HubbleConfig(BaseModel):
    enabled: bool = True
    server: str = "localhost:4245"
    use_kubectl: bool = False
    kubectl_namespace: str = "kube-system"
    kubectl_target: str = "ds/cilium"
    since: Optional[str] = None
    kubeconfig: Optional[str] = None


class DiscoveryConfig(BaseModel):
    trigger: int = Field(default=100)
    drop_on_stop: bool = True
    interval: int = Field(default=60, description="Seconds between discovery cycles, 0 disables")
    engine: Optional[str] = Field(default=None, description="module:callable producing policies from network logs")

    @validator('trigger')
    def validate_trigger(cls, v):
        if v < 1:
            raise ValueError("trigger must be at least 1")
        return v

    @validator('interval')
    def validate_interval(cls, v):
        if v < 0:
            raise ValueError("interval must not be negative")
        return v


class DnsConfig(BaseModel):
    service_name: str = "kube-dns"
    namespace: str = "kube-system"


class OutputConfig(BaseModel):
    api_version: str = "cilium.io/v2"
    kind: str = "CiliumNetworkPolicy"
    export_dir: Optional[str] = None

    @validator('kind')
    def validate_kind(cls, v):
        if v not in ("CiliumNetworkPolicy", "CiliumClusterwideNetworkPolicy"):
            raise ValueError(f"unsupported policy kind: {v}")
        return v


class MetricsConfig(BaseModel):
    enabled: bool = False
    port: int = 9090

    @validator('port')
    def validate_port(cls, v):
        if not 0 < v < 65536:
            raise ValueError(f"invalid port: {v}")
        return v


class AuditConfig(BaseModel):
    log_dir: Optional[str] = "logs/audit"


class AutopolConfig(BaseModel):
    """Pydantic schema for the autopol configuration file"""
    cluster_name: str = "default"
    hubble: HubbleConfig = Field(default_factory=HubbleConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    dns: DnsConfig = Field(default_factory=DnsConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)


def _apply_env_overrides(data: dict) -> dict:
    if os.getenv("HUBBLE_SERVER"):
        data.setdefault("hubble", {})["server"] = os.environ["HUBBLE_SERVER"]
    if os.getenv("CLUSTER_NAME"):
        data["cluster_name"] = os.environ["CLUSTER_NAME"]
    if os.getenv("AUTOPOL_TRIGGER"):
        data.setdefault("discovery", {})["trigger"] = os.environ["AUTOPOL_TRIGGER"]
    return data


def load_config(path: Optional[str] = None) -> AutopolConfig:
    """
    Load configuration from YAML file.

    Without an explicit path, AUTOPOL_CONFIG is used, then the default file
    when it exists, then built-in defaults.
    """
    explicit = path or os.getenv("AUTOPOL_CONFIG")
    config_path = Path(explicit or DEFAULT_CONFIG_PATH)

    data = {}
    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration in {config_path} must be a mapping")
        logger.info(f"Loaded configuration from {config_path}")
    elif explicit:
        raise ConfigError(f"Configuration file not found: {config_path}")
    else:
        logger.info("No configuration file, using defaults")

    data = _apply_env_overrides(data)

    try:
        return AutopolConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}")
