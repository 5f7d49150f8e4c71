"""
Configuration loading for collection runs.

Example config.yml:

    collection:
      workers: 16
      providers: [current_user, uptime, inventory, disk]
      console_sessions: true
    transport:
      type: winrm
      username: ${FLEET_USER}
      password: ${FLEET_PASSWORD}
    sink:
      type: csv
      path: /var/log/hostfacts/inventory.csv
"""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

from hostfacts.models import OUTPUT_MODES
from hostfacts.probe import PROBE_METHODS

DEFAULT_PROVIDERS = ['current_user', 'uptime', 'inventory']

DEFAULT_PUBLIC_IP_SERVICES = [
    'https://api.ipify.org',
    'https://ifconfig.me/ip',
    'https://icanhazip.com',
]

DEFAULT_RDAP_URL = 'https://rdap.org/ip/{ip}'

TRANSPORT_TYPES = ('winrm', 'local')
SINK_TYPES = ('none', 'console', 'csv', 'jsonl', 'postgres')


class ConfigError(Exception):
    """Configuration validation error"""
    pass


@dataclass
class CollectionConfig:
    workers: int = 8
    providers: List[str] = field(default_factory=lambda: list(DEFAULT_PROVIDERS))
    console_sessions: bool = False
    output: str = 'records'
    json_depth: int = 4


@dataclass
class ProbeConfig:
    method: str = 'ping'
    timeout: float = 1.0
    port: int = 5985


@dataclass
class TransportConfig:
    type: str = 'winrm'
    username: Optional[str] = None
    password: Optional[str] = None
    scheme: str = 'http'
    port: int = 5985
    auth: str = 'ntlm'
    operation_timeout: int = 20
    read_timeout: int = 30


@dataclass
class EventConfig:
    log: str = 'System'
    startup: int = 6005
    shutdown: int = 6006
    user_shutdown: int = 1074
    max_events: int = 20


@dataclass
class SinkConfig:
    type: str = 'none'
    path: Optional[str] = None
    postgres_url: Optional[str] = None


@dataclass
class LookupConfig:
    public_ip_services: List[str] = field(default_factory=lambda: list(DEFAULT_PUBLIC_IP_SERVICES))
    rdap_url: str = DEFAULT_RDAP_URL
    timeout: float = 5.0


@dataclass
class LoggingConfig:
    level: str = 'INFO'
    json: bool = True
    file: Optional[str] = None


@dataclass
class FleetConfig:
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    events: EventConfig = field(default_factory=EventConfig)
    sink: SinkConfig = field(default_factory=SinkConfig)
    lookups: LookupConfig = field(default_factory=LookupConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _expand(value: Any) -> Any:
    """Expand ${VAR} references in strings (recursively in lists)"""
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def _section(data: Dict[str, Any], name: str, cls):
    raw = data.get(name)
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")

    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ConfigError(f"Unknown key(s) in '{name}': {', '.join(unknown)}")

    return cls(**{key: _expand(value) for key, value in raw.items()})


def _require_int(value: Any, name: str, minimum: int = 0) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ConfigError(f"{name} must be an integer >= {minimum}, got {value!r}")


def _require_number(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{name} must be a positive number, got {value!r}")


def validate_config(config: FleetConfig) -> FleetConfig:
    """
    Check value ranges and cross-field requirements.

    Raises:
        ConfigError: If any value is invalid
    """
    collection = config.collection
    _require_int(collection.workers, 'collection.workers', minimum=1)
    _require_int(collection.json_depth, 'collection.json_depth', minimum=1)
    if not isinstance(collection.providers, list) or not all(isinstance(p, str) for p in collection.providers):
        raise ConfigError("collection.providers must be a list of provider names")
    if collection.output not in OUTPUT_MODES:
        raise ConfigError(f"Invalid collection.output: {collection.output}. Must be one of {list(OUTPUT_MODES)}")

    if config.probe.method not in PROBE_METHODS:
        raise ConfigError(f"Invalid probe.method: {config.probe.method}. Must be one of {list(PROBE_METHODS)}")
    _require_number(config.probe.timeout, 'probe.timeout')
    _require_int(config.probe.port, 'probe.port', minimum=1)

    transport = config.transport
    if transport.type not in TRANSPORT_TYPES:
        raise ConfigError(f"Invalid transport.type: {transport.type}. Must be one of {list(TRANSPORT_TYPES)}")
    _require_int(transport.port, 'transport.port', minimum=1)
    _require_int(transport.operation_timeout, 'transport.operation_timeout', minimum=1)
    _require_int(transport.read_timeout, 'transport.read_timeout', minimum=1)
    if transport.read_timeout <= transport.operation_timeout:
        raise ConfigError("transport.read_timeout must be greater than transport.operation_timeout")

    events = config.events
    for name in ('startup', 'shutdown', 'user_shutdown'):
        _require_int(getattr(events, name), f'events.{name}')
    _require_int(events.max_events, 'events.max_events', minimum=1)

    sink = config.sink
    if sink.type not in SINK_TYPES:
        raise ConfigError(f"Invalid sink.type: {sink.type}. Must be one of {list(SINK_TYPES)}")
    if sink.type in ('csv', 'jsonl') and not sink.path:
        raise ConfigError(f"sink.path is required for sink type '{sink.type}'")
    if sink.type == 'postgres' and not sink.postgres_url:
        raise ConfigError("sink.postgres_url is required for sink type 'postgres'")

    if not config.lookups.public_ip_services:
        raise ConfigError("lookups.public_ip_services must list at least one service")
    _require_number(config.lookups.timeout, 'lookups.timeout')

    return config


def parse_config(data: Optional[Dict[str, Any]]) -> FleetConfig:
    """Build a validated FleetConfig from already-parsed YAML data"""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    known = {f.name for f in fields(FleetConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown section(s): {', '.join(unknown)}")

    try:
        config = FleetConfig(**{
            f.name: _section(data, f.name, f.default_factory)
            for f in fields(FleetConfig)
        })
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}")

    return validate_config(config)


def load_config(config_path: str) -> FleetConfig:
    """
    Parse and validate a YAML configuration file

    Args:
        config_path: Path to config.yml

    Returns:
        FleetConfig: Validated configuration

    Raises:
        ConfigError: If the file is missing, not YAML, or invalid
    """
    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}")

    return parse_config(data)
