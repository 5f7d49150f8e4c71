"""
Fact providers: pluggable units that each retrieve one category of data.

Providers are registered in a fixed order. That order is the order their
fields appear in a HostRecord and therefore the column order of tabular
output.
"""

import ipaddress
import logging
import re
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from hostfacts.config import ConfigError
from hostfacts.models import Facts, ProviderFailure, ProviderResult, utc_now

logger = logging.getLogger(__name__)

NOT_AVAILABLE = 'N/A'
UNKNOWN = 'Unknown'
UNKNOWN_MODEL = 'Unknown Model'
UNAVAILABLE = 'Unavailable'

GB = 1024 ** 3
KB_PER_GB = 1024 ** 2

LOCAL_FIXED_DISK = 3

# D3DKMDT_VIDEO_OUTPUT_TECHNOLOGY values reported by WmiMonitorConnectionParams
CONNECTION_TYPES: Dict[int, str] = {
    0: 'VGA',
    1: 'S-Video',
    2: 'Composite',
    3: 'Component',
    4: 'DVI',
    5: 'HDMI',
    6: 'LVDS',
    8: 'D-Jpn',
    9: 'SDI',
    10: 'DisplayPort',
    11: 'DisplayPort (Embedded)',
    12: 'UDI',
    13: 'UDI (Embedded)',
    14: 'SDTV Dongle',
    15: 'Miracast',
    16: 'Indirect Wired',
    2147483648: 'Internal',
}

_PS_JSON_DATE = re.compile(r'^/Date\((-?\d+)\)/$')


def describe_error(error: Exception) -> str:
    """Short failure text for metadata; falls back to the exception type"""
    message = str(error).strip()
    return message or type(error).__name__


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a remote timestamp into an aware datetime.

    Accepts datetimes, ISO-8601 strings and the legacy PowerShell
    "/Date(ms)/" form. Naive values are taken as UTC. Returns None for
    anything unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        match = _PS_JSON_DATE.match(text)
        if match:
            return datetime.fromtimestamp(int(match.group(1)) / 1000, timezone.utc)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def as_list(value: Any) -> List[Any]:
    """ConvertTo-Json collapses one-element arrays; undo that"""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def text_or(value: Any, default: str) -> str:
    text = str(value).strip() if value is not None else ''
    return text or default


def decode_char_array(values: Any) -> str:
    """
    Decode a WMI numeric character array (e.g. WmiMonitorID.SerialNumberID).

    Non-positive entries are padding and are dropped before conversion.
    """
    if values is None:
        return ''
    if isinstance(values, str):
        return values.strip()

    chars = []
    for value in as_list(values):
        code = as_int(value)
        if code is None or code <= 0:
            continue
        try:
            chars.append(chr(code))
        except (ValueError, OverflowError):
            continue
    return ''.join(chars).strip()


def connection_label(code: Any) -> str:
    """Human readable monitor connection type; 'Unknown' for unmapped codes"""
    value = as_int(code)
    if value is None or value < 0:
        return UNKNOWN
    return CONNECTION_TYPES.get(value, UNKNOWN)


@dataclass(frozen=True)
class EventIds:
    """System log event ids used for startup/shutdown correlation"""
    startup: int = 6005
    shutdown: int = 6006
    user_shutdown: int = 1074


@dataclass
class ProviderSettings:
    """Construction-time options shared by the built-in providers"""
    console_sessions: bool = False
    event_ids: EventIds = field(default_factory=EventIds)
    event_log: str = 'System'
    max_events: int = 20
    clock: Callable[[], datetime] = utc_now


class FactProvider(ABC):
    """Base class for fact providers"""

    name: str = ''
    fields: Tuple[str, ...] = ()

    def __init__(self, transport):
        self.transport = transport

    def query(self, host: str, capability: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.transport.query(host, capability, params)

    @abstractmethod
    def collect(self, host: str) -> Dict[str, Any]:
        """Return this provider's fields for host; raise on failure"""
        pass


def run_provider(provider: FactProvider, host: str) -> ProviderResult:
    """Run one provider, turning any exception into a failure descriptor"""
    try:
        fields = provider.collect(host)
    except Exception as e:
        detail = describe_error(e)
        logger.warning(
            f"Provider {provider.name} failed on {host}: {detail}",
            extra={'context': {'host': host, 'provider': provider.name}}
        )
        return ProviderResult(
            provider=provider.name,
            host=host,
            failure=ProviderFailure(provider=provider.name, host=host, error=detail)
        )

    warnings = list(getattr(fields, 'warnings', []))
    for warning in warnings:
        logger.warning(
            f"Partial failure in {warning.provider} on {host}: {warning.error}",
            extra={'context': {'host': host, 'provider': provider.name}}
        )
    return ProviderResult(provider=provider.name, host=host, fields=dict(fields or {}), warnings=warnings)


def session_users(sessions: Iterable[Dict[str, Any]]) -> str:
    """Comma-joined, de-duplicated usernames in session order"""
    names: List[str] = []
    for session in sessions:
        name = str(session.get('UserName') or '').strip().lstrip('>')
        if name and name not in names:
            names.append(name)
    return ', '.join(names)


class CurrentUserProvider(FactProvider):
    """Primary logged-on account, optionally with console session users"""

    name = 'current_user'

    def __init__(self, transport, console_sessions: bool = False):
        super().__init__(transport)
        self.console_sessions = console_sessions
        self.fields = ('CurrentUser', 'ConsoleSessions') if console_sessions else ('CurrentUser',)

    def collect(self, host: str) -> Dict[str, Any]:
        data = self.query(host, 'current_user') or {}
        facts = Facts(CurrentUser=text_or(data.get('UserName'), NOT_AVAILABLE))

        if self.console_sessions:
            try:
                sessions = as_list(self.query(host, 'sessions'))
                facts['ConsoleSessions'] = session_users(sessions)
            except Exception as e:
                facts['ConsoleSessions'] = None
                facts.warnings.append(
                    ProviderFailure(provider=f'{self.name}.sessions', host=host, error=describe_error(e))
                )
        return facts


@dataclass
class EventSummary:
    """Most recent startup/shutdown evidence from the system log"""
    startup: Optional[datetime] = None
    shutdown: Optional[datetime] = None
    user_shutdown: Optional[Dict[str, Any]] = None

    @property
    def downtime(self):
        if self.startup is None or self.shutdown is None or self.startup < self.shutdown:
            return UNAVAILABLE
        return self.startup - self.shutdown


def correlate_events(events: Sequence[Dict[str, Any]], event_ids: EventIds, max_events: int = 20) -> EventSummary:
    """
    Pick the most recent event of each kind from a newest-first log.

    Only the first max_events records are considered and the first match
    of each kind wins, even when its timestamp cannot be parsed.
    """
    summary = EventSummary()
    seen = set()

    for event in list(events)[:max_events]:
        if not isinstance(event, dict):
            continue
        event_id = as_int(event.get('Id'))
        if event_id == event_ids.startup and 'startup' not in seen:
            seen.add('startup')
            summary.startup = parse_timestamp(event.get('TimeCreated'))
        elif event_id == event_ids.shutdown and 'shutdown' not in seen:
            seen.add('shutdown')
            summary.shutdown = parse_timestamp(event.get('TimeCreated'))
        elif event_id == event_ids.user_shutdown and 'user_shutdown' not in seen:
            seen.add('user_shutdown')
            summary.user_shutdown = event

        if len(seen) == 3:
            break
    return summary


class UptimeProvider(FactProvider):
    """Uptime from boot time plus startup/shutdown correlation from the event log"""

    name = 'uptime'
    fields = ('LastBootUpTime', 'Uptime', 'LastStartup', 'LastShutdown', 'Downtime', 'LastShutdownBy')

    def __init__(
        self,
        transport,
        clock: Callable[[], datetime] = utc_now,
        event_ids: Optional[EventIds] = None,
        event_log: str = 'System',
        max_events: int = 20
    ):
        super().__init__(transport)
        self.clock = clock
        self.event_ids = event_ids or EventIds()
        self.event_log = event_log
        self.max_events = max_events

    def collect(self, host: str) -> Dict[str, Any]:
        data = self.query(host, 'boot_time') or {}
        booted = parse_timestamp(data.get('LastBootUpTime'))
        if booted is None:
            raise ValueError(f"Unreadable boot time: {data.get('LastBootUpTime')!r}")

        events = as_list(self.query(host, 'events', {
            'log': self.event_log,
            'ids': [self.event_ids.startup, self.event_ids.shutdown, self.event_ids.user_shutdown],
            'max_events': self.max_events,
        }))
        summary = correlate_events(events, self.event_ids, self.max_events)

        return {
            'LastBootUpTime': booted,
            'Uptime': self.clock() - booted,
            'LastStartup': summary.startup,
            'LastShutdown': summary.shutdown,
            'Downtime': summary.downtime,
            'LastShutdownBy': self.resolve_actor(host, summary.user_shutdown),
        }

    def resolve_actor(self, host: str, event: Optional[Dict[str, Any]]) -> str:
        """Account behind a user-initiated shutdown, 'Unknown' when it can't be resolved"""
        sid = (event or {}).get('UserId')
        if not sid:
            return UNKNOWN
        try:
            data = self.query(host, 'translate_sid', {'sid': sid}) or {}
        except Exception as e:
            logger.debug(
                f"Could not translate {sid} on {host}: {describe_error(e)}",
                extra={'context': {'host': host, 'provider': self.name}}
            )
            return UNKNOWN
        return text_or(data.get('AccountName'), UNKNOWN)


class InventoryProvider(FactProvider):
    """Base hardware and operating system facts"""

    name = 'inventory'
    fields = ('Manufacturer', 'Model', 'SerialNumber', 'Processor', 'OperatingSystem', 'OSVersion', 'TotalMemoryGB')

    def collect(self, host: str) -> Dict[str, Any]:
        data = self.query(host, 'inventory')
        if not isinstance(data, dict) or not data:
            raise ValueError("No inventory data returned")

        total = as_float(data.get('TotalPhysicalMemory'))
        return {
            'Manufacturer': text_or(data.get('Manufacturer'), UNKNOWN),
            'Model': text_or(data.get('Model'), UNKNOWN),
            'SerialNumber': text_or(data.get('SerialNumber'), NOT_AVAILABLE),
            'Processor': text_or(data.get('Processor'), UNKNOWN),
            'OperatingSystem': text_or(data.get('OSCaption'), UNKNOWN),
            'OSVersion': text_or(data.get('OSVersion'), UNKNOWN),
            'TotalMemoryGB': round(total / GB, 2) if total else None,
        }


class DiskProvider(FactProvider):
    """Local fixed drives only"""

    name = 'disk'
    fields = ('Disks',)

    def collect(self, host: str) -> Dict[str, Any]:
        disks = []
        for disk in as_list(self.query(host, 'disks')):
            if not isinstance(disk, dict) or as_int(disk.get('DriveType')) != LOCAL_FIXED_DISK:
                continue
            size = as_float(disk.get('Size')) or 0.0
            free = as_float(disk.get('FreeSpace')) or 0.0
            disks.append({
                'Drive': text_or(disk.get('DeviceID'), NOT_AVAILABLE),
                'SizeGB': round(size / GB, 2),
                'FreeGB': round(free / GB, 2),
                'FreePercent': round(free / size * 100, 2) if size else None,
            })
        return {'Disks': disks}


class MemoryProvider(FactProvider):
    """Memory utilisation from the OS visible memory counters (reported in KB)"""

    name = 'memory'
    fields = ('MemoryTotalGB', 'MemoryUsedGB', 'MemoryFreeGB', 'MemoryUsedPercent', 'MemoryFreePercent')

    def collect(self, host: str) -> Dict[str, Any]:
        data = self.query(host, 'memory') or {}
        total = as_float(data.get('TotalVisibleMemorySize'))
        free = as_float(data.get('FreePhysicalMemory'))
        if total is None or free is None:
            raise ValueError("Memory counters missing from response")

        used = total - free
        return {
            'MemoryTotalGB': round(total / KB_PER_GB, 2),
            'MemoryUsedGB': round(used / KB_PER_GB, 2),
            'MemoryFreeGB': round(free / KB_PER_GB, 2),
            'MemoryUsedPercent': round(used / total * 100, 2) if total else None,
            'MemoryFreePercent': round(free / total * 100, 2) if total else None,
        }


def first_ipv4(addresses: Iterable[Any]) -> Optional[str]:
    for address in addresses:
        try:
            if ipaddress.ip_address(str(address).strip()).version == 4:
                return str(address).strip()
        except ValueError:
            continue
    return None


class NetworkProvider(FactProvider):
    """IP-enabled network adapters"""

    name = 'network'
    fields = ('IPAddress', 'NetworkAdapters')

    def collect(self, host: str) -> Dict[str, Any]:
        adapters = []
        primary = None
        for adapter in as_list(self.query(host, 'network')):
            if not isinstance(adapter, dict):
                continue
            addresses = [str(a) for a in as_list(adapter.get('IPAddress')) if a]
            if primary is None:
                primary = first_ipv4(addresses)
            adapters.append({
                'Description': text_or(adapter.get('Description'), UNKNOWN),
                'MACAddress': text_or(adapter.get('MACAddress'), NOT_AVAILABLE),
                'IPAddresses': addresses,
                'Gateway': ', '.join(str(g) for g in as_list(adapter.get('DefaultIPGateway')) if g) or NOT_AVAILABLE,
                'DNSServers': ', '.join(str(d) for d in as_list(adapter.get('DNSServerSearchOrder')) if d) or NOT_AVAILABLE,
            })
        return {'IPAddress': primary or NOT_AVAILABLE, 'NetworkAdapters': adapters}


class MonitorProvider(FactProvider):
    """Attached displays with decoded identity and connection type"""

    name = 'monitors'
    fields = ('MonitorCount', 'Monitors')

    def collect(self, host: str) -> Dict[str, Any]:
        monitors = as_list(self.query(host, 'monitors'))

        connections: Dict[str, Any] = {}
        try:
            for conn in as_list(self.query(host, 'monitor_connections')):
                if isinstance(conn, dict) and conn.get('InstanceName'):
                    connections[conn['InstanceName']] = conn.get('VideoOutputTechnology')
        except Exception as e:
            # connection types degrade to 'Unknown' below
            logger.debug(
                f"Monitor connection query failed on {host}: {describe_error(e)}",
                extra={'context': {'host': host, 'provider': self.name}}
            )

        results = []
        for monitor in monitors:
            if not isinstance(monitor, dict):
                continue
            results.append({
                'Manufacturer': decode_char_array(monitor.get('ManufacturerName')) or UNKNOWN,
                'Model': decode_char_array(monitor.get('UserFriendlyName')) or UNKNOWN_MODEL,
                'SerialNumber': decode_char_array(monitor.get('SerialNumberID')) or NOT_AVAILABLE,
                'ConnectionType': connection_label(connections.get(monitor.get('InstanceName'))),
            })
        return {'MonitorCount': len(results), 'Monitors': results}


ProviderFactory = Callable[[Any, ProviderSettings], FactProvider]


class ProviderRegistry:
    """Ordered name -> factory map; build() preserves registration order"""

    def __init__(self):
        self._factories: 'OrderedDict[str, Tuple[ProviderFactory, str]]' = OrderedDict()

    def register(self, name: str, factory: ProviderFactory, description: str = '') -> None:
        if name in self._factories:
            raise ValueError(f"Provider already registered: {name}")
        self._factories[name] = (factory, description)

    def names(self) -> List[str]:
        return list(self._factories)

    def description(self, name: str) -> str:
        return self._factories[name][1]

    def __contains__(self, name: str) -> bool:
        return name in self._factories

    def build(self, enabled: Iterable[str], transport, settings: Optional[ProviderSettings] = None) -> List[FactProvider]:
        """
        Instantiate the enabled providers in registration order.

        Raises ConfigError for names that are not registered.
        """
        enabled = list(enabled)
        unknown = [n for n in enabled if n not in self._factories]
        if unknown:
            raise ConfigError(f"Unknown provider(s): {', '.join(unknown)}. Available: {self.names()}")

        settings = settings or ProviderSettings()
        return [
            factory(transport, settings)
            for name, (factory, _) in self._factories.items()
            if name in enabled
        ]


def default_registry() -> ProviderRegistry:
    """Registry with the built-in providers in their canonical order"""
    registry = ProviderRegistry()
    registry.register(
        'current_user',
        lambda t, s: CurrentUserProvider(t, console_sessions=s.console_sessions),
        'Logged-on user and optional console sessions'
    )
    registry.register(
        'uptime',
        lambda t, s: UptimeProvider(t, clock=s.clock, event_ids=s.event_ids,
                                    event_log=s.event_log, max_events=s.max_events),
        'Uptime and last startup/shutdown from the event log'
    )
    registry.register('inventory', lambda t, s: InventoryProvider(t), 'Serial, model, processor, OS, memory size')
    registry.register('disk', lambda t, s: DiskProvider(t), 'Local fixed drive capacity')
    registry.register('memory', lambda t, s: MemoryProvider(t), 'Memory utilisation')
    registry.register('network', lambda t, s: NetworkProvider(t), 'IP-enabled network adapters')
    registry.register('monitors', lambda t, s: MonitorProvider(t), 'Attached displays')
    return registry
