"""
Transports that answer capability queries for a host.

A capability is a named fact query ("disks", "events", ...). Each transport
returns plain JSON-style data (dicts, lists, strings, numbers) shaped after
the CIM classes the Windows snippets read, so providers never care how the
data travelled.
"""

import getpass
import json
import logging
import platform
import re
import socket
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psutil
import winrm

logger = logging.getLogger(__name__)

# ISO-8601 with offset; fromisoformat() reads it back
PS_DATE_FORMAT = "yyyy-MM-ddTHH:mm:ss.ffffffzzz"
# invariant culture keeps ':' and '-' literal whatever the host locale
PS_DATE_ARGS = "'" + PS_DATE_FORMAT + "', [Globalization.CultureInfo]::InvariantCulture"

# Snippets are %-formatted with validated params; keep '%' out of the PowerShell
PS_SNIPPETS: Dict[str, str] = {
    'current_user': (
        "$cs = Get-CimInstance -ClassName Win32_ComputerSystem; "
        "[pscustomobject]@{UserName = $cs.UserName} | ConvertTo-Json -Compress"
    ),
    'sessions': (
        "$out = (quser 2>$null | Out-String); "
        "[pscustomobject]@{Output = $out} | ConvertTo-Json -Compress"
    ),
    'boot_time': (
        "$os = Get-CimInstance -ClassName Win32_OperatingSystem; "
        "[pscustomobject]@{LastBootUpTime = $os.LastBootUpTime.ToString(" + PS_DATE_ARGS + ")} "
        "| ConvertTo-Json -Compress"
    ),
    'events': (
        "$ev = Get-WinEvent -FilterHashtable @{LogName='%(log)s'; Id=%(ids)s} "
        "-MaxEvents %(max_events)d -ErrorAction SilentlyContinue; "
        "ConvertTo-Json -Compress -InputObject @($ev | ForEach-Object { [pscustomobject]@{"
        "Id = $_.Id; "
        "TimeCreated = $_.TimeCreated.ToString(" + PS_DATE_ARGS + "); "
        "UserId = $(if ($_.UserId) { $_.UserId.Value } else { $null })} })"
    ),
    'translate_sid': (
        "$sid = New-Object System.Security.Principal.SecurityIdentifier('%(sid)s'); "
        "[pscustomobject]@{AccountName = $sid.Translate([System.Security.Principal.NTAccount]).Value} "
        "| ConvertTo-Json -Compress"
    ),
    'inventory': (
        "$bios = Get-CimInstance -ClassName Win32_BIOS; "
        "$cs = Get-CimInstance -ClassName Win32_ComputerSystem; "
        "$cpu = Get-CimInstance -ClassName Win32_Processor | Select-Object -First 1; "
        "$os = Get-CimInstance -ClassName Win32_OperatingSystem; "
        "[pscustomobject]@{SerialNumber = $bios.SerialNumber; Manufacturer = $cs.Manufacturer; "
        "Model = $cs.Model; Processor = $cpu.Name; OSCaption = $os.Caption; OSVersion = $os.Version; "
        "TotalPhysicalMemory = $cs.TotalPhysicalMemory} | ConvertTo-Json -Compress"
    ),
    'disks': (
        "ConvertTo-Json -Compress -InputObject @(Get-CimInstance -ClassName Win32_LogicalDisk "
        "-Filter 'DriveType=3' | Select-Object DeviceID, DriveType, Size, FreeSpace)"
    ),
    'memory': (
        "Get-CimInstance -ClassName Win32_OperatingSystem | "
        "Select-Object TotalVisibleMemorySize, FreePhysicalMemory | ConvertTo-Json -Compress"
    ),
    'network': (
        "ConvertTo-Json -Compress -InputObject @(Get-CimInstance -ClassName Win32_NetworkAdapterConfiguration "
        "-Filter 'IPEnabled=True' | Select-Object Description, MACAddress, IPAddress, "
        "DefaultIPGateway, DNSServerSearchOrder)"
    ),
    'monitors': (
        "ConvertTo-Json -Compress -Depth 3 -InputObject @(Get-CimInstance -Namespace root\\wmi "
        "-ClassName WmiMonitorID | Select-Object InstanceName, ManufacturerName, UserFriendlyName, "
        "SerialNumberID)"
    ),
    'monitor_connections': (
        "ConvertTo-Json -Compress -InputObject @(Get-CimInstance -Namespace root\\wmi "
        "-ClassName WmiMonitorConnectionParams | Select-Object InstanceName, VideoOutputTechnology)"
    ),
}

_LOG_NAME_RE = re.compile(r'^[\w\-/ ]+$')
_SID_RE = re.compile(r'^S-\d+(-\d+)+$')


class TransportError(Exception):
    """Remote query failed or returned unusable data"""
    pass


class RemoteTransport(ABC):
    """Base class for capability transports"""

    @abstractmethod
    def query(self, host: str, capability: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Run one capability query against host.

        Returns decoded data (dict, list or None). Raises TransportError.
        """
        pass

    def close(self):
        """Release transport resources"""
        pass


def parse_quser(output: str) -> List[Dict[str, str]]:
    """
    Parse `quser` text into session dicts.

    quser output is column aligned; disconnected sessions leave the
    SESSIONNAME column blank, so the line is split on whitespace and the
    session name is only taken when the row has enough columns.
    """
    sessions = []
    if not output:
        return sessions

    for line in output.splitlines()[1:]:
        parts = line.strip().lstrip('>').split()
        if not parts:
            continue
        username = parts[0]
        session_name = ''
        state = ''
        if len(parts) >= 2 and not parts[1].isdigit():
            session_name = parts[1]
            state = parts[3] if len(parts) > 3 else ''
        elif len(parts) >= 3:
            state = parts[2]
        sessions.append({'UserName': username, 'SessionName': session_name, 'State': state})
    return sessions


def build_script(capability: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Render the PowerShell snippet for a capability with validated params"""
    template = PS_SNIPPETS.get(capability)
    if template is None:
        raise TransportError(f"Unsupported capability: {capability}")

    params = params or {}
    if capability == 'events':
        log_name = str(params.get('log', 'System'))
        if not _LOG_NAME_RE.match(log_name):
            raise TransportError(f"Invalid event log name: {log_name!r}")
        try:
            ids = [int(i) for i in params.get('ids', [])]
            max_events = int(params.get('max_events', 20))
        except (TypeError, ValueError) as e:
            raise TransportError(f"Invalid event query parameters: {e}") from e
        if not ids:
            raise TransportError("Event query needs at least one event id")
        return template % {'log': log_name, 'ids': ','.join(str(i) for i in ids), 'max_events': max_events}

    if capability == 'translate_sid':
        sid = str(params.get('sid', ''))
        if not _SID_RE.match(sid):
            raise TransportError(f"Invalid security identifier: {sid!r}")
        return template % {'sid': sid}

    return template


def decode_output(raw: bytes) -> Any:
    """Decode ConvertTo-Json output; empty output means no data"""
    text = raw.decode('utf-8', errors='replace').strip() if raw else ''
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise TransportError(f"Invalid JSON from remote host: {e}") from e


class WinRMTransport(RemoteTransport):
    """Runs PowerShell snippets over WinRM using pywinrm"""

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        scheme: str = 'http',
        port: int = 5985,
        auth: str = 'ntlm',
        operation_timeout: int = 20,
        read_timeout: int = 30
    ):
        if read_timeout <= operation_timeout:
            raise ValueError("read_timeout must be greater than operation_timeout")
        self.username = username
        self.password = password
        self.scheme = scheme
        self.port = port
        self.auth = auth
        self.operation_timeout = operation_timeout
        self.read_timeout = read_timeout

    def endpoint(self, host: str) -> str:
        return f"{self.scheme}://{host}:{self.port}/wsman"

    def _session(self, host: str) -> winrm.Session:
        # one session per query; sessions are not shared between worker threads
        return winrm.Session(
            self.endpoint(host),
            auth=(self.username, self.password),
            transport=self.auth,
            operation_timeout_sec=self.operation_timeout,
            read_timeout_sec=self.read_timeout,
        )

    def query(self, host: str, capability: str, params: Optional[Dict[str, Any]] = None) -> Any:
        script = build_script(capability, params)
        logger.debug(f"WinRM {capability} -> {host}", extra={'context': {'host': host, 'capability': capability}})

        try:
            result = self._session(host).run_ps(script)
        except Exception as e:
            raise TransportError(f"WinRM query '{capability}' failed: {e}") from e

        if result.status_code != 0:
            stderr = result.std_err.decode('utf-8', errors='replace').strip() if result.std_err else ''
            raise TransportError(
                f"Remote '{capability}' exited with status {result.status_code}: {stderr[:200]}"
            )

        data = decode_output(result.std_out)
        if capability == 'sessions':
            output = data.get('Output') if isinstance(data, dict) else None
            return parse_quser(output or '')
        return data


class LocalTransport(RemoteTransport):
    """
    Answers capabilities for the machine this process runs on via psutil.

    Only capabilities with a portable equivalent are supported; the rest
    raise TransportError so their providers fail in isolation.
    """

    def query(self, host: str, capability: str, params: Optional[Dict[str, Any]] = None) -> Any:
        handler = getattr(self, f'_query_{capability}', None)
        if handler is None:
            raise TransportError(f"Capability '{capability}' is not available locally")
        try:
            return handler()
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"Local query '{capability}' failed: {e}") from e

    def _query_current_user(self) -> Dict[str, Any]:
        users = psutil.users()
        if users:
            return {'UserName': users[0].name}
        try:
            return {'UserName': getpass.getuser()}
        except (KeyError, OSError):
            return {'UserName': None}

    def _query_sessions(self) -> List[Dict[str, str]]:
        return [
            {'UserName': u.name, 'SessionName': u.terminal or 'console', 'State': 'Active'}
            for u in psutil.users()
        ]

    def _query_boot_time(self) -> Dict[str, Any]:
        booted = datetime.fromtimestamp(psutil.boot_time(), timezone.utc)
        return {'LastBootUpTime': booted.isoformat()}

    def _query_inventory(self) -> Dict[str, Any]:
        uname = platform.uname()
        return {
            'SerialNumber': None,
            'Manufacturer': None,
            'Model': uname.machine or None,
            'Processor': uname.processor or None,
            'OSCaption': f"{uname.system} {uname.release}".strip() or None,
            'OSVersion': uname.version or None,
            'TotalPhysicalMemory': psutil.virtual_memory().total,
        }

    def _query_disks(self) -> List[Dict[str, Any]]:
        disks = []
        for part in psutil.disk_partitions(all=False):
            opts = part.opts or ''
            if 'cdrom' in opts:
                drive_type = 5
            elif 'removable' in opts:
                drive_type = 2
            else:
                drive_type = 3
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError:
                continue
            disks.append({
                'DeviceID': part.device or part.mountpoint,
                'DriveType': drive_type,
                'Size': usage.total,
                'FreeSpace': usage.free,
            })
        return disks

    def _query_memory(self) -> Dict[str, Any]:
        mem = psutil.virtual_memory()
        return {
            'TotalVisibleMemorySize': mem.total // 1024,
            'FreePhysicalMemory': mem.available // 1024,
        }

    def _query_network(self) -> List[Dict[str, Any]]:
        adapters = []
        stats = psutil.net_if_stats()
        for name, addrs in psutil.net_if_addrs().items():
            if name in stats and not stats[name].isup:
                continue
            ips = [a.address for a in addrs if a.family in (socket.AF_INET, socket.AF_INET6)]
            if not ips:
                continue
            macs = [a.address for a in addrs if a.family == psutil.AF_LINK]
            adapters.append({
                'Description': name,
                'MACAddress': macs[0] if macs else None,
                'IPAddress': ips,
                'DefaultIPGateway': None,
                'DNSServerSearchOrder': None,
            })
        return adapters
