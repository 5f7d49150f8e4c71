"""
Reachability probe run before any fact query is sent to a host.
"""

import logging
import math
import platform
import socket
import subprocess
from typing import List, Optional

logger = logging.getLogger(__name__)

PROBE_METHODS = ('ping', 'tcp')

# BSD-derived ping takes -W in milliseconds, iputils ping in seconds
MILLISECOND_WAIT_SYSTEMS = ('Darwin', 'FreeBSD')


def ping_command(host: str, timeout: float, system: Optional[str] = None) -> List[str]:
    """Build a single-echo ping command for the local platform"""
    system = system or platform.system()
    if system == 'Windows':
        return ['ping', '-n', '1', '-w', str(int(timeout * 1000)), host]
    if system in MILLISECOND_WAIT_SYSTEMS:
        return ['ping', '-c', '1', '-W', str(int(timeout * 1000)), host]
    return ['ping', '-c', '1', '-W', str(max(1, math.ceil(timeout))), host]


class ReachabilityProber:
    """Lightweight liveness check with a short fixed timeout"""

    def __init__(self, method: str = 'ping', timeout: float = 1.0, port: int = 5985):
        if method not in PROBE_METHODS:
            raise ValueError(f"Invalid probe method: {method}. Must be one of {list(PROBE_METHODS)}")
        self.method = method
        self.timeout = timeout
        self.port = port

    def probe(self, host: str) -> bool:
        """Return True if host answered; never raises"""
        if not host or host.startswith('-'):
            return False

        try:
            if self.method == 'tcp':
                return self._tcp(host)
            return self._ping(host)
        except Exception as e:
            logger.debug(f"Probe of {host} failed: {e}", extra={'context': {'host': host}})
            return False

    def _ping(self, host: str) -> bool:
        # the ping utility enforces its own timeout; the extra second covers process startup
        result = subprocess.run(
            ping_command(host, self.timeout),
            capture_output=True,
            timeout=self.timeout + 1
        )
        return result.returncode == 0

    def _tcp(self, host: str) -> bool:
        try:
            with socket.create_connection((host, self.port), timeout=self.timeout):
                return True
        except OSError:
            return False
