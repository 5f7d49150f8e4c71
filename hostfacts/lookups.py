"""
Single-shot network lookups: public IP with service fallback, RDAP.
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import requests

from hostfacts.config import DEFAULT_PUBLIC_IP_SERVICES, DEFAULT_RDAP_URL

logger = logging.getLogger(__name__)


class LookupFailed(Exception):
    """A lookup could not produce a result"""
    pass


@dataclass
class PublicIPResult:
    """Public address and the services that failed before one answered"""
    ip: Optional[str]
    source: Optional[str] = None
    failures: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.ip is not None


def public_ip(services: Sequence[str] = DEFAULT_PUBLIC_IP_SERVICES, timeout: float = 5) -> PublicIPResult:
    """
    Ask each service in turn for this machine's public address.

    Every failure (HTTP error, timeout, body that isn't an IP address) is
    recorded and the next service is tried.
    """
    failures: List[str] = []

    for url in services:
        body = ''
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
            body = response.text.strip()
            address = str(ipaddress.ip_address(body))
        except requests.exceptions.Timeout:
            failures.append(f"{url}: Timeout after {timeout}s")
        except requests.exceptions.RequestException as e:
            failures.append(f"{url}: {e}")
        except ValueError:
            failures.append(f"{url}: not an IP address: {body[:64]!r}")
        else:
            if failures:
                logger.info(f"Public IP from {url} after {len(failures)} failed service(s)")
            return PublicIPResult(ip=address, source=url, failures=failures)

    logger.warning(f"All {len(failures)} public IP services failed")
    return PublicIPResult(ip=None, failures=failures)


def _cidrs(data: Dict[str, Any]) -> List[str]:
    cidrs = []
    for entry in data.get('cidr0_cidrs') or []:
        prefix = entry.get('v4prefix') or entry.get('v6prefix')
        if prefix and entry.get('length') is not None:
            cidrs.append(f"{prefix}/{entry['length']}")
    return cidrs


def _registrant(data: Dict[str, Any]) -> Optional[str]:
    """Formatted name of the first registrant entity, from its jCard"""
    for entity in data.get('entities') or []:
        if 'registrant' not in (entity.get('roles') or []):
            continue
        vcard = entity.get('vcardArray') or []
        if len(vcard) > 1:
            for item in vcard[1]:
                if len(item) > 3 and item[0] == 'fn':
                    return item[3]
    return None


def rdap_lookup(ip: str, base_url: str = DEFAULT_RDAP_URL, timeout: float = 5) -> Dict[str, Any]:
    """
    Look up the network registration of an IP address over RDAP.

    Returns:
        Flat summary dict (handle, name, type, country, startAddress,
        endAddress, cidr, registrant)

    Raises:
        LookupFailed: On invalid input, HTTP error or undecodable response
    """
    try:
        address = str(ipaddress.ip_address(ip.strip()))
    except (ValueError, AttributeError):
        raise LookupFailed(f"Not an IP address: {ip!r}")

    url = base_url.format(ip=address)
    try:
        response = requests.get(url, timeout=timeout, headers={'Accept': 'application/rdap+json'})
        response.raise_for_status()
        data = response.json()
    except requests.exceptions.Timeout:
        raise LookupFailed(f"RDAP lookup timed out after {timeout}s")
    except requests.exceptions.RequestException as e:
        raise LookupFailed(f"RDAP lookup failed: {e}")
    except ValueError as e:
        raise LookupFailed(f"RDAP response is not JSON: {e}")

    if not isinstance(data, dict):
        raise LookupFailed("RDAP response is not an object")

    return {
        'ip': address,
        'handle': data.get('handle'),
        'name': data.get('name'),
        'type': data.get('type'),
        'country': data.get('country'),
        'startAddress': data.get('startAddress'),
        'endAddress': data.get('endAddress'),
        'cidr': ', '.join(_cidrs(data)) or None,
        'registrant': _registrant(data),
    }
