"""
Data model for fleet fact collection runs.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

OUTPUT_MODES = ('records', 'csv', 'json')

CANCELLED = 'cancelled'
UNREACHABLE = 'unreachable'


def utc_now() -> datetime:
    """Default clock"""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HostTarget:
    """A host name or address queued for collection"""
    name: str

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError(f"Invalid host name: {self.name!r}")

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class ProviderFailure:
    """Why a provider (or the host itself) produced no data"""
    provider: str
    host: str
    error: str

    def __str__(self) -> str:
        return f"{self.provider}: {self.error}"


class Facts(dict):
    """
    Field mapping returned by a provider.

    A plain dict works too; Facts lets a provider report sub-query
    failures that did not stop it from returning its primary fields.
    """

    def __init__(self, *args, warnings: Optional[List[ProviderFailure]] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.warnings = list(warnings or [])


@dataclass
class ProviderResult:
    """Outcome of one provider on one host: fields or a failure"""
    provider: str
    host: str
    fields: Dict[str, Any] = field(default_factory=dict)
    failure: Optional[ProviderFailure] = None
    warnings: List[ProviderFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass(frozen=True)
class HostRecord:
    """Merged result of every enabled provider for one host"""
    host: str
    reachable: bool
    fields: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    providers: Tuple[str, ...] = ()
    failures: Tuple[ProviderFailure, ...] = ()
    warnings: Tuple[ProviderFailure, ...] = ()
    error: Optional[str] = None
    collected_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.reachable and self.error is None

    @property
    def failed_providers(self) -> List[str]:
        return [f.provider for f in self.failures]

    @classmethod
    def host_failure(cls, host: str, reason: str, reachable: bool = False,
                     collected_at: Optional[datetime] = None) -> 'HostRecord':
        """Record for a host whose provider pipeline never ran"""
        return cls(
            host=host,
            reachable=reachable,
            error=reason,
            failures=(ProviderFailure(provider='host', host=host, error=reason),),
            collected_at=collected_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict form, used by the structured sinks"""
        return {
            'host': self.host,
            'reachable': self.reachable,
            'fields': dict(self.fields),
            'providers': list(self.providers),
            'failures': [str(f) for f in self.failures],
            'warnings': [str(w) for w in self.warnings],
            'error': self.error,
            'collected_at': self.collected_at,
        }


@dataclass(frozen=True)
class CollectionRequest:
    """Hosts, enabled providers and output mode for one run"""
    hosts: Tuple[HostTarget, ...]
    providers: Tuple[str, ...]
    output: str = 'records'

    def __post_init__(self):
        if self.output not in OUTPUT_MODES:
            raise ValueError(f"Invalid output mode: {self.output}. Must be one of {list(OUTPUT_MODES)}")

    @classmethod
    def build(cls, hosts, providers, output: str = 'records') -> 'CollectionRequest':
        """Build a request from plain host names and provider names"""
        targets = tuple(h if isinstance(h, HostTarget) else HostTarget(h) for h in hosts)
        return cls(hosts=targets, providers=tuple(providers), output=output)


@dataclass
class CollectionResult:
    """One outcome per requested host, in request order"""
    records: List[HostRecord] = field(default_factory=list)
    cancelled: bool = False
    warnings: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    @property
    def failed_hosts(self) -> List[str]:
        return [r.host for r in self.records if not r.ok]
