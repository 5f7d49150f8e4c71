"""
Per-host collection: probe, then run each enabled provider in order.
"""

import logging
import threading
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from hostfacts.models import (
    CANCELLED,
    UNREACHABLE,
    HostRecord,
    HostTarget,
    ProviderFailure,
    utc_now,
)
from hostfacts.providers import (
    FactProvider,
    ProviderRegistry,
    ProviderSettings,
    default_registry,
    run_provider,
)

logger = logging.getLogger(__name__)


class HostCollector:
    """
    Builds one HostRecord per host.

    An unreachable host short-circuits before any provider runs. For a
    reachable host every provider runs even if earlier ones failed; a failed
    provider still contributes its field names (as None) so records built
    from the same provider selection share one schema.
    """

    def __init__(
        self,
        prober,
        transport=None,
        registry: Optional[ProviderRegistry] = None,
        settings: Optional[ProviderSettings] = None,
        clock: Callable = utc_now,
        cancel_event: Optional[threading.Event] = None
    ):
        self.prober = prober
        self.transport = transport
        self.registry = registry or default_registry()
        self.settings = settings or ProviderSettings(clock=clock)
        self.clock = clock
        self.cancel_event = cancel_event or threading.Event()

    def providers_for(self, names: Sequence[str]) -> List[FactProvider]:
        """Instantiate named providers in registration order (ConfigError on unknown names)"""
        return self.registry.build(names, self.transport, self.settings)

    def collect(
        self,
        host: Union[HostTarget, str],
        providers: Sequence[Union[FactProvider, str]] = ()
    ) -> HostRecord:
        name = str(host)
        context = {'host': name}

        if providers and all(isinstance(p, str) for p in providers):
            providers = self.providers_for(providers)

        if self.cancel_event.is_set():
            return HostRecord.host_failure(name, CANCELLED, collected_at=self.clock())

        try:
            reachable = self.prober.probe(name)
        except Exception as e:
            logger.warning(f"Probe raised for {name}: {e}", extra={'context': context})
            reachable = False

        if not reachable:
            logger.warning(f"Host {name} is unreachable, skipping providers", extra={'context': context})
            return HostRecord.host_failure(name, UNREACHABLE, collected_at=self.clock())

        fields: Dict[str, Any] = {}
        ran: List[str] = []
        failures: List[ProviderFailure] = []
        warnings: List[ProviderFailure] = []

        for provider in providers:
            group = dict.fromkeys(provider.fields)

            if self.cancel_event.is_set():
                failures.append(ProviderFailure(provider=provider.name, host=name, error=CANCELLED))
                fields.update(group)
                continue

            result = run_provider(provider, name)
            ran.append(provider.name)
            if result.ok:
                group.update(result.fields)
            else:
                failures.append(result.failure)
            warnings.extend(result.warnings)
            fields.update(group)

        if failures:
            logger.info(
                f"Collected {name} with {len(failures)} failed provider(s)",
                extra={'context': {**context, 'failed': [f.provider for f in failures]}}
            )
        else:
            logger.debug(f"Collected {name}", extra={'context': context})

        # cancelled before any provider ran: nothing was collected for this host
        error = CANCELLED if providers and not ran else None

        return HostRecord(
            host=name,
            reachable=True,
            fields=MappingProxyType(fields),
            providers=tuple(ran),
            failures=tuple(failures),
            warnings=tuple(warnings),
            error=error,
            collected_at=self.clock(),
        )
