"""
Fleet aggregation: run the per-host collector over every requested host.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional

from hostfacts.collector import HostCollector
from hostfacts.models import (
    CANCELLED,
    CollectionRequest,
    CollectionResult,
    HostRecord,
    HostTarget,
)

logger = logging.getLogger(__name__)


class FleetAggregator:
    """
    Runs a CollectionRequest and returns exactly one record per host.

    Results are written into slots indexed by the host's position in the
    request, so completion order never affects result order. Hosts that
    have not started when the cancel event is set get a 'cancelled' record.
    """

    def __init__(
        self,
        collector: HostCollector,
        max_workers: int = 8,
        cancel_event: Optional[threading.Event] = None
    ):
        self.collector = collector
        self.max_workers = max(1, int(max_workers))
        self.cancel_event = cancel_event or collector.cancel_event
        # collector and aggregator must agree on the signal
        self.collector.cancel_event = self.cancel_event

    def cancel(self) -> None:
        """Stop dispatching new hosts and providers; in-flight queries finish"""
        self.cancel_event.set()

    def run(self, request: CollectionRequest) -> CollectionResult:
        # unknown provider names fail here, before any host is contacted
        providers = self.collector.providers_for(request.providers)
        hosts = list(request.hosts)
        slots: List[Optional[HostRecord]] = [None] * len(hosts)

        logger.info(
            f"Collecting {len(hosts)} host(s) with providers {[p.name for p in providers]}",
            extra={'context': {'hosts': len(hosts), 'workers': self.max_workers}}
        )

        if self.max_workers == 1 or len(hosts) <= 1:
            for index, host in enumerate(hosts):
                slots[index] = self._collect_one(host, providers)
        else:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(hosts))) as pool:
                futures = {
                    pool.submit(self._collect_one, host, providers): index
                    for index, host in enumerate(hosts)
                }
                for future in as_completed(futures):
                    slots[futures[future]] = future.result()

        result = CollectionResult(records=slots, cancelled=self.cancel_event.is_set())
        logger.info(
            f"Collection finished: {len(result)} host(s), {len(result.failed_hosts)} failed",
            extra={'context': {'failed': result.failed_hosts, 'cancelled': result.cancelled}}
        )
        return result

    def _collect_one(self, host: HostTarget, providers) -> HostRecord:
        name = str(host)
        if self.cancel_event.is_set():
            return HostRecord.host_failure(name, CANCELLED, collected_at=self.collector.clock())

        try:
            return self.collector.collect(host, providers)
        except Exception as e:
            logger.exception(
                f"Collection of {name} failed unexpectedly",
                extra={'context': {'host': name}}
            )
            return HostRecord.host_failure(
                name, f"collection error: {e}", collected_at=self.collector.clock()
            )
