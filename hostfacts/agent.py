"""
Collection agent - wires configuration into transport, probe, collector,
fleet aggregator and sink for one run.
"""

import logging
import signal
import threading
from typing import Callable, List, Optional

from hostfacts.collector import HostCollector
from hostfacts.config import EventConfig, FleetConfig, ProbeConfig, SinkConfig, TransportConfig
from hostfacts.fleet import FleetAggregator
from hostfacts.models import CollectionRequest, CollectionResult, utc_now
from hostfacts.output import format_result
from hostfacts.probe import ReachabilityProber
from hostfacts.providers import EventIds, ProviderRegistry, ProviderSettings, default_registry
from hostfacts.sinks import (
    ConsoleSink,
    CsvFileSink,
    JsonlFileSink,
    PostgreSQLSink,
    RecordSink,
    persist,
)
from hostfacts.transport import LocalTransport, RemoteTransport, WinRMTransport

logger = logging.getLogger(__name__)


def build_transport(config: TransportConfig) -> RemoteTransport:
    """Factory for the configured transport"""
    if config.type == 'local':
        return LocalTransport()
    return WinRMTransport(
        username=config.username,
        password=config.password,
        scheme=config.scheme,
        port=config.port,
        auth=config.auth,
        operation_timeout=config.operation_timeout,
        read_timeout=config.read_timeout,
    )


def build_prober(config: ProbeConfig) -> ReachabilityProber:
    return ReachabilityProber(method=config.method, timeout=config.timeout, port=config.port)


def build_sink(config: SinkConfig, clock: Callable = utc_now) -> Optional[RecordSink]:
    """Factory for the configured sink; None when persistence is off"""
    if config.type == 'console':
        return ConsoleSink()
    if config.type == 'csv':
        return CsvFileSink(config.path, clock=clock)
    if config.type == 'jsonl':
        return JsonlFileSink(config.path, clock=clock)
    if config.type == 'postgres':
        return PostgreSQLSink(config.postgres_url)
    return None


def build_settings(config: FleetConfig, clock: Callable = utc_now) -> ProviderSettings:
    events: EventConfig = config.events
    return ProviderSettings(
        console_sessions=config.collection.console_sessions,
        event_ids=EventIds(startup=events.startup, shutdown=events.shutdown, user_shutdown=events.user_shutdown),
        event_log=events.log,
        max_events=events.max_events,
        clock=clock,
    )


class CollectionAgent:
    """Runs collection requests against the configured fleet"""

    def __init__(
        self,
        config: FleetConfig,
        transport: Optional[RemoteTransport] = None,
        prober=None,
        sink: Optional[RecordSink] = None,
        registry: Optional[ProviderRegistry] = None,
        clock: Callable = utc_now
    ):
        self.config = config
        self.clock = clock
        self.cancel_event = threading.Event()

        self.setup_warnings: List[str] = []
        self._previous_handlers = {}

        self.transport = transport or build_transport(config.transport)
        self.prober = prober or build_prober(config.probe)
        self.sink = sink
        if sink is None:
            try:
                self.sink = build_sink(config.sink, clock)
            except Exception as e:
                # results are still returned; the missing sink is reported with them
                message = f"Sink '{config.sink.type}' unavailable: {e}"
                logger.error(message)
                self.setup_warnings.append(message)

        self.collector = HostCollector(
            self.prober,
            transport=self.transport,
            registry=registry or default_registry(),
            settings=build_settings(config, clock),
            clock=clock,
            cancel_event=self.cancel_event,
        )
        self.fleet = FleetAggregator(
            self.collector,
            max_workers=config.collection.workers,
            cancel_event=self.cancel_event,
        )

    def install_signal_handlers(self):
        """Cancel the run on SIGINT/SIGTERM (main thread only)"""
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._previous_handlers[signum] = signal.signal(signum, self._handle_shutdown)

    def restore_signal_handlers(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_shutdown(self, signum, frame):
        """Stop dispatching work; hosts already in flight finish"""
        logger.warning(f"Received signal {signum}, cancelling collection")
        self.cancel_event.set()

    def request(self, hosts, providers=None, output: Optional[str] = None) -> CollectionRequest:
        return CollectionRequest.build(
            hosts,
            providers if providers else self.config.collection.providers,
            output or self.config.collection.output,
        )

    def run(self, request: CollectionRequest) -> CollectionResult:
        """Collect, then hand records to the sink (if any)"""
        try:
            result = self.fleet.run(request)
        finally:
            self.transport.close()

        result.warnings.extend(self.setup_warnings)
        if self.sink is not None:
            persist(result, self.sink)
        return result

    def render(self, result: CollectionResult, mode: Optional[str] = None):
        return format_result(
            result,
            mode or self.config.collection.output,
            depth=self.config.collection.json_depth,
        )
