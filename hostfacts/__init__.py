"""
hostfacts: Multi-host diagnostic fact collection

Probes each host, runs independently failing fact providers against it and
assembles one structured record per host, for Windows fleets reached over
WinRM or the local machine through psutil.
"""

from hostfacts.agent import CollectionAgent
from hostfacts.collector import HostCollector
from hostfacts.fleet import FleetAggregator
from hostfacts.models import CollectionRequest, CollectionResult, HostRecord, HostTarget
from hostfacts.providers import FactProvider, ProviderRegistry, default_registry

__all__ = [
    'CollectionAgent',
    'HostCollector',
    'FleetAggregator',
    'CollectionRequest',
    'CollectionResult',
    'HostRecord',
    'HostTarget',
    'FactProvider',
    'ProviderRegistry',
    'default_registry',
]
__version__ = '1.0.0'
