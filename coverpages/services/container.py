# FILE: coverpages/services/container.py
"""
Wiring of the service objects shared by the routes
"""
import logging
from dataclasses import dataclass
from typing import Optional

from coverpages.config import Settings, get_settings
from coverpages.providers.registry import CapabilityRegistry, get_capability_registry
from coverpages.services.acquisition import AcquisitionService
from coverpages.services.content_store import ContentStore
from coverpages.services.identity import IdentityReconciler
from coverpages.services.janitor import CacheJanitor
from coverpages.services.pipeline import AnalysisPipeline
from coverpages.services.status import StatusResolver

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: ContentStore
    identity: IdentityReconciler
    capabilities: CapabilityRegistry
    pipeline: AnalysisPipeline
    status: StatusResolver
    janitor: CacheJanitor
    acquisition: AcquisitionService


def build_services(
    store: Optional[ContentStore] = None,
    capabilities: Optional[CapabilityRegistry] = None,
    settings: Optional[Settings] = None,
) -> Services:
    settings = settings or get_settings()
    store = store or ContentStore(settings=settings)
    capabilities = capabilities or get_capability_registry()
    identity = IdentityReconciler(store)
    pipeline = AnalysisPipeline(store, identity, capabilities, settings=settings)
    status = StatusResolver(store, identity)
    return Services(
        settings=settings,
        store=store,
        identity=identity,
        capabilities=capabilities,
        pipeline=pipeline,
        status=status,
        janitor=CacheJanitor(store),
        acquisition=AcquisitionService(store, identity, pipeline, status, capabilities, settings=settings),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    """Get or create the global service container"""
    global _services
    if _services is None:
        _services = build_services()
        logger.info(f"Services ready: cache_dir={_services.store.root}")
    return _services


def set_services(services: Optional[Services]):
    """Replace the global container (tests)"""
    global _services
    _services = services
