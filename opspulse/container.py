"""Explicit construction of the service graph."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from .analytics.aggregation import MetricAggregationEngine
from .analytics.impact import BusinessImpactEstimator
from .analytics.pulse import OrganizationalPulseService
from .analytics.registry import MetricRegistry
from .auth.oauth import OAuthService
from .auth.providers import OAuthTokenClient
from .auth.token_refresher import TokenRefresher
from .cache.backends import build_shared_cache
from .cache.pulse_cache import PulseCache
from .connectors import ConnectorRegistry, build_default_registry
from .sync.locks import LockRegistry, build_lock_registry
from .sync.orchestrator import SyncOrchestrator
from .sync.scheduler import ScheduledSyncDriver
from .sync.stores import CanonicalStore, CredentialStore, SyncHistoryStore
from .utils.config import GlobalSettings


@dataclass
class ServiceContainer:
    settings: GlobalSettings
    credential_store: CredentialStore
    history_store: SyncHistoryStore
    canonical_store: CanonicalStore
    lock_registry: LockRegistry
    token_refresher: TokenRefresher
    connectors: ConnectorRegistry
    orchestrator: SyncOrchestrator
    driver: ScheduledSyncDriver
    oauth: OAuthService
    metric_registry: MetricRegistry
    engine: MetricAggregationEngine
    estimator: BusinessImpactEstimator
    pulse: OrganizationalPulseService
    pulse_cache: PulseCache

    async def start(self) -> None:
        """Start the scheduler, cache warm-up, and cache refresh loops."""

        if self.settings.sync.scheduler_enabled:
            self.driver.start()
        if self.settings.pulse_cache.warmup_enabled:
            self.pulse_cache.start_warm_up()
        self.pulse_cache.start_background_refresh()

    async def stop(self) -> None:
        await self.driver.stop()
        await self.pulse_cache.stop()


def build_container(
    settings: GlobalSettings, *, transport: httpx.AsyncBaseTransport | None = None
) -> ServiceContainer:
    """Wire every service in dependency order; each one receives its collaborators."""

    sync_settings = settings.sync
    credential_store = CredentialStore()
    history_store = SyncHistoryStore()
    canonical_store = CanonicalStore()
    lock_registry = build_lock_registry(settings)

    token_client = OAuthTokenClient(
        timeout=sync_settings.request_timeout_seconds, transport=transport
    )
    token_refresher = TokenRefresher(
        credential_store,
        token_client,
        settings.oauth,
        margin_seconds=sync_settings.token_refresh_margin_seconds,
    )
    connectors = build_default_registry(
        sync_settings, retry_config=sync_settings.http_retry, transport=transport
    )
    orchestrator = SyncOrchestrator(
        credential_store,
        history_store,
        canonical_store,
        token_refresher,
        connectors,
        lock_registry,
        run_timeout_seconds=sync_settings.run_timeout_seconds,
    )
    driver = ScheduledSyncDriver(
        credential_store, orchestrator, tick_seconds=sync_settings.tick_seconds
    )
    oauth = OAuthService(credential_store, token_client, settings, transport=transport)

    metric_registry = MetricRegistry()
    engine = MetricAggregationEngine(canonical_store)
    estimator = BusinessImpactEstimator(settings.impact)
    pulse = OrganizationalPulseService(metric_registry, engine, estimator)
    pulse_cache = PulseCache(
        build_shared_cache(settings), pulse, metric_registry, settings.pulse_cache
    )

    return ServiceContainer(
        settings=settings,
        credential_store=credential_store,
        history_store=history_store,
        canonical_store=canonical_store,
        lock_registry=lock_registry,
        token_refresher=token_refresher,
        connectors=connectors,
        orchestrator=orchestrator,
        driver=driver,
        oauth=oauth,
        metric_registry=metric_registry,
        engine=engine,
        estimator=estimator,
        pulse=pulse,
        pulse_cache=pulse_cache,
    )
