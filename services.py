# Coinmeter Service Wiring
# Builds every long-lived component once and hands them out explicitly.
# The API, the CLI and the tests all go through build_services().

import logging
from dataclasses import dataclass

from billing import BillingEngine, SettingsStore
from cache import CacheStore, MemoryCacheBackend, RedisCacheBackend
from config import RuntimeSettings
from events import EventBus, EventStore
from ledger import LedgerStore
from provisioning import ProvisioningClient
from request_queue import CircuitBreakerRegistry, RequestQueue
from resources import ResourceStore
from scheduler import BillingScheduler

log = logging.getLogger("coinmeter")


@dataclass
class Services:
    settings: RuntimeSettings
    queue: RequestQueue
    cache: CacheStore
    provisioning: ProvisioningClient
    events: EventBus
    event_store: EventStore
    billing_settings: SettingsStore
    resources: ResourceStore
    ledger: LedgerStore
    engine: BillingEngine
    scheduler: BillingScheduler

    def shutdown(self):
        self.scheduler.stop()
        self.events.drain(timeout=5.0)


def build_cache(settings: RuntimeSettings) -> CacheStore:
    if settings.cache_backend == "redis":
        log.info("CACHE using redis at %s", settings.redis_url)
        backend = RedisCacheBackend(url=settings.redis_url)
    else:
        backend = MemoryCacheBackend()
    return CacheStore(backend=backend, prefix=settings.cache_prefix)


def build_services(settings: RuntimeSettings, session=None, cache: CacheStore = None) -> Services:
    """Wire the whole service graph from runtime settings.

    session and cache can be injected (tests pass a mock HTTP session and a
    memory cache).
    """
    breakers = CircuitBreakerRegistry(
        failure_threshold=settings.circuit_threshold,
        cooldown_sec=settings.circuit_cooldown_sec,
    )
    queue = RequestQueue(
        concurrency=settings.queue_concurrency,
        breakers=breakers,
        default_max_retries=settings.max_retries,
        default_timeout_sec=settings.request_timeout_sec,
    )
    cache = cache or build_cache(settings)
    provisioning = ProvisioningClient(
        settings.provisioning_url,
        settings.provisioning_api_key,
        queue,
        cache=cache,
        status_ttl_sec=settings.status_ttl_sec,
        timeout_sec=settings.request_timeout_sec,
        session=session,
    )

    event_store = EventStore(settings.db_path)
    events = EventBus()
    events.subscribe(event_store.append)

    billing_settings = SettingsStore(settings.db_path)
    resources = ResourceStore(settings.db_path)
    ledger = LedgerStore(settings.db_path)
    engine = BillingEngine(billing_settings, resources, ledger, provisioning, events=events)
    scheduler = BillingScheduler(engine, billing_settings)

    return Services(
        settings=settings,
        queue=queue,
        cache=cache,
        provisioning=provisioning,
        events=events,
        event_store=event_store,
        billing_settings=billing_settings,
        resources=resources,
        ledger=ledger,
        engine=engine,
        scheduler=scheduler,
    )
