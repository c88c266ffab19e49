"""
Dependency container wiring ScholarGuard components from configuration.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Generic, Optional, TypeVar
from uuid import uuid4

import structlog

from scholarguard.adapters.registry import AdapterRegistry
from scholarguard.config import Config, load_config
from scholarguard.crawler.circuit_breaker import CircuitBreakerManager
from scholarguard.crawler.http_client import HttpClient
from scholarguard.crawler.rate_limiter import DomainRateLimiter
from scholarguard.monitor.health import HealthMonitor
from scholarguard.monitor.repair import build_repair_strategy
from scholarguard.monitoring.audit import AuditLogger
from scholarguard.orchestrator import ScrapeOrchestrator
from scholarguard.pipeline import IngestionPipeline
from scholarguard.protocols import ContentAnalyzer, RepairStrategy, ScholarshipStore
from scholarguard.quality.scorer import QualityScorer
from scholarguard.recovery.rejected import RejectedCandidateQueue
from scholarguard.scheduler import SweepScheduler
from scholarguard.service import ScholarGuardService
from scholarguard.storage import create_store
from scholarguard.validation.link_validator import LinkValidator

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazily created instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    async def get(self) -> T:
        """Get or create the instance."""
        if not self._initialized:
            self._instance = self._factory(*self._args, **self._kwargs)
            if callable(getattr(self._instance, "initialize", None)):
                await self._instance.initialize()  # type: ignore[attr-defined]
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance is not None and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore[attr-defined]
        self._instance = None
        self._initialized = False


class ScholarGuardContainer:
    """
    Builds the service graph from a ``Config`` and owns its lifecycle.

    Collaborators that are normally external (record store, content analyzer,
    repair strategy, adapter registry) can be injected instead of being built
    from configuration.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        config_path: Optional[Path] = None,
        registry: Optional[AdapterRegistry] = None,
        store: Optional[ScholarshipStore] = None,
        analyzer: Optional[ContentAnalyzer] = None,
        repair_strategy: Optional[RepairStrategy] = None,
    ) -> None:
        self.config_path = config_path
        self.config: Config = config if config is not None else load_config(config_path)
        self.registry = registry or AdapterRegistry()
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._store_override = store
        self._analyzer = analyzer
        self._repair_strategy = repair_strategy
        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._service: Optional[ScholarGuardService] = None
        self._breakers: Optional[CircuitBreakerManager] = None

        self.container_id = str(uuid4())
        self.is_running = False

    def _create_instances(self) -> None:
        config = self.config
        rate_limiter = DomainRateLimiter(
            config.scraper.min_request_delay,
            config.scraper.max_request_delay,
            domain_policies=config.scraper.domain_policies,
        )
        self._instances = {
            "fetch_client": LazyInstance(
                HttpClient,
                user_agent=config.scraper.user_agent,
                timeout=config.scraper.fetch_timeout,
                max_redirects=config.validator.max_redirects,
                max_retries=config.validator.max_retries,
                rate_limiter=rate_limiter,
                max_body_bytes=config.validator.max_body_bytes,
            ),
            "probe_client": LazyInstance(
                HttpClient,
                user_agent=config.validator.user_agent,
                timeout=config.validator.timeout,
                max_redirects=config.validator.max_redirects,
                max_retries=config.validator.max_retries,
                max_body_bytes=config.validator.max_body_bytes,
            ),
            "rejected_queue": LazyInstance(RejectedCandidateQueue, config.ingestion.rejected_db_path),
        }
        if self._store_override is None:
            self._instances["store"] = LazyInstance(create_store, config.storage)

    async def initialize(self) -> None:
        """Create every component and open its resources."""
        if self.is_running:
            return
        self._create_instances()
        config = self.config

        fetch_client: HttpClient = await self._instances["fetch_client"].get()
        probe_client: HttpClient = await self._instances["probe_client"].get()
        rejected_queue: RejectedCandidateQueue = await self._instances["rejected_queue"].get()
        if self._store_override is not None:
            store = self._store_override
        else:
            store = await self._instances["store"].get()

        audit_path = Path(config.monitoring.audit_log_path) if config.monitoring.audit_log_path else None
        audit = AuditLogger(audit_path, buffer_size=config.monitoring.audit_buffer_size)

        pool = asyncio.Semaphore(config.scraper.max_concurrency)
        scorer = QualityScorer(config.quality.acceptance_threshold)
        validator = LinkValidator.from_config(config.validator, probe_client, analyzer=self._analyzer, pool=pool)
        breakers = CircuitBreakerManager(
            failure_threshold=config.circuit_breaker.failure_threshold,
            cooldown_seconds=config.circuit_breaker.cooldown_seconds,
        )
        if config.circuit_breaker.state_file is not None:
            await breakers.load_state(config.circuit_breaker.state_file)
        self._breakers = breakers
        pipeline = IngestionPipeline(
            store,
            validator,
            scorer,
            refresh_duplicates=config.ingestion.refresh_duplicates,
            audit=audit,
            rejected_queue=rejected_queue,
        )
        orchestrator = ScrapeOrchestrator(
            breakers,
            pipeline,
            fetch_client,
            pool=pool,
            source_timeout=config.scraper.source_timeout,
            queue_size=config.scraper.candidate_queue_size,
            audit=audit,
        )
        repair_strategy = self._repair_strategy or build_repair_strategy(
            config.monitor.repair_strategies, validator, scorer
        )
        monitor = HealthMonitor(
            store,
            validator,
            scorer,
            repair_strategy,
            concurrency=config.scraper.max_concurrency,
            repair_timeout=config.monitor.repair_timeout,
            audit=audit,
            report_file=config.monitor.report_file,
        )
        await monitor.load_last_report()
        self._service = ScholarGuardService(
            registry=self.registry,
            orchestrator=orchestrator,
            breakers=breakers,
            store=store,
            monitor=monitor,
            audit=audit,
            rejected_queue=rejected_queue,
        )
        self.is_running = True
        self.logger.info(
            "Container initialized",
            container_id=self.container_id,
            storage_backend=config.storage.backend if self._store_override is None else "injected",
            adapters=self.registry.names(),
        )

    @property
    def service(self) -> ScholarGuardService:
        if self._service is None:
            raise RuntimeError("Container not initialized. Call initialize() first.")
        return self._service

    def build_scheduler(self) -> SweepScheduler:
        """Scheduler bound to this container's service."""
        service = self.service
        return SweepScheduler(
            service.run_sweep,
            sweep_cron=self.config.monitor.sweep_cron,
            timezone=self.config.monitor.timezone,
            scrape=service.trigger_run,
            scrape_cron=self.config.scraper.schedule_cron,
        )

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[ScholarGuardContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Close every managed resource."""
        state_file = self.config.circuit_breaker.state_file
        if self._breakers is not None and state_file is not None:
            try:
                await self._breakers.save_state(state_file)
            except OSError as e:
                self.logger.error("Failed to save circuit breaker state", path=str(state_file), error=str(e))
            self._breakers = None
        for name, instance in self._instances.items():
            try:
                await instance.cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up component", component=name, error=str(e))
        self._service = None
        self.is_running = False
        self.logger.info("Container shut down", container_id=self.container_id)
