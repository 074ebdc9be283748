from __future__ import annotations

import logging
from dataclasses import dataclass

from stacksignal.core.config import Settings
from stacksignal.services.analysis import AnalysisEngine, OpenAIAnalysisEngine
from stacksignal.services.dedupe import Deduplicator
from stacksignal.services.processor import BatchProcessor
from stacksignal.services.queue import QueueManager
from stacksignal.services.repository import PostgresRepository
from stacksignal.services.store import InMemoryStore, Store

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ServiceContainer:
    settings: Settings
    store: Store
    engine: AnalysisEngine
    deduplicator: Deduplicator
    queue: QueueManager
    processor: BatchProcessor

    async def close(self) -> None:
        close_engine = getattr(self.engine, "close", None)
        if close_engine is not None:
            await close_engine()
        await self.store.close()


def build_services(
    settings: Settings,
    *,
    store: Store | None = None,
    engine: AnalysisEngine | None = None,
) -> ServiceContainer:
    if store is None:
        if settings.database_url:
            store = PostgresRepository(
                database_url=settings.database_url,
                min_pool_size=settings.database_pool_min_size,
                max_pool_size=settings.database_pool_max_size,
            )
        else:
            logger.warning("SS_DATABASE_URL not set; using in-memory store")
            store = InMemoryStore()
    if engine is None:
        engine = OpenAIAnalysisEngine.from_settings(settings)

    deduplicator = Deduplicator(store, similarity_threshold=settings.dedupe_similarity_threshold)
    return ServiceContainer(
        settings=settings,
        store=store,
        engine=engine,
        deduplicator=deduplicator,
        queue=QueueManager(
            store,
            default_priority=settings.queue_default_priority,
            default_max_attempts=settings.queue_default_max_attempts,
            max_size=settings.queue_max_size,
        ),
        processor=BatchProcessor(
            store,
            engine,
            deduplicator,
            default_limit=settings.batch_default_limit,
            max_limit=settings.batch_max_limit,
            delay_seconds=settings.batch_delay_seconds,
            skip_identified_companies=settings.skip_identified_companies,
        ),
    )
