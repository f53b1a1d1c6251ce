from __future__ import annotations

import logging
from functools import lru_cache

from training_worker.core.config import get_settings
from training_worker.services.repository import PostgresRepository
from training_worker.services.store import InMemoryJobStore
from training_worker.worker import Worker

logger = logging.getLogger(__name__)


@lru_cache
def get_repository() -> PostgresRepository | InMemoryJobStore:
    settings = get_settings()
    if not settings.database_url:
        logger.warning("TW_DATABASE_URL not set; jobs are kept in process memory")
        return InMemoryJobStore(job_max_attempts=settings.job_max_attempts)
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
    )


@lru_cache
def get_worker() -> Worker:
    return Worker.from_settings(get_repository(), get_settings())
