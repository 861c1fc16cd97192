from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from lesson_companion.processing import (
    LessonJobClient,
    LessonRepository,
    LocalUploadStorage,
    ProcessingConfig,
    RedisJobQueue,
    SqlAlchemyLessonRepository,
    StoragePaths,
)


@lru_cache(maxsize=1)
def get_config() -> ProcessingConfig:
    return ProcessingConfig.from_env()


@lru_cache(maxsize=1)
def get_repo() -> LessonRepository:
    return SqlAlchemyLessonRepository(get_config().database_url)


@lru_cache(maxsize=1)
def get_job_client() -> LessonJobClient:
    config = get_config()
    return LessonJobClient(RedisJobQueue(config.redis_url, config.queue_name), get_repo())


@lru_cache(maxsize=1)
def get_storage() -> LocalUploadStorage:
    return LocalUploadStorage(StoragePaths(Path(get_config().upload_storage_root)))
