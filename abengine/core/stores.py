"""
Process-level singletons, built lazily from settings.

Each getter is a FastAPI dependency, so tests can swap any of them with
``app.dependency_overrides``.
"""

import logging
from functools import lru_cache
from pathlib import Path

from sqlalchemy.orm import sessionmaker

from abengine.core.auth import EventAuthorizer
from abengine.core.db import build_engine, build_session_factory
from abengine.core.errors import ConfigurationError
from abengine.core.retry import RetryPolicy
from abengine.core.settings import config_settings
from abengine.models.schemas.experiment import ExperimentsConfig
from abengine.repositories.assignment_repo import (
    AssignmentStore,
    CookieAssignmentStore,
    SqlAssignmentStore,
)
from abengine.repositories.counter_store import CounterStore, InMemoryCounterStore
from abengine.repositories.experiment_repo import VariationRepository
from abengine.repositories.redis_counter_store import REDIS_RETRYABLE_ERRORS, RedisCounterStore
from abengine.repositories.sql_counter_store import SQL_RETRYABLE_ERRORS, SqlCounterStore
from abengine.services.selection import SelectionPolicy

logger = logging.getLogger(__name__)


@lru_cache
def get_experiments_config() -> ExperimentsConfig:
    path = Path(config_settings.EXPERIMENTS_FILE)
    if not path.exists():
        logger.warning("Experiments file %s not found, no tests are configured", path)
        return ExperimentsConfig()
    return ExperimentsConfig.from_file(path)


@lru_cache
def get_session_factory() -> sessionmaker:
    return build_session_factory(build_engine(config_settings.DATABASE_URL))


def _retry_policy(retry_on) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config_settings.STORE_MAX_ATTEMPTS,
        delay=config_settings.STORE_RETRY_DELAY,
        retry_on=retry_on,
    )


@lru_cache
def get_counter_store() -> CounterStore:
    backend = config_settings.COUNTER_BACKEND.lower()
    if backend == "redis":
        return RedisCounterStore.from_url(
            config_settings.REDIS_URL,
            prefix=config_settings.REDIS_PREFIX,
            retry=_retry_policy(REDIS_RETRYABLE_ERRORS),
        )
    if backend == "sql":
        return SqlCounterStore(get_session_factory(), retry=_retry_policy(SQL_RETRYABLE_ERRORS))
    if backend == "memory":
        return InMemoryCounterStore()
    raise ConfigurationError(f"Unknown COUNTER_BACKEND: {config_settings.COUNTER_BACKEND}")


@lru_cache
def get_assignment_store() -> AssignmentStore:
    backend = config_settings.ASSIGNMENT_BACKEND.lower()
    if backend == "cookie":
        return CookieAssignmentStore(prefix=config_settings.COOKIE_PREFIX)
    if backend == "sql":
        return SqlAssignmentStore(
            get_session_factory(),
            visitor_cookie=config_settings.VISITOR_COOKIE,
            retry=_retry_policy(SQL_RETRYABLE_ERRORS),
        )
    raise ConfigurationError(f"Unknown ASSIGNMENT_BACKEND: {config_settings.ASSIGNMENT_BACKEND}")


@lru_cache
def get_variation_repository() -> VariationRepository:
    return VariationRepository(get_counter_store(), get_experiments_config())


def get_selection_policy() -> SelectionPolicy:
    return SelectionPolicy(
        enable_machine_learning=config_settings.ENABLE_MACHINE_LEARNING,
        enable_confidence_gating=config_settings.ENABLE_CONFIDENCE_GATING,
        confidence_threshold=config_settings.CONFIDENCE_THRESHOLD,
        random_pick_percentage=config_settings.RANDOM_PICK_PERCENTAGE,
    )


@lru_cache
def get_authorizer() -> EventAuthorizer:
    return EventAuthorizer()
