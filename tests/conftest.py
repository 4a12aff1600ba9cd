import random
from typing import Iterable, List

import fakeredis
import pytest

from abengine.core.db import build_engine, build_session_factory
from abengine.models.schemas.experiment import (
    Experiment,
    ExperimentsConfig,
    Variation,
)
from abengine.repositories.counter_store import InMemoryCounterStore
from abengine.repositories.redis_counter_store import RedisCounterStore
from abengine.repositories.sql_counter_store import SqlCounterStore


class FixedRandom(random.Random):
    """random() replays ``values`` in a cycle; choice() returns ``seq[choice_index]``."""

    def __init__(self, values: Iterable[float] = (0.5,), choice_index: int = 0):
        super().__init__(0)
        self.values = list(values)
        self.choice_index = choice_index
        self.random_calls = 0
        self.choice_calls = 0

    def random(self) -> float:
        value = self.values[self.random_calls % len(self.values)]
        self.random_calls += 1
        return value

    def choice(self, seq):
        self.choice_calls += 1
        return seq[self.choice_index % len(seq)]


def make_test(test_id: str, counts: List[tuple]) -> Experiment:
    """counts: (variation_id, pageviews, wins) tuples."""
    return Experiment(
        test_id=test_id,
        variations=[
            Variation(variation_id=variation_id, test_id=test_id, pageviews=pageviews, wins=wins)
            for variation_id, pageviews, wins in counts
        ],
    )


@pytest.fixture
def fixed_random():
    return FixedRandom


@pytest.fixture
def build_test():
    return make_test


@pytest.fixture
def experiments_config() -> ExperimentsConfig:
    return ExperimentsConfig.model_validate(
        {
            "tests": {
                "T": {
                    "description": "Headline test",
                    "variations": {
                        "x": {"text": "<button {{click}}>Buy</button>"},
                        "y": {"text": "<button {{click}}>Purchase</button>"},
                    },
                },
                "empty": {"description": "No variations yet", "variations": {}},
            }
        }
    )


@pytest.fixture
def memory_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def session_factory():
    return build_session_factory(build_engine("sqlite:///:memory:"))


@pytest.fixture
def sql_store(session_factory) -> SqlCounterStore:
    return SqlCounterStore(session_factory)


def make_redis_store() -> RedisCounterStore:
    """Redis store on a private in-process server, so tests never share keys."""
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisCounterStore(client, prefix="ab")


@pytest.fixture
def redis_store() -> RedisCounterStore:
    return make_redis_store()


@pytest.fixture(params=["memory", "sql", "redis"])
def counter_store(request):
    """Runs a test against every backend that works without a server."""
    if request.param == "memory":
        return InMemoryCounterStore()
    if request.param == "redis":
        return make_redis_store()
    return SqlCounterStore(build_session_factory(build_engine("sqlite:///:memory:")))
