import logging
import time
from typing import Dict, List, Optional, Tuple

import redis
from redis.client import Pipeline

from abengine.core.errors import CorruptRecordError
from abengine.core.retry import RetryPolicy
from abengine.models.schemas.experiment import Experiment, Variation
from abengine.repositories.counter_store import CounterStore, rank_score

logger = logging.getLogger(__name__)

REDIS_RETRYABLE_ERRORS = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)


class RedisCounterStore(CounterStore):
    """
    Reference counter store on Redis.

    Key layout (all keys under ``<prefix>:``):

    - ``test.ids``                                  list of registered test ids
    - ``test:<test>``                               hash: id, description, pageviews, timestamp
    - ``test:<test>:variation.ids``                 list of registered variation ids
    - ``variation:<test>:<variation>``              hash: id, test_id, pageviews, wins, timestamp
    - ``tests:sorted_by_views``                     zset test -> pageviews
    - ``test:<test>:variations:sorted_by_views``    zset variation -> pageviews
    - ``test:<test>:variations:sorted_by_rank``     zset variation -> wins / pageviews

    Counter updates run as WATCH/MULTI/EXEC transactions on the variation hash,
    so concurrent pageviews and wins on one variation never lose an update and
    the stored rank always matches the counters it was computed from.
    """

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "abengine",
        retry: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.prefix = prefix.rstrip(":")
        self.retry = retry or RetryPolicy(retry_on=REDIS_RETRYABLE_ERRORS)

    @classmethod
    def from_url(
        cls, url: str, prefix: str = "abengine", retry: Optional[RetryPolicy] = None
    ) -> "RedisCounterStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), prefix=prefix, retry=retry)

    # --- keys ---

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    def _test_key(self, test_id: str) -> str:
        return self._key("test", test_id)

    def _variation_ids_key(self, test_id: str) -> str:
        return self._key("test", test_id, "variation.ids")

    def _variation_key(self, test_id: str, variation_id: str) -> str:
        return self._key("variation", test_id, variation_id)

    def _views_zset(self, test_id: str) -> str:
        return self._key("test", test_id, "variations", "sorted_by_views")

    def _rank_zset(self, test_id: str) -> str:
        return self._key("test", test_id, "variations", "sorted_by_rank")

    # --- registration ---

    def ensure_test(self, test_id: str, description: str) -> None:
        test_key = self._test_key(test_id)

        def create_if_absent(pipe: Pipeline) -> None:
            if pipe.hexists(test_key, "pageviews"):
                return
            pipe.multi()
            pipe.rpush(self._key("test.ids"), test_id)
            pipe.hset(
                test_key,
                mapping={
                    "id": test_id,
                    "pageviews": 0,
                    "description": description,
                    "timestamp": int(time.time()),
                },
            )

        self.retry.call("ensure_test", lambda: self.client.transaction(create_if_absent, test_key))

    def ensure_variation(self, test_id: str, variation_id: str) -> None:
        variation_key = self._variation_key(test_id, variation_id)

        def create_if_absent(pipe: Pipeline) -> None:
            if pipe.hexists(variation_key, "pageviews"):
                return
            pipe.multi()
            pipe.hset(
                variation_key,
                mapping={
                    "id": variation_id,
                    "test_id": test_id,
                    "pageviews": 0,
                    "wins": 0,
                    "timestamp": int(time.time()),
                },
            )
            pipe.rpush(self._variation_ids_key(test_id), variation_id)
            pipe.zadd(self._rank_zset(test_id), {variation_id: 0.0})

        self.retry.call(
            "ensure_variation", lambda: self.client.transaction(create_if_absent, variation_key)
        )

    # --- reads ---

    def load_tests(self) -> List[Experiment]:
        return self.retry.call("load_tests", self._load_tests)

    def _load_tests(self) -> List[Experiment]:
        test_ids = self.client.lrange(self._key("test.ids"), 0, -1)
        if not test_ids:
            return []

        pipe = self.client.pipeline(transaction=False)
        for test_id in test_ids:
            pipe.hgetall(self._test_key(test_id))
        test_records = pipe.execute()

        tests = []
        for test_id, record in zip(test_ids, test_records):
            if not record:
                logger.warning("Test id %s is registered but has no record", test_id)
                continue
            tests.append(
                Experiment(
                    test_id=test_id,
                    description=record.get("description", ""),
                    pageviews=self._int_field(record, "pageviews"),
                    variations=self._load_variations(test_id),
                )
            )
        return tests

    def _load_variations(self, test_id: str) -> List[Variation]:
        variation_ids = self.client.lrange(self._variation_ids_key(test_id), 0, -1)
        if not variation_ids:
            return []

        pipe = self.client.pipeline(transaction=False)
        for variation_id in variation_ids:
            pipe.hgetall(self._variation_key(test_id, variation_id))
        records = pipe.execute()

        variations = []
        for variation_id, record in zip(variation_ids, records):
            if not record:
                logger.warning("Variation %s/%s is registered but has no record", test_id, variation_id)
                continue
            pageviews = self._int_field(record, "pageviews")
            wins = self._int_field(record, "wins")
            variations.append(
                Variation(
                    variation_id=variation_id,
                    test_id=test_id,
                    pageviews=pageviews,
                    wins=wins,
                    rank=rank_score(wins, pageviews),
                )
            )
        return variations

    def ranked_variations(self, test_id: str) -> List[Tuple[str, float]]:
        return self.retry.call(
            "ranked_variations",
            lambda: [
                (member, float(score))
                for member, score in self.client.zrevrange(
                    self._rank_zset(test_id), 0, -1, withscores=True
                )
            ],
        )

    @staticmethod
    def _int_field(record: Dict[str, Optional[str]], name: str) -> int:
        try:
            return int(record.get(name) or 0)
        except (TypeError, ValueError) as e:
            raise CorruptRecordError(f"Field '{name}' is not an integer in {record!r}") from e

    def _counters(self, pipe: Pipeline, variation_key: str) -> Tuple[int, int]:
        """(wins, pageviews) of a variation hash, read under the current WATCH."""
        wins, pageviews = pipe.hmget(variation_key, "wins", "pageviews")
        record = {"wins": wins, "pageviews": pageviews}
        return self._int_field(record, "wins"), self._int_field(record, "pageviews")

    # --- counters ---

    def record_pageview(self, test_id: str, variation_id: str) -> None:
        variation_key = self._variation_key(test_id, variation_id)

        def increment(pipe: Pipeline) -> None:
            # Immediate-mode reads under WATCH; EXEC fails and the whole
            # function is retried if the variation changes meanwhile.
            wins, pageviews = self._counters(pipe, variation_key)
            rank = rank_score(wins, pageviews + 1)

            pipe.multi()
            pipe.hincrby(self._test_key(test_id), "pageviews", 1)
            pipe.hincrby(variation_key, "pageviews", 1)
            pipe.zincrby(self._key("tests:sorted_by_views"), 1, test_id)
            pipe.zincrby(self._views_zset(test_id), 1, variation_id)
            pipe.zadd(self._rank_zset(test_id), {variation_id: rank})

        self.retry.call("record_pageview", lambda: self.client.transaction(increment, variation_key))

    def record_win(self, test_id: str, variation_id: str) -> None:
        variation_key = self._variation_key(test_id, variation_id)

        def increment(pipe: Pipeline) -> None:
            # The pageview for this visit may not have landed yet; a zero
            # pageview count yields rank 0 instead of a division error.
            wins, pageviews = self._counters(pipe, variation_key)
            rank = rank_score(wins + 1, pageviews)

            pipe.multi()
            pipe.hincrby(variation_key, "wins", 1)
            pipe.zadd(self._rank_zset(test_id), {variation_id: rank})

        self.retry.call("record_win", lambda: self.client.transaction(increment, variation_key))
