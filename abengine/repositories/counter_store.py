import abc
import threading
from typing import Dict, List, Tuple

from abengine.models.schemas.experiment import Experiment, Variation


def rank_score(wins: int, pageviews: int) -> float:
    """wins / pageviews, or 0 when nothing has been viewed yet."""
    if not pageviews or pageviews <= 0:
        return 0.0
    return wins / pageviews


class CounterStore(abc.ABC):
    """
    Persisted pageview/win counters for tests and variations.

    Implementations must make each record_* call a single atomic unit per
    variation using the backend's own transaction or optimistic-lock
    primitive; requests may run in separate processes, so an in-process lock
    is not enough. Connection failures are retried and surface as
    StoreUnavailableError once retries are exhausted.
    """

    @abc.abstractmethod
    def ensure_test(self, test_id: str, description: str) -> None:
        """Creates the test record if absent. Never resets existing counters."""

    @abc.abstractmethod
    def ensure_variation(self, test_id: str, variation_id: str) -> None:
        """Creates the variation record if absent and registers it under its test."""

    @abc.abstractmethod
    def load_tests(self) -> List[Experiment]:
        """All persisted tests with their registered variations and counts."""

    @abc.abstractmethod
    def record_pageview(self, test_id: str, variation_id: str) -> None:
        """Increments test and variation pageviews and recomputes the variation's rank."""

    @abc.abstractmethod
    def record_win(self, test_id: str, variation_id: str) -> None:
        """Increments the variation's wins and recomputes its rank."""

    @abc.abstractmethod
    def ranked_variations(self, test_id: str) -> List[Tuple[str, float]]:
        """(variation_id, rank) pairs for a test, highest rank first."""


class InMemoryCounterStore(CounterStore):
    """Process-local store for tests and single-process development."""

    def __init__(self):
        self._lock = threading.Lock()
        self._tests: Dict[str, dict] = {}
        self._test_order: List[str] = []
        self._variations: Dict[Tuple[str, str], dict] = {}
        self._variation_order: Dict[str, List[str]] = {}

    def ensure_test(self, test_id: str, description: str) -> None:
        with self._lock:
            if test_id in self._tests:
                return
            self._tests[test_id] = {"description": description, "pageviews": 0}
            self._test_order.append(test_id)

    def ensure_variation(self, test_id: str, variation_id: str) -> None:
        with self._lock:
            key = (test_id, variation_id)
            registered = self._variation_order.setdefault(test_id, [])
            if variation_id not in registered:
                registered.append(variation_id)
            self._variations.setdefault(key, {"pageviews": 0, "wins": 0, "rank": 0.0})

    def load_tests(self) -> List[Experiment]:
        with self._lock:
            tests = []
            for test_id in self._test_order:
                record = self._tests[test_id]
                variations = [
                    Variation(
                        variation_id=variation_id,
                        test_id=test_id,
                        **self._variations[(test_id, variation_id)],
                    )
                    for variation_id in self._variation_order.get(test_id, [])
                ]
                tests.append(
                    Experiment(
                        test_id=test_id,
                        description=record["description"],
                        pageviews=record["pageviews"],
                        variations=variations,
                    )
                )
            return tests

    def record_pageview(self, test_id: str, variation_id: str) -> None:
        with self._lock:
            test = self._tests.setdefault(test_id, {"description": "", "pageviews": 0})
            test["pageviews"] += 1
            counters = self._counters(test_id, variation_id)
            counters["pageviews"] += 1
            counters["rank"] = rank_score(counters["wins"], counters["pageviews"])

    def record_win(self, test_id: str, variation_id: str) -> None:
        with self._lock:
            counters = self._counters(test_id, variation_id)
            counters["wins"] += 1
            counters["rank"] = rank_score(counters["wins"], counters["pageviews"])

    def ranked_variations(self, test_id: str) -> List[Tuple[str, float]]:
        with self._lock:
            ranked = [
                (variation_id, self._variations[(test_id, variation_id)]["rank"])
                for variation_id in self._variation_order.get(test_id, [])
            ]
        return sorted(ranked, key=lambda item: item[1], reverse=True)

    def _counters(self, test_id: str, variation_id: str) -> dict:
        return self._variations.setdefault(
            (test_id, variation_id), {"pageviews": 0, "wins": 0, "rank": 0.0}
        )
