import logging
from typing import Dict, List

from abengine.models.schemas.experiment import (
    Experiment,
    ExperimentsConfig,
    Variation,
)
from abengine.repositories.counter_store import CounterStore

logger = logging.getLogger(__name__)


def merge_tests(configured: ExperimentsConfig, persisted: List[Experiment]) -> Dict[str, Experiment]:
    """
    Overlays persisted counters on the configured tests.

    Configuration decides which tests and variations exist and their order;
    stored variations that are no longer configured are dropped, configured
    ones without a stored record start at zero.
    """
    persisted_by_id = {test.test_id: test for test in persisted}

    merged: Dict[str, Experiment] = {}
    for test_id, test_config in configured.tests.items():
        stored = persisted_by_id.get(test_id)
        stored_variations = (
            {variation.variation_id: variation for variation in stored.variations} if stored else {}
        )

        variations = []
        for variation_id, variation_config in test_config.variations.items():
            counters = stored_variations.get(variation_id)
            variations.append(
                Variation(
                    variation_id=variation_id,
                    test_id=test_id,
                    text=variation_config.text,
                    pageviews=counters.pageviews if counters else 0,
                    wins=counters.wins if counters else 0,
                    rank=counters.rank if counters else 0.0,
                )
            )

        merged[test_id] = Experiment(
            test_id=test_id,
            description=test_config.description,
            pageviews=stored.pageviews if stored else 0,
            variations=variations,
        )

    return merged


class VariationRepository:
    """
    Reconciles the configured tests with the counter store.

    Registration (ensure_test / ensure_variation) runs once per configuration
    load; ``load`` then reads current counters and returns the merged view.
    """

    def __init__(self, counter_store: CounterStore, configured: ExperimentsConfig):
        self.counter_store = counter_store
        self.configured = configured
        self._registered = False

    def register(self) -> None:
        """Self-healing registration of every configured test and variation."""
        for test_id, test_config in self.configured.tests.items():
            self.counter_store.ensure_test(test_id, test_config.description)
            for variation_id in test_config.variations:
                self.counter_store.ensure_variation(test_id, variation_id)
        self._registered = True
        logger.info("Registered %d configured test(s) with the counter store", len(self.configured.tests))

    def load(self) -> Dict[str, Experiment]:
        if not self._registered:
            self.register()
        return merge_tests(self.configured, self.counter_store.load_tests())

    def reload(self, configured: ExperimentsConfig) -> None:
        """Swaps in a new configuration; registration runs again on next load."""
        self.configured = configured
        self._registered = False
