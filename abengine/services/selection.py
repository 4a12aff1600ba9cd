import logging
import random
from typing import List, Optional, Tuple

from abengine.models.schemas.experiment import Experiment, Variation

logger = logging.getLogger(__name__)


class SelectionPolicy:
    """
    Picks the variation a new visitor should see.

    With machine learning enabled the steps run in order:

    1. confidence gate (if enabled): return the Bayesian-smoothed leader once
       ``min(bayes) / max(bayes)`` reaches ``confidence_threshold``;
    2. with probability ``random_pick_percentage`` explore uniformly at random;
    3. otherwise exploit the best observed ``wins / pageviews``, considering
       only variations with at least one pageview and one win, and falling
       back to a uniform pick when none qualifies.

    With machine learning disabled every pick is uniform.
    """

    def __init__(
        self,
        enable_machine_learning: bool = True,
        enable_confidence_gating: bool = True,
        confidence_threshold: float = 0.95,
        random_pick_percentage: float = 0.10,
        rng: Optional[random.Random] = None,
    ):
        self.enable_machine_learning = enable_machine_learning
        self.enable_confidence_gating = enable_confidence_gating
        self.confidence_threshold = confidence_threshold
        self.random_pick_percentage = random_pick_percentage
        self.rng = rng or random.Random()

    def select(self, test: Experiment) -> Optional[Variation]:
        if not test.variations:
            return None

        if not self.enable_machine_learning:
            return self.random_variation(test)

        if self.enable_confidence_gating:
            variation, confidence = self.confident_variation(test)
            if variation is not None and confidence >= self.confidence_threshold:
                logger.debug(
                    "Test %s: confident pick %s (confidence %.3f)",
                    test.test_id,
                    variation.variation_id,
                    confidence,
                )
                return variation

        if self.rng.random() < self.random_pick_percentage:
            return self.random_variation(test)

        return self.optimal_variation(test)

    def random_variation(self, test: Experiment) -> Optional[Variation]:
        if not test.variations:
            return None
        return self.rng.choice(test.variations)

    def optimal_variation(self, test: Experiment) -> Optional[Variation]:
        """Highest observed success rate; cold-start variations never qualify."""
        optimal = None
        highest = 0.0
        for variation in test.variations:
            if variation.pageviews <= 0 or variation.wins <= 0:
                continue
            rate = variation.wins / variation.pageviews
            if rate > highest:
                highest = rate
                optimal = variation

        if optimal is None:
            return self.random_variation(test)
        return optimal

    @staticmethod
    def bayes_scores(test: Experiment) -> List[float]:
        """
        Smoothed score per variation:
        ``(avg_pageviews * avg_wins + wins) / (pageviews + avg_pageviews)``
        where avg_wins is the mean of ``wins * pageviews``.
        """
        count = len(test.variations)
        if count == 0:
            return []

        avg_pageviews = sum(v.pageviews for v in test.variations) / count
        avg_wins = sum(v.wins * v.pageviews for v in test.variations) / count

        scores = []
        for variation in test.variations:
            denominator = variation.pageviews + avg_pageviews
            if denominator <= 0:
                scores.append(0.0)
            else:
                scores.append((avg_pageviews * avg_wins + variation.wins) / denominator)
        return scores

    def confident_variation(self, test: Experiment) -> Tuple[Optional[Variation], float]:
        """The Bayesian leader and the confidence ``min(bayes) / max(bayes)``."""
        scores = self.bayes_scores(test)
        if not scores:
            return None, 0.0

        best_index = max(range(len(scores)), key=lambda i: scores[i])
        best = scores[best_index]
        if best <= 0:
            return test.variations[best_index], 0.0

        return test.variations[best_index], min(scores) / best
