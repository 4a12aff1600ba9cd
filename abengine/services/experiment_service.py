# services/experiment_service.py

import logging
from typing import Dict, Iterable, List, Optional

from abengine.core.auth import EventAuthorizer
from abengine.core.context import VisitorContext
from abengine.core.errors import CorruptRecordError, StoreUnavailableError
from abengine.models.schemas.assignment import AssignmentModel
from abengine.models.schemas.experiment import (
    Experiment,
    ExperimentResultModel,
    RenderedVariationModel,
    RenderResponseModel,
    VariationResultModel,
)
from abengine.repositories.assignment_repo import AssignmentStore
from abengine.repositories.experiment_repo import VariationRepository, merge_tests
from abengine.services.bots import BotDetector
from abengine.services.rendering import (
    PLACEHOLDER_PATTERN,
    bind_events,
    event_attributes,
    normalize_event,
)
from abengine.services.selection import SelectionPolicy

logger = logging.getLogger(__name__)

ONE_YEAR_SECONDS = 31536000


class ExperimentService:
    """
    Request-scoped orchestration of variation assignment and page rendering.

    One instance serves one request: merged tests are loaded at most once
    and ``active_tests`` collects the (test, variation) pairs the page will
    report pageviews for.
    """

    def __init__(
        self,
        repository: VariationRepository,
        assignment_store: AssignmentStore,
        policy: SelectionPolicy,
        authorizer: EventAuthorizer,
        assignment_ttl: int = ONE_YEAR_SECONDS,
        detect_bots: bool = False,
        bot_detector: Optional[BotDetector] = None,
    ):
        self.repository = repository
        self.assignment_store = assignment_store
        self.policy = policy
        self.authorizer = authorizer
        self.assignment_ttl = assignment_ttl
        self.detect_bots = detect_bots
        self.bot_detector = bot_detector or BotDetector()

        self.active_tests: Dict[str, str] = {}
        self.degraded = False
        self._tests: Optional[Dict[str, Experiment]] = None

    def _load_tests(self) -> Dict[str, Experiment]:
        if self._tests is None:
            try:
                self._tests = self.repository.load()
            except StoreUnavailableError as e:
                # Serve configuration only: first variation, nothing recorded
                logger.warning("Counter store unavailable, serving without experiments: %s", e)
                self.degraded = True
                self._tests = merge_tests(self.repository.configured, [])
            except CorruptRecordError as e:
                logger.error("Corrupt counter record, serving without experiments: %s", e)
                self.degraded = True
                self._tests = merge_tests(self.repository.configured, [])
        return self._tests

    def is_bot(self, visitor: VisitorContext) -> bool:
        return self.detect_bots and self.bot_detector.is_bot(visitor.user_agent)

    def get_assignment(self, visitor: VisitorContext, test_id: str) -> Optional[AssignmentModel]:
        """
        The visitor's variation for ``test_id``, or None if the test is unknown
        or has no variations.

        1. Bots and degraded requests get the first variation, unrecorded.
        2. A valid existing binding is reused as-is.
        3. A binding to a removed variation is invalidated.
        4. Otherwise the selection policy picks and the binding is persisted.
        """
        test = self._load_tests().get(test_id)
        if test is None or not test.variations:
            return None

        if self.degraded or self.is_bot(visitor):
            return AssignmentModel(test_id=test_id, variation_id=test.variations[0].variation_id)

        try:
            bound = self.assignment_store.get_assignment(visitor, test_id)
        except StoreUnavailableError as e:
            logger.warning("Assignment store unavailable for test %s: %s", test_id, e)
            return AssignmentModel(test_id=test_id, variation_id=test.variations[0].variation_id)

        if bound is not None:
            if test.get_variation(bound) is not None:
                self.active_tests[test_id] = bound
                return AssignmentModel(test_id=test_id, variation_id=bound, sticky=True)

            logger.info("Invalidating assignment %s/%s: variation no longer configured", test_id, bound)
            self._invalidate(visitor, test_id)

        variation = self.policy.select(test)
        if variation is None:
            return None

        try:
            self.assignment_store.set_assignment(
                visitor, test_id, variation.variation_id, self.assignment_ttl
            )
        except StoreUnavailableError as e:
            # Next request simply selects again
            logger.warning("Could not persist assignment for test %s: %s", test_id, e)

        logger.debug("Assigned visitor to %s/%s", test_id, variation.variation_id)
        self.active_tests[test_id] = variation.variation_id
        return AssignmentModel(test_id=test_id, variation_id=variation.variation_id)

    def _invalidate(self, visitor: VisitorContext, test_id: str) -> None:
        try:
            self.assignment_store.invalidate(visitor, test_id)
        except StoreUnavailableError as e:
            logger.warning("Could not invalidate assignment for test %s: %s", test_id, e)

    def event_hook(self, token: str, test_id: str, event: Optional[str]) -> str:
        """
        Signed attributes binding ``event`` on an arbitrary element to a win
        for the variation this request assigned. Empty if the test is not
        active for the visitor or the event type is not valid.
        """
        variation_id = self.active_tests.get(test_id)
        if variation_id is None:
            return ""
        return event_attributes(
            test_id, variation_id, event, lambda payload: self.authorizer.sign(token, payload)
        )

    def render(
        self,
        visitor: VisitorContext,
        test_ids: Iterable[str],
        events: Iterable[str] = (),
    ) -> RenderResponseModel:
        """
        Resolves every requested test and signs the payloads the page may
        submit, including a standalone binding per valid type in ``events``.
        """
        token = self.authorizer.issue_token(visitor.session)

        rendered: List[RenderedVariationModel] = []
        for test_id in test_ids:
            assignment = self.get_assignment(visitor, test_id)
            if assignment is None:
                continue

            variation = self._load_tests()[test_id].get_variation(assignment.variation_id)
            if test_id in self.active_tests:
                text = bind_events(
                    variation.text,
                    test_id,
                    variation.variation_id,
                    lambda payload: self.authorizer.sign(token, payload),
                )
            else:
                text = PLACEHOLDER_PATTERN.sub("", variation.text)

            rendered.append(
                RenderedVariationModel(
                    test_id=test_id,
                    variation_id=assignment.variation_id,
                    text=text,
                    sticky=assignment.sticky,
                    events=self._event_hooks(token, test_id, events),
                )
            )

        pageviews = [
            {"test_id": test_id, "variation_id": variation_id}
            for test_id, variation_id in self.active_tests.items()
        ]

        return RenderResponseModel(
            token=token,
            disabled=self.degraded or self.is_bot(visitor),
            variations=rendered,
            pageviews=pageviews,
            pageview_code=self.authorizer.sign(token, pageviews) if pageviews else None,
        )

    def _event_hooks(self, token: str, test_id: str, events: Iterable[str]) -> Dict[str, str]:
        hooks = {}
        for event in events:
            binding = self.event_hook(token, test_id, event)
            if binding:
                hooks[normalize_event(event)] = binding
        return hooks

    def get_experiment_results(self) -> List[ExperimentResultModel]:
        """
        Every configured test with its counters, variations ordered by rank.
        Store errors propagate: this is an operator-facing report.
        """
        tests = self.repository.load()
        counter_store = self.repository.counter_store

        results = []
        for test in tests.values():
            by_id = {variation.variation_id: variation for variation in test.variations}
            ordered_ids = [
                variation_id
                for variation_id, _ in counter_store.ranked_variations(test.test_id)
                if variation_id in by_id
            ]
            ordered_ids += [variation_id for variation_id in by_id if variation_id not in ordered_ids]

            results.append(
                ExperimentResultModel(
                    test_id=test.test_id,
                    description=test.description,
                    pageviews=test.pageviews,
                    variations=[
                        VariationResultModel(
                            variation_id=variation_id,
                            pageviews=by_id[variation_id].pageviews,
                            wins=by_id[variation_id].wins,
                            success_rate=by_id[variation_id].success_rate,
                            rank=by_id[variation_id].rank,
                        )
                        for variation_id in ordered_ids
                    ],
                )
            )
        return results
