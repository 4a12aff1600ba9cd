# services/event_service.py

import logging

from abengine.core.auth import EventAuthorizer
from abengine.core.context import VisitorContext
from abengine.core.errors import CorruptRecordError, StoreUnavailableError
from abengine.models.schemas.event import EventSubmissionModel, PageviewSubmissionModel
from abengine.models.schemas.experiment import ExperimentsConfig
from abengine.repositories.counter_store import CounterStore

logger = logging.getLogger(__name__)

EVENT_REQUIRED_FIELDS = ("test_id", "variation_id", "event")


class EventService:
    """
    Records pageviews and wins reported by the page.

    Every submission is verified against the session token first. Rejected,
    unknown or unrecordable submissions all return False; nothing here raises
    to the caller.

    Pageview batch items are recorded independently. A batch reports True if
    any item was counted and must not be resubmitted; items that failed are
    logged and dropped.
    """

    def __init__(
        self,
        counter_store: CounterStore,
        authorizer: EventAuthorizer,
        configured: ExperimentsConfig,
    ):
        self.counter_store = counter_store
        self.authorizer = authorizer
        self.configured = configured

    def is_configured(self, test_id: str, variation_id: str) -> bool:
        test = self.configured.tests.get(test_id)
        return test is not None and variation_id in test.variations

    def record_pageviews(self, visitor: VisitorContext, submission: PageviewSubmissionModel) -> bool:
        payload = submission.payload()
        if not self.authorizer.verify(
            submission.token,
            submission.code,
            payload,
            self.authorizer.session_token(visitor.session),
        ):
            return False

        recorded = False
        for item in payload:
            test_id, variation_id = item["test_id"], item["variation_id"]
            if not self.is_configured(test_id, variation_id):
                logger.info("Ignoring pageview for unknown variation %s/%s", test_id, variation_id)
                continue
            try:
                self.counter_store.record_pageview(test_id, variation_id)
            except (StoreUnavailableError, CorruptRecordError) as e:
                logger.error("Pageview for %s/%s not recorded: %s", test_id, variation_id, e)
                continue
            recorded = True

        return recorded

    def record_event(self, visitor: VisitorContext, submission: EventSubmissionModel) -> bool:
        if not self.authorizer.verify(
            submission.token,
            submission.code,
            submission.payload(),
            self.authorizer.session_token(visitor.session),
            required_fields=EVENT_REQUIRED_FIELDS,
        ):
            return False

        if not self.is_configured(submission.test_id, submission.variation_id):
            logger.info(
                "Ignoring win for unknown variation %s/%s", submission.test_id, submission.variation_id
            )
            return False

        try:
            self.counter_store.record_win(submission.test_id, submission.variation_id)
        except (StoreUnavailableError, CorruptRecordError) as e:
            logger.error(
                "Win for %s/%s not recorded: %s", submission.test_id, submission.variation_id, e
            )
            return False

        return True
