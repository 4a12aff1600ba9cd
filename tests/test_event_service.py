import random
from unittest.mock import MagicMock

import pytest

from abengine.core.auth import EventAuthorizer
from abengine.core.context import VisitorContext
from abengine.core.errors import CorruptRecordError, StoreUnavailableError
from abengine.models.schemas.event import EventSubmissionModel, PageviewSubmissionModel
from abengine.repositories.counter_store import CounterStore
from abengine.repositories.experiment_repo import VariationRepository
from abengine.services.event_service import EventService


@pytest.fixture
def authorizer():
    return EventAuthorizer(rng=random.Random(11))


@pytest.fixture
def visitor(authorizer):
    visitor = VisitorContext()
    authorizer.issue_token(visitor.session)
    return visitor


@pytest.fixture
def service(memory_store, authorizer, experiments_config):
    VariationRepository(memory_store, experiments_config).register()
    return EventService(memory_store, authorizer, experiments_config)


def counts(store, test_id, variation_id):
    test = next(t for t in store.load_tests() if t.test_id == test_id)
    variation = next(v for v in test.variations if v.variation_id == variation_id)
    return variation.pageviews, variation.wins, variation.rank


def signed_pageview(authorizer, visitor, tests):
    token = authorizer.session_token(visitor.session)
    return PageviewSubmissionModel(token=token, code=authorizer.sign(token, tests), tests=tests)


def signed_event(authorizer, visitor, test_id, variation_id, event="click"):
    token = authorizer.session_token(visitor.session)
    payload = {"test_id": test_id, "variation_id": variation_id, "event": event}
    return EventSubmissionModel(token=token, code=authorizer.sign(token, payload), **payload)


def test_signed_pageviews_are_recorded(service, authorizer, visitor, memory_store):
    tests = [{"test_id": "T", "variation_id": "x"}, {"test_id": "T", "variation_id": "y"}]

    assert service.record_pageviews(visitor, signed_pageview(authorizer, visitor, tests))
    assert counts(memory_store, "T", "x")[0] == 1
    assert counts(memory_store, "T", "y")[0] == 1


def test_single_pageview_object_is_accepted(service, authorizer, visitor, memory_store):
    token = authorizer.session_token(visitor.session)
    item = {"test_id": "T", "variation_id": "x"}
    submission = PageviewSubmissionModel(token=token, code=authorizer.sign(token, [item]), tests=item)

    assert service.record_pageviews(visitor, submission)
    assert counts(memory_store, "T", "x")[0] == 1


def test_forged_pageview_changes_nothing(service, authorizer, visitor, memory_store):
    submission = signed_pageview(authorizer, visitor, [{"test_id": "T", "variation_id": "x"}])
    submission.tests = [{"test_id": "T", "variation_id": "y"}]

    assert not service.record_pageviews(visitor, submission)
    assert counts(memory_store, "T", "x")[0] == 0
    assert counts(memory_store, "T", "y")[0] == 0


def test_submission_from_another_session_is_rejected(service, authorizer, visitor, memory_store):
    submission = signed_pageview(authorizer, visitor, [{"test_id": "T", "variation_id": "x"}])
    other_visitor = VisitorContext()
    authorizer.issue_token(other_visitor.session)

    assert not service.record_pageviews(other_visitor, submission)
    assert not service.record_pageviews(VisitorContext(), submission)
    assert counts(memory_store, "T", "x")[0] == 0


def test_unknown_variations_are_skipped(service, authorizer, visitor, memory_store):
    tests = [{"test_id": "T", "variation_id": "gone"}, {"test_id": "T", "variation_id": "x"}]
    assert service.record_pageviews(visitor, signed_pageview(authorizer, visitor, tests))
    assert counts(memory_store, "T", "x")[0] == 1

    only_unknown = [{"test_id": "nope", "variation_id": "x"}]
    assert not service.record_pageviews(visitor, signed_pageview(authorizer, visitor, only_unknown))


def test_win_increments_once_and_reranks(service, authorizer, visitor, memory_store):
    tests = [{"test_id": "T", "variation_id": "x"}]
    for _ in range(3):
        service.record_pageviews(visitor, signed_pageview(authorizer, visitor, tests))

    assert service.record_event(visitor, signed_event(authorizer, visitor, "T", "x"))

    pageviews, wins, rank = counts(memory_store, "T", "x")
    assert (pageviews, wins) == (3, 1)
    assert rank == pytest.approx(1 / 3)


def test_event_requires_event_type(service, authorizer, visitor, memory_store):
    token = authorizer.session_token(visitor.session)
    payload = {"test_id": "T", "variation_id": "x", "event": None}
    submission = EventSubmissionModel(
        token=token, code=authorizer.sign(token, payload), test_id="T", variation_id="x"
    )

    assert not service.record_event(visitor, submission)
    assert counts(memory_store, "T", "x")[1] == 0


def test_forged_event_type_is_rejected(service, authorizer, visitor, memory_store):
    submission = signed_event(authorizer, visitor, "T", "x", event="click")
    submission.event = "submit"

    assert not service.record_event(visitor, submission)
    assert counts(memory_store, "T", "x")[1] == 0


def test_event_for_unknown_variation_is_a_noop(service, authorizer, visitor):
    assert not service.record_event(visitor, signed_event(authorizer, visitor, "T", "gone"))


def test_store_unavailable_reports_failure(authorizer, visitor, experiments_config):
    store = MagicMock(spec=CounterStore)
    store.record_pageview.side_effect = StoreUnavailableError("record_pageview", 5)
    store.record_win.side_effect = StoreUnavailableError("record_win", 5)
    service = EventService(store, authorizer, experiments_config)

    tests = [{"test_id": "T", "variation_id": "x"}]
    assert not service.record_pageviews(visitor, signed_pageview(authorizer, visitor, tests))
    assert not service.record_event(visitor, signed_event(authorizer, visitor, "T", "x"))


def test_corrupt_record_reports_failure(authorizer, visitor, experiments_config):
    store = MagicMock(spec=CounterStore)
    store.record_pageview.side_effect = CorruptRecordError("Field 'wins' is not an integer")
    store.record_win.side_effect = CorruptRecordError("Field 'wins' is not an integer")
    service = EventService(store, authorizer, experiments_config)

    tests = [{"test_id": "T", "variation_id": "x"}]
    assert not service.record_pageviews(visitor, signed_pageview(authorizer, visitor, tests))
    assert not service.record_event(visitor, signed_event(authorizer, visitor, "T", "x"))


def test_batch_failure_keeps_recorded_items(authorizer, visitor, experiments_config, memory_store):
    VariationRepository(memory_store, experiments_config).register()
    store = MagicMock(spec=CounterStore)

    def record_pageview(test_id, variation_id):
        if variation_id == "x":
            raise StoreUnavailableError("record_pageview", 5)
        memory_store.record_pageview(test_id, variation_id)

    store.record_pageview.side_effect = record_pageview
    service = EventService(store, authorizer, experiments_config)

    tests = [{"test_id": "T", "variation_id": "x"}, {"test_id": "T", "variation_id": "y"}]
    assert service.record_pageviews(visitor, signed_pageview(authorizer, visitor, tests))
    assert store.record_pageview.call_count == 2
    assert counts(memory_store, "T", "x")[0] == 0
    assert counts(memory_store, "T", "y")[0] == 1
