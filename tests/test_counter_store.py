import threading

import pytest
from sqlalchemy import event

from abengine.core.db import build_engine, build_session_factory
from abengine.repositories.counter_store import rank_score
from abengine.repositories.sql_counter_store import SqlCounterStore


def _variation(store, test_id, variation_id):
    for test in store.load_tests():
        if test.test_id == test_id:
            for variation in test.variations:
                if variation.variation_id == variation_id:
                    return variation
    raise AssertionError(f"{test_id}/{variation_id} not found")


def _test(store, test_id):
    return next(test for test in store.load_tests() if test.test_id == test_id)


def test_rank_score_never_divides_by_zero():
    assert rank_score(0, 0) == 0.0
    assert rank_score(3, 0) == 0.0
    assert rank_score(1, 4) == 0.25


def test_ensure_is_idempotent_and_keeps_counters(counter_store):
    counter_store.ensure_test("T", "Headline test")
    counter_store.ensure_variation("T", "x")
    counter_store.record_pageview("T", "x")
    counter_store.record_win("T", "x")

    counter_store.ensure_test("T", "A different description")
    counter_store.ensure_variation("T", "x")

    test = _test(counter_store, "T")
    assert test.description == "Headline test"
    assert test.pageviews == 1
    assert [v.variation_id for v in test.variations] == ["x"]
    assert (test.variations[0].pageviews, test.variations[0].wins) == (1, 1)


def test_load_tests_lists_registered_variations_in_order(counter_store):
    counter_store.ensure_test("T", "")
    for variation_id in ("b", "a", "c"):
        counter_store.ensure_variation("T", variation_id)
    counter_store.ensure_test("U", "other")

    tests = {test.test_id: test for test in counter_store.load_tests()}
    assert set(tests) == {"T", "U"}
    assert [v.variation_id for v in tests["T"].variations] == ["b", "a", "c"]
    assert tests["U"].variations == []
    assert all(v.pageviews == 0 and v.wins == 0 for v in tests["T"].variations)


def test_rank_tracks_wins_over_pageviews(counter_store):
    counter_store.ensure_test("T", "")
    counter_store.ensure_variation("T", "x")
    counter_store.ensure_variation("T", "y")

    for _ in range(4):
        counter_store.record_pageview("T", "x")
    counter_store.record_win("T", "x")
    counter_store.record_pageview("T", "y")
    counter_store.record_win("T", "x")

    x = _variation(counter_store, "T", "x")
    y = _variation(counter_store, "T", "y")
    assert (x.pageviews, x.wins) == (4, 2)
    assert x.rank == pytest.approx(0.5)
    assert y.rank == 0.0
    assert _test(counter_store, "T").pageviews == 5


def test_win_before_any_pageview_ranks_zero(counter_store):
    counter_store.ensure_test("T", "")
    counter_store.ensure_variation("T", "x")

    counter_store.record_win("T", "x")
    x = _variation(counter_store, "T", "x")
    assert (x.pageviews, x.wins, x.rank) == (0, 1, 0.0)

    counter_store.record_pageview("T", "x")
    x = _variation(counter_store, "T", "x")
    assert x.rank == pytest.approx(1.0)


def test_ranked_variations_orders_by_rank(counter_store):
    counter_store.ensure_test("T", "")
    for variation_id in ("x", "y", "z"):
        counter_store.ensure_variation("T", variation_id)

    for _ in range(2):
        counter_store.record_pageview("T", "x")
        counter_store.record_pageview("T", "y")
    counter_store.record_win("T", "y")
    counter_store.record_win("T", "y")
    counter_store.record_win("T", "x")

    ranked = counter_store.ranked_variations("T")
    assert [variation_id for variation_id, _ in ranked][:2] == ["y", "x"]
    assert dict(ranked)["y"] == pytest.approx(1.0)
    assert dict(ranked)["x"] == pytest.approx(0.5)
    assert dict(ranked)["z"] == 0.0


def test_unregistered_variation_is_not_listed(counter_store):
    counter_store.ensure_test("T", "")
    counter_store.ensure_variation("T", "x")

    counter_store.record_pageview("T", "ghost")

    assert [v.variation_id for v in _test(counter_store, "T").variations] == ["x"]


def _hammer(store, threads=4, rounds=25):
    def work():
        for _ in range(rounds):
            store.record_pageview("T", "x")
            store.record_win("T", "x")
            store.record_pageview("T", "x")

    workers = [threading.Thread(target=work) for _ in range(threads)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()
    return threads * rounds


def _assert_no_lost_updates(store, calls):
    x = _variation(store, "T", "x")
    assert (x.pageviews, x.wins) == (2 * calls, calls)
    assert x.rank == pytest.approx(x.wins / x.pageviews)
    assert dict(store.ranked_variations("T"))["x"] == pytest.approx(0.5)
    assert _test(store, "T").pageviews == 2 * calls


def test_concurrent_sql_updates_are_not_lost(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'counters.db'}")
    store = SqlCounterStore(build_session_factory(engine))
    store.ensure_test("T", "")
    store.ensure_variation("T", "x")

    _assert_no_lost_updates(store, _hammer(store))


def test_concurrent_redis_updates_are_not_lost(redis_store):
    redis_store.ensure_test("T", "")
    redis_store.ensure_variation("T", "x")

    _assert_no_lost_updates(redis_store, _hammer(redis_store))


def test_sql_rank_is_assigned_before_its_counter(session_factory):
    store = SqlCounterStore(session_factory)
    store.ensure_test("T", "")
    store.ensure_variation("T", "x")
    updates = []

    @event.listens_for(session_factory.kw["bind"], "before_cursor_execute")
    def capture(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("UPDATE ab_variations"):
            updates.append(statement)

    store.record_pageview("T", "x")
    store.record_win("T", "x")

    for statement in updates:
        assignments = statement.split(" SET ")[1]
        assert assignments.lstrip('"').startswith("rank")
    assert len(updates) == 2
    assert _variation(store, "T", "x").rank == pytest.approx(1.0)
