import logging
from typing import List, Optional, Tuple

from sqlalchemy import Float, case, cast, func, select, update
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.orm import selectinload, sessionmaker

from abengine.core.retry import RetryPolicy
from abengine.models.orm.experiment import ExperimentORM, VariationORM
from abengine.models.schemas.experiment import Experiment, Variation
from abengine.repositories.counter_store import CounterStore

logger = logging.getLogger(__name__)

SQL_RETRYABLE_ERRORS = (OperationalError, DisconnectionError)


class SqlCounterStore(CounterStore):
    """
    Counter store on a relational database through SQLAlchemy.

    Increments are single ``UPDATE ... SET col = col + 1`` statements whose
    rank expression is evaluated by the database against the same row
    version, so each record_* call is atomic without application locks.
    """

    def __init__(self, session_factory: sessionmaker, retry: Optional[RetryPolicy] = None):
        self.session_factory = session_factory
        self.retry = retry or RetryPolicy(retry_on=SQL_RETRYABLE_ERRORS)

    def ensure_test(self, test_id: str, description: str) -> None:
        def create_if_absent() -> None:
            try:
                with self.session_factory.begin() as session:
                    if session.get(ExperimentORM, test_id) is None:
                        session.add(
                            ExperimentORM(test_id=test_id, description=description, pageviews=0)
                        )
            except IntegrityError:
                # Another process registered the test first
                logger.debug("Test %s already registered", test_id)

        self.retry.call("ensure_test", create_if_absent)

    def ensure_variation(self, test_id: str, variation_id: str) -> None:
        def create_if_absent() -> None:
            try:
                with self.session_factory.begin() as session:
                    if session.get(VariationORM, (test_id, variation_id)) is not None:
                        return
                    position = session.scalar(
                        select(func.count())
                        .select_from(VariationORM)
                        .where(VariationORM.test_id == test_id)
                    )
                    session.add(
                        VariationORM(
                            test_id=test_id,
                            variation_id=variation_id,
                            pageviews=0,
                            wins=0,
                            rank=0.0,
                            position=position or 0,
                        )
                    )
            except IntegrityError:
                logger.debug("Variation %s/%s already registered", test_id, variation_id)

        self.retry.call("ensure_variation", create_if_absent)

    def load_tests(self) -> List[Experiment]:
        def load() -> List[Experiment]:
            with self.session_factory() as session:
                stmt = (
                    select(ExperimentORM)
                    .options(selectinload(ExperimentORM.variations))
                    .order_by(ExperimentORM.created_at, ExperimentORM.test_id)
                )
                return [
                    Experiment(
                        test_id=test.test_id,
                        description=test.description or "",
                        pageviews=test.pageviews,
                        variations=[
                            Variation(
                                variation_id=variation.variation_id,
                                test_id=variation.test_id,
                                pageviews=variation.pageviews,
                                wins=variation.wins,
                                rank=variation.rank,
                            )
                            for variation in test.variations
                        ],
                    )
                    for test in session.scalars(stmt).all()
                ]

        return self.retry.call("load_tests", load)

    def record_pageview(self, test_id: str, variation_id: str) -> None:
        def increment() -> None:
            with self.session_factory.begin() as session:
                session.execute(
                    update(ExperimentORM)
                    .where(ExperimentORM.test_id == test_id)
                    .values(pageviews=ExperimentORM.pageviews + 1)
                )
                session.execute(
                    update(VariationORM)
                    .where(
                        VariationORM.test_id == test_id,
                        VariationORM.variation_id == variation_id,
                    )
                    # rank first: MySQL evaluates SET left to right against the
                    # updated row, other dialects against the original one
                    .ordered_values(
                        (VariationORM.rank, cast(VariationORM.wins, Float) / (VariationORM.pageviews + 1)),
                        (VariationORM.pageviews, VariationORM.pageviews + 1),
                    )
                )

        self.retry.call("record_pageview", increment)

    def record_win(self, test_id: str, variation_id: str) -> None:
        def increment() -> None:
            with self.session_factory.begin() as session:
                session.execute(
                    update(VariationORM)
                    .where(
                        VariationORM.test_id == test_id,
                        VariationORM.variation_id == variation_id,
                    )
                    .ordered_values(
                        (
                            VariationORM.rank,
                            case(
                                (
                                    VariationORM.pageviews > 0,
                                    cast(VariationORM.wins + 1, Float) / VariationORM.pageviews,
                                ),
                                else_=0.0,
                            ),
                        ),
                        (VariationORM.wins, VariationORM.wins + 1),
                    )
                )

        self.retry.call("record_win", increment)

    def ranked_variations(self, test_id: str) -> List[Tuple[str, float]]:
        def ranked() -> List[Tuple[str, float]]:
            with self.session_factory() as session:
                stmt = (
                    select(VariationORM.variation_id, VariationORM.rank)
                    .where(VariationORM.test_id == test_id)
                    .order_by(VariationORM.rank.desc(), VariationORM.position)
                )
                return [(row.variation_id, float(row.rank)) for row in session.execute(stmt)]

        return self.retry.call("ranked_variations", ranked)
