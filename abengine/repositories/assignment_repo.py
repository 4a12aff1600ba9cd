import abc
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from abengine.core.context import VisitorContext
from abengine.core.retry import RetryPolicy
from abengine.models.orm.assignment import AssignmentORM
from abengine.repositories.sql_counter_store import SQL_RETRYABLE_ERRORS

logger = logging.getLogger(__name__)


class AssignmentStore(abc.ABC):
    """Durable visitor -> variation bindings, one per test."""

    @abc.abstractmethod
    def get_assignment(self, visitor: VisitorContext, test_id: str) -> Optional[str]:
        """The bound variation id, or None if there is no valid binding."""

    @abc.abstractmethod
    def set_assignment(
        self, visitor: VisitorContext, test_id: str, variation_id: str, ttl: int
    ) -> None:
        """Binds the visitor to ``variation_id`` for ``ttl`` seconds."""

    @abc.abstractmethod
    def invalidate(self, visitor: VisitorContext, test_id: str) -> None:
        """Expires the visitor's binding for the test immediately."""


class CookieAssignmentStore(AssignmentStore):
    """Keeps each binding in a ``<prefix><test_id>`` cookie on the visitor."""

    def __init__(self, prefix: str = "ab_"):
        self.prefix = prefix

    def cookie_name(self, test_id: str) -> str:
        return f"{self.prefix}{test_id}"

    def get_assignment(self, visitor: VisitorContext, test_id: str) -> Optional[str]:
        return visitor.cookies.get(self.cookie_name(test_id)) or None

    def set_assignment(
        self, visitor: VisitorContext, test_id: str, variation_id: str, ttl: int
    ) -> None:
        visitor.set_cookie(self.cookie_name(test_id), variation_id, ttl)

    def invalidate(self, visitor: VisitorContext, test_id: str) -> None:
        visitor.delete_cookie(self.cookie_name(test_id))


class SqlAssignmentStore(AssignmentStore):
    """
    Keeps bindings server side, keyed by a durable visitor id cookie.

    Only the visitor id travels with the client, so a visitor cannot pick
    their own variation by editing cookies.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        visitor_cookie: str = "ab_visitor",
        retry: Optional[RetryPolicy] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.visitor_cookie = visitor_cookie
        self.retry = retry or RetryPolicy(retry_on=SQL_RETRYABLE_ERRORS)
        self.now = now

    def _visitor_id(self, visitor: VisitorContext) -> Optional[str]:
        return visitor.visitor_id or visitor.cookies.get(self.visitor_cookie)

    def get_assignment(self, visitor: VisitorContext, test_id: str) -> Optional[str]:
        visitor_id = self._visitor_id(visitor)
        if not visitor_id:
            return None

        def fetch() -> Optional[str]:
            with self.session_factory() as session:
                stmt = select(AssignmentORM.variation_id).where(
                    AssignmentORM.visitor_id == visitor_id,
                    AssignmentORM.test_id == test_id,
                    AssignmentORM.expires_at > self.now(),
                )
                return session.scalars(stmt).one_or_none()

        return self.retry.call("get_assignment", fetch)

    def set_assignment(
        self, visitor: VisitorContext, test_id: str, variation_id: str, ttl: int
    ) -> None:
        visitor_id = visitor.ensure_visitor_id(self.visitor_cookie, ttl)
        assigned_at = self.now()

        def store() -> None:
            try:
                with self.session_factory.begin() as session:
                    session.merge(
                        AssignmentORM(
                            visitor_id=visitor_id,
                            test_id=test_id,
                            variation_id=variation_id,
                            assigned_at=assigned_at,
                            expires_at=assigned_at + timedelta(seconds=ttl),
                        )
                    )
            except IntegrityError:
                # A concurrent request for the same visitor bound the test first
                logger.debug("Visitor %s already bound for test %s", visitor_id, test_id)

        self.retry.call("set_assignment", store)

    def invalidate(self, visitor: VisitorContext, test_id: str) -> None:
        visitor_id = self._visitor_id(visitor)
        if not visitor_id:
            return

        def expire() -> None:
            with self.session_factory.begin() as session:
                session.execute(
                    update(AssignmentORM)
                    .where(
                        AssignmentORM.visitor_id == visitor_id,
                        AssignmentORM.test_id == test_id,
                    )
                    .values(expires_at=self.now())
                )

        self.retry.call("invalidate", expire)
