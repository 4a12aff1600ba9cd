from datetime import datetime

from sqlalchemy import Column, DateTime, PrimaryKeyConstraint, String

from .base import Base


class AssignmentORM(Base):
    __tablename__ = "ab_assignments"

    visitor_id = Column(String, nullable=False, index=True)
    test_id = Column(String, nullable=False, index=True)
    variation_id = Column(String, nullable=False)

    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        PrimaryKeyConstraint("visitor_id", "test_id", name="assignment_pk"),
    )
