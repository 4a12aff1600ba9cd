from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .base import Base


# --- Experiment (test) Model ---
class ExperimentORM(Base):
    __tablename__ = "ab_tests"

    test_id = Column(String, primary_key=True)
    description = Column(Text, nullable=False, default="")

    # Aggregate pageviews across all variations of the test
    pageviews = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Registration order is the enumeration order of variations
    variations = relationship(
        "VariationORM", back_populates="test", order_by="VariationORM.position"
    )


# --- Variation Counter Model ---
class VariationORM(Base):
    __tablename__ = "ab_variations"

    # Variation ids are only unique within their test
    test_id = Column(String, ForeignKey("ab_tests.test_id"), primary_key=True)
    variation_id = Column(String, primary_key=True)

    pageviews = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)

    # wins / pageviews, or 0 when there are no pageviews yet
    rank = Column(Float, nullable=False, default=0.0, index=True)

    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    test = relationship("ExperimentORM", back_populates="variations")
