"""Module catalogue and facilitator course assignments."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from ..database.base import Base


class Module(Base):
    __tablename__ = "modules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(20), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    credits = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True)


class CourseAssignment(Base):
    """A facilitator's allocation to teach one module in a trimester/intake."""

    __tablename__ = "course_offerings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    module_id = Column(Integer, ForeignKey("modules.id"), nullable=False)
    facilitator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    trimester = Column(String(20), nullable=False)
    intake_period = Column(String(20), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    max_students = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )

    module = relationship("Module")
    facilitator = relationship("User")
    activity_logs = relationship("ActivityLog", back_populates="assignment")

    __table_args__ = (
        UniqueConstraint("module_id", "facilitator_id", "trimester", "intake_period", name="unique_course_offering"),
    )
