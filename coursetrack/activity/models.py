"""Weekly facilitator activity logs."""

import enum
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from ..database.base import Base


class ActivityStatus(enum.StrEnum):
    DONE = "Done"
    PENDING = "Pending"
    NOT_STARTED = "Not Started"


def _status_column() -> Column:
    return Column(
        SQLEnum(ActivityStatus, values_callable=lambda e: [m.value for m in e], name="activity_status"),
        nullable=False,
        default=ActivityStatus.NOT_STARTED,
    )


# (attribute, label) in the order they appear in notifications
STATUS_FIELDS = (
    ("formative_one_grading", "Formative One Grading"),
    ("formative_two_grading", "Formative Two Grading"),
    ("summative_grading", "Summative Grading"),
    ("course_moderation", "Course Moderation"),
    ("intranet_sync", "Intranet Sync"),
    ("grade_book_status", "Grade Book Status"),
)


class ActivityLog(Base):
    __tablename__ = "activity_trackers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    assignment_id = Column(Integer, ForeignKey("course_offerings.id"), nullable=False)
    facilitator_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    week_number = Column(Integer, nullable=False)
    year = Column(Integer, nullable=False)
    attendance = Column(JSON, nullable=False, default=list)

    formative_one_grading = _status_column()
    formative_two_grading = _status_column()
    summative_grading = _status_column()
    course_moderation = _status_column()
    intranet_sync = _status_column()
    grade_book_status = _status_column()

    notes = Column(Text, nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )

    assignment = relationship("CourseAssignment", back_populates="activity_logs")
    facilitator = relationship("User")

    __table_args__ = (
        UniqueConstraint("assignment_id", "week_number", "year", name="unique_activity_tracker"),
        CheckConstraint("week_number BETWEEN 1 AND 53", name="ck_activity_week"),
        CheckConstraint("year BETWEEN 2020 AND 2030", name="ck_activity_year"),
        Index("idx_activity_pending", "facilitator_id", "submitted_at", "is_active"),
    )
