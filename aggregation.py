import logging
import statistics
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

import database
from models import AttendanceStatus

logger = logging.getLogger("school_records.attendance")

ATTENDANCE_STATUSES = frozenset(status.value for status in AttendanceStatus)


def grade_statistics(scores):
    """Count, average, highest, lowest and median of a course's scores.

    With no scores every field but ``count`` is None, so "no grades yet" is
    never mistaken for "graded zero".
    """
    scores = list(scores)
    if not scores:
        return {"count": 0, "average": None, "highest": None, "lowest": None, "median": None}
    return {
        "count": len(scores),
        "average": sum(scores) / len(scores),
        "highest": max(scores),
        "lowest": min(scores),
        "median": statistics.median(scores),
    }


@dataclass
class BulkResult:
    results: list = field(default_factory=list)
    errors: list = field(default_factory=list)

    @property
    def outcome(self):
        if not self.errors:
            return "complete"
        return "partial" if self.results else "failed"


def reconcile_attendance(db, course, day, records, recorded_by):
    """Upsert one attendance record per entry, collecting per-entry failures.

    Each entry is validated on its own; a bad one lands in ``errors`` and the
    rest of the batch carries on. Entries repeating a student overwrite each
    other in order.
    """
    enrolled = set(course.student_ids)
    outcome = BulkResult()

    for record in records:
        message = None
        if record.student_id not in enrolled:
            message = "Student is not enrolled in this course"
        elif record.status not in ATTENDANCE_STATUSES:
            message = f"Invalid status: {record.status}"
        if message:
            logger.warning("Skipping attendance for student %s in course %s: %s", record.student_id, course.id, message)
            outcome.errors.append({"student_id": record.student_id, "message": message})
            continue
        try:
            saved = database.upsert_attendance(
                db,
                student_id=record.student_id,
                course_id=course.id,
                day=day,
                status=record.status,
                reason=record.reason,
                recorded_by=recorded_by,
            )
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not record attendance for student %s in course %s", record.student_id, course.id)
            outcome.errors.append({"student_id": record.student_id, "message": "Could not record attendance"})
            continue
        outcome.results.append(saved)

    logger.info(
        "Bulk attendance for course %s on %s: %d saved, %d failed",
        course.id, day, len(outcome.results), len(outcome.errors),
    )
    return outcome
