from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, String, Table, Text,
    UniqueConstraint, create_engine, delete, insert, select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

import config

connect_args = {"check_same_thread": False} if config.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(config.DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def utcnow():
    # Naive UTC, matching what SQLite hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


course_students = Table(
    "course_students",
    Base.metadata,
    Column("course_id", Integer, ForeignKey("courses.id", ondelete="CASCADE"), primary_key=True),
    Column("student_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    role = Column(String, nullable=False, default="student")
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    hashed_password = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    last_login = Column(DateTime)

    courses = relationship("Course", secondary=course_students, back_populates="students")

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class Course(Base):
    __tablename__ = "courses"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    course_code = Column(String, unique=True, index=True, nullable=False)
    description = Column(Text)
    teacher_id = Column(Integer, ForeignKey("users.id"), index=True)
    created_at = Column(DateTime, default=utcnow)

    teacher = relationship("User", foreign_keys=[teacher_id])
    students = relationship("User", secondary=course_students, back_populates="courses")

    @property
    def student_ids(self):
        return sorted(student.id for student in self.students)


class Assignment(Base):
    __tablename__ = "assignments"
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text)
    course_id = Column(Integer, ForeignKey("courses.id"), index=True, nullable=False)
    due_date = Column(DateTime, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=utcnow)


class Grade(Base):
    __tablename__ = "grades"
    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    course_id = Column(Integer, ForeignKey("courses.id"), index=True, nullable=False)
    assignment_id = Column(Integer, ForeignKey("assignments.id"), index=True)  # None = general assessment
    score = Column(Float, nullable=False)
    comment = Column(Text)
    graded_by = Column(Integer, ForeignKey("users.id"))
    graded_at = Column(DateTime, default=utcnow)

    assignment = relationship("Assignment")


class Attendance(Base):
    __tablename__ = "attendance"
    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    course_id = Column(Integer, ForeignKey("courses.id"), index=True, nullable=False)
    date = Column(Date, nullable=False)
    status = Column(String, nullable=False, default="absent")  # absent | excused
    reason = Column(Text)
    recorded_by = Column(Integer, ForeignKey("users.id"))
    recorded_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("student_id", "course_id", "date", name="uq_attendance_student_course_date"),
    )


class Infraction(Base):
    __tablename__ = "infractions"
    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    severity = Column(String, nullable=False, default="minor")
    date = Column(Date, nullable=False)
    reported_by = Column(Integer, ForeignKey("users.id"))
    resolution = Column(Text)
    resolved = Column(Boolean, nullable=False, default=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def enroll_student(db, course_id, student_id):
    """Insert one enrollment row.

    The (course_id, student_id) primary key makes a second insert for the same
    pair fail with IntegrityError, even when two requests race.
    """
    db.execute(insert(course_students).values(course_id=course_id, student_id=student_id))
    db.commit()


def unenroll_student(db, course_id, student_id):
    db.execute(
        delete(course_students).where(
            course_students.c.course_id == course_id,
            course_students.c.student_id == student_id,
        )
    )
    db.commit()


def upsert_attendance(db, *, student_id, course_id, day, status, reason, recorded_by):
    """Insert or overwrite the attendance record for (student, course, day).

    Issued as a single INSERT ... ON CONFLICT DO UPDATE so that concurrent
    submissions for the same key can never produce two rows.
    """
    dialect = db.get_bind().dialect.name
    insert_for = postgresql.insert if dialect == "postgresql" else sqlite.insert

    recorded_at = utcnow()
    stmt = insert_for(Attendance).values(
        student_id=student_id,
        course_id=course_id,
        date=day,
        status=status,
        reason=reason,
        recorded_by=recorded_by,
        recorded_at=recorded_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["student_id", "course_id", "date"],
        set_={
            "status": status,
            "reason": reason,
            "recorded_by": recorded_by,
            "recorded_at": recorded_at,
        },
    )
    db.execute(stmt)
    db.commit()
    return (
        db.query(Attendance)
        .filter(Attendance.student_id == student_id, Attendance.course_id == course_id, Attendance.date == day)
        .one()
    )


def remove_assignment(db, assignment):
    # Grades outlive their assignment as general assessments
    db.query(Grade).filter(Grade.assignment_id == assignment.id).update(
        {Grade.assignment_id: None}, synchronize_session="fetch"
    )
    db.delete(assignment)
    db.commit()


def remove_course(db, course):
    """Delete a course together with its grades, attendance and assignments."""
    assignment_ids = select(Assignment.id).where(Assignment.course_id == course.id)
    db.query(Grade).filter(Grade.course_id == course.id).delete(synchronize_session="fetch")
    db.query(Grade).filter(Grade.assignment_id.in_(assignment_ids)).update(
        {Grade.assignment_id: None}, synchronize_session="fetch"
    )
    db.query(Attendance).filter(Attendance.course_id == course.id).delete(synchronize_session="fetch")
    db.query(Assignment).filter(Assignment.course_id == course.id).delete(synchronize_session="fetch")
    db.delete(course)
    db.commit()


def remove_user(db, user):
    """Delete a user and the records about them.

    Courses they taught become unassigned; records they only authored keep
    existing with the author cleared.
    """
    for model in (Grade, Attendance, Infraction):
        db.query(model).filter(model.student_id == user.id).delete(synchronize_session="fetch")

    authored = (
        (Course.teacher_id, Course),
        (Assignment.created_by, Assignment),
        (Grade.graded_by, Grade),
        (Attendance.recorded_by, Attendance),
        (Infraction.reported_by, Infraction),
    )
    for column, model in authored:
        db.query(model).filter(column == user.id).update({column: None}, synchronize_session="fetch")

    db.delete(user)
    db.commit()
