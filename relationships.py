"""Ownership and enrollment facts for authorization.

``RelationshipResolver`` is the only piece of the authorization path that
reads from storage. It answers "does this caller teach / attend the course
behind this record?" and hands the answers to ``policy.decide`` as ``Facts``.
``Authorizer`` is the thin adapter route handlers call: resolve facts, decide,
raise on deny.
"""
import logging

from sqlalchemy.orm import Session

import database
from errors import NotFound
from policy import Facts, Operation, Resource, Role, decide

logger = logging.getLogger("school_records.policy")

MODELS = {
    Resource.user: database.User,
    Resource.course: database.Course,
    Resource.assignment: database.Assignment,
    Resource.grade: database.Grade,
    Resource.attendance: database.Attendance,
    Resource.infraction: database.Infraction,
}

# Resources that hang off a course through course_id
COURSE_SCOPED = frozenset({Resource.assignment, Resource.grade, Resource.attendance})


class RelationshipResolver:
    def __init__(self, db: Session):
        self.db = db

    def load(self, resource, record_id):
        if record_id is None:
            return None
        return self.db.get(MODELS[resource], record_id)

    def course(self, course_id):
        return self.load(Resource.course, course_id)

    def course_of(self, resource, record):
        if resource is Resource.course:
            return record
        if resource in COURSE_SCOPED:
            return self.course(record.course_id)
        return None

    def is_owner(self, identity, resource, record):
        # Infractions and users have no owning course
        course = self.course_of(resource, record)
        return course is not None and course.teacher_id == identity.id

    def is_enrolled(self, identity, course):
        students = database.course_students
        row = (
            self.db.query(students)
            .filter(students.c.course_id == course.id, students.c.student_id == identity.id)
            .first()
        )
        return row is not None

    def facts_for(self, identity, resource, record):
        if record is None:
            return Facts(exists=False)
        if resource is Resource.user:
            return Facts(
                is_self=record.id == identity.id,
                target_is_student=record.role == Role.student.value,
            )

        course = self.course_of(resource, record)
        # A record whose course was deleted is still the admin's to clean up
        return Facts(
            owner=self.is_owner(identity, resource, record),
            enrolled=(
                course is not None
                and identity.role is Role.student
                and self.is_enrolled(identity, course)
            ),
            is_self=getattr(record, "student_id", None) == identity.id,
        )

    def list_facts(self, identity):
        if identity.role is Role.teacher:
            rows = self.db.query(database.Course.id).filter(database.Course.teacher_id == identity.id)
            return Facts(owned_course_ids=frozenset(course_id for (course_id,) in rows))
        if identity.role is Role.student:
            students = database.course_students
            rows = self.db.query(students.c.course_id).filter(students.c.student_id == identity.id)
            return Facts(enrolled_course_ids=frozenset(course_id for (course_id,) in rows))
        return Facts()


class Authorizer:
    def __init__(self, db: Session):
        self.db = db
        self.resolver = RelationshipResolver(db)

    def _enforce(self, identity, resource, operation, facts, touched=frozenset()):
        decision = decide(identity, resource, operation, facts, frozenset(touched))
        if not decision.allowed:
            logger.info(
                "Denied %s on %s for user %s (%s): %s",
                operation.value, resource.value, identity.id, identity.role.value, decision.reason.value,
            )
        return decision.enforce()

    def authorize(self, identity, resource, operation, record, touched=frozenset()):
        """Check a single-record operation; 404 for a missing record, 403 on deny."""
        facts = self.resolver.facts_for(identity, resource, record)
        return self._enforce(identity, resource, operation, facts, touched)

    def require_course(self, course_id):
        course = self.resolver.course(course_id)
        if course is None:
            raise NotFound("Course")
        return course

    def authorize_course(self, identity, operation, course_id):
        course = self.require_course(course_id)
        self.authorize(identity, Resource.course, operation, course)
        return course

    def authorize_create(self, identity, resource, course=None, facts=None, touched=frozenset()):
        """Check creation of a ``resource``; ownership comes from its parent course."""
        if facts is None:
            facts = self.resolver.facts_for(identity, Resource.course, course) if course is not None else Facts()
        return self._enforce(identity, resource, Operation.create, facts, touched)

    def list_scope(self, identity, resource):
        facts = self.resolver.list_facts(identity)
        return self._enforce(identity, resource, Operation.list, facts)
