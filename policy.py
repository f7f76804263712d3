"""Role-based access decisions for every resource in the service.

The whole permission model lives in ``POLICY``: one rule per
(role, resource, operation). ``decide`` evaluates a rule against the
relationship facts gathered by ``relationships.RelationshipResolver`` and never
touches storage itself, so it can be tested without a database.

For single-record operations a rule is a yes/no question about the facts.
For ``Operation.list`` the same rule turns into a mandatory ``Scope`` that the
query builder AND-s onto whatever filters the caller supplied.
"""
import enum
from dataclasses import dataclass
from typing import FrozenSet, Optional

from errors import Forbidden, NotFound, Unauthenticated


class Role(str, enum.Enum):
    admin = "admin"
    teacher = "teacher"
    student = "student"


class Resource(str, enum.Enum):
    user = "user"
    course = "course"
    assignment = "assignment"
    grade = "grade"
    attendance = "attendance"
    infraction = "infraction"

    @property
    def label(self):
        return "Attendance record" if self is Resource.attendance else self.value.capitalize()


class Operation(str, enum.Enum):
    create = "create"
    list = "list"
    read = "read"
    update = "update"
    delete = "delete"


class Rule(enum.Enum):
    ALLOW = "allow"
    DENY = "deny"
    OWNER = "owner"  # caller teaches the course the record belongs to
    ENROLLED = "enrolled"  # caller is enrolled in that course
    SELF = "self"  # the record is about the caller
    SELF_OR_STUDENT = "self_or_student"  # the target user is the caller or a student


class DenyReason(str, enum.Enum):
    unauthenticated = "unauthenticated"
    forbidden = "forbidden"
    not_found = "not-found"


@dataclass(frozen=True)
class Identity:
    id: int
    role: Role


@dataclass(frozen=True)
class Facts:
    """What the resolver learned about the caller's relationship to a record."""

    exists: bool = True
    owner: bool = False
    enrolled: bool = False
    is_self: bool = False
    target_is_student: bool = False
    owned_course_ids: FrozenSet[int] = frozenset()
    enrolled_course_ids: FrozenSet[int] = frozenset()


@dataclass(frozen=True)
class Scope:
    """Mandatory predicate: ``field IN values``."""

    field: str
    values: FrozenSet


@dataclass(frozen=True)
class Decision:
    allowed: bool
    resource: Resource
    reason: Optional[DenyReason] = None
    scope: Optional[Scope] = None

    def enforce(self):
        if self.allowed:
            return self
        if self.reason is DenyReason.unauthenticated:
            raise Unauthenticated()
        if self.reason is DenyReason.not_found:
            raise NotFound(self.resource.label)
        raise Forbidden()


_OWNED = {op: Rule.OWNER for op in Operation}
_OWN_RECORDS = {
    Operation.create: Rule.DENY,
    Operation.list: Rule.SELF,
    Operation.read: Rule.SELF,
    Operation.update: Rule.DENY,
    Operation.delete: Rule.DENY,
}

POLICY = {
    Role.admin: {resource: {op: Rule.ALLOW for op in Operation} for resource in Resource},
    Role.teacher: {
        Resource.user: {
            Operation.create: Rule.DENY,
            Operation.list: Rule.SELF_OR_STUDENT,
            Operation.read: Rule.SELF_OR_STUDENT,
            Operation.update: Rule.SELF,
            Operation.delete: Rule.DENY,
        },
        Resource.course: dict(_OWNED),
        Resource.assignment: dict(_OWNED),
        Resource.grade: dict(_OWNED),
        Resource.attendance: dict(_OWNED),
        Resource.infraction: {op: Rule.ALLOW for op in Operation},
    },
    Role.student: {
        Resource.user: {
            Operation.create: Rule.DENY,
            Operation.list: Rule.DENY,
            Operation.read: Rule.SELF,
            Operation.update: Rule.SELF,
            Operation.delete: Rule.DENY,
        },
        Resource.course: {
            Operation.create: Rule.DENY,
            Operation.list: Rule.ENROLLED,
            Operation.read: Rule.ENROLLED,
            Operation.update: Rule.DENY,
            Operation.delete: Rule.DENY,
        },
        Resource.assignment: {
            Operation.create: Rule.DENY,
            Operation.list: Rule.ENROLLED,
            Operation.read: Rule.ENROLLED,
            Operation.update: Rule.DENY,
            Operation.delete: Rule.DENY,
        },
        Resource.grade: dict(_OWN_RECORDS),
        Resource.attendance: dict(_OWN_RECORDS),
        Resource.infraction: dict(_OWN_RECORDS),
    },
}

# Fields only an admin may write, whatever the rule says
ADMIN_ONLY_FIELDS = {
    Resource.user: frozenset({"role"}),
    Resource.course: frozenset({"teacher_id"}),
}

# Column a list scope restricts, per kind of relationship
COURSE_KEY = {
    Resource.course: "id",
    Resource.assignment: "course_id",
    Resource.grade: "course_id",
    Resource.attendance: "course_id",
}
SELF_KEY = {
    Resource.user: "id",
    Resource.grade: "student_id",
    Resource.attendance: "student_id",
    Resource.infraction: "student_id",
}

NO_FACTS = Facts()


def rule_for(role, resource, operation):
    return POLICY[Role(role)][resource].get(operation, Rule.DENY)


def _allow(resource, scope=None):
    return Decision(allowed=True, resource=resource, scope=scope)


def _deny(resource, reason=DenyReason.forbidden):
    return Decision(allowed=False, resource=resource, reason=reason)


def _holds(rule, facts):
    if rule is Rule.ALLOW:
        return True
    if rule is Rule.OWNER:
        return facts.owner
    if rule is Rule.ENROLLED:
        return facts.enrolled
    if rule is Rule.SELF:
        return facts.is_self
    if rule is Rule.SELF_OR_STUDENT:
        return facts.is_self or facts.target_is_student
    return False


def _scope(rule, identity, resource, facts):
    if rule is Rule.OWNER:
        return Scope(COURSE_KEY[resource], facts.owned_course_ids)
    if rule is Rule.ENROLLED:
        return Scope(COURSE_KEY[resource], facts.enrolled_course_ids)
    if rule is Rule.SELF:
        return Scope(SELF_KEY[resource], frozenset({identity.id}))
    if rule is Rule.SELF_OR_STUDENT:
        return Scope("role", frozenset({Role.student.value}))
    return None


def decide(identity: Optional[Identity], resource: Resource, operation: Operation,
           facts: Facts = NO_FACTS, touched: FrozenSet[str] = frozenset()) -> Decision:
    """Decide whether ``identity`` may perform ``operation`` on ``resource``.

    ``facts`` describe the target record (or, for ``list``, the caller's course
    ids). ``touched`` names admin-only fields the request is trying to write.
    """
    if identity is None:
        return _deny(resource, DenyReason.unauthenticated)
    if not facts.exists:
        return _deny(resource, DenyReason.not_found)

    rule = rule_for(identity.role, resource, operation)
    if rule is Rule.DENY:
        return _deny(resource)
    if identity.role is not Role.admin and touched & ADMIN_ONLY_FIELDS.get(resource, frozenset()):
        return _deny(resource)

    if operation is Operation.list:
        return _allow(resource, _scope(rule, identity, resource, facts))
    if _holds(rule, facts):
        return _allow(resource)
    return _deny(resource)
