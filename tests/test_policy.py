import pytest

from errors import Forbidden, NotFound, Unauthenticated
from policy import (
    POLICY, DenyReason, Facts, Identity, Operation, Resource, Role, Rule, Scope, decide, rule_for,
)

ADMIN = Identity(id=1, role=Role.admin)
TEACHER = Identity(id=2, role=Role.teacher)
STUDENT = Identity(id=3, role=Role.student)

ALL_FACTS = Facts(owner=True, enrolled=True, is_self=True, target_is_student=True)


def test_table_covers_every_role_resource_and_operation():
    for role in Role:
        for resource in Resource:
            assert set(POLICY[role][resource]) == set(Operation)


@pytest.mark.parametrize("resource", list(Resource))
@pytest.mark.parametrize("operation", list(Operation))
def test_admin_is_allowed_everything(resource, operation):
    decision = decide(ADMIN, resource, operation, Facts(), frozenset({"role", "teacher_id"}))
    assert decision.allowed
    assert decision.scope is None


@pytest.mark.parametrize("resource", list(Resource))
@pytest.mark.parametrize("operation", list(Operation))
def test_missing_identity_is_unauthenticated(resource, operation):
    decision = decide(None, resource, operation, ALL_FACTS)
    assert not decision.allowed
    assert decision.reason is DenyReason.unauthenticated
    with pytest.raises(Unauthenticated):
        decision.enforce()


@pytest.mark.parametrize("role,resource,operation", [
    (Role.teacher, Resource.user, Operation.create),
    (Role.teacher, Resource.user, Operation.delete),
    (Role.student, Resource.user, Operation.create),
    (Role.student, Resource.user, Operation.list),
    (Role.student, Resource.user, Operation.delete),
    (Role.student, Resource.course, Operation.create),
    (Role.student, Resource.course, Operation.update),
    (Role.student, Resource.assignment, Operation.delete),
    (Role.student, Resource.grade, Operation.create),
    (Role.student, Resource.grade, Operation.update),
    (Role.student, Resource.attendance, Operation.create),
    (Role.student, Resource.infraction, Operation.delete),
])
def test_denied_cells_ignore_facts(role, resource, operation):
    identity = TEACHER if role is Role.teacher else STUDENT
    assert rule_for(role, resource, operation) is Rule.DENY
    decision = decide(identity, resource, operation, ALL_FACTS)
    assert not decision.allowed
    assert decision.reason is DenyReason.forbidden


@pytest.mark.parametrize("resource", [Resource.course, Resource.assignment, Resource.grade, Resource.attendance])
@pytest.mark.parametrize("operation", [Operation.read, Operation.update, Operation.delete, Operation.create])
def test_teacher_needs_to_own_the_course(resource, operation):
    assert decide(TEACHER, resource, operation, Facts(owner=True)).allowed
    assert not decide(TEACHER, resource, operation, Facts(owner=False)).allowed


@pytest.mark.parametrize("operation", list(Operation))
def test_teacher_may_act_on_any_infraction(operation):
    assert decide(TEACHER, Resource.infraction, operation, Facts()).allowed


def test_teacher_reads_self_or_students_only():
    assert decide(TEACHER, Resource.user, Operation.read, Facts(is_self=True)).allowed
    assert decide(TEACHER, Resource.user, Operation.read, Facts(target_is_student=True)).allowed
    assert not decide(TEACHER, Resource.user, Operation.read, Facts()).allowed


def test_teacher_updates_only_self():
    assert decide(TEACHER, Resource.user, Operation.update, Facts(is_self=True)).allowed
    assert not decide(TEACHER, Resource.user, Operation.update, Facts(target_is_student=True)).allowed


@pytest.mark.parametrize("resource", [Resource.course, Resource.assignment])
def test_student_reads_enrolled_courses_and_their_assignments(resource):
    assert decide(STUDENT, resource, Operation.read, Facts(enrolled=True)).allowed
    assert not decide(STUDENT, resource, Operation.read, Facts(enrolled=False)).allowed


@pytest.mark.parametrize("resource", [Resource.grade, Resource.attendance, Resource.infraction])
def test_student_reads_only_own_records(resource):
    assert decide(STUDENT, resource, Operation.read, Facts(is_self=True)).allowed
    # Being enrolled in the course is not enough
    assert not decide(STUDENT, resource, Operation.read, Facts(enrolled=True)).allowed


def test_student_may_read_and_update_own_profile():
    assert decide(STUDENT, Resource.user, Operation.read, Facts(is_self=True)).allowed
    assert decide(STUDENT, Resource.user, Operation.update, Facts(is_self=True)).allowed
    assert not decide(STUDENT, Resource.user, Operation.read, Facts(target_is_student=True)).allowed


def test_nobody_but_admin_changes_a_role():
    touched = frozenset({"role"})
    assert not decide(STUDENT, Resource.user, Operation.update, Facts(is_self=True), touched).allowed
    assert not decide(TEACHER, Resource.user, Operation.update, Facts(is_self=True), touched).allowed
    assert decide(ADMIN, Resource.user, Operation.update, Facts(is_self=True), touched).allowed


def test_teacher_cannot_reassign_own_course():
    decision = decide(TEACHER, Resource.course, Operation.update, Facts(owner=True), frozenset({"teacher_id"}))
    assert not decision.allowed
    with pytest.raises(Forbidden):
        decision.enforce()


def test_missing_record_is_not_found_before_any_rule():
    decision = decide(STUDENT, Resource.grade, Operation.read, Facts(exists=False))
    assert decision.reason is DenyReason.not_found
    with pytest.raises(NotFound) as excinfo:
        decision.enforce()
    assert excinfo.value.detail == "Grade not found"

    attendance = decide(ADMIN, Resource.attendance, Operation.read, Facts(exists=False))
    with pytest.raises(NotFound) as excinfo:
        attendance.enforce()
    assert excinfo.value.detail == "Attendance record not found"


def test_allowed_decision_enforces_to_itself():
    decision = decide(ADMIN, Resource.course, Operation.read)
    assert decision.enforce() is decision


def test_teacher_list_scope_is_owned_courses():
    facts = Facts(owned_course_ids=frozenset({4, 7}))
    assert decide(TEACHER, Resource.course, Operation.list, facts).scope == Scope("id", frozenset({4, 7}))
    assert decide(TEACHER, Resource.grade, Operation.list, facts).scope == Scope("course_id", frozenset({4, 7}))


def test_student_list_scopes():
    facts = Facts(enrolled_course_ids=frozenset({5}))
    assert decide(STUDENT, Resource.assignment, Operation.list, facts).scope == Scope("course_id", frozenset({5}))
    assert decide(STUDENT, Resource.grade, Operation.list, facts).scope == Scope("student_id", frozenset({3}))
    assert decide(STUDENT, Resource.infraction, Operation.list, facts).scope == Scope("student_id", frozenset({3}))


def test_teacher_lists_only_students():
    scope = decide(TEACHER, Resource.user, Operation.list).scope
    assert scope == Scope("role", frozenset({"student"}))


def test_teacher_with_no_courses_gets_an_empty_scope_not_everything():
    scope = decide(TEACHER, Resource.attendance, Operation.list, Facts()).scope
    assert scope == Scope("course_id", frozenset())
