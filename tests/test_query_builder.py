from datetime import date, datetime

import pytest

import database
from errors import Forbidden, NotFound, ValidationFailed
from policy import Identity, Resource, Role
from query_builder import ListParams, ScopedQueryBuilder, date_range_clauses, parse_sort
from relationships import RelationshipResolver


def identity(user):
    return Identity(id=user.id, role=Role(user.role))


@pytest.fixture
def school(db, make_course, teacher, other_teacher, student, other_student):
    mine = make_course("MATH101", teacher=teacher, students=[student])
    theirs = make_course("HIST201", teacher=other_teacher, students=[other_student])
    for course, who, day in ((mine, student, date(2024, 3, 1)), (mine, student, date(2024, 3, 8)),
                             (theirs, other_student, date(2024, 3, 1))):
        db.add(database.Attendance(student_id=who.id, course_id=course.id, date=day, status="absent"))
        db.add(database.Grade(student_id=who.id, course_id=course.id, score=70,
                              graded_at=datetime(2024, 3, day.day, 9, 0)))
    db.commit()
    return {"mine": mine, "theirs": theirs}


def test_teacher_sees_only_own_course_records(db, school, teacher):
    builder = ScopedQueryBuilder(db)
    page = builder.page(identity(teacher), Resource.attendance, ListParams())
    assert page.total == 2
    assert {record.course_id for record in page.items} == {school["mine"].id}


def test_filters_narrow_inside_the_scope(db, school, teacher):
    builder = ScopedQueryBuilder(db)
    page = builder.page(identity(teacher), Resource.attendance, ListParams(date=date(2024, 3, 8)))
    assert [record.date for record in page.items] == [date(2024, 3, 8)]


def test_naming_another_teachers_course_is_forbidden(db, school, teacher):
    builder = ScopedQueryBuilder(db)
    params = ListParams(filters={"course_id": school["theirs"].id})
    with pytest.raises(Forbidden):
        builder.page(identity(teacher), Resource.grade, params)


def test_naming_a_missing_course_is_not_found(db, school, teacher):
    builder = ScopedQueryBuilder(db)
    with pytest.raises(NotFound):
        builder.page(identity(teacher), Resource.grade, ListParams(filters={"course_id": 999}))


def test_student_cannot_filter_for_someone_else(db, school, student, other_student):
    builder = ScopedQueryBuilder(db)
    params = ListParams(filters={"student_id": other_student.id})
    with pytest.raises(Forbidden):
        builder.page(identity(student), Resource.grade, params)


def test_student_sees_only_own_records(db, school, student):
    builder = ScopedQueryBuilder(db)
    page = builder.page(identity(student), Resource.grade, ListParams())
    assert page.total == 2
    assert {grade.student_id for grade in page.items} == {student.id}


def test_admin_is_unscoped(db, school, admin):
    page = ScopedQueryBuilder(db).page(identity(admin), Resource.attendance, ListParams())
    assert page.total == 3


def test_teacher_without_courses_gets_empty_page(db, school, make_user):
    newcomer = make_user("nora", role="teacher")
    page = ScopedQueryBuilder(db).page(identity(newcomer), Resource.grade, ListParams())
    assert page.total == 0
    assert page.items == []
    assert page.pagination() == {"total": 0, "page": 1, "limit": 20, "pages": 0}


def test_pagination_and_default_sort(db, school, admin):
    builder = ScopedQueryBuilder(db)
    first = builder.page(identity(admin), Resource.attendance, ListParams(limit=2))
    second = builder.page(identity(admin), Resource.attendance, ListParams(limit=2, page=2))
    assert first.pages == 2
    assert [record.date for record in first.items] == [date(2024, 3, 8), date(2024, 3, 1)]
    assert len(second.items) == 1
    assert {r.id for r in first.items}.isdisjoint({r.id for r in second.items})


@pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (1, 101)])
def test_bad_pagination_is_rejected(db, school, admin, page, limit):
    with pytest.raises(ValidationFailed):
        ScopedQueryBuilder(db).page(identity(admin), Resource.grade, ListParams(page=page, limit=limit))


def test_sort_accepts_columns_and_directions():
    assert parse_sort(Resource.user, "last_name:desc,email") == (("last_name", True), ("email", False))
    assert parse_sort(Resource.grade, None) == (("graded_at", True),)


@pytest.mark.parametrize("sort", ["hashed_password", "nonsense", "email:sideways"])
def test_sort_rejects_unknown_or_private_columns(sort):
    with pytest.raises(ValidationFailed):
        parse_sort(Resource.user, sort)


def test_search_escapes_wildcards(db, admin, make_user):
    make_user("percy", last_name="100% Real")
    make_user("quinn", last_name="Plain")
    builder = ScopedQueryBuilder(db)
    page = builder.page(identity(admin), Resource.user, ListParams(search="0%"))
    assert [user.username for user in page.items] == ["percy"]


def test_unknown_filter_is_rejected(db, admin):
    with pytest.raises(ValidationFailed):
        ScopedQueryBuilder(db).page(identity(admin), Resource.course, ListParams(filters={"score": 3}))


def test_date_range_on_datetime_column_includes_the_whole_end_day(db, school, admin):
    params = ListParams(start_date=date(2024, 3, 2), end_date=date(2024, 3, 8))
    page = ScopedQueryBuilder(db).page(identity(admin), Resource.grade, params)
    assert page.total == 1
    assert page.items[0].graded_at == datetime(2024, 3, 8, 9, 0)


def test_date_range_clauses_are_empty_when_open():
    assert date_range_clauses(database.Attendance, "date") == []


def add_assignment(db, course, title="Quiz"):
    assignment = database.Assignment(title=title, course_id=course.id, due_date=datetime(2024, 4, 1))
    db.add(assignment)
    db.commit()
    return assignment


def test_naming_another_teachers_assignment_is_forbidden(db, school, teacher):
    foreign = add_assignment(db, school["theirs"])
    params = ListParams(filters={"assignment_id": foreign.id})
    with pytest.raises(Forbidden):
        ScopedQueryBuilder(db).page(identity(teacher), Resource.grade, params)


def test_naming_a_missing_assignment_is_not_found(db, school, teacher):
    with pytest.raises(NotFound):
        ScopedQueryBuilder(db).page(identity(teacher), Resource.grade, ListParams(filters={"assignment_id": 999}))


def test_own_assignment_filter_narrows(db, school, teacher, student):
    quiz = add_assignment(db, school["mine"])
    db.add(database.Grade(student_id=student.id, course_id=school["mine"].id, assignment_id=quiz.id, score=88))
    db.commit()

    page = ScopedQueryBuilder(db).page(identity(teacher), Resource.grade, ListParams(filters={"assignment_id": quiz.id}))
    assert [grade.score for grade in page.items] == [88]


def test_student_narrows_courses_by_teacher(db, school, student, teacher, other_teacher):
    builder = ScopedQueryBuilder(db)
    mine = builder.page(identity(student), Resource.course, ListParams(filters={"teacher_id": teacher.id}))
    assert [course.id for course in mine.items] == [school["mine"].id]

    # Still inside the enrollment scope
    theirs = builder.page(identity(student), Resource.course, ListParams(filters={"teacher_id": other_teacher.id}))
    assert theirs.items == []


def test_naming_a_missing_teacher_is_not_found(db, school, student):
    with pytest.raises(NotFound):
        ScopedQueryBuilder(db).page(identity(student), Resource.course, ListParams(filters={"teacher_id": 999}))


def test_ownership_fact_follows_the_course_teacher(db, school, teacher, other_teacher, student):
    resolver = RelationshipResolver(db)
    quiz = add_assignment(db, school["mine"])
    incident = database.Infraction(student_id=student.id, type="other", description="Late", date=date(2024, 3, 1))
    db.add(incident)
    db.commit()

    assert resolver.is_owner(identity(teacher), Resource.assignment, quiz)
    assert resolver.facts_for(identity(teacher), Resource.assignment, quiz).owner
    assert not resolver.facts_for(identity(other_teacher), Resource.assignment, quiz).owner
    # Infractions hang off no course
    assert not resolver.facts_for(identity(teacher), Resource.infraction, incident).owner
