"""List queries that callers can narrow but never widen.

``build_query`` merges caller filters (search, equality, date range) with the
mandatory ``policy.Scope``. ``ScopedQueryBuilder`` obtains that scope from the
policy and also checks every course, assignment or student the caller names in
a filter, so a teacher asking for another teacher's course gets 403 instead of
an empty page. A named teacher only has to exist: the course scope already
limits what a teacher filter can return.
"""
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import DateTime, and_, or_
from sqlalchemy.orm import Query, Session

import config
import database
from errors import NotFound, ValidationFailed
from policy import Operation, Resource
from relationships import Authorizer


@dataclass(frozen=True)
class QuerySpec:
    model: Any
    search_fields: Tuple[str, ...] = ()
    filter_fields: Tuple[str, ...] = ()
    date_field: Optional[str] = None
    default_limit: int = 20
    default_sort: Tuple[Tuple[str, bool], ...] = ()  # (column, descending)


QUERY_SPECS = {
    Resource.user: QuerySpec(
        database.User,
        search_fields=("first_name", "last_name", "email", "username"),
        filter_fields=("role",),
        default_limit=10,
        default_sort=(("last_name", False), ("first_name", False)),
    ),
    Resource.course: QuerySpec(
        database.Course,
        search_fields=("name", "course_code", "description"),
        filter_fields=("teacher_id",),
        default_limit=10,
        default_sort=(("name", False),),
    ),
    Resource.assignment: QuerySpec(
        database.Assignment,
        search_fields=("title", "description"),
        filter_fields=("course_id",),
        date_field="due_date",
        default_limit=10,
        default_sort=(("due_date", False),),
    ),
    Resource.grade: QuerySpec(
        database.Grade,
        filter_fields=("student_id", "course_id", "assignment_id"),
        date_field="graded_at",
        default_sort=(("graded_at", True),),
    ),
    Resource.attendance: QuerySpec(
        database.Attendance,
        filter_fields=("student_id", "course_id", "status"),
        date_field="date",
        default_sort=(("date", True),),
    ),
    Resource.infraction: QuerySpec(
        database.Infraction,
        search_fields=("description", "resolution"),
        filter_fields=("student_id", "type", "severity", "resolved"),
        date_field="date",
        default_sort=(("date", True),),
    ),
}

UNSORTABLE = frozenset({"hashed_password"})


@dataclass
class ListParams:
    page: int = 1
    limit: Optional[int] = None
    sort: Optional[str] = None
    search: Optional[str] = None
    filters: Dict[str, Any] = field(default_factory=dict)
    date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


@dataclass
class Page:
    items: list
    total: int
    page: int
    limit: int

    @property
    def pages(self):
        return math.ceil(self.total / self.limit)

    def pagination(self):
        return {"total": self.total, "page": self.page, "limit": self.limit, "pages": self.pages}


def _like_pattern(term):
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _start_of(day):
    return datetime.combine(day, time.min)


def date_range_clauses(model, field_name, on=None, start=None, end=None):
    """Clauses for a calendar-day filter on a Date or DateTime column.

    ``on`` is a single day; ``start``/``end`` are inclusive and either may be
    left open. ``on`` wins when both forms are given.
    """
    column = getattr(model, field_name)
    is_datetime = isinstance(model.__table__.c[field_name].type, DateTime)

    if on is not None:
        if is_datetime:
            return [column >= _start_of(on), column < _start_of(on + timedelta(days=1))]
        return [column == on]

    clauses = []
    if start is not None:
        clauses.append(column >= (_start_of(start) if is_datetime else start))
    if end is not None:
        clauses.append(column < _start_of(end + timedelta(days=1)) if is_datetime else column <= end)
    return clauses


def build_query(db: Session, resource: Resource, params: ListParams, scope=None) -> Query:
    """Merge caller filters with the mandatory scope into one query."""
    spec = QUERY_SPECS[resource]
    model = spec.model
    query = db.query(model)

    if scope is not None:
        query = query.filter(getattr(model, scope.field).in_(sorted(scope.values)))

    for name, value in params.filters.items():
        if value is None:
            continue
        if name not in spec.filter_fields:
            raise ValidationFailed(f"Cannot filter {resource.value} records by {name}")
        query = query.filter(getattr(model, name) == value)

    if params.search and spec.search_fields:
        pattern = _like_pattern(params.search)
        query = query.filter(or_(*(getattr(model, f).ilike(pattern, escape="\\") for f in spec.search_fields)))

    if spec.date_field is not None:
        clauses = date_range_clauses(model, spec.date_field, params.date, params.start_date, params.end_date)
        if clauses:
            query = query.filter(and_(*clauses))

    return query


def parse_sort(resource: Resource, sort: Optional[str]):
    spec = QUERY_SPECS[resource]
    if not sort:
        return spec.default_sort

    orders = []
    for part in sort.split(","):
        name, _, direction = part.strip().partition(":")
        direction = (direction or "asc").lower()
        if direction not in ("asc", "desc"):
            raise ValidationFailed(f"Invalid sort direction: {direction}")
        if name not in spec.model.__table__.c or name in UNSORTABLE:
            raise ValidationFailed(f"Cannot sort by {name}")
        orders.append((name, direction == "desc"))
    return tuple(orders)


def paginate(query: Query, resource: Resource, params: ListParams) -> Page:
    spec = QUERY_SPECS[resource]
    limit = params.limit or spec.default_limit
    if params.page < 1 or limit < 1 or limit > config.MAX_PAGE_SIZE:
        raise ValidationFailed("Invalid pagination parameters")

    order_by = []
    for name, descending in parse_sort(resource, params.sort):
        column = getattr(spec.model, name)
        order_by.append(column.desc() if descending else column.asc())
    order_by.append(spec.model.id.asc())

    total = query.order_by(None).count()
    items = query.order_by(*order_by).offset((params.page - 1) * limit).limit(limit).all()
    return Page(items=items, total=total, page=params.page, limit=limit)


class ScopedQueryBuilder:
    def __init__(self, db: Session):
        self.db = db
        self.authorizer = Authorizer(db)

    def _check_filter_targets(self, identity, resource, filters):
        resolver = self.authorizer.resolver

        course_id = filters.get("course_id")
        if course_id is not None and resource is not Resource.course:
            self.authorizer.authorize_course(identity, Operation.read, course_id)

        assignment_id = filters.get("assignment_id")
        if assignment_id is not None:
            assignment = resolver.load(Resource.assignment, assignment_id)
            self.authorizer.authorize(identity, Resource.assignment, Operation.read, assignment)

        student_id = filters.get("student_id")
        if student_id is not None:
            student = resolver.load(Resource.user, student_id)
            self.authorizer.authorize(identity, Resource.user, Operation.read, student)

        # Narrowing courses by teacher reveals nothing the course scope does not
        teacher_id = filters.get("teacher_id")
        if teacher_id is not None and resolver.load(Resource.user, teacher_id) is None:
            raise NotFound("Teacher")

    def select(self, identity, resource: Resource, params: ListParams) -> Query:
        """Query for the records ``identity`` may list, narrowed by ``params``."""
        decision = self.authorizer.list_scope(identity, resource)
        self._check_filter_targets(identity, resource, params.filters)
        return build_query(self.db, resource, params, decision.scope)

    def page(self, identity, resource: Resource, params: ListParams, query: Optional[Query] = None) -> Page:
        if query is None:
            query = self.select(identity, resource, params)
        return paginate(query, resource, params)
