import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import auth
import config
import database
import models
from aggregation import grade_statistics, reconcile_attendance
from auth import get_current_identity, require_roles
from database import Base, engine, get_db
from errors import Forbidden, NotFound, ValidationFailed
from policy import Facts, Identity, Operation, Resource, Role
from query_builder import ListParams, ScopedQueryBuilder
from relationships import Authorizer

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("school_records.api")

app = FastAPI(title="School Records")

Base.metadata.create_all(bind=engine)

staff_only = require_roles(Role.admin, Role.teacher)
admin_only = require_roles(Role.admin)


def get_authorizer(db: Session = Depends(get_db)):
    return Authorizer(db)


def get_query_builder(db: Session = Depends(get_db)):
    return ScopedQueryBuilder(db)


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def init_admin():
    db = database.SessionLocal()
    try:
        if auth.get_user_by_username(db, config.ADMIN_USERNAME) is None:
            db.add(database.User(
                username=config.ADMIN_USERNAME,
                email=config.ADMIN_EMAIL,
                role=Role.admin.value,
                first_name="System",
                last_name="Administrator",
                hashed_password=auth.get_password_hash(config.ADMIN_PASSWORD),
            ))
            db.commit()
            logger.info("Created admin account %s", config.ADMIN_USERNAME)
    finally:
        db.close()


if config.ADMIN_PASSWORD:
    init_admin()


def _get_student(db: Session, student_id: int):
    student = db.get(database.User, student_id)
    if not student:
        raise NotFound("Student")
    return student


def _email_taken(db: Session, email: str, exclude_id: Optional[int] = None):
    query = db.query(database.User).filter(database.User.email == email)
    if exclude_id is not None:
        query = query.filter(database.User.id != exclude_id)
    return query.first() is not None


def _grade_entry(grade):
    return {
        "id": grade.id,
        "score": grade.score,
        "comment": grade.comment,
        "assignment_title": grade.assignment.title if grade.assignment else "General Assessment",
        "graded_at": grade.graded_at,
    }


@app.get("/health")
def health():
    return {"status": "ok"}


# ========== Authentication ==========
@app.post("/token", response_model=models.Token)
def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    user = auth.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user.last_login = database.utcnow()
    db.commit()
    return {"access_token": auth.token_for(user), "token_type": "bearer"}


# ========== Users Endpoints ==========
@app.post("/users/", response_model=models.UserCreated, status_code=status.HTTP_201_CREATED)
def create_user(
        payload: models.UserCreate,
        identity: Identity = Depends(admin_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    authorizer.authorize_create(identity, Resource.user)

    if _email_taken(db, payload.email):
        raise ValidationFailed("Email already in use")

    if payload.username:
        if auth.get_user_by_username(db, payload.username):
            raise ValidationFailed("Username already taken")
        username = payload.username
    else:
        # firstnamelastname, then firstnamelastname1, 2, ...
        base = f"{payload.first_name}{payload.last_name}".lower().replace(" ", "")
        username, counter = base, 1
        while auth.get_user_by_username(db, username):
            username = f"{base}{counter}"
            counter += 1

    password = auth.generate_password()
    db_user = database.User(
        username=username,
        email=payload.email,
        role=payload.role.value,
        first_name=payload.first_name,
        last_name=payload.last_name,
        hashed_password=auth.get_password_hash(password),
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    logger.info("User %s created %s account %s", identity.id, db_user.role, db_user.username)

    user = models.User.model_validate(db_user)
    return models.UserCreated(**user.model_dump(), initial_password=password)


@app.get("/users/", response_model=models.UserPage)
def read_users(
        search: Optional[str] = None,
        role: Optional[Role] = None,
        sort: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
        identity: Identity = Depends(get_current_identity),
        builder: ScopedQueryBuilder = Depends(get_query_builder)
):
    params = ListParams(page=page, limit=limit, sort=sort, search=search,
                        filters={"role": role.value if role else None})
    result = builder.page(identity, Resource.user, params)
    return {"users": result.items, "pagination": result.pagination()}


@app.get("/users/me", response_model=models.User)
def read_users_me(identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    user = db.get(database.User, identity.id)
    if not user:
        raise NotFound("User")
    return user


@app.get("/users/{user_id}", response_model=models.User)
def read_user(
        user_id: int,
        identity: Identity = Depends(get_current_identity),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    user = db.get(database.User, user_id)
    authorizer.authorize(identity, Resource.user, Operation.read, user)
    return user


@app.put("/users/{user_id}", response_model=models.User)
def update_user(
        user_id: int,
        payload: models.UserUpdate,
        identity: Identity = Depends(get_current_identity),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    changes = payload.model_dump(exclude_unset=True)
    # Asking for a role at all is the admin's call, even if it matches the current one
    touched = {"role"} if "role" in changes else set()

    user = db.get(database.User, user_id)
    authorizer.authorize(identity, Resource.user, Operation.update, user, touched=touched)

    changes = {key: value for key, value in changes.items() if value is not None}
    if "email" in changes and _email_taken(db, changes["email"], exclude_id=user.id):
        raise ValidationFailed("Email already in use")
    if "role" in changes:
        changes["role"] = changes["role"].value

    for key, value in changes.items():
        setattr(user, key, value)

    db.commit()
    db.refresh(user)
    return user


@app.delete("/users/{user_id}", response_model=models.Message)
def delete_user(
        user_id: int,
        identity: Identity = Depends(admin_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    user = db.get(database.User, user_id)
    authorizer.authorize(identity, Resource.user, Operation.delete, user)
    database.remove_user(db, user)
    return {"message": "User deleted successfully"}


# ========== Courses Endpoints ==========
def _check_teacher(db: Session, teacher_id: int):
    teacher = db.get(database.User, teacher_id)
    if not teacher:
        raise NotFound("Teacher")
    if teacher.role != Role.teacher.value:
        raise ValidationFailed("Invalid teacher ID")
    return teacher


@app.post("/courses/", response_model=models.Course, status_code=status.HTTP_201_CREATED)
def create_course(
        payload: models.CourseCreate,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    naming_other = payload.teacher_id is not None and payload.teacher_id != identity.id
    authorizer.authorize_create(
        identity,
        Resource.course,
        facts=Facts(owner=not naming_other),
        touched={"teacher_id"} if naming_other else set(),
    )

    teacher_id = payload.teacher_id
    if teacher_id is None and identity.role is Role.teacher:
        teacher_id = identity.id
    if teacher_id is not None:
        _check_teacher(db, teacher_id)

    if db.query(database.Course).filter(database.Course.course_code == payload.course_code).first():
        raise ValidationFailed("Course with this code already exists")

    db_course = database.Course(
        name=payload.name,
        course_code=payload.course_code,
        description=payload.description,
        teacher_id=teacher_id,
    )
    db.add(db_course)
    db.commit()
    db.refresh(db_course)
    return db_course


@app.get("/courses/", response_model=models.CoursePage)
def read_courses(
        teacher_id: Optional[int] = None,
        search: Optional[str] = None,
        sort: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
        identity: Identity = Depends(get_current_identity),
        builder: ScopedQueryBuilder = Depends(get_query_builder)
):
    params = ListParams(page=page, limit=limit, sort=sort, search=search, filters={"teacher_id": teacher_id})
    result = builder.page(identity, Resource.course, params)
    return {"courses": result.items, "pagination": result.pagination()}


@app.get("/courses/{course_id}", response_model=models.CourseDetail)
def read_course(
        course_id: int,
        identity: Identity = Depends(get_current_identity),
        authorizer: Authorizer = Depends(get_authorizer)
):
    return authorizer.authorize_course(identity, Operation.read, course_id)


@app.put("/courses/{course_id}", response_model=models.Course)
def update_course(
        course_id: int,
        payload: models.CourseUpdate,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    course = authorizer.require_course(course_id)
    changes = payload.model_dump(exclude_unset=True)
    reassigning = "teacher_id" in changes and changes["teacher_id"] != course.teacher_id
    authorizer.authorize(
        identity, Resource.course, Operation.update, course,
        touched={"teacher_id"} if reassigning else set(),
    )

    if reassigning and changes["teacher_id"] is not None:
        _check_teacher(db, changes["teacher_id"])
    if not reassigning:
        changes.pop("teacher_id", None)

    code = changes.get("course_code")
    if code and code != course.course_code:
        if db.query(database.Course).filter(database.Course.course_code == code).first():
            raise ValidationFailed("Course with this code already exists")

    for key, value in changes.items():
        if value is None and key != "teacher_id":
            continue
        setattr(course, key, value)

    db.commit()
    db.refresh(course)
    return course


@app.delete("/courses/{course_id}", response_model=models.Message)
def delete_course(
        course_id: int,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    course = authorizer.authorize_course(identity, Operation.delete, course_id)
    database.remove_course(db, course)
    return {"message": "Course deleted successfully"}


@app.post("/courses/{course_id}/enroll", response_model=models.CourseMessage)
def enroll_student(
        course_id: int,
        payload: models.EnrollRequest,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    course = authorizer.authorize_course(identity, Operation.update, course_id)

    student = _get_student(db, payload.student_id)
    if student.role != Role.student.value:
        raise ValidationFailed("Invalid student ID")
    if student.id in course.student_ids:
        raise ValidationFailed("Student already enrolled in this course")

    try:
        database.enroll_student(db, course.id, student.id)
    except IntegrityError:
        # Lost a race with a concurrent enrollment of the same student
        db.rollback()
        raise ValidationFailed("Student already enrolled in this course")

    db.refresh(course)
    return {"message": "Student added to course successfully", "course": course}


@app.delete("/courses/{course_id}/students/{student_id}", response_model=models.CourseMessage)
def unenroll_student(
        course_id: int,
        student_id: int,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    course = authorizer.authorize_course(identity, Operation.update, course_id)
    database.unenroll_student(db, course.id, student_id)
    db.refresh(course)
    return {"message": "Student removed from course successfully", "course": course}


# ========== Assignments Endpoints ==========
@app.post("/assignments/", response_model=models.Assignment, status_code=status.HTTP_201_CREATED)
def create_assignment(
        payload: models.AssignmentCreate,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    course = authorizer.require_course(payload.course_id)
    authorizer.authorize_create(identity, Resource.assignment, course=course)

    db_assignment = database.Assignment(**payload.model_dump(), created_by=identity.id)
    db.add(db_assignment)
    db.commit()
    db.refresh(db_assignment)
    return db_assignment


@app.get("/assignments/", response_model=models.AssignmentPage)
def read_assignments(
        course_id: Optional[int] = None,
        search: Optional[str] = None,
        upcoming: bool = False,
        past: bool = False,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        sort: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
        identity: Identity = Depends(get_current_identity),
        builder: ScopedQueryBuilder = Depends(get_query_builder)
):
    params = ListParams(page=page, limit=limit, sort=sort, search=search, filters={"course_id": course_id},
                        start_date=start_date, end_date=end_date)
    query = builder.select(identity, Resource.assignment, params)

    now = database.utcnow()
    if upcoming:
        query = query.filter(database.Assignment.due_date >= now)
    elif past:
        query = query.filter(database.Assignment.due_date < now)

    result = builder.page(identity, Resource.assignment, params, query=query)
    return {"assignments": result.items, "pagination": result.pagination()}


@app.get("/assignments/{assignment_id}", response_model=models.Assignment)
def read_assignment(
        assignment_id: int,
        identity: Identity = Depends(get_current_identity),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    assignment = db.get(database.Assignment, assignment_id)
    authorizer.authorize(identity, Resource.assignment, Operation.read, assignment)
    return assignment


@app.put("/assignments/{assignment_id}", response_model=models.Assignment)
def update_assignment(
        assignment_id: int,
        payload: models.AssignmentUpdate,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    assignment = db.get(database.Assignment, assignment_id)
    authorizer.authorize(identity, Resource.assignment, Operation.update, assignment)

    for key, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(assignment, key, value)

    db.commit()
    db.refresh(assignment)
    return assignment


@app.delete("/assignments/{assignment_id}", response_model=models.Message)
def delete_assignment(
        assignment_id: int,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    assignment = db.get(database.Assignment, assignment_id)
    authorizer.authorize(identity, Resource.assignment, Operation.delete, assignment)
    database.remove_assignment(db, assignment)
    return {"message": "Assignment deleted successfully"}


# ========== Grades Endpoints ==========
@app.post("/grades/", response_model=models.Grade, status_code=status.HTTP_201_CREATED)
def create_grade(
        payload: models.GradeCreate,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    course = authorizer.require_course(payload.course_id)
    authorizer.authorize_create(identity, Resource.grade, course=course)

    student = _get_student(db, payload.student_id)
    if student.role != Role.student.value:
        raise ValidationFailed("Invalid student ID")
    if student.id not in course.student_ids:
        raise ValidationFailed("Student is not enrolled in this course")

    if payload.assignment_id is not None:
        assignment = db.get(database.Assignment, payload.assignment_id)
        if not assignment:
            raise NotFound("Assignment")
        if assignment.course_id != course.id:
            raise ValidationFailed("Assignment does not belong to this course")

    db_grade = database.Grade(**payload.model_dump(), graded_by=identity.id, graded_at=database.utcnow())
    db.add(db_grade)
    db.commit()
    db.refresh(db_grade)
    return db_grade


@app.get("/grades/", response_model=models.GradePage)
def read_grades(
        student_id: Optional[int] = None,
        course_id: Optional[int] = None,
        assignment_id: Optional[int] = None,
        sort: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        identity: Identity = Depends(get_current_identity),
        builder: ScopedQueryBuilder = Depends(get_query_builder)
):
    params = ListParams(page=page, limit=limit, sort=sort, filters={
        "student_id": student_id,
        "course_id": course_id,
        "assignment_id": assignment_id,
    })
    result = builder.page(identity, Resource.grade, params)
    return {"grades": result.items, "pagination": result.pagination()}


@app.get("/grades/student/{student_id}", response_model=models.StudentGradeReport)
def read_student_grades(
        student_id: int,
        identity: Identity = Depends(get_current_identity),
        builder: ScopedQueryBuilder = Depends(get_query_builder),
        db: Session = Depends(get_db)
):
    student = _get_student(db, student_id)
    grades = (
        builder.select(identity, Resource.grade, ListParams(filters={"student_id": student.id}))
        .order_by(database.Grade.graded_at.desc())
        .all()
    )

    course_scope = builder.authorizer.list_scope(identity, Resource.course).scope
    visible = [c for c in student.courses if course_scope is None or c.id in course_scope.values]
    if identity.role is Role.teacher and not visible:
        raise Forbidden()

    groups = {}
    for course in sorted(visible, key=lambda c: c.name):
        groups[course.id] = {"course_id": course.id, "course_name": course.name,
                             "course_code": course.course_code, "grades": []}
    for grade in grades:
        if grade.course_id not in groups:
            course = db.get(database.Course, grade.course_id)
            if not course:
                continue
            groups[course.id] = {"course_id": course.id, "course_name": course.name,
                                 "course_code": course.course_code, "grades": []}
        groups[grade.course_id]["grades"].append(_grade_entry(grade))

    return {"student_id": student.id, "courses": list(groups.values())}


@app.get("/grades/course/{course_id}", response_model=models.CourseGrades)
def read_course_grades(
        course_id: int,
        identity: Identity = Depends(get_current_identity),
        builder: ScopedQueryBuilder = Depends(get_query_builder),
        db: Session = Depends(get_db)
):
    course = builder.authorizer.authorize_course(identity, Operation.read, course_id)
    grades = builder.select(identity, Resource.grade, ListParams(filters={"course_id": course.id})).all()

    # Students only ever see their own row
    if identity.role is Role.student:
        roster = [db.get(database.User, identity.id)]
    else:
        roster = list(course.students)

    rows = {}
    for student in roster:
        if student is not None:
            rows[student.id] = {"student": student, "grades": []}
    for grade in sorted(grades, key=lambda g: g.graded_at or database.utcnow(), reverse=True):
        if grade.student_id not in rows:
            student = db.get(database.User, grade.student_id)
            if not student:
                continue
            rows[student.id] = {"student": student, "grades": []}
        rows[grade.student_id]["grades"].append(_grade_entry(grade))

    students = sorted(rows.values(), key=lambda row: (row["student"].last_name, row["student"].first_name))
    return {
        "course_id": course.id,
        "course_name": course.name,
        "course_code": course.course_code,
        "students": [
            {
                "student_id": row["student"].id,
                "name": row["student"].full_name,
                "username": row["student"].username,
                "grades": row["grades"],
            }
            for row in students
        ],
    }


@app.get("/grades/stats/course/{course_id}", response_model=models.CourseStats)
def read_course_stats(
        course_id: int,
        identity: Identity = Depends(get_current_identity),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    course = authorizer.authorize_course(identity, Operation.read, course_id)
    scores = [score for (score,) in db.query(database.Grade.score).filter(database.Grade.course_id == course.id)]
    return {"course_id": course.id, "course_name": course.name, "stats": grade_statistics(scores)}


@app.get("/grades/{grade_id}", response_model=models.Grade)
def read_grade(
        grade_id: int,
        identity: Identity = Depends(get_current_identity),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    grade = db.get(database.Grade, grade_id)
    authorizer.authorize(identity, Resource.grade, Operation.read, grade)
    return grade


@app.put("/grades/{grade_id}", response_model=models.Grade)
def update_grade(
        grade_id: int,
        payload: models.GradeUpdate,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    grade = db.get(database.Grade, grade_id)
    authorizer.authorize(identity, Resource.grade, Operation.update, grade)

    changes = payload.model_dump(exclude_unset=True)
    if changes.get("score") is not None:
        grade.score = changes["score"]
    if "comment" in changes:
        grade.comment = changes["comment"]
    grade.graded_at = database.utcnow()
    grade.graded_by = identity.id

    db.commit()
    db.refresh(grade)
    return grade


@app.delete("/grades/{grade_id}", response_model=models.Message)
def delete_grade(
        grade_id: int,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    grade = db.get(database.Grade, grade_id)
    authorizer.authorize(identity, Resource.grade, Operation.delete, grade)
    db.delete(grade)
    db.commit()
    return {"message": "Grade deleted successfully"}


# ========== Attendance Endpoints ==========
@app.post("/attendance/", response_model=models.Attendance, status_code=status.HTTP_201_CREATED)
def record_attendance(
        payload: models.AttendanceCreate,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    course = authorizer.require_course(payload.course_id)
    authorizer.authorize_create(identity, Resource.attendance, course=course)

    if payload.student_id not in course.student_ids:
        raise ValidationFailed("Student is not enrolled in this course")

    # A second record for the same student, course and day overwrites the first
    return database.upsert_attendance(
        db,
        student_id=payload.student_id,
        course_id=course.id,
        day=payload.date,
        status=payload.status.value,
        reason=payload.reason,
        recorded_by=identity.id,
    )


@app.post("/attendance/bulk", response_model=models.BulkAttendanceResponse)
def record_bulk_attendance(
        payload: models.BulkAttendanceRequest,
        response: Response,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    course = authorizer.require_course(payload.course_id)
    authorizer.authorize_create(identity, Resource.attendance, course=course)

    result = reconcile_attendance(db, course, payload.date, payload.records, recorded_by=identity.id)
    if result.outcome == "partial":
        response.status_code = status.HTTP_207_MULTI_STATUS
    elif result.outcome == "failed":
        response.status_code = status.HTTP_400_BAD_REQUEST

    return {
        "message": "Bulk attendance processed",
        "status": result.outcome,
        "results": result.results,
        "errors": result.errors,
    }


@app.get("/attendance/", response_model=models.AttendancePage)
def read_attendance(
        student_id: Optional[int] = None,
        course_id: Optional[int] = None,
        status: Optional[models.AttendanceStatus] = None,
        date: Optional[date] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        sort: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        identity: Identity = Depends(get_current_identity),
        builder: ScopedQueryBuilder = Depends(get_query_builder)
):
    params = ListParams(
        page=page, limit=limit, sort=sort,
        filters={"student_id": student_id, "course_id": course_id, "status": status.value if status else None},
        date=date, start_date=start_date, end_date=end_date,
    )
    result = builder.page(identity, Resource.attendance, params)
    return {"attendance": result.items, "pagination": result.pagination()}


@app.get("/attendance/{attendance_id}", response_model=models.Attendance)
def read_attendance_record(
        attendance_id: int,
        identity: Identity = Depends(get_current_identity),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    record = db.get(database.Attendance, attendance_id)
    authorizer.authorize(identity, Resource.attendance, Operation.read, record)
    return record


@app.put("/attendance/{attendance_id}", response_model=models.Attendance)
def update_attendance(
        attendance_id: int,
        payload: models.AttendanceUpdate,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    record = db.get(database.Attendance, attendance_id)
    authorizer.authorize(identity, Resource.attendance, Operation.update, record)

    changes = payload.model_dump(exclude_unset=True)
    if changes.get("status") is not None:
        record.status = changes["status"].value
    if "reason" in changes:
        record.reason = changes["reason"]
    record.recorded_by = identity.id
    record.recorded_at = database.utcnow()

    db.commit()
    db.refresh(record)
    return record


@app.delete("/attendance/{attendance_id}", response_model=models.Message)
def delete_attendance(
        attendance_id: int,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    record = db.get(database.Attendance, attendance_id)
    authorizer.authorize(identity, Resource.attendance, Operation.delete, record)
    db.delete(record)
    db.commit()
    return {"message": "Attendance record deleted successfully"}


# ========== Infractions Endpoints ==========
@app.post("/infractions/", response_model=models.Infraction, status_code=status.HTTP_201_CREATED)
def create_infraction(
        payload: models.InfractionCreate,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    authorizer.authorize_create(identity, Resource.infraction)

    student = _get_student(db, payload.student_id)
    if student.role != Role.student.value:
        raise NotFound("Student")

    resolution = payload.resolution
    resolved = payload.resolved
    if resolved is None:
        resolved = bool(resolution and resolution.strip())

    db_infraction = database.Infraction(
        student_id=student.id,
        type=payload.type.value,
        description=payload.description,
        severity=payload.severity or "minor",
        date=payload.date or date.today(),
        reported_by=identity.id,
        resolution=resolution,
        resolved=resolved,
    )
    db.add(db_infraction)
    db.commit()
    db.refresh(db_infraction)
    return db_infraction


@app.get("/infractions/", response_model=models.InfractionPage)
def read_infractions(
        student_id: Optional[int] = None,
        type: Optional[models.InfractionType] = None,
        severity: Optional[str] = None,
        resolved: Optional[bool] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        search: Optional[str] = None,
        sort: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        identity: Identity = Depends(get_current_identity),
        builder: ScopedQueryBuilder = Depends(get_query_builder)
):
    params = ListParams(
        page=page, limit=limit, sort=sort, search=search,
        filters={
            "student_id": student_id,
            "type": type.value if type else None,
            "severity": severity,
            "resolved": resolved,
        },
        start_date=start_date, end_date=end_date,
    )
    result = builder.page(identity, Resource.infraction, params)
    return {"infractions": result.items, "pagination": result.pagination()}


@app.get("/infractions/{infraction_id}", response_model=models.Infraction)
def read_infraction(
        infraction_id: int,
        identity: Identity = Depends(get_current_identity),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    infraction = db.get(database.Infraction, infraction_id)
    authorizer.authorize(identity, Resource.infraction, Operation.read, infraction)
    return infraction


@app.put("/infractions/{infraction_id}", response_model=models.Infraction)
def update_infraction(
        infraction_id: int,
        payload: models.InfractionUpdate,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    infraction = db.get(database.Infraction, infraction_id)
    authorizer.authorize(identity, Resource.infraction, Operation.update, infraction)

    changes = payload.model_dump(exclude_unset=True)
    if changes.get("type") is not None:
        infraction.type = changes["type"].value
    if changes.get("description"):
        infraction.description = changes["description"]
    if changes.get("severity"):
        infraction.severity = changes["severity"]
    if "resolution" in changes:
        infraction.resolution = changes["resolution"]
        if changes["resolution"] and changes["resolution"].strip():
            infraction.resolved = True
    # An explicit flag beats whatever the resolution text implied
    if changes.get("resolved") is not None:
        infraction.resolved = changes["resolved"]

    db.commit()
    db.refresh(infraction)
    return infraction


@app.delete("/infractions/{infraction_id}", response_model=models.Message)
def delete_infraction(
        infraction_id: int,
        identity: Identity = Depends(staff_only),
        authorizer: Authorizer = Depends(get_authorizer),
        db: Session = Depends(get_db)
):
    infraction = db.get(database.Infraction, infraction_id)
    authorizer.authorize(identity, Resource.infraction, Operation.delete, infraction)
    db.delete(infraction)
    db.commit()
    return {"message": "Infraction deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
