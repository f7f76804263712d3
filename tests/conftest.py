import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Put the project root on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from main import app
import auth
import database
from database import Base

# One in-memory database shared by every connection in a test
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# SQLite only checks foreign keys when asked to
@event.listens_for(engine, "connect")
def enforce_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db):
    def override_get_db():
        try:
            yield db
        finally:
            db.rollback()

    app.dependency_overrides[database.get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def make(username, role="student", password="secret123", first_name=None, last_name="Tester"):
        user = database.User(
            username=username,
            email=f"{username}@school.org",
            role=role,
            first_name=first_name or username.capitalize(),
            last_name=last_name,
            hashed_password=auth.get_password_hash(password),
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return make


@pytest.fixture
def make_course(db):
    def make(code, teacher=None, students=(), name=None):
        course = database.Course(
            name=name or f"Course {code}",
            course_code=code,
            teacher_id=teacher.id if teacher else None,
        )
        course.students.extend(students)
        db.add(course)
        db.commit()
        db.refresh(course)
        return course

    return make


@pytest.fixture
def headers():
    def for_user(user):
        return {"Authorization": f"Bearer {auth.token_for(user)}"}

    return for_user


@pytest.fixture
def admin(make_user):
    return make_user("admin", role="admin")


@pytest.fixture
def teacher(make_user):
    return make_user("tina", role="teacher")


@pytest.fixture
def other_teacher(make_user):
    return make_user("otto", role="teacher")


@pytest.fixture
def student(make_user):
    return make_user("sam", last_name="Adams")


@pytest.fixture
def other_student(make_user):
    return make_user("sara", last_name="Baker")
