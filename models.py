from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, field_validator

from policy import Role

CalendarDay = date


class AttendanceStatus(str, Enum):
    absent = "absent"
    excused = "excused"


class InfractionType(str, Enum):
    behavioral = "behavioral"
    academic = "academic"
    attendance = "attendance"
    other = "other"


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class Message(BaseModel):
    message: str


class Token(BaseModel):
    access_token: str
    token_type: str


# ========== Users ==========
class UserBase(BaseModel):
    email: EmailStr
    first_name: str
    last_name: str

    @field_validator("email")
    @classmethod
    def email_lowercase(cls, v):
        return v.lower()


class UserCreate(UserBase):
    role: Role = Role.student
    username: Optional[str] = None


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[Role] = None

    @field_validator("email")
    @classmethod
    def email_lowercase(cls, v):
        return v.lower() if v else v


class UserSummary(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: str

    model_config = ConfigDict(from_attributes=True)


class User(UserBase):
    id: int
    username: str
    role: Role
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UserCreated(User):
    initial_password: str


class UserPage(BaseModel):
    users: List[User]
    pagination: Pagination


# ========== Courses ==========
class CourseBase(BaseModel):
    name: str
    course_code: str
    description: Optional[str] = None


class CourseCreate(CourseBase):
    teacher_id: Optional[int] = None


class CourseUpdate(BaseModel):
    name: Optional[str] = None
    course_code: Optional[str] = None
    description: Optional[str] = None
    teacher_id: Optional[int] = None


class Course(CourseBase):
    id: int
    teacher_id: Optional[int] = None
    student_ids: List[int] = []
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CourseDetail(Course):
    teacher: Optional[UserSummary] = None
    students: List[UserSummary] = []


class CourseMessage(BaseModel):
    message: str
    course: Course


class CoursePage(BaseModel):
    courses: List[Course]
    pagination: Pagination


class EnrollRequest(BaseModel):
    student_id: int


# ========== Assignments ==========
class AssignmentBase(BaseModel):
    title: str
    description: Optional[str] = None
    due_date: datetime


class AssignmentCreate(AssignmentBase):
    course_id: int


class AssignmentUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[datetime] = None


class Assignment(AssignmentBase):
    id: int
    course_id: int
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AssignmentPage(BaseModel):
    assignments: List[Assignment]
    pagination: Pagination


# ========== Grades ==========
class GradeCreate(BaseModel):
    student_id: int
    course_id: int
    assignment_id: Optional[int] = None
    score: float
    comment: Optional[str] = None


class GradeUpdate(BaseModel):
    score: Optional[float] = None
    comment: Optional[str] = None


class Grade(BaseModel):
    id: int
    student_id: int
    course_id: int
    assignment_id: Optional[int] = None
    score: float
    comment: Optional[str] = None
    graded_by: Optional[int] = None
    graded_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class GradePage(BaseModel):
    grades: List[Grade]
    pagination: Pagination


class GradeEntry(BaseModel):
    id: int
    score: float
    comment: Optional[str] = None
    assignment_title: str
    graded_at: Optional[datetime] = None


class StudentGradeRow(BaseModel):
    student_id: int
    name: str
    username: str
    grades: List[GradeEntry]


class CourseGrades(BaseModel):
    course_id: int
    course_name: str
    course_code: str
    students: List[StudentGradeRow]


class CourseGradeGroup(BaseModel):
    course_id: int
    course_name: str
    course_code: str
    grades: List[GradeEntry]


class StudentGradeReport(BaseModel):
    student_id: int
    courses: List[CourseGradeGroup]


class GradeStats(BaseModel):
    # None rather than 0 when there are no grades
    count: int
    average: Optional[float] = None
    highest: Optional[float] = None
    lowest: Optional[float] = None
    median: Optional[float] = None


class CourseStats(BaseModel):
    course_id: int
    course_name: str
    stats: GradeStats


# ========== Attendance ==========
class AttendanceCreate(BaseModel):
    student_id: int
    course_id: int
    date: date
    status: AttendanceStatus = AttendanceStatus.absent
    reason: Optional[str] = None


class AttendanceUpdate(BaseModel):
    status: Optional[AttendanceStatus] = None
    reason: Optional[str] = None


class Attendance(BaseModel):
    id: int
    student_id: int
    course_id: int
    date: date
    status: AttendanceStatus
    reason: Optional[str] = None
    recorded_by: Optional[int] = None
    recorded_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AttendancePage(BaseModel):
    attendance: List[Attendance]
    pagination: Pagination


class BulkAttendanceRecord(BaseModel):
    # status stays a plain string so one bad entry fails alone, not the whole batch
    student_id: int
    status: str = AttendanceStatus.absent.value
    reason: Optional[str] = None


class BulkAttendanceRequest(BaseModel):
    course_id: int
    date: date
    records: List[BulkAttendanceRecord]


class BulkAttendanceError(BaseModel):
    student_id: int
    message: str


class BulkAttendanceResponse(BaseModel):
    message: str
    status: str
    results: List[Attendance]
    errors: List[BulkAttendanceError]


# ========== Infractions ==========
class InfractionCreate(BaseModel):
    student_id: int
    type: InfractionType
    description: str
    severity: str = "minor"
    date: Optional[CalendarDay] = None
    resolution: Optional[str] = None
    resolved: Optional[bool] = None


class InfractionUpdate(BaseModel):
    type: Optional[InfractionType] = None
    description: Optional[str] = None
    severity: Optional[str] = None
    resolution: Optional[str] = None
    resolved: Optional[bool] = None


class Infraction(BaseModel):
    id: int
    student_id: int
    type: InfractionType
    description: str
    severity: str
    date: date
    reported_by: Optional[int] = None
    resolution: Optional[str] = None
    resolved: bool

    model_config = ConfigDict(from_attributes=True)


class InfractionPage(BaseModel):
    infractions: List[Infraction]
    pagination: Pagination
