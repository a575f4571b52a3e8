from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from typing import Literal, Optional, List, Union
from datetime import datetime

Role = Literal["user", "admin"]


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python; both accepted as input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Users and tokens

class UserBase(ApiModel):
    username: str = Field(..., min_length=3)
    email: EmailStr

class UserCreate(UserBase):
    password: str = Field(..., min_length=6)
    role: Role = "user"

class User(UserBase):
    id: str
    role: Role = "user"
    created_at: Optional[datetime] = None

class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

class AuthResponse(ApiModel):
    success: bool = True
    message: str
    token: str
    user: User


# Compact shapes used when a reference is populated

class PersonSummary(ApiModel):
    id: str
    name: str
    age: Optional[int] = None

class ProfileSummary(ApiModel):
    id: str
    occupation: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

class ProjectSummary(ApiModel):
    id: str
    name: str
    description: Optional[str] = None

class TaskSummary(ApiModel):
    id: str
    title: str
    finished: bool = False


# Person

class PersonBase(ApiModel):
    name: str = Field(..., min_length=1)
    age: int = Field(..., ge=15, le=99)

class PersonCreate(PersonBase):
    pass

class Person(PersonBase):
    id: str
    profile: Optional[Union[str, ProfileSummary]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Profile

class ProfileBase(ApiModel):
    occupation: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)

class ProfileCreate(ProfileBase):
    person_id: str

class Profile(ProfileBase):
    id: str
    person: Optional[Union[str, PersonSummary]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Project

class ProjectBase(ApiModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: datetime

class ProjectCreate(ProjectBase):
    # None on edit keeps the current task links
    tasks_ids: Optional[List[str]] = None

class Project(ProjectBase):
    id: str
    tasks: List[Union[str, TaskSummary]] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Task

class TaskBase(ApiModel):
    title: str = Field(..., min_length=3, max_length=100)
    description: Optional[str] = None

class TaskCreate(TaskBase):
    finished: bool = False
    person_id: Optional[str] = None
    project_ids: List[str] = []

class TaskUpdate(ApiModel):
    """Partial update: only fields present in the request are applied."""

    title: Optional[str] = Field(None, min_length=3, max_length=100)
    description: Optional[str] = None
    finished: Optional[bool] = None
    person_id: Optional[str] = None
    project_ids: Optional[List[str]] = None

class ProjectTaskCreate(TaskBase):
    finished: bool = False
    person_id: Optional[str] = None

class TaskStatusUpdate(ApiModel):
    # omitted -> toggle
    finished: Optional[bool] = None

class Task(TaskBase):
    id: str
    finished: bool = False
    person: Optional[Union[str, PersonSummary]] = None
    projects: List[Union[str, ProjectSummary]] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Envelopes

class MessageResponse(ApiModel):
    success: bool = True
    message: str

class PersonResponse(MessageResponse):
    person: Person

class ProfileResponse(MessageResponse):
    profile: Profile

class ProjectResponse(MessageResponse):
    project: Project

class TaskResponse(MessageResponse):
    task: Task

class TaskPage(ApiModel):
    success: bool = True
    count: int
    total: int
    total_pages: int
    current_page: int
    tasks: List[Task]

class TaskList(ApiModel):
    success: bool = True
    count: int
    tasks: List[Task]

class ConsistencyReport(ApiModel):
    success: bool = True
    consistent: bool
    issues: List[str]
