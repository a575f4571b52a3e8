from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional
import logging
import math

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import relations
from auth import (
    create_access_token,
    get_current_active_user,
    get_password_hash,
    public_user,
    require_role,
    verify_password,
)
from config import Settings, load_settings
from errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ServiceError,
    UnauthorizedError,
    ValidationError,
)
from models import (
    AuthResponse,
    ConsistencyReport,
    LoginRequest,
    MessageResponse,
    Person,
    PersonCreate,
    PersonResponse,
    Profile,
    ProfileCreate,
    ProfileResponse,
    Project,
    ProjectCreate,
    ProjectResponse,
    ProjectTaskCreate,
    TaskCreate,
    TaskList,
    TaskPage,
    TaskResponse,
    TaskStatusUpdate,
    TaskUpdate,
    User,
    UserCreate,
)
from storage import JSONStorage, StorageError

__version__ = "1.0.0"

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    logging.getLogger().setLevel(settings.log_level)
    logger.info(f"Starting with {settings.masked()}")

    storage = JSONStorage(settings.storage_dir).open()
    app.state.settings = settings
    app.state.storage = storage
    try:
        yield
    finally:
        storage.close()
        logger.info("Server stopped")


app = FastAPI(title="Task Tracker API", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_storage(request: Request) -> JSONStorage:
    return request.app.state.storage


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# Error handlers: every failure is {"success": false, "message": ...}

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, UnauthorizedError) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err["loc"][1:]), "message": err["msg"]}
        for err in exc.errors()
    ]
    error = ValidationError("Validation failed.", {"errors": errors})
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


def _internal_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    error = InternalError()
    content = error.to_dict()
    settings = getattr(request.app.state, "settings", None)
    if settings is not None and settings.debug:
        content["error"] = str(exc)
    return JSONResponse(status_code=error.status_code, content=content)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    return _internal_error(request, exc)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    return _internal_error(request, exc)


@app.get("/")
async def root():
    return {
        "message": "Task Tracker API",
        "version": __version__,
        "endpoints": {"rest": "/api/...", "docs": "/docs"},
    }


# Authentication

def _auth_response(message: str, user: dict, settings: Settings) -> AuthResponse:
    token = create_access_token(
        user["id"], settings.jwt_secret, settings.token_lifetime, settings.jwt_algorithm
    )
    return AuthResponse(message=message, token=token, user=public_user(user))


@app.post("/api/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    user: UserCreate,
    storage: JSONStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    logger.info(f"Registration attempt for user: {user.username}")
    if user.role == "admin" and not settings.allow_admin_registration:
        logger.warning(f"Registration rejected, admin role requested by: {user.username}")
        raise ForbiddenError("Admin registration is disabled.")

    # no await between the duplicate check and the insert
    hashed_password = await run_in_threadpool(get_password_hash, user.password)
    if storage.find_one("users", {"email": user.email}) or storage.find_one(
        "users", {"username": user.username}
    ):
        logger.warning(f"Registration rejected, duplicate user: {user.username}")
        raise ConflictError("Username or email already registered.")

    user_dict = storage.insert("users", {
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "hashed_password": hashed_password,
        "created_at": _now(),
    })
    logger.info(f"User registered: {user_dict['id']}")
    return _auth_response("User registered successfully!", user_dict, settings)


@app.post("/api/login", response_model=AuthResponse)
async def login(
    login_data: LoginRequest,
    storage: JSONStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    logger.info(f"Login attempt for user: {login_data.email}")
    user = storage.find_one("users", {"email": login_data.email})
    if not user or not await run_in_threadpool(
        verify_password, login_data.password, user["hashed_password"]
    ):
        logger.warning(f"Invalid credentials for user: {login_data.email}")
        raise UnauthorizedError("Invalid email or password.")

    logger.info(f"Token generated for user: {user['id']}")
    return _auth_response("Login successful!", user, settings)


@app.get("/api/users/me", response_model=User)
async def read_users_me(current_user: User = Depends(get_current_active_user)):
    return current_user


# Persons

def _get_or_404(storage: JSONStorage, collection: str, doc_id: str, label: str) -> dict:
    doc = storage.find_by_id(collection, doc_id)
    if not doc:
        raise NotFoundError(f"{label} not found.")
    return doc


@app.get("/api/persons", response_model=List[Person])
async def get_persons(
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    return storage.populate(storage.find("persons"), "profile", "profiles")


@app.get("/api/persons/{person_id}", response_model=Person)
async def get_person(
    person_id: str,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    person = _get_or_404(storage, "persons", person_id, "Person")
    return storage.populate(person, "profile", "profiles")


@app.post("/api/persons", response_model=PersonResponse, status_code=status.HTTP_201_CREATED)
async def create_person(
    person: PersonCreate,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    now = _now()
    person_dict = storage.insert("persons", {
        "name": person.name,
        "age": person.age,
        "profile": None,
        "created_at": now,
        "updated_at": now,
    })
    logger.info(f"Person {person_dict['id']} created")
    return {"message": "Person created successfully!", "person": person_dict}


@app.put("/api/persons/{person_id}", response_model=PersonResponse)
async def update_person(
    person_id: str,
    person: PersonCreate,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    updated = storage.update_by_id(
        "persons", person_id, {"name": person.name, "age": person.age, "updated_at": _now()}
    )
    if not updated:
        raise NotFoundError("Person not found.")
    return {"message": "Person updated successfully!", "person": updated}


@app.delete("/api/persons/{person_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_person(
    person_id: str,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    if not storage.delete_by_id("persons", person_id):
        raise NotFoundError("Person not found.")
    storage.update_many("tasks", {"person": person_id}, set_fields={"person": None})
    storage.update_many("profiles", {"person": person_id}, set_fields={"person": None})
    logger.info(f"Person {person_id} deleted")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Profiles

@app.get("/api/profiles", response_model=List[Profile])
async def get_profiles(
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    return storage.populate(storage.find("profiles"), "person", "persons")


@app.get("/api/profiles/{profile_id}", response_model=Profile)
async def get_profile(
    profile_id: str,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    profile = _get_or_404(storage, "profiles", profile_id, "Profile")
    return storage.populate(profile, "person", "persons")


@app.post("/api/profiles", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
async def create_profile(
    profile: ProfileCreate,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    person = _get_or_404(storage, "persons", profile.person_id, "Person")
    if person.get("profile"):
        raise ConflictError("Person already has a profile.")
    now = _now()
    profile_dict = storage.insert("profiles", {
        "occupation": profile.occupation,
        "phone": profile.phone,
        "address": profile.address,
        "person": profile.person_id,
        "created_at": now,
        "updated_at": now,
    })
    storage.update_by_id("persons", profile.person_id, {"profile": profile_dict["id"]})
    logger.info(f"Profile {profile_dict['id']} created for person {profile.person_id}")
    return {"message": "Profile created successfully!", "profile": profile_dict}


@app.put("/api/profiles/{profile_id}", response_model=ProfileResponse)
async def update_profile(
    profile_id: str,
    profile: ProfileCreate,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    current = _get_or_404(storage, "profiles", profile_id, "Profile")
    person = _get_or_404(storage, "persons", profile.person_id, "Person")
    if person.get("profile") not in (None, profile_id):
        raise ConflictError("Person already has a profile.")

    updated = storage.update_by_id("profiles", profile_id, {
        "occupation": profile.occupation,
        "phone": profile.phone,
        "address": profile.address,
        "person": profile.person_id,
        "updated_at": _now(),
    })
    if current.get("person") and current["person"] != profile.person_id:
        storage.update_many(
            "persons", {"id": current["person"], "profile": profile_id}, set_fields={"profile": None}
        )
    storage.update_by_id("persons", profile.person_id, {"profile": profile_id})
    return {"message": "Profile updated successfully!", "profile": updated}


@app.delete("/api/profiles/{profile_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_profile(
    profile_id: str,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    if not storage.delete_by_id("profiles", profile_id):
        raise NotFoundError("Profile not found.")
    storage.update_many("persons", {"profile": profile_id}, set_fields={"profile": None})
    logger.info(f"Profile {profile_id} deleted")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Projects

@app.get("/api/projects", response_model=List[Project])
async def get_projects(
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    return storage.populate(storage.find("projects"), "tasks", "tasks")


@app.get("/api/projects/{project_id}", response_model=Project)
async def get_project(
    project_id: str,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    project = _get_or_404(storage, "projects", project_id, "Project")
    return storage.populate(project, "tasks", "tasks")


@app.post("/api/projects", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(
    project: ProjectCreate,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    project_dict = relations.create_project(storage, project)
    return {"message": "Project created successfully!", "project": project_dict}


@app.put("/api/projects/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: str,
    project_data: ProjectCreate,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    updated_project = relations.edit_project(storage, project_id, project_data)
    return {"message": "Project updated successfully!", "project": updated_project}


@app.delete("/api/projects/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(
    project_id: str,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    relations.delete_project(storage, project_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post(
    "/api/projects/{project_id}/tasks",
    response_model=TaskResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_task_to_project(
    project_id: str,
    task: ProjectTaskCreate,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    task_dict = relations.add_project_task(storage, project_id, task)
    return {"message": "Task added to project!", "task": task_dict}


@app.put("/api/projects/{project_id}/tasks/{task_id}", response_model=TaskResponse)
async def update_task_status(
    project_id: str,
    task_id: str,
    body: Optional[TaskStatusUpdate] = None,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    finished = body.finished if body else None
    task = relations.set_project_task_status(storage, project_id, task_id, finished)
    return {"message": "Task status updated!", "task": task}


@app.delete("/api/projects/{project_id}/tasks/{task_id}", response_model=ProjectResponse)
async def delete_task_from_project(
    project_id: str,
    task_id: str,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    project = relations.remove_project_task(storage, project_id, task_id)
    return {"message": "Task removed from project!", "project": project}


# Tasks

@app.get("/api/tasks", response_model=TaskPage)
async def get_tasks(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    finished: Optional[bool] = None,
    person_id: Optional[str] = Query(None, alias="personId"),
    project_id: Optional[str] = Query(None, alias="projectId"),
    storage: JSONStorage = Depends(get_storage),
):
    filter = {}
    if finished is not None:
        filter["finished"] = finished
    if person_id:
        filter["person"] = person_id
    if project_id:
        filter["projects"] = project_id

    total = storage.count("tasks", filter)
    tasks = storage.find(
        "tasks", filter, sort="created_at", descending=True, skip=(page - 1) * limit, limit=limit
    )
    tasks = storage.populate(tasks, "person", "persons", fields=("name", "age"))
    tasks = storage.populate(tasks, "projects", "projects", fields=("name", "description"))
    return {
        "count": len(tasks),
        "total": total,
        "total_pages": math.ceil(total / limit),
        "current_page": page,
        "tasks": tasks,
    }


@app.post("/api/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    task: TaskCreate,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    task_dict = relations.create_task(storage, task)
    return {"message": "Task created successfully!", "task": task_dict}


@app.get("/api/tasks/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: str,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    task = _get_or_404(storage, "tasks", task_id, "Task")
    task = storage.populate(task, "person", "persons", fields=("name", "age"))
    task = storage.populate(task, "projects", "projects", fields=("name", "description"))
    return {"message": "Task found.", "task": task}


@app.put("/api/tasks/{task_id}", response_model=TaskResponse)
async def update_task(
    task_id: str,
    task_data: TaskUpdate,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    updated_task = relations.edit_task(storage, task_id, task_data)
    return {"message": "Task updated successfully!", "task": updated_task}


@app.delete("/api/tasks/{task_id}", response_model=MessageResponse)
async def delete_task(
    task_id: str,
    storage: JSONStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user),
):
    relations.delete_task(storage, task_id)
    return {"message": "Task deleted successfully!"}


# Administration

@app.get("/api/admin/tasks", response_model=TaskList)
async def get_all_tasks_admin(
    storage: JSONStorage = Depends(get_storage),
    admin: User = Depends(require_role("admin")),
):
    tasks = storage.populate(storage.find("tasks"), "person", "persons")
    tasks = storage.populate(tasks, "projects", "projects")
    return {"count": len(tasks), "tasks": tasks}


@app.get("/api/admin/consistency", response_model=ConsistencyReport)
async def check_consistency(
    storage: JSONStorage = Depends(get_storage),
    admin: User = Depends(require_role("admin")),
):
    issues = relations.find_inconsistencies(storage)
    if issues:
        logger.warning(f"Found {len(issues)} dangling project/task reference(s)")
    return {"consistent": not issues, "issues": issues}


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
