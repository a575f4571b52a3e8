"""Keeps project.tasks and task.projects in agreement.

The two sides are separate writes; a StorageError between them is not rolled back.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from errors import NotFoundError
from models import ProjectCreate, ProjectTaskCreate, TaskCreate, TaskUpdate
from storage import Document, JSONStorage

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _unique(ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(ids))


def _require_person(storage: JSONStorage, person_id: Optional[str]) -> None:
    if person_id and not storage.find_by_id("persons", person_id):
        raise NotFoundError("Person not found.")


def _require_projects(storage: JSONStorage, project_ids: List[str]) -> None:
    found = storage.find_by_ids("projects", project_ids)
    if len(found) != len(project_ids):
        missing = sorted(set(project_ids) - {p["id"] for p in found})
        raise NotFoundError("One or more projects were not found.", {"missing": missing})


def _require_tasks(storage: JSONStorage, task_ids: List[str]) -> None:
    found = storage.find_by_ids("tasks", task_ids)
    if len(found) != len(task_ids):
        missing = sorted(set(task_ids) - {t["id"] for t in found})
        raise NotFoundError("One or more tasks were not found.", {"missing": missing})


def _get_task(storage: JSONStorage, task_id: str) -> Document:
    task = storage.find_by_id("tasks", task_id)
    if not task:
        raise NotFoundError("Task not found.")
    return task


def _get_project(storage: JSONStorage, project_id: str) -> Document:
    project = storage.find_by_id("projects", project_id)
    if not project:
        raise NotFoundError("Project not found.")
    return project


def _detach_task(storage: JSONStorage, task: Document) -> None:
    # Also sweeps projects that list the task without being in task.projects,
    # so a retry after a partial failure still cleans up.
    storage.update_many("projects", {"tasks": task["id"]}, pull={"tasks": task["id"]})
    storage.update_many("projects", {"id": list(task.get("projects") or [])}, pull={"tasks": task["id"]})


def _attach_task(storage: JSONStorage, task_id: str, project_ids: List[str]) -> None:
    if project_ids:
        storage.update_many("projects", {"id": project_ids}, add_to_set={"tasks": task_id})


# Standalone tasks

def create_task(storage: JSONStorage, data: TaskCreate) -> Document:
    project_ids = _unique(data.project_ids)
    _require_person(storage, data.person_id)
    _require_projects(storage, project_ids)

    now = _now()
    task = storage.insert("tasks", {
        "title": data.title,
        "description": data.description,
        "finished": data.finished,
        "person": data.person_id,
        "projects": project_ids,
        "created_at": now,
        "updated_at": now,
    })
    _attach_task(storage, task["id"], project_ids)
    logger.info(f"Task {task['id']} created in {len(project_ids)} project(s)")
    return task


def edit_task(storage: JSONStorage, task_id: str, data: TaskUpdate) -> Document:
    task = _get_task(storage, task_id)
    changes: Dict[str, Any] = {
        k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None
    }

    # Validate before touching anything so a rejected edit changes nothing
    _require_person(storage, changes.get("person_id"))
    if "project_ids" in changes:
        changes["project_ids"] = _unique(changes["project_ids"])
        _require_projects(storage, changes["project_ids"])

    _detach_task(storage, task)

    patch: Dict[str, Any] = {"updated_at": _now()}
    for field in ("title", "description", "finished"):
        if field in changes:
            patch[field] = changes[field]
    if "person_id" in changes:
        patch["person"] = changes["person_id"]
    if "project_ids" in changes:
        patch["projects"] = changes["project_ids"]

    task = storage.update_by_id("tasks", task_id, patch)
    _attach_task(storage, task_id, task.get("projects") or [])
    logger.info(f"Task {task_id} updated ({', '.join(sorted(changes)) or 'no fields'})")
    return task


def delete_task(storage: JSONStorage, task_id: str) -> Document:
    task = _get_task(storage, task_id)
    _detach_task(storage, task)
    storage.delete_by_id("tasks", task_id)
    logger.info(f"Task {task_id} deleted")
    return task


# Projects

def _detach_project(storage: JSONStorage, project: Document) -> None:
    storage.update_many("tasks", {"projects": project["id"]}, pull={"projects": project["id"]})
    storage.update_many("tasks", {"id": list(project.get("tasks") or [])}, pull={"projects": project["id"]})


def _attach_project(storage: JSONStorage, project_id: str, task_ids: List[str]) -> None:
    if task_ids:
        storage.update_many("tasks", {"id": task_ids}, add_to_set={"projects": project_id})


def _project_fields(data: ProjectCreate, start_date: Optional[str] = None) -> Document:
    fields = data.model_dump(mode="json", exclude={"tasks_ids"})
    if not fields.get("start_date"):
        fields["start_date"] = start_date or _now()
    return fields


def create_project(storage: JSONStorage, data: ProjectCreate) -> Document:
    """Create a project that adopts existing tasks (inverse of create_task)."""
    task_ids = _unique(data.tasks_ids or [])
    _require_tasks(storage, task_ids)

    now = _now()
    project = storage.insert("projects", {
        **_project_fields(data),
        "tasks": task_ids,
        "created_at": now,
        "updated_at": now,
    })
    _attach_project(storage, project["id"], task_ids)
    logger.info(f"Project {project['id']} created with {len(task_ids)} task(s)")
    return project


def edit_project(storage: JSONStorage, project_id: str, data: ProjectCreate) -> Document:
    project = _get_project(storage, project_id)
    patch = {**_project_fields(data, project.get("start_date")), "updated_at": _now()}

    if data.tasks_ids is None:
        return storage.update_by_id("projects", project_id, patch)

    task_ids = _unique(data.tasks_ids)
    _require_tasks(storage, task_ids)
    _detach_project(storage, project)
    project = storage.update_by_id("projects", project_id, {**patch, "tasks": task_ids})
    _attach_project(storage, project_id, task_ids)
    logger.info(f"Project {project_id} now has {len(task_ids)} task(s)")
    return project


def delete_project(storage: JSONStorage, project_id: str) -> Document:
    """Delete a project; its tasks survive but stop referencing it."""
    project = _get_project(storage, project_id)
    _detach_project(storage, project)
    storage.delete_by_id("projects", project_id)
    logger.info(f"Project {project_id} deleted")
    return project


# Tasks addressed through their project

def add_project_task(storage: JSONStorage, project_id: str, data: ProjectTaskCreate) -> Document:
    _get_project(storage, project_id)
    return create_task(storage, TaskCreate(**data.model_dump(), project_ids=[project_id]))


def _get_project_task(storage: JSONStorage, project_id: str, task_id: str) -> Document:
    project = _get_project(storage, project_id)
    if task_id not in (project.get("tasks") or []):
        raise NotFoundError("Task not found in this project.")
    return _get_task(storage, task_id)


def set_project_task_status(
    storage: JSONStorage, project_id: str, task_id: str, finished: Optional[bool] = None
) -> Document:
    """Set ``finished``, or flip it when no value is given."""
    task = _get_project_task(storage, project_id, task_id)
    if finished is None:
        finished = not task.get("finished", False)
    return storage.update_by_id("tasks", task_id, {"finished": finished, "updated_at": _now()})


def remove_project_task(storage: JSONStorage, project_id: str, task_id: str) -> Document:
    """Unlink a task from a project; a task left without projects is deleted.

    Returns the updated project.
    """
    task = _get_project_task(storage, project_id, task_id)
    storage.update_many("projects", {"id": project_id}, pull={"tasks": task_id})
    remaining = [p for p in task.get("projects") or [] if p != project_id]
    if remaining:
        storage.update_by_id("tasks", task_id, {"projects": remaining, "updated_at": _now()})
    else:
        storage.delete_by_id("tasks", task_id)
        logger.info(f"Task {task_id} deleted with its last project {project_id}")
    return storage.find_by_id("projects", project_id)


def find_inconsistencies(storage: JSONStorage) -> List[str]:
    """Describe every Project/Task reference that lacks its counterpart."""
    projects = {p["id"]: p for p in storage.find("projects")}
    tasks = {t["id"]: t for t in storage.find("tasks")}
    issues = []
    for task_id, task in tasks.items():
        for project_id in task.get("projects") or []:
            project = projects.get(project_id)
            if project is None:
                issues.append(f"task {task_id} references missing project {project_id}")
            elif task_id not in (project.get("tasks") or []):
                issues.append(f"project {project_id} does not list task {task_id}")
    for project_id, project in projects.items():
        for task_id in project.get("tasks") or []:
            task = tasks.get(task_id)
            if task is None:
                issues.append(f"project {project_id} references missing task {task_id}")
            elif project_id not in (task.get("projects") or []):
                issues.append(f"task {task_id} does not list project {project_id}")
    return issues
