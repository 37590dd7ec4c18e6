"""
Task Routes
===========
Task list and human status transitions.
"""

from fastapi import APIRouter, HTTPException, Query
from typing import Optional

from app.models.schemas import TaskListResponse, TaskStatus, TaskStatusUpdateRequest, Priority
from app.services.workflow import get_workflow_service
from trialguard.exceptions import TaskTransitionError

router = APIRouter()


@router.get("", response_model=TaskListResponse)
def list_tasks(
    trial_id: Optional[str] = None,
    status: Optional[TaskStatus] = None,
    assigned_to: Optional[str] = None,
    priority: Optional[Priority] = None,
    domain: Optional[str] = None,
    limit: int = Query(200, ge=1, le=2000),
    offset: int = Query(0, ge=0),
):
    """Get tasks, soonest due first."""
    try:
        tasks = get_workflow_service().get_tasks(
            trial_id=trial_id,
            status=status.value if status else None,
            assigned_to=assigned_to,
            priority=priority.value if priority else None,
            domain=domain.upper() if domain else None,
            limit=limit,
            offset=offset,
        )
        return TaskListResponse(tasks=tasks, total=len(tasks))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{task_id}")
def get_task(task_id: str):
    """Get one task."""
    task = get_workflow_service().get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return task


@router.patch("/{task_id}/status")
def update_task_status(task_id: str, request: TaskStatusUpdateRequest):
    """Move a task through its lifecycle on behalf of a user."""
    try:
        task = get_workflow_service().update_task_status(
            task_id, request.status.value, note=request.note, actor=request.actor
        )
    except TaskTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return task
