"""
Task builders shared by the delay prediction tests.

The "separable" history mirrors the acceptance scenario: 12 completed tasks,
7 finished after their due date and 5 before, with feature values far enough
apart that a linear model can tell them apart.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from agents.delay_prediction.features import TaskPriority, TaskRecord, TaskStatus

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_task(
    task_id: str,
    tenant_id: str = "tenant-a",
    priority: TaskPriority = TaskPriority.MEDIUM,
    status: TaskStatus = TaskStatus.CREATED,
    due_in_hours: Optional[float] = 48.0,
    sla_hours: Optional[float] = None,
    assignee_id: Optional[str] = None,
    description: Optional[str] = "Short task",
    created_at: Optional[datetime] = None,
    completed_after_hours: Optional[float] = None,
) -> TaskRecord:
    """Build a task; due date and completion are offsets from ``created_at``."""
    created_at = created_at or NOW - timedelta(days=40)
    due_date = created_at + timedelta(hours=due_in_hours) if due_in_hours is not None else None
    completed_at = (
        created_at + timedelta(hours=completed_after_hours)
        if completed_after_hours is not None
        else None
    )
    if completed_at is not None:
        status = TaskStatus.COMPLETED
    return TaskRecord(
        id=task_id,
        tenant_id=tenant_id,
        priority=priority,
        status=status,
        due_date=due_date,
        sla_hours=sla_hours,
        assignee_id=assignee_id,
        description=description,
        created_at=created_at,
        started_at=created_at,
        completed_at=completed_at,
    )


def delayed_task(task_id: str, tenant_id: str = "tenant-a", **overrides) -> TaskRecord:
    """Critical, due 2h after creation, long description, finished late."""
    params = dict(
        priority=TaskPriority.CRITICAL,
        due_in_hours=2.0,
        sla_hours=100.0,
        description="x" * 600,
        completed_after_hours=30.0,
    )
    params.update(overrides)
    return make_task(task_id, tenant_id, **params)


def on_time_task(task_id: str, tenant_id: str = "tenant-a", **overrides) -> TaskRecord:
    """Low priority, due 29 days out, no SLA, finished early."""
    params = dict(
        priority=TaskPriority.LOW,
        due_in_hours=29 * 24.0,
        sla_hours=None,
        description="Short task",
        completed_after_hours=24.0,
    )
    params.update(overrides)
    return make_task(task_id, tenant_id, **params)


def separable_history(tenant_id: str = "tenant-a", delayed: int = 7, on_time: int = 5) -> List[TaskRecord]:
    tasks = [delayed_task(f"{tenant_id}-late-{i}", tenant_id) for i in range(delayed)]
    tasks += [on_time_task(f"{tenant_id}-ok-{i}", tenant_id) for i in range(on_time)]
    return tasks
