"""
Delay Prediction Agent - Feature Extraction

Turns a task record plus assignee context into the fixed 8-value feature
vector consumed by the logistic-regression model, and derives ground-truth
labels from completed tasks.

================================================================================
FEATURE VECTOR (canonical order, stored with every model version)
================================================================================

    idx  name                                  range     source
    ───  ────────────────────────────────────  ────────  ─────────────────────────
     0   priority_encoded                      [0, 1]    low=0 .. critical=3, / 3
     1   due_date_gap_normalized               [-1, 1]   (due - ref) hours / 720
     2   sla_hours_normalized                  [0, 1]    (sla or 24) / 168
     3   assignee_workload_normalized          [0, 1]    open tasks / 10, capped
     4   assignee_historical_completion_rate   [0, 1]    on-time share
     5   task_complexity                       [0, 1]    description + priority
     6   is_high_priority                      {0, 1}    priority_encoded > 0.5
     7   has_sla                               {0, 1}    SLA hours present

The same function builds the vector for training (reference time = task
creation, so nothing learned from hindsight) and for serving (reference
time = now). It is pure: identical inputs give bit-identical vectors.

================================================================================
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskStatus(str, Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"


PRIORITY_ENCODING: Dict[TaskPriority, int] = {
    TaskPriority.LOW: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.CRITICAL: 3,
}

FEATURE_NAMES: List[str] = [
    "priority_encoded",
    "due_date_gap_normalized",
    "sla_hours_normalized",
    "assignee_workload_normalized",
    "assignee_historical_completion_rate",
    "task_complexity",
    "is_high_priority",
    "has_sla",
]
NUM_FEATURES = len(FEATURE_NAMES)

DUE_DATE_WINDOW_HOURS = 720.0  # 30 days
NO_DUE_DATE_GAP_HOURS = 168.0  # treated as one week out
SLA_NORMALIZATION_HOURS = 168.0
DEFAULT_SLA_HOURS = 24.0
WORKLOAD_SATURATION = 10
DEFAULT_COMPLETION_RATE = 0.5


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hours_between(later: datetime, earlier: datetime) -> float:
    return (as_utc(later) - as_utc(earlier)).total_seconds() / 3600.0


@dataclass(frozen=True)
class TaskRecord:
    """Task fields the delay-risk subsystem reads from the task source."""

    id: str
    tenant_id: str
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.CREATED
    due_date: Optional[datetime] = None
    sla_hours: Optional[float] = None
    assignee_id: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "priority", TaskPriority(self.priority))
        object.__setattr__(self, "status", TaskStatus(self.status))

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def is_open_at(self, at: datetime) -> bool:
        """Whether the task existed and was not yet finished at ``at``."""
        if self.created_at is not None and as_utc(self.created_at) > as_utc(at):
            return False
        if self.completed_at is not None:
            return as_utc(self.completed_at) > as_utc(at)
        return not self.is_completed


@dataclass(frozen=True)
class TrainingExample:
    features: Tuple[float, ...]
    label: int


# =============================================================================
# FEATURE EXTRACTION
# =============================================================================

def encode_priority(priority: TaskPriority) -> float:
    return PRIORITY_ENCODING[TaskPriority(priority)] / 3.0


def due_date_gap(due_date: Optional[datetime], reference_time: datetime) -> float:
    """Hours until the due date over a 30-day window, clamped to [-1, 1]."""
    if due_date is None:
        return NO_DUE_DATE_GAP_HOURS / DUE_DATE_WINDOW_HOURS
    gap = hours_between(due_date, reference_time) / DUE_DATE_WINDOW_HOURS
    return float(min(1.0, max(-1.0, gap)))


def has_sla(sla_hours: Optional[float]) -> bool:
    return sla_hours is not None and sla_hours > 0


def sla_feature(sla_hours: Optional[float]) -> float:
    hours = sla_hours if has_sla(sla_hours) else DEFAULT_SLA_HOURS
    return float(min(1.0, hours / SLA_NORMALIZATION_HOURS))


def workload_feature(workload: int) -> float:
    return float(min(1.0, max(0, workload) / WORKLOAD_SATURATION))


def task_complexity(description: Optional[str], priority: TaskPriority) -> float:
    """
    Heuristic complexity score.

    Base 0.5; +0.2 for descriptions over 500 characters or +0.1 over 200;
    +0.2 for critical or +0.1 for high priority; capped at 1.
    """
    complexity = 0.5
    length = len(description) if description else 0
    if length > 500:
        complexity += 0.2
    elif length > 200:
        complexity += 0.1

    priority = TaskPriority(priority)
    if priority == TaskPriority.CRITICAL:
        complexity += 0.2
    elif priority == TaskPriority.HIGH:
        complexity += 0.1

    return float(min(1.0, complexity))


def extract_features(
    task: TaskRecord,
    workload: int,
    completion_rate: float,
    reference_time: Optional[datetime] = None,
) -> Tuple[float, ...]:
    """
    Build the canonical feature vector for one task.

    Args:
        task: Task record (only priority, due_date, sla_hours and
            description are read)
        workload: Open tasks assigned to the same person
        completion_rate: Assignee's historical on-time share in [0, 1]
        reference_time: Moment the prediction is made for; defaults to now

    Returns:
        Tuple of ``NUM_FEATURES`` floats in ``FEATURE_NAMES`` order
    """
    if reference_time is None:
        reference_time = datetime.now(timezone.utc)

    priority = encode_priority(task.priority)
    return (
        priority,
        due_date_gap(task.due_date, reference_time),
        sla_feature(task.sla_hours),
        workload_feature(workload),
        float(min(1.0, max(0.0, completion_rate))),
        task_complexity(task.description, task.priority),
        1.0 if priority > 0.5 else 0.0,
        1.0 if has_sla(task.sla_hours) else 0.0,
    )


def label_task(task: TaskRecord) -> Optional[int]:
    """
    Ground-truth label: 1 if the task finished after its due date.

    Returns None for tasks that cannot be labelled (not completed, no
    completion timestamp, or no due date). Those must be left out of
    training rather than counted as on time.
    """
    if not task.is_completed or task.completed_at is None or task.due_date is None:
        return None
    return 1 if as_utc(task.completed_at) > as_utc(task.due_date) else 0


# =============================================================================
# ASSIGNEE CONTEXT
# =============================================================================

class AssigneeHistory:
    """
    Point-in-time assignee statistics over one tenant's task history.

    Training asks "what did this assignee look like when the task was
    created"; serving asks the same question for "now". Both go through the
    same two methods so training and serving features agree.
    """

    def __init__(self, tasks: Iterable[TaskRecord]) -> None:
        self._by_assignee: Dict[str, List[TaskRecord]] = defaultdict(list)
        for task in tasks:
            if task.assignee_id:
                self._by_assignee[task.assignee_id].append(task)

    def workload(
        self,
        assignee_id: Optional[str],
        at: datetime,
        exclude_task_id: Optional[str] = None,
    ) -> int:
        if not assignee_id:
            return 0
        return sum(
            1
            for task in self._by_assignee.get(assignee_id, [])
            if task.id != exclude_task_id and task.is_open_at(at)
        )

    def completion_rate(self, assignee_id: Optional[str], at: datetime) -> float:
        """On-time share of the assignee's tasks completed by ``at``."""
        if not assignee_id:
            return DEFAULT_COMPLETION_RATE
        on_time = 0
        total = 0
        for task in self._by_assignee.get(assignee_id, []):
            if task.completed_at is None or as_utc(task.completed_at) > as_utc(at):
                continue
            label = label_task(task)
            if label is None:
                continue
            total += 1
            on_time += 1 - label
        if total == 0:
            return DEFAULT_COMPLETION_RATE
        return on_time / total


# =============================================================================
# DATASETS
# =============================================================================

@dataclass
class TrainingDataset:
    examples: List[TrainingExample] = field(default_factory=list)
    feature_names: List[str] = field(default_factory=lambda: list(FEATURE_NAMES))
    skipped: int = 0

    @property
    def positive_count(self) -> int:
        return sum(1 for e in self.examples if e.label == 1)

    @property
    def negative_count(self) -> int:
        return sum(1 for e in self.examples if e.label == 0)

    @property
    def is_single_class(self) -> bool:
        return self.positive_count == 0 or self.negative_count == 0


def build_training_dataset(
    tasks: Sequence[TaskRecord],
    history: Optional[AssigneeHistory] = None,
) -> TrainingDataset:
    """
    Label every usable task and extract its features as of creation time.

    Args:
        tasks: The tenant's task history
        history: Assignee statistics; built from ``tasks`` when omitted

    Returns:
        Dataset of labelled examples; ``skipped`` counts tasks that could not
        be labelled or had no creation timestamp
    """
    history = history or AssigneeHistory(tasks)
    dataset = TrainingDataset()

    for task in tasks:
        label = label_task(task)
        if label is None or task.created_at is None:
            dataset.skipped += 1
            continue

        reference_time = task.created_at
        features = extract_features(
            task,
            workload=history.workload(task.assignee_id, reference_time, exclude_task_id=task.id),
            completion_rate=history.completion_rate(task.assignee_id, reference_time),
            reference_time=reference_time,
        )
        dataset.examples.append(TrainingExample(features=features, label=label))

    return dataset


def balance_examples(
    examples: Sequence[TrainingExample],
    rng: Optional[np.random.Generator] = None,
) -> List[TrainingExample]:
    """
    Oversample the minority class with replacement until both classes match.

    Single-class input is returned unchanged; there is nothing to sample.
    """
    rng = rng or np.random.default_rng()
    positives = [e for e in examples if e.label == 1]
    negatives = [e for e in examples if e.label == 0]

    if not positives or not negatives or len(positives) == len(negatives):
        return list(examples)

    minority, majority = sorted((positives, negatives), key=len)
    picks = rng.integers(0, len(minority), size=len(majority) - len(minority))
    return majority + minority + [minority[i] for i in picks]
