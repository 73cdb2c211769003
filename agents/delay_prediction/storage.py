"""
Delay Prediction Agent - Storage Layer

SQLAlchemy implementations of the stores the learning subsystem relies on,
plus thread-safe in-memory equivalents used by tests and local experiments.

================================================================================
TABLES
================================================================================

    tenants                       tenant directory
    tasks                         task source (read-mostly; owned upstream)
    tenant_model_weights          append-only model versions, unique per
                                  (tenant_id, model_version)
    federated_training_rounds     one row per round; status changes only via
                                  conditional UPDATE ... WHERE status = :expected
    tenant_training_metadata      one row per (round_id, tenant_id), never updated
    model_evaluation_results      post-hoc federated/local evaluations

Weights are stored as JSON ``{"coefficients": [...], "intercept": b}``.

================================================================================
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from federated_learning.client.serde import ModelWeights
from federated_learning.server.records import (
    EvaluationRecord,
    ModelVersion,
    NewModelVersion,
    RoundStatus,
    TenantTrainingMetadata,
    TrainingRound,
)

from .features import TaskRecord, TaskStatus, as_utc

logger = logging.getLogger(__name__)

MAX_INSERT_ATTEMPTS = 5


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value is not None else None


class TaskSource(Protocol):
    def list_tasks(
        self,
        tenant_id: str,
        completed: Optional[bool] = None,
        with_due_date: Optional[bool] = None,
    ) -> List[TaskRecord]: ...


def _matches(task: TaskRecord, completed: Optional[bool], with_due_date: Optional[bool]) -> bool:
    if completed is not None and task.is_completed != completed:
        return False
    if with_due_date is not None and (task.due_date is not None) != with_due_date:
        return False
    return True


# =============================================================================
# ORM MODELS
# =============================================================================

class Base(DeclarativeBase):
    pass


class TenantRow(Base):
    __tablename__ = "tenants"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class TaskRow(Base):
    __tablename__ = "tasks"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(64), ForeignKey("tenants.id"), nullable=False, index=True)
    priority = Column(String(16), nullable=False, default="medium")
    status = Column(String(16), nullable=False, default="created", index=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    sla_hours = Column(Float, nullable=True)
    assignee_id = Column(String(64), nullable=True, index=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def to_record(self) -> TaskRecord:
        return TaskRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            priority=self.priority,
            status=self.status,
            due_date=_utc(self.due_date),
            sla_hours=self.sla_hours,
            assignee_id=self.assignee_id,
            description=self.description,
            created_at=_utc(self.created_at),
            started_at=_utc(self.started_at),
            completed_at=_utc(self.completed_at),
        )


class ModelWeightsRow(Base):
    __tablename__ = "tenant_model_weights"
    __table_args__ = (UniqueConstraint("tenant_id", "model_version", name="uq_tenant_model_version"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(64), nullable=False, index=True)
    model_version = Column(Integer, nullable=False)
    weights = Column(JSON, nullable=False)
    feature_names = Column(JSON, nullable=False)
    training_samples = Column(Integer, nullable=False, default=0)
    accuracy = Column(Float, nullable=True)
    precision = Column(Float, nullable=True)
    recall = Column(Float, nullable=True)
    f1_score = Column(Float, nullable=True)
    last_trained_at = Column(DateTime(timezone=True), nullable=True)
    source = Column(String(16), nullable=False, default="local")
    round_id = Column(String(36), nullable=True)
    degenerate = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def to_record(self) -> ModelVersion:
        return ModelVersion(
            id=self.id,
            tenant_id=self.tenant_id,
            model_version=self.model_version,
            weights=ModelWeights.from_dict(self.weights),
            feature_names=list(self.feature_names),
            training_samples=self.training_samples,
            accuracy=self.accuracy,
            precision=self.precision,
            recall=self.recall,
            f1=self.f1_score,
            last_trained_at=_utc(self.last_trained_at),
            source=self.source,
            round_id=self.round_id,
            degenerate=bool(self.degenerate),
        )


class TrainingRoundRow(Base):
    __tablename__ = "federated_training_rounds"

    id = Column(String(36), primary_key=True, default=_new_id)
    round_number = Column(Integer, nullable=False, unique=True)
    status = Column(String(16), nullable=False, index=True)
    participating_tenants = Column(JSON, nullable=False, default=list)
    aggregation_method = Column(String(64), nullable=False, default="federated_averaging")
    global_weights = Column(JSON, nullable=True)
    total_samples = Column(Integer, nullable=False, default=0)
    global_accuracy = Column(Float, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    # "metadata" is reserved on declarative classes
    round_metadata = Column("metadata", JSON, nullable=False, default=dict)

    def to_record(self) -> TrainingRound:
        return TrainingRound(
            id=self.id,
            round_number=self.round_number,
            status=RoundStatus(self.status),
            participating_tenants=list(self.participating_tenants or []),
            aggregation_method=self.aggregation_method,
            global_weights=ModelWeights.from_dict(self.global_weights) if self.global_weights else None,
            total_samples=self.total_samples or 0,
            global_accuracy=self.global_accuracy,
            started_at=_utc(self.started_at),
            completed_at=_utc(self.completed_at),
            created_at=_utc(self.created_at),
            metadata=dict(self.round_metadata or {}),
        )


class TrainingMetadataRow(Base):
    __tablename__ = "tenant_training_metadata"
    __table_args__ = (UniqueConstraint("round_id", "tenant_id", name="uq_round_tenant"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    round_id = Column(String(36), ForeignKey("federated_training_rounds.id"), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False)
    local_weights = Column(JSON, nullable=False)
    training_samples = Column(Integer, nullable=False)
    validation_samples = Column(Integer, nullable=False, default=0)
    training_accuracy = Column(Float, nullable=True)
    validation_accuracy = Column(Float, nullable=True)
    loss = Column(Float, nullable=True)
    epochs_completed = Column(Integer, nullable=False, default=0)
    training_duration_ms = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def to_record(self) -> TenantTrainingMetadata:
        return TenantTrainingMetadata(
            id=self.id,
            round_id=self.round_id,
            tenant_id=self.tenant_id,
            local_weights=ModelWeights.from_dict(self.local_weights),
            training_samples=self.training_samples,
            validation_samples=self.validation_samples,
            training_accuracy=self.training_accuracy,
            validation_accuracy=self.validation_accuracy,
            loss=self.loss,
            epochs_completed=self.epochs_completed,
            training_duration_ms=self.training_duration_ms,
            created_at=_utc(self.created_at),
        )


class EvaluationRow(Base):
    __tablename__ = "model_evaluation_results"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(64), nullable=False, index=True)
    round_id = Column(String(36), nullable=True)
    model_version = Column(Integer, nullable=True)
    evaluation_type = Column(String(16), nullable=False)
    test_samples = Column(Integer, nullable=False)
    accuracy = Column(Float, nullable=False)
    precision = Column(Float, nullable=False)
    recall = Column(Float, nullable=False)
    f1_score = Column(Float, nullable=False)
    true_positives = Column(Integer, nullable=False)
    true_negatives = Column(Integer, nullable=False)
    false_positives = Column(Integer, nullable=False)
    false_negatives = Column(Integer, nullable=False)
    evaluated_at = Column(DateTime(timezone=True), nullable=False)

    def to_record(self) -> EvaluationRecord:
        return EvaluationRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            round_id=self.round_id,
            model_version=self.model_version,
            evaluation_type=self.evaluation_type,
            test_samples=self.test_samples,
            accuracy=self.accuracy,
            precision=self.precision,
            recall=self.recall,
            f1=self.f1_score,
            true_positives=self.true_positives,
            true_negatives=self.true_negatives,
            false_positives=self.false_positives,
            false_negatives=self.false_negatives,
            evaluated_at=_utc(self.evaluated_at),
        )


# =============================================================================
# DATABASE
# =============================================================================

class Database:
    """
    Lazily created engine plus a session factory.

    Example:
        >>> db = Database("sqlite:///./delay_prediction.db")
        >>> db.create_all()
        >>> with db.session() as session:
        ...     session.execute(text("SELECT 1"))
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = str(database_url)
        self.echo = echo
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            connect_args = {}
            if self.database_url.startswith("sqlite"):
                # Sessions are opened from the round coordinator's worker threads
                connect_args["check_same_thread"] = False
            self._engine = create_engine(
                self.database_url,
                echo=self.echo,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine, autoflush=False, expire_on_commit=False
            )
        return self._session_factory

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info(f"Database schema ready at {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def healthcheck(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None


# =============================================================================
# SQL STORES
# =============================================================================

class SqlTaskRepository:
    """Task source and tenant directory backed by the ``tasks`` table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def add_tasks(self, tasks: Iterable[TaskRecord]) -> int:
        count = 0
        with self.db.session() as session:
            known = set(session.scalars(select(TenantRow.id)))
            for task in tasks:
                if task.tenant_id not in known:
                    session.add(TenantRow(id=task.tenant_id))
                    session.flush()
                    known.add(task.tenant_id)
                session.merge(
                    TaskRow(
                        id=task.id,
                        tenant_id=task.tenant_id,
                        priority=task.priority.value,
                        status=task.status.value,
                        due_date=_utc(task.due_date),
                        sla_hours=task.sla_hours,
                        assignee_id=task.assignee_id,
                        description=task.description,
                        created_at=_utc(task.created_at),
                        started_at=_utc(task.started_at),
                        completed_at=_utc(task.completed_at),
                    )
                )
                count += 1
        return count

    def list_tasks(
        self,
        tenant_id: str,
        completed: Optional[bool] = None,
        with_due_date: Optional[bool] = None,
    ) -> List[TaskRecord]:
        query = select(TaskRow).where(TaskRow.tenant_id == tenant_id)
        if completed is True:
            query = query.where(TaskRow.status == TaskStatus.COMPLETED.value)
        elif completed is False:
            query = query.where(TaskRow.status != TaskStatus.COMPLETED.value)
        if with_due_date is True:
            query = query.where(TaskRow.due_date.is_not(None))
        elif with_due_date is False:
            query = query.where(TaskRow.due_date.is_(None))
        with self.db.session() as session:
            return [row.to_record() for row in session.scalars(query.order_by(TaskRow.created_at))]

    def list_tenant_ids(self) -> List[str]:
        with self.db.session() as session:
            return list(session.scalars(select(TenantRow.id).order_by(TenantRow.id)))

    def count_completed_tasks(self, tenant_id: str) -> int:
        query = select(func.count(TaskRow.id)).where(
            TaskRow.tenant_id == tenant_id,
            TaskRow.status == TaskStatus.COMPLETED.value,
        )
        with self.db.session() as session:
            return int(session.scalar(query) or 0)


class SqlModelStore:
    """Append-only model versions in ``tenant_model_weights``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def latest(self, tenant_id: str) -> Optional[ModelVersion]:
        query = (
            select(ModelWeightsRow)
            .where(ModelWeightsRow.tenant_id == tenant_id)
            .order_by(ModelWeightsRow.model_version.desc())
            .limit(1)
        )
        with self.db.session() as session:
            row = session.scalars(query).first()
            return row.to_record() if row else None

    def list_versions(self, tenant_id: str) -> List[ModelVersion]:
        query = (
            select(ModelWeightsRow)
            .where(ModelWeightsRow.tenant_id == tenant_id)
            .order_by(ModelWeightsRow.model_version)
        )
        with self.db.session() as session:
            return [row.to_record() for row in session.scalars(query)]

    def insert_version(self, new_version: NewModelVersion) -> ModelVersion:
        """
        Insert the next version number for the tenant.

        Two writers racing for the same number collide on the unique
        constraint; the loser re-reads the maximum and tries again.
        """
        for attempt in range(1, MAX_INSERT_ATTEMPTS + 1):
            try:
                with self.db.session() as session:
                    current = session.scalar(
                        select(func.max(ModelWeightsRow.model_version)).where(
                            ModelWeightsRow.tenant_id == new_version.tenant_id
                        )
                    )
                    row = ModelWeightsRow(
                        tenant_id=new_version.tenant_id,
                        model_version=(current or 0) + 1,
                        weights=new_version.weights.to_dict(),
                        feature_names=list(new_version.feature_names),
                        training_samples=new_version.training_samples,
                        accuracy=new_version.accuracy,
                        precision=new_version.precision,
                        recall=new_version.recall,
                        f1_score=new_version.f1,
                        last_trained_at=new_version.last_trained_at or _utcnow(),
                        source=new_version.source,
                        round_id=new_version.round_id,
                        degenerate=new_version.degenerate,
                    )
                    session.add(row)
                    session.flush()
                    record = row.to_record()
            except IntegrityError:
                logger.warning(
                    f"Model version collision for tenant {new_version.tenant_id} "
                    f"(attempt {attempt}/{MAX_INSERT_ATTEMPTS})"
                )
                continue
            logger.info(
                f"Stored model v{record.model_version} for tenant {record.tenant_id}",
                extra={"source": record.source, "round_id": record.round_id},
            )
            return record
        raise RuntimeError(
            f"Could not allocate a model version for tenant {new_version.tenant_id}"
        )


class SqlRoundStore:
    """Training rounds and per-tenant training metadata."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def create_round(
        self,
        participating_tenants: Sequence[str],
        status: RoundStatus,
        started_at: datetime,
        aggregation_method: str = "federated_averaging",
    ) -> TrainingRound:
        for attempt in range(1, MAX_INSERT_ATTEMPTS + 1):
            try:
                with self.db.session() as session:
                    current = session.scalar(select(func.max(TrainingRoundRow.round_number)))
                    row = TrainingRoundRow(
                        round_number=(current or 0) + 1,
                        status=RoundStatus(status).value,
                        participating_tenants=list(participating_tenants),
                        aggregation_method=aggregation_method,
                        total_samples=0,
                        started_at=started_at,
                        round_metadata={},
                    )
                    session.add(row)
                    session.flush()
                    return row.to_record()
            except IntegrityError:
                logger.warning(f"Round number collision (attempt {attempt}/{MAX_INSERT_ATTEMPTS})")
        raise RuntimeError("Could not allocate a training round number")

    def get_round(self, round_id: str) -> Optional[TrainingRound]:
        with self.db.session() as session:
            row = session.get(TrainingRoundRow, round_id)
            return row.to_record() if row else None

    def list_rounds(self, limit: int = 10) -> List[TrainingRound]:
        query = select(TrainingRoundRow).order_by(TrainingRoundRow.round_number.desc()).limit(limit)
        with self.db.session() as session:
            return [row.to_record() for row in session.scalars(query)]

    def transition_round(
        self,
        round_id: str,
        expected_status: RoundStatus,
        new_status: RoundStatus,
        *,
        participating_tenants: Optional[Sequence[str]] = None,
        global_weights: Optional[ModelWeights] = None,
        total_samples: Optional[int] = None,
        global_accuracy: Optional[float] = None,
        completed_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        values: Dict[str, Any] = {"status": RoundStatus(new_status).value}
        if participating_tenants is not None:
            values["participating_tenants"] = list(participating_tenants)
        if global_weights is not None:
            values["global_weights"] = global_weights.to_dict()
        if total_samples is not None:
            values["total_samples"] = total_samples
        if global_accuracy is not None:
            values["global_accuracy"] = global_accuracy
        if completed_at is not None:
            values["completed_at"] = completed_at

        with self.db.session() as session:
            row = session.get(TrainingRoundRow, round_id)
            if row is None or row.status != RoundStatus(expected_status).value:
                return False
            if metadata:
                values["round_metadata"] = {**(row.round_metadata or {}), **metadata}
            result = session.execute(
                update(TrainingRoundRow)
                .where(
                    TrainingRoundRow.id == round_id,
                    TrainingRoundRow.status == RoundStatus(expected_status).value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            moved = result.rowcount == 1

        if moved:
            logger.info(
                f"Round {round_id}: {RoundStatus(expected_status).value} -> {RoundStatus(new_status).value}"
            )
        return moved

    def add_training_metadata(self, record: TenantTrainingMetadata) -> TenantTrainingMetadata:
        with self.db.session() as session:
            row = TrainingMetadataRow(
                round_id=record.round_id,
                tenant_id=record.tenant_id,
                local_weights=record.local_weights.to_dict(),
                training_samples=record.training_samples,
                validation_samples=record.validation_samples,
                training_accuracy=record.training_accuracy,
                validation_accuracy=record.validation_accuracy,
                loss=record.loss,
                epochs_completed=record.epochs_completed,
                training_duration_ms=record.training_duration_ms,
            )
            session.add(row)
            session.flush()
            return row.to_record()

    def list_training_metadata(self, round_id: str) -> List[TenantTrainingMetadata]:
        query = select(TrainingMetadataRow).where(TrainingMetadataRow.round_id == round_id)
        with self.db.session() as session:
            return [row.to_record() for row in session.scalars(query.order_by(TrainingMetadataRow.tenant_id))]


class SqlEvaluationStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def add_evaluation(self, record: EvaluationRecord) -> EvaluationRecord:
        with self.db.session() as session:
            row = EvaluationRow(
                tenant_id=record.tenant_id,
                round_id=record.round_id,
                model_version=record.model_version,
                evaluation_type=record.evaluation_type,
                test_samples=record.test_samples,
                accuracy=record.accuracy,
                precision=record.precision,
                recall=record.recall,
                f1_score=record.f1,
                true_positives=record.true_positives,
                true_negatives=record.true_negatives,
                false_positives=record.false_positives,
                false_negatives=record.false_negatives,
                evaluated_at=record.evaluated_at or _utcnow(),
            )
            session.add(row)
            session.flush()
            return row.to_record()

    def list_evaluations(self, tenant_id: str) -> List[EvaluationRecord]:
        query = (
            select(EvaluationRow)
            .where(EvaluationRow.tenant_id == tenant_id)
            .order_by(EvaluationRow.evaluated_at.desc())
        )
        with self.db.session() as session:
            return [row.to_record() for row in session.scalars(query)]


# =============================================================================
# IN-MEMORY STORES
# =============================================================================

class InMemoryTaskRepository:
    def __init__(self, tasks: Iterable[TaskRecord] = (), tenant_ids: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._tasks: Dict[str, TaskRecord] = {}
        self._tenants: List[str] = []
        for tenant_id in tenant_ids:
            self._register(tenant_id)
        self.add_tasks(tasks)

    def _register(self, tenant_id: str) -> None:
        if tenant_id not in self._tenants:
            self._tenants.append(tenant_id)

    def add_tasks(self, tasks: Iterable[TaskRecord]) -> int:
        count = 0
        with self._lock:
            for task in tasks:
                self._register(task.tenant_id)
                self._tasks[task.id] = task
                count += 1
        return count

    def list_tasks(
        self,
        tenant_id: str,
        completed: Optional[bool] = None,
        with_due_date: Optional[bool] = None,
    ) -> List[TaskRecord]:
        with self._lock:
            return [
                t for t in self._tasks.values()
                if t.tenant_id == tenant_id and _matches(t, completed, with_due_date)
            ]

    def list_tenant_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._tenants)

    def count_completed_tasks(self, tenant_id: str) -> int:
        return len(self.list_tasks(tenant_id, completed=True))


class InMemoryModelStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._versions: Dict[str, List[ModelVersion]] = {}

    def latest(self, tenant_id: str) -> Optional[ModelVersion]:
        with self._lock:
            versions = self._versions.get(tenant_id)
            return versions[-1] if versions else None

    def list_versions(self, tenant_id: str) -> List[ModelVersion]:
        with self._lock:
            return list(self._versions.get(tenant_id, []))

    def insert_version(self, new_version: NewModelVersion) -> ModelVersion:
        with self._lock:
            versions = self._versions.setdefault(new_version.tenant_id, [])
            record = ModelVersion(
                id=_new_id(),
                tenant_id=new_version.tenant_id,
                model_version=len(versions) + 1,
                weights=new_version.weights,
                feature_names=list(new_version.feature_names),
                training_samples=new_version.training_samples,
                accuracy=new_version.accuracy,
                precision=new_version.precision,
                recall=new_version.recall,
                f1=new_version.f1,
                last_trained_at=new_version.last_trained_at or _utcnow(),
                source=new_version.source,
                round_id=new_version.round_id,
                degenerate=new_version.degenerate,
            )
            versions.append(record)
            return record


class InMemoryRoundStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rounds: Dict[str, TrainingRound] = {}
        self._metadata: Dict[str, List[TenantTrainingMetadata]] = {}

    def create_round(
        self,
        participating_tenants: Sequence[str],
        status: RoundStatus,
        started_at: datetime,
        aggregation_method: str = "federated_averaging",
    ) -> TrainingRound:
        with self._lock:
            number = max((r.round_number for r in self._rounds.values()), default=0) + 1
            training_round = TrainingRound(
                id=_new_id(),
                round_number=number,
                status=RoundStatus(status),
                participating_tenants=list(participating_tenants),
                aggregation_method=aggregation_method,
                started_at=started_at,
                created_at=_utcnow(),
            )
            self._rounds[training_round.id] = training_round
            return replace(training_round)

    def get_round(self, round_id: str) -> Optional[TrainingRound]:
        with self._lock:
            training_round = self._rounds.get(round_id)
            return replace(training_round, metadata=dict(training_round.metadata)) if training_round else None

    def list_rounds(self, limit: int = 10) -> List[TrainingRound]:
        with self._lock:
            ordered = sorted(self._rounds.values(), key=lambda r: r.round_number, reverse=True)
            return [replace(r, metadata=dict(r.metadata)) for r in ordered[:limit]]

    def transition_round(
        self,
        round_id: str,
        expected_status: RoundStatus,
        new_status: RoundStatus,
        *,
        participating_tenants: Optional[Sequence[str]] = None,
        global_weights: Optional[ModelWeights] = None,
        total_samples: Optional[int] = None,
        global_accuracy: Optional[float] = None,
        completed_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        with self._lock:
            current = self._rounds.get(round_id)
            if current is None or current.status != RoundStatus(expected_status):
                return False
            changes: Dict[str, Any] = {
                "status": RoundStatus(new_status),
                "metadata": {**current.metadata, **(metadata or {})},
            }
            if participating_tenants is not None:
                changes["participating_tenants"] = list(participating_tenants)
            if global_weights is not None:
                changes["global_weights"] = global_weights
            if total_samples is not None:
                changes["total_samples"] = total_samples
            if global_accuracy is not None:
                changes["global_accuracy"] = global_accuracy
            if completed_at is not None:
                changes["completed_at"] = completed_at
            self._rounds[round_id] = replace(current, **changes)
            return True

    def add_training_metadata(self, record: TenantTrainingMetadata) -> TenantTrainingMetadata:
        with self._lock:
            rows = self._metadata.setdefault(record.round_id, [])
            if any(r.tenant_id == record.tenant_id for r in rows):
                raise ValueError(
                    f"Training metadata for tenant {record.tenant_id} already exists "
                    f"in round {record.round_id}"
                )
            stored = replace(record, id=record.id or _new_id(), created_at=record.created_at or _utcnow())
            rows.append(stored)
            return stored

    def list_training_metadata(self, round_id: str) -> List[TenantTrainingMetadata]:
        with self._lock:
            return sorted(self._metadata.get(round_id, []), key=lambda r: r.tenant_id)


class InMemoryEvaluationStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: List[EvaluationRecord] = []

    def add_evaluation(self, record: EvaluationRecord) -> EvaluationRecord:
        stored = replace(record, id=record.id or _new_id(), evaluated_at=record.evaluated_at or _utcnow())
        with self._lock:
            self._records.append(stored)
        return stored

    def list_evaluations(self, tenant_id: str) -> List[EvaluationRecord]:
        with self._lock:
            matching = [r for r in self._records if r.tenant_id == tenant_id]
        return list(reversed(matching))
