"""
Delay Prediction Agent - FastAPI Application

REST API for the task delay-risk service: predictions, local training,
federated training rounds and model evaluation.

================================================================================
API DESIGN
================================================================================

1. PREDICTIONS NEVER FAIL FOR LACK OF A MODEL:
   - /predict uses the tenant's latest model version when it exists
   - cold-start tenants get the rule-based score instead

2. FEDERATED ROUNDS ARE TWO CALLS:
   - POST /rounds                 local training fan-out  -> 'aggregating'
   - POST /rounds/{id}/aggregate  federated averaging     -> 'completed'

3. STRUCTURED ERRORS:
   - Every domain failure returns {"error": code, "message", "details"}
   - insufficient_data (422) means "try again later", not "broken"

4. HEALTH CHECKS:
   - /health for Kubernetes probes, including database connectivity

================================================================================
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from federated_learning.errors import DelayRiskError
from federated_learning.server.coordinator import TrainingRoundCoordinator

from .config import Settings, settings
from .features import FEATURE_NAMES, TaskPriority, TaskRecord
from .predictor import DelayPredictionService
from .storage import (
    Database,
    SqlEvaluationStore,
    SqlModelStore,
    SqlRoundStore,
    SqlTaskRepository,
)
from .train import LocalTrainingService

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# PYDANTIC MODELS (Request/Response Schemas)
# =============================================================================

class PredictionRequest(BaseModel):
    """Request schema for a delay-risk prediction."""

    tenant_id: str
    task_id: Optional[str] = Field(default=None, description="Existing task id, if any")
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    sla_hours: Optional[float] = Field(default=None, ge=0)
    description: Optional[str] = None
    assignee_id: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "tenant_id": "acme",
                "priority": "high",
                "due_date": "2024-01-15T17:00:00Z",
                "sla_hours": 16,
                "assignee_id": "user-42",
            }
        }


class PredictionResponse(BaseModel):
    request_id: str
    generated_at: datetime
    predicted_delayed: bool
    confidence_score: float
    risk_level: str
    factors: Dict[str, float]
    recommendations: List[str]
    source: str
    model_version: Optional[int] = None


class TrainingRequest(BaseModel):
    """Request schema for training one tenant's model."""

    tenant_id: str
    round_id: Optional[str] = None
    learning_rate: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    epochs: Optional[int] = Field(default=None, ge=1, le=10_000)
    regularization: Optional[float] = Field(default=None, ge=0.0)
    validation_split: Optional[float] = Field(default=None, ge=0.0, lt=1.0)
    background: bool = Field(
        default=False,
        description="Run as a background job and poll /train/{job_id}",
    )


class TrainingJobResponse(BaseModel):
    job_id: str
    status: str
    message: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None


class EvaluationRequest(BaseModel):
    tenant_id: str
    round_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, Dict[str, Any]]


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState:
    """
    Wires the stores and services together.

    Built from settings on startup; tests call ``configure`` first with
    their own stores and the lifespan leaves them alone.
    """

    def __init__(self) -> None:
        self.settings: Settings = settings
        self.db: Optional[Database] = None
        self.tasks = None
        self.models = None
        self.rounds = None
        self.evaluations = None
        self.predictor: Optional[DelayPredictionService] = None
        self.trainer: Optional[LocalTrainingService] = None
        self.coordinator: Optional[TrainingRoundCoordinator] = None
        self.training_jobs: Dict[str, Dict[str, Any]] = {}

    @property
    def configured(self) -> bool:
        return self.coordinator is not None

    def configure(
        self,
        tasks,
        models,
        rounds,
        evaluations=None,
        app_settings: Optional[Settings] = None,
        seed: Optional[int] = None,
    ) -> None:
        self.settings = app_settings or settings
        self.tasks = tasks
        self.models = models
        self.rounds = rounds
        self.evaluations = evaluations
        self.predictor = DelayPredictionService(
            tasks,
            models,
            threshold=self.settings.delay_threshold,
            default_completion_hours=self.settings.default_completion_hours,
        )
        self.trainer = LocalTrainingService(
            tasks, models, rounds, evaluations, settings=self.settings, seed=seed
        )
        self.coordinator = TrainingRoundCoordinator(
            tenants=tasks,
            rounds=rounds,
            models=models,
            train_fn=self.trainer.train_local_model,
            feature_names=FEATURE_NAMES,
            min_completed_tasks=self.settings.min_completed_tasks,
            momentum=self.settings.momentum,
            max_workers=self.settings.max_parallel_training,
            training_timeout=self.settings.tenant_training_timeout_seconds,
        )

    def configure_from_settings(self) -> None:
        self.db = Database(self.settings.database_url, echo=self.settings.db_echo)
        self.db.create_all()
        self.configure(
            tasks=SqlTaskRepository(self.db),
            models=SqlModelStore(self.db),
            rounds=SqlRoundStore(self.db),
            evaluations=SqlEvaluationStore(self.db),
            app_settings=self.settings,
        )

    def close(self) -> None:
        if self.db is not None:
            self.db.dispose()


app_state = AppState()


async def run_blocking(func, *args, **kwargs):
    """Run store/training work off the event loop."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.service_name} v{settings.service_version}")
    if not app_state.configured:
        app_state.configure_from_settings()

    yield

    logger.info("Shutting down delay prediction agent")
    app_state.close()


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="Delay Prediction Agent",
    description="""
    Task delay-risk prediction with privacy-preserving federated training.

    ## Features
    - **Risk Scoring**: delay probability, risk level and recommendations
    - **Cold Start**: rule-based scoring until a tenant has a model
    - **Federated Rounds**: per-tenant training, sample-weighted averaging
    - **Evaluation**: federated vs. local model comparison

    ## Usage
    1. POST `/predict` with a task
    2. POST `/rounds`, then POST `/rounds/{id}/aggregate`
    3. GET `/rounds/status` for recent rounds
    """,
    version=settings.service_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Operations"])
async def health_check() -> HealthResponse:
    checks = {}
    overall_status = "healthy"

    db_check: Dict[str, Any] = {"status": "ok"}
    if app_state.db is None:
        db_check["status"] = "skipped"
        db_check["message"] = "In-memory stores"
    else:
        try:
            await run_blocking(app_state.db.healthcheck)
        except Exception as e:
            db_check["status"] = "error"
            db_check["message"] = str(e)
            overall_status = "unhealthy"
    checks["database"] = db_check

    checks["mlflow"] = {
        "status": "enabled" if app_state.settings.mlflow_enabled else "disabled",
        "tracking_uri": app_state.settings.mlflow_tracking_uri,
    }

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=settings.service_version,
        timestamp=utcnow(),
        checks=checks,
    )


@app.post("/predict", response_model=PredictionResponse, tags=["Prediction"])
async def predict(request: PredictionRequest) -> PredictionResponse:
    """
    Score one task for delay risk.

    Uses the tenant's latest model version, or the rule-based score when the
    tenant has no usable model.
    """
    task = TaskRecord(
        id=request.task_id or f"adhoc-{uuid.uuid4()}",
        tenant_id=request.tenant_id,
        priority=request.priority,
        due_date=request.due_date,
        sla_hours=request.sla_hours,
        description=request.description,
        assignee_id=request.assignee_id,
    )
    result = await run_blocking(app_state.predictor.generate_prediction, task, request.assignee_id)

    return PredictionResponse(
        request_id=str(uuid.uuid4()),
        generated_at=utcnow(),
        predicted_delayed=result.predicted_delayed,
        confidence_score=result.confidence_score,
        risk_level=result.risk_level.value,
        factors=result.factors.to_dict(),
        recommendations=result.recommendations,
        source=result.source.value,
        model_version=result.model_version,
    )


@app.post("/train", tags=["Training"])
async def train(request: TrainingRequest, background_tasks: BackgroundTasks):
    """
    Train one tenant's model.

    Runs inline and returns the training summary, or with
    ``background=true`` returns a job id to poll at ``/train/{job_id}``.
    """
    kwargs = dict(
        round_id=request.round_id,
        learning_rate=request.learning_rate,
        epochs=request.epochs,
        regularization=request.regularization,
        validation_split=request.validation_split,
    )

    if not request.background:
        summary = await run_blocking(app_state.trainer.train_local_model, request.tenant_id, **kwargs)
        return summary.to_dict()

    job_id = str(uuid.uuid4())
    started_at = utcnow()
    app_state.training_jobs[job_id] = {
        "status": "pending",
        "started_at": started_at,
        "completed_at": None,
        "result": None,
        "error": None,
    }
    logger.info(f"Training job submitted: {job_id}", extra={"tenant_id": request.tenant_id})

    async def run_training():
        job = app_state.training_jobs[job_id]
        try:
            job["status"] = "running"
            summary = await run_blocking(
                app_state.trainer.train_local_model, request.tenant_id, **kwargs
            )
            job.update({"status": "completed", "completed_at": utcnow(), "result": summary.to_dict()})
            logger.info(f"Training job completed: {job_id}")
        except DelayRiskError as e:
            logger.warning(f"Training job failed: {job_id} - {e.code}: {e.message}")
            job.update({"status": "failed", "completed_at": utcnow(), "error": e.message, "result": e.to_dict()})
        except Exception as e:
            logger.error(f"Training job failed: {job_id} - {e}", exc_info=True)
            job.update({"status": "failed", "completed_at": utcnow(), "error": str(e)})

    background_tasks.add_task(run_training)

    return TrainingJobResponse(
        job_id=job_id,
        status="pending",
        message="Training job submitted. Check /train/{job_id} for status.",
        started_at=started_at,
    )


@app.get("/train/{job_id}", response_model=TrainingJobResponse, tags=["Training"])
async def get_training_status(job_id: str) -> TrainingJobResponse:
    if job_id not in app_state.training_jobs:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Training job not found: {job_id}",
        )
    job = app_state.training_jobs[job_id]
    return TrainingJobResponse(
        job_id=job_id,
        status=job["status"],
        message=job.get("error") or f"Training {job['status']}",
        started_at=job["started_at"],
        completed_at=job.get("completed_at"),
        result=job.get("result"),
    )


@app.post("/rounds", status_code=status.HTTP_201_CREATED, tags=["Federated"])
async def start_round() -> Dict[str, Any]:
    """Start a federated round and train every eligible tenant locally."""
    summary = await run_blocking(app_state.coordinator.start_round)
    return summary.to_dict()


@app.post("/rounds/{round_id}/aggregate", tags=["Federated"])
async def aggregate_round(round_id: str) -> Dict[str, Any]:
    """Average the round's tenant weights and publish hybrid model versions."""
    summary = await run_blocking(app_state.coordinator.aggregate_round, round_id)
    return summary.to_dict()


@app.get("/rounds/status", tags=["Federated"])
async def federated_status(limit: int = Query(default=10, ge=1, le=100)) -> Dict[str, Any]:
    return await run_blocking(app_state.coordinator.get_federated_status, limit)


@app.get("/rounds/{round_id}", tags=["Federated"])
async def get_round(round_id: str) -> Dict[str, Any]:
    training_round = await run_blocking(app_state.coordinator.get_round, round_id)
    return training_round.to_dict()


@app.post("/evaluate", tags=["Federated"])
async def evaluate(request: EvaluationRequest) -> Dict[str, Any]:
    """Compare the tenant's local model with a round's global model."""
    records = await run_blocking(
        app_state.trainer.evaluate_models, request.tenant_id, request.round_id
    )
    return {"tenant_id": request.tenant_id, "evaluations": [r.to_dict() for r in records]}


@app.get("/models/{tenant_id}/latest", tags=["Operations"])
async def get_latest_model(tenant_id: str) -> Dict[str, Any]:
    model = await run_blocking(app_state.models.latest, tenant_id)
    if model is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No trained model for tenant: {tenant_id}",
        )
    return model.to_dict()


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(DelayRiskError)
async def delay_risk_error_handler(request, exc: DelayRiskError):
    """Domain errors carry their own code and status."""
    logger.warning(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "details": {"exception": str(exc)} if settings.debug else {},
        },
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main() -> None:
    import uvicorn

    uvicorn.run(
        "agents.delay_prediction.api:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
