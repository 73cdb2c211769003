"""
Federated Learning Server - Training-Round Coordinator

Drives one federated cycle over the tenant directory:

    start_round()                              aggregate_round(round_id)
    ─────────────                              ─────────────────────────
    1. pick tenants with >= N completed tasks  1. round must be 'aggregating'
    2. insert round row ('training')           2. read the tenants' metadata
    3. fan out local training, one per tenant  3. federated_average() -> global
    4. fan in; failures are recorded, never    4. 'aggregating' -> 'completed'
       raised out of the fan-in                   (conditional update)
    5. 'aggregating' if any tenant succeeded,  5. hybrid_update() per tenant,
       else 'failed'                              appended as a new model version;
                                               on failure the round goes back to
                                               'aggregating' and a retry skips
                                               tenants already published

Local training for different tenants runs concurrently in a thread pool. A
tenant that raises, times out or lacks data is excluded from the round and
its outcome is kept in round metadata for audit.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..client.serde import ModelWeights
from ..errors import (
    DelayRiskError,
    InsufficientDataError,
    RoundStateError,
    StaleOrMissingRoundError,
    TotalRoundFailureError,
)
from .records import (
    ModelStore,
    NewModelVersion,
    RoundStatus,
    RoundStore,
    TenantDirectory,
    TenantTrainingMetadata,
    TrainingRound,
)
from .strategy import AGGREGATION_METHOD, federated_average, hybrid_update

logger = logging.getLogger(__name__)


# train_fn(tenant_id, round_id) -> summary object exposing to_dict()
TrainFn = Callable[[str, Optional[str]], Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TenantTrainingOutcome:
    """Result of one tenant's local training inside a round."""

    tenant_id: str
    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "success": self.success,
            "error": self.error,
            "message": self.message,
            "result": self.result,
        }


@dataclass
class RoundSummary:
    round_id: str
    round_number: int
    status: RoundStatus
    participating_tenants: List[str]
    failed_tenants: List[str]
    training_results: List[TenantTrainingOutcome] = field(default_factory=list)

    @property
    def partial_failure(self) -> bool:
        return bool(self.failed_tenants) and bool(self.participating_tenants)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "round_number": self.round_number,
            "status": self.status.value,
            "participating_tenants": list(self.participating_tenants),
            "failed_tenants": list(self.failed_tenants),
            "partial_failure": self.partial_failure,
            "training_results": [o.to_dict() for o in self.training_results],
        }


@dataclass
class AggregationSummary:
    round_id: str
    round_number: int
    global_weights: ModelWeights
    total_samples: int
    participating_tenants: List[str]
    global_accuracy: float
    weighted_accuracy: float
    tenant_model_versions: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "round_number": self.round_number,
            "global_weights": self.global_weights.to_dict(),
            "total_samples": self.total_samples,
            "participating_tenants": list(self.participating_tenants),
            "global_accuracy": self.global_accuracy,
            "weighted_accuracy": self.weighted_accuracy,
            "tenant_model_versions": dict(self.tenant_model_versions),
        }


class TrainingRoundCoordinator:
    """
    Orchestrates federated training rounds across tenants.

    Example:
        >>> coordinator = TrainingRoundCoordinator(
        ...     tenants=task_repository,
        ...     rounds=round_store,
        ...     models=model_store,
        ...     train_fn=training_service.train_local_model,
        ...     feature_names=FEATURE_NAMES,
        ... )
        >>> summary = coordinator.start_round()
        >>> coordinator.aggregate_round(summary.round_id)
    """

    def __init__(
        self,
        tenants: TenantDirectory,
        rounds: RoundStore,
        models: ModelStore,
        train_fn: TrainFn,
        *,
        feature_names: Sequence[str],
        min_completed_tasks: int = 10,
        momentum: float = 0.5,
        max_workers: int = 4,
        training_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Args:
            tenants: Enumerates tenants and counts their completed tasks
            rounds: Round and training-metadata storage
            models: Append-only per-tenant model versions
            train_fn: Local training entry point, called as
                ``train_fn(tenant_id, round_id)``
            feature_names: Canonical feature order stored with new versions
            min_completed_tasks: Eligibility threshold per tenant
            momentum: Local share kept by the hybrid update
            max_workers: Upper bound on concurrent tenant trainings
            training_timeout: Seconds to wait for the whole fan-out; tenants
                still running afterwards are recorded as timed out
            clock: Source of timestamps
        """
        if not 0.0 <= momentum <= 1.0:
            raise ValueError(f"momentum must be within [0, 1], got {momentum}")
        self.tenants = tenants
        self.rounds = rounds
        self.models = models
        self.train_fn = train_fn
        self.feature_names = list(feature_names)
        self.min_completed_tasks = min_completed_tasks
        self.momentum = momentum
        self.max_workers = max(1, max_workers)
        self.training_timeout = training_timeout
        self.clock = clock

    # ------------------------------------------------------------------
    # Phase 1: local training
    # ------------------------------------------------------------------

    def eligible_tenants(self) -> List[str]:
        eligible = []
        for tenant_id in self.tenants.list_tenant_ids():
            completed = self.tenants.count_completed_tasks(tenant_id)
            if completed >= self.min_completed_tasks:
                eligible.append(tenant_id)
            else:
                logger.debug(
                    f"Tenant {tenant_id} not eligible: {completed} completed tasks "
                    f"(minimum {self.min_completed_tasks})"
                )
        return eligible

    def start_round(self) -> RoundSummary:
        """
        Create a round and run local training for every eligible tenant.

        Raises:
            InsufficientDataError: No tenant is eligible; no round is created
            TotalRoundFailureError: Every tenant failed; the round is stored
                as ``failed``
            RoundStateError: The round changed status while training ran
        """
        eligible = self.eligible_tenants()
        if not eligible:
            raise InsufficientDataError(
                "No tenants have sufficient training data",
                details={"min_completed_tasks": self.min_completed_tasks},
            )

        training_round = self.rounds.create_round(
            participating_tenants=eligible,
            status=RoundStatus.TRAINING,
            started_at=self.clock(),
            aggregation_method=AGGREGATION_METHOD,
        )
        logger.info(
            f"Round {training_round.round_number} started with {len(eligible)} tenants",
            extra={"round_id": training_round.id, "tenants": eligible},
        )

        outcomes = self._train_tenants(training_round.id, eligible)
        successful = [o.tenant_id for o in outcomes if o.success]
        failed = [o.tenant_id for o in outcomes if not o.success]
        new_status = RoundStatus.AGGREGATING if successful else RoundStatus.FAILED

        moved = self.rounds.transition_round(
            training_round.id,
            RoundStatus.TRAINING,
            new_status,
            participating_tenants=successful,
            metadata={"training_results": [o.to_dict() for o in outcomes]},
        )
        if not moved:
            raise RoundStateError(
                f"Round {training_round.id} left 'training' while tenants were training",
                details={"round_id": training_round.id},
            )

        summary = RoundSummary(
            round_id=training_round.id,
            round_number=training_round.round_number,
            status=new_status,
            participating_tenants=successful,
            failed_tenants=failed,
            training_results=outcomes,
        )

        if not successful:
            logger.error(f"Round {training_round.round_number} failed: all local training failed")
            raise TotalRoundFailureError(
                "All local training failed",
                details=summary.to_dict(),
            )

        if failed:
            logger.warning(
                f"Round {training_round.round_number} continues without "
                f"{len(failed)} tenant(s): {failed}"
            )
        logger.info(
            f"Round {training_round.round_number} ready for aggregation "
            f"({len(successful)}/{len(eligible)} tenants trained)"
        )
        return summary

    def _train_tenants(self, round_id: str, tenant_ids: List[str]) -> List[TenantTrainingOutcome]:
        """Fan out local training and collect one outcome per tenant."""
        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(tenant_ids)),
            thread_name_prefix="local-training",
        )
        try:
            futures: Dict[str, Future] = {
                tenant_id: executor.submit(self.train_fn, tenant_id, round_id)
                for tenant_id in tenant_ids
            }
            wait(futures.values(), timeout=self.training_timeout)
            return [self._collect(tenant_id, future) for tenant_id, future in futures.items()]
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _collect(self, tenant_id: str, future: Future) -> TenantTrainingOutcome:
        if not future.done():
            future.cancel()
            logger.warning(f"Local training for tenant {tenant_id} timed out")
            return TenantTrainingOutcome(
                tenant_id=tenant_id,
                success=False,
                error="timeout",
                message=f"Local training exceeded {self.training_timeout}s",
            )

        try:
            result = future.result()
        except DelayRiskError as e:
            logger.warning(f"Local training for tenant {tenant_id} failed: {e.code}: {e.message}")
            return TenantTrainingOutcome(
                tenant_id=tenant_id, success=False, error=e.code, message=e.message
            )
        except Exception as e:
            logger.error(f"Local training for tenant {tenant_id} crashed: {e}", exc_info=True)
            return TenantTrainingOutcome(
                tenant_id=tenant_id, success=False, error="internal_error", message=str(e)
            )

        payload = result.to_dict() if hasattr(result, "to_dict") else dict(result or {})
        return TenantTrainingOutcome(tenant_id=tenant_id, success=True, result=payload)

    # ------------------------------------------------------------------
    # Phase 2: aggregation
    # ------------------------------------------------------------------

    def aggregate_round(self, round_id: str) -> AggregationSummary:
        """
        Average the round's tenant weights and hand the result back to tenants.

        Raises:
            StaleOrMissingRoundError: Unknown round, or no training metadata
            RoundStateError: Round is not in ``aggregating`` (including a
                round already completed by a concurrent call)
            InconsistentModelSchemaError: Tenant weight vectors disagree
        """
        training_round = self.rounds.get_round(round_id)
        if training_round is None:
            raise StaleOrMissingRoundError(
                f"Training round not found: {round_id}", details={"round_id": round_id}
            )
        training_round.require_status(RoundStatus.AGGREGATING)

        participants = set(training_round.participating_tenants)
        metadata = [
            m for m in self.rounds.list_training_metadata(round_id) if m.tenant_id in participants
        ]
        if not metadata:
            raise StaleOrMissingRoundError(
                "No training metadata found for this round", details={"round_id": round_id}
            )

        global_weights = federated_average([(m.local_weights, m.training_samples) for m in metadata])
        total_samples = sum(m.training_samples for m in metadata)

        # Unweighted: how the typical tenant fared
        accuracies = [m.training_accuracy or 0.0 for m in metadata]
        global_accuracy = sum(accuracies) / len(accuracies)
        weighted_accuracy = (
            sum(a * m.training_samples for a, m in zip(accuracies, metadata)) / total_samples
            if total_samples > 0
            else global_accuracy
        )

        hybrids = {
            m.tenant_id: hybrid_update(m.local_weights, global_weights, self.momentum)
            for m in metadata
        }

        completed_at = self.clock()
        claimed = self.rounds.transition_round(
            round_id,
            RoundStatus.AGGREGATING,
            RoundStatus.COMPLETED,
            global_weights=global_weights,
            total_samples=total_samples,
            global_accuracy=global_accuracy,
            completed_at=completed_at,
            metadata={
                "weighted_accuracy": weighted_accuracy,
                "aggregated_tenants": [m.tenant_id for m in metadata],
                "momentum": self.momentum,
            },
        )
        if not claimed:
            raise RoundStateError(
                f"Round {round_id} was aggregated concurrently", details={"round_id": round_id}
            )

        versions: Dict[str, int] = {}
        try:
            for m in metadata:
                versions[m.tenant_id] = self._publish_version(
                    round_id, m, hybrids[m.tenant_id], completed_at
                )
        except Exception as e:
            self._release_round(round_id, metadata, versions, e)
            raise

        logger.info(
            f"Round {training_round.round_number} aggregated: {len(metadata)} tenants, "
            f"{total_samples} samples, accuracy={global_accuracy:.3f}",
            extra={"round_id": round_id},
        )

        return AggregationSummary(
            round_id=round_id,
            round_number=training_round.round_number,
            global_weights=global_weights,
            total_samples=total_samples,
            participating_tenants=[m.tenant_id for m in metadata],
            global_accuracy=global_accuracy,
            weighted_accuracy=weighted_accuracy,
            tenant_model_versions=versions,
        )

    def _publish_version(
        self,
        round_id: str,
        metadata: TenantTrainingMetadata,
        weights: ModelWeights,
        completed_at: datetime,
    ) -> int:
        """Append the tenant's federated version, reusing one an earlier attempt stored."""
        latest = self.models.latest(metadata.tenant_id)
        if latest is not None and latest.source == "federated" and latest.round_id == round_id:
            return latest.model_version

        version = self.models.insert_version(
            NewModelVersion(
                tenant_id=metadata.tenant_id,
                weights=weights,
                feature_names=self.feature_names,
                training_samples=metadata.training_samples,
                accuracy=metadata.training_accuracy,
                last_trained_at=completed_at,
                source="federated",
                round_id=round_id,
            )
        )
        return version.model_version

    def _release_round(
        self,
        round_id: str,
        metadata: List[TenantTrainingMetadata],
        published: Dict[str, int],
        error: Exception,
    ) -> None:
        """Return a round whose publication failed to 'aggregating' so it can be retried."""
        pending = [m.tenant_id for m in metadata if m.tenant_id not in published]
        logger.error(
            f"Publishing federated models for round {round_id} failed; "
            f"{len(pending)} tenant(s) not updated: {pending}",
            extra={"round_id": round_id},
        )
        released = self.rounds.transition_round(
            round_id,
            RoundStatus.COMPLETED,
            RoundStatus.AGGREGATING,
            metadata={
                "published_tenants": sorted(published),
                "unpublished_tenants": pending,
                "publish_error": str(error),
            },
        )
        if not released:
            logger.error(f"Round {round_id} changed status before it could be released")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_round(self, round_id: str) -> TrainingRound:
        training_round = self.rounds.get_round(round_id)
        if training_round is None:
            raise StaleOrMissingRoundError(
                f"Training round not found: {round_id}", details={"round_id": round_id}
            )
        return training_round

    def get_federated_status(self, limit: int = 10) -> Dict[str, Any]:
        recent = self.rounds.list_rounds(limit=limit)
        return {
            "latest_round": recent[0].to_dict() if recent else None,
            "recent_rounds": [
                {
                    "id": r.id,
                    "round_number": r.round_number,
                    "status": r.status.value,
                    "global_accuracy": r.global_accuracy,
                    "total_samples": r.total_samples,
                    "participating_tenants": list(r.participating_tenants),
                    "completed_at": r.completed_at.isoformat() if r.completed_at else None,
                }
                for r in recent
            ],
        }
