"""
Federated Learning - Error Taxonomy

Every failure that a caller of the delay-risk subsystem may need to tell
apart is raised as a subclass of DelayRiskError. Each class carries a stable
machine-readable ``code`` so an HTTP layer (or any other caller) can map it
to a response without string matching:

    insufficient_data          -> wait for more task history, retry later
    inconsistent_model_schema  -> weight vectors disagree, versioning bug
    stale_or_missing_round     -> round unknown or has no training metadata
    invalid_round_state        -> transition not allowed from current status
    total_round_failure        -> no tenant finished local training

A partial round failure (some tenants failed, at least one succeeded) is not
an exception. It is reported in the round summary and in round metadata.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class DelayRiskError(Exception):
    """Base class for all expected errors raised by the subsystem."""

    code: str = "delay_risk_error"
    http_status: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class InsufficientDataError(DelayRiskError):
    """Not enough labelled examples or completed tasks for the operation."""

    code = "insufficient_data"
    http_status = 422


class InconsistentModelSchemaError(DelayRiskError):
    """Weight vectors with different lengths were presented for aggregation."""

    code = "inconsistent_model_schema"
    http_status = 409


class StaleOrMissingRoundError(DelayRiskError):
    """Round id unknown, or no training metadata exists for it."""

    code = "stale_or_missing_round"
    http_status = 404


class RoundStateError(DelayRiskError):
    """Requested status transition is not valid for the round's current status."""

    code = "invalid_round_state"
    http_status = 409


class TotalRoundFailureError(DelayRiskError):
    """Every eligible tenant failed local training; the round is marked failed."""

    code = "total_round_failure"
    http_status = 500
