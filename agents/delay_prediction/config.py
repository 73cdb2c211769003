"""
Delay Prediction Agent - Configuration Module

This module centralizes all environment-based configuration for the task
delay-risk service. It follows the 12-factor app methodology by
externalizing configuration through environment variables.

Architecture Note:
------------------
The agent serves two roles:
1. PREDICTION: scores open tasks with the tenant's latest model version
   (rule-based fallback when a tenant has none yet)
2. FEDERATED TRAINING: trains each tenant locally, then averages weights
   across tenants in coordinated rounds

Both roles share the same database connection. Hyperparameters passed
explicitly to a training call take precedence over these settings.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Pydantic Settings automatically reads from environment variables,
    with support for .env files and type validation.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        # Allow extra fields for forward compatibility
        extra="ignore",
    )

    # ==========================================================================
    # SERVICE IDENTIFICATION
    # ==========================================================================
    service_name: str = Field(
        default="delay-prediction-agent",
        description="Unique identifier for this microservice"
    )
    service_version: str = Field(
        default="1.0.0",
        description="Semantic version of this agent"
    )
    environment: str = Field(
        default="development",
        description="Runtime environment (development, staging, production)"
    )

    # ==========================================================================
    # DATABASE CONFIGURATION
    # ==========================================================================
    database_url: str = Field(
        default="sqlite:///./delay_prediction.db",
        description="SQLAlchemy URL holding tasks, model versions and rounds"
    )
    db_echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )

    # ==========================================================================
    # LOCAL TRAINING CONFIGURATION
    # ==========================================================================
    learning_rate: float = Field(default=0.01, gt=0.0, le=1.0)
    epochs: int = Field(default=100, ge=1, le=10_000)
    regularization: float = Field(
        default=0.01,
        ge=0.0,
        description="L2 penalty strength"
    )
    validation_split: float = Field(default=0.2, ge=0.0, lt=1.0)
    validation_interval: int = Field(
        default=10,
        ge=1,
        description="Evaluate validation loss every N epochs for checkpoint selection"
    )
    init_scale: float = Field(
        default=0.05,
        ge=0.0,
        description="Half-width of the uniform noise used to initialize coefficients"
    )
    min_training_examples: int = Field(
        default=5,
        ge=1,
        description="Minimum labelled examples before a tenant can be trained"
    )
    min_completed_tasks: int = Field(
        default=10,
        ge=1,
        description="Minimum completed tasks for round eligibility"
    )

    # ==========================================================================
    # FEDERATED LEARNING CONFIGURATION
    # ==========================================================================
    momentum: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Local share kept when blending with the global model"
    )
    max_parallel_training: int = Field(
        default=4,
        ge=1,
        description="Concurrent local trainings during a round"
    )
    tenant_training_timeout_seconds: Optional[float] = Field(
        default=None,
        description="Wall-clock budget for a round's local-training fan-out"
    )

    # ==========================================================================
    # PREDICTION CONFIGURATION
    # ==========================================================================
    delay_threshold: float = Field(default=0.5, gt=0.0, lt=1.0)
    default_completion_hours: float = Field(
        default=24.0,
        gt=0.0,
        description="Estimated effort for tasks without an SLA"
    )

    # ==========================================================================
    # MLFLOW CONFIGURATION
    # ==========================================================================
    mlflow_enabled: bool = Field(
        default=False,
        description="Log local training runs to MLflow"
    )
    mlflow_tracking_uri: str = Field(
        default="http://mlflow:5000",
        description="MLflow tracking server URI for experiment logging"
    )
    mlflow_experiment_name: str = Field(
        default="task_delay_prediction",
        description="MLflow experiment name for organizing runs"
    )

    # ==========================================================================
    # API CONFIGURATION
    # ==========================================================================
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8005)
    api_workers: int = Field(default=1)
    debug: bool = Field(default=False)

    # ==========================================================================
    # LOGGING CONFIGURATION
    # ==========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return value


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached Settings instance.

    Using lru_cache ensures we only parse environment variables once,
    improving performance and consistency across the application.
    """
    return Settings()


# ==========================================================================
# CONVENIENCE EXPORTS
# ==========================================================================
settings = get_settings()
