"""
Federated Learning Client for Task Delay Prediction

This module implements a standalone FL client that trains the delay-risk
logistic regression on one tenant's task history and takes part in
federated rounds run by ``federated_learning.server.delay_server``.

================================================================================
DELAY PREDICTION FL CLIENT
================================================================================

This client:
1. Loads the tenant's task history (database, or synthetic for demos)
2. Labels completed tasks and extracts the 8 delay features
3. Trains the logistic regression locally, starting from the global weights
4. Sends coefficients + intercept to the FL server (NOT the tasks!)
5. Evaluates received global weights on a local holdout

The client is designed to be robust:
- Retries connection to server with exponential backoff
- Refuses to start when the tenant lacks enough labelled examples

================================================================================
DATA FLOW (What stays local vs. what is transmitted)
================================================================================

                      TENANT DATABASE                     │        NETWORK
    ──────────────────────────────────────────────────────┼───────────────────
                                                          │
    ┌─────────────────────────────────────────────────┐   │
    │              TASKS (NEVER LEAVE)                │   │
    │   priority, due date, SLA, assignee,            │   │
    │   description, created/completed timestamps     │   │
    │                    │                            │   │
    │                    ▼                            │   │
    │   8 features + delayed/on-time label            │   │
    │                    │                            │   │
    │                    ▼                            │   │
    │   LocalTrainer (SGD, L2, class balancing)       │   │
    └────────────────────┼────────────────────────────┘   │
                         │  TRANSMITTED: 9 floats          │
                         ▼                                 │
    ═════════════════════════════════════════════════════╧═══════════════════
                         │
                         ▼
               ┌─────────────────┐
               │    FL Server    │
               │   FedAvg by     │
               │  sample count   │
               └─────────────────┘

================================================================================
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
import sys
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import flwr as fl
import numpy as np
from flwr.common import NDArrays, Scalar

from agents.delay_prediction.config import get_settings
from agents.delay_prediction.features import NUM_FEATURES, TrainingExample, build_training_dataset
from agents.delay_prediction.model import (
    LocalTrainer,
    binary_cross_entropy,
    evaluate_model,
)
from agents.delay_prediction.storage import Database, SqlTaskRepository
from agents.delay_prediction.train import generate_synthetic_tasks

from ..errors import InsufficientDataError
from .serde import ModelWeights

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

class DelayClientConfig:
    """Configuration for the Delay Prediction FL Client."""

    # Server connection
    FL_SERVER_ADDRESS: str = os.getenv("FL_SERVER_ADDRESS", "localhost:8088")

    # Tenant identification
    TENANT_ID: str = os.getenv("TENANT_ID", f"tenant_{os.getpid()}")

    # Local task database
    DATABASE_URL: str = os.getenv("FL_DATABASE_URL", "sqlite:///./delay_prediction.db")
    SYNTHETIC_TASKS: int = int(os.getenv("FL_SYNTHETIC_TASKS", "0"))

    # Holdout for evaluating global weights
    TEST_SPLIT: float = float(os.getenv("FL_TEST_SPLIT", "0.2"))

    # Retry configuration
    MAX_RETRIES: int = int(os.getenv("FL_MAX_RETRIES", "10"))
    RETRY_DELAY_BASE: float = float(os.getenv("FL_RETRY_DELAY", "5.0"))
    RETRY_DELAY_MAX: float = float(os.getenv("FL_RETRY_DELAY_MAX", "60.0"))


# =============================================================================
# DATA LOADING
# =============================================================================

def load_tenant_examples(
    tenant_id: str,
    database_url: Optional[str] = None,
    synthetic_tasks: int = 0,
    seed: Optional[int] = None,
) -> List[TrainingExample]:
    """
    Build the tenant's labelled examples.

    With ``synthetic_tasks`` > 0 a generated history is used instead of the
    database, which is handy for demos without a populated task store.
    """
    if synthetic_tasks > 0:
        logger.warning(f"Using {synthetic_tasks} synthetic tasks for tenant {tenant_id}")
        tasks = generate_synthetic_tasks(tenant_id, synthetic_tasks, rng=np.random.default_rng(seed))
    else:
        db = Database(database_url or DelayClientConfig.DATABASE_URL)
        try:
            tasks = SqlTaskRepository(db).list_tasks(tenant_id)
        finally:
            db.dispose()

    dataset = build_training_dataset(tasks)
    logger.info(
        f"Loaded {len(dataset.examples)} labelled examples for tenant {tenant_id} "
        f"({dataset.positive_count} delayed, {dataset.negative_count} on time, "
        f"{dataset.skipped} skipped)"
    )
    return dataset.examples


# =============================================================================
# FLOWER CLIENT IMPLEMENTATION
# =============================================================================

class DelayRiskClient(fl.client.NumPyClient):
    """
    Flower NumPyClient for delay-risk federated learning.

    - get_parameters(): Return the current local weights
    - fit(): Train on local examples, starting from the global weights
    - evaluate(): Score the global weights on the local holdout
    """

    def __init__(
        self,
        tenant_id: str,
        examples: Sequence[TrainingExample],
        trainer: Optional[LocalTrainer] = None,
        test_split: float = 0.2,
    ):
        self.tenant_id = tenant_id
        self.trainer = trainer or LocalTrainer.from_settings(get_settings())

        if len(examples) < self.trainer.min_examples:
            raise InsufficientDataError(
                f"Tenant {tenant_id} has {len(examples)} labelled examples, "
                f"need at least {self.trainer.min_examples}",
                details={"tenant_id": tenant_id, "examples": len(examples)},
            )

        order = self.trainer.rng.permutation(len(examples))
        shuffled = [examples[i] for i in order]
        n_test = int(len(shuffled) * test_split)
        if len(shuffled) - n_test < self.trainer.min_examples:
            n_test = 0
        self.test_examples = shuffled[:n_test]
        self.train_examples = shuffled[n_test:]

        self.weights = ModelWeights.zeros(NUM_FEATURES)

        logger.info(
            f"FL Client initialized: {tenant_id}, "
            f"train={len(self.train_examples)}, test={len(self.test_examples)}"
        )

    def get_parameters(self, config: Dict[str, Scalar]) -> NDArrays:
        return self.weights.to_ndarrays()

    def fit(
        self,
        parameters: NDArrays,
        config: Dict[str, Scalar],
    ) -> Tuple[NDArrays, int, Dict[str, Scalar]]:
        """
        Train on local examples.

        Returns:
            Tuple of (updated_parameters, num_examples, metrics)
        """
        logger.info(f"Starting local training for {self.tenant_id}")

        initial = ModelWeights.from_ndarrays(parameters) if parameters else None
        if "local_epochs" in config:
            self.trainer.epochs = int(config["local_epochs"])
        if "learning_rate" in config:
            self.trainer.learning_rate = float(config["learning_rate"])

        try:
            result = self.trainer.train(self.train_examples, initial_weights=initial)
        except (ValueError, InsufficientDataError) as e:
            logger.error(f"Training failed for {self.tenant_id}: {e}")
            raise

        self.weights = result.weights
        metrics: Dict[str, Scalar] = {
            "tenant_id": self.tenant_id,
            "loss": result.loss,
            "training_accuracy": result.training_accuracy,
            **{k: float(v) for k, v in result.metrics.to_dict().items()},
        }

        logger.info(
            f"Training complete for {self.tenant_id}: "
            f"accuracy={result.metrics.accuracy:.3f}, samples={result.training_samples}"
        )

        return self.weights.to_ndarrays(), result.training_samples, metrics

    def evaluate(
        self,
        parameters: NDArrays,
        config: Dict[str, Scalar],
    ) -> Tuple[float, int, Dict[str, Scalar]]:
        """
        Evaluate global weights on the local holdout.

        Falls back to the training examples when the tenant is too small to
        hold any out.

        Returns:
            Tuple of (loss, num_examples, metrics)
        """
        weights = ModelWeights.from_ndarrays(parameters) if parameters else self.weights
        examples = self.test_examples or self.train_examples

        loss = binary_cross_entropy(weights, examples)
        metrics = evaluate_model(weights, examples, self.trainer.threshold)

        logger.info(
            f"Evaluation at {self.tenant_id}: loss={loss:.4f}, accuracy={metrics.accuracy:.3f}"
        )

        return loss, len(examples), {
            "tenant_id": self.tenant_id,
            **{k: float(v) for k, v in metrics.to_dict().items()},
        }


# =============================================================================
# CLIENT STARTUP WITH RETRY LOGIC
# =============================================================================

def wait_for_server(
    server_address: str,
    max_retries: int,
    retry_delay_base: float,
    retry_delay_max: float,
) -> bool:
    """
    Wait for FL server to become available with exponential backoff.

    Returns:
        True if server is available, False if max retries exceeded
    """
    host, port = server_address.rsplit(":", 1)
    port = int(port)

    delay = retry_delay_base

    for attempt in range(1, max_retries + 1):
        logger.info(f"Checking server availability (attempt {attempt}/{max_retries})...")
        try:
            with socket.create_connection((host, port), timeout=5):
                logger.info(f"Server is available at {server_address}")
                return True
        except OSError as e:
            logger.debug(f"Connection check failed: {e}")

        if attempt < max_retries:
            logger.info(f"Server not ready, waiting {delay:.1f}s before retry...")
            time.sleep(delay)
            delay = min(delay * 1.5, retry_delay_max)

    logger.error(f"Server not available after {max_retries} attempts")
    return False


def start_delay_client(
    server_address: Optional[str] = None,
    tenant_id: Optional[str] = None,
    database_url: Optional[str] = None,
    synthetic_tasks: Optional[int] = None,
    seed: Optional[int] = None,
    wait_for_ready: bool = True,
) -> None:
    """
    Start the Federated Learning client for one tenant.

    Args:
        server_address: FL server address (host:port)
        tenant_id: Tenant whose tasks are trained on
        database_url: SQLAlchemy URL of the tenant's task store
        synthetic_tasks: Train on N generated tasks instead of the database
        seed: Random seed for data generation and training
        wait_for_ready: Whether to wait for server to become available
    """
    server_address = server_address or DelayClientConfig.FL_SERVER_ADDRESS
    tenant_id = tenant_id or DelayClientConfig.TENANT_ID
    if synthetic_tasks is None:
        synthetic_tasks = DelayClientConfig.SYNTHETIC_TASKS

    print_startup_banner(tenant_id, server_address)

    if wait_for_ready:
        if not wait_for_server(
            server_address,
            DelayClientConfig.MAX_RETRIES,
            DelayClientConfig.RETRY_DELAY_BASE,
            DelayClientConfig.RETRY_DELAY_MAX,
        ):
            logger.error("Cannot connect to FL server, exiting")
            sys.exit(1)

    examples = load_tenant_examples(tenant_id, database_url, synthetic_tasks, seed)
    trainer = LocalTrainer.from_settings(get_settings(), rng=np.random.default_rng(seed))
    client = DelayRiskClient(
        tenant_id=tenant_id,
        examples=examples,
        trainer=trainer,
        test_split=DelayClientConfig.TEST_SPLIT,
    )

    logger.info(f"Connecting to FL server at {server_address}")

    fl.client.start_numpy_client(
        server_address=server_address,
        client=client,
    )
    logger.info("FL training completed successfully")


def print_startup_banner(tenant_id: str, server_address: str) -> None:
    """Print startup banner."""
    banner = f"""
    ╔══════════════════════════════════════════════════════════════════════════════╗
    ║                                                                              ║
    ║           FEDERATED LEARNING CLIENT - TASK DELAY PREDICTION                  ║
    ║                                                                              ║
    ╠══════════════════════════════════════════════════════════════════════════════╣
    ║                                                                              ║
    ║   Tenant ID:       {tenant_id:<58}║
    ║   FL Server:       {server_address:<58}║
    ║   Model Type:      Logistic Regression (8 features)                          ║
    ║                                                                              ║
    ╠══════════════════════════════════════════════════════════════════════════════╣
    ║                                                                              ║
    ║   DATA SOVEREIGNTY:                                                          ║
    ║   ✓ Task history STAYS with this tenant                                      ║
    ║   ✓ Only coefficients and intercept are transmitted                          ║
    ║                                                                              ║
    ╚══════════════════════════════════════════════════════════════════════════════╝

    Started at: {datetime.now(timezone.utc).isoformat()}
    """
    print(banner)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main() -> None:
    """Main entry point for the delay prediction FL client."""
    parser = argparse.ArgumentParser(
        description="Federated Learning Client for Task Delay Prediction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start client with defaults
  python -m federated_learning.client.delay_client --tenant-id acme

  # Connect to a specific server
  python -m federated_learning.client.delay_client --server fl-server:8088 --tenant-id acme

  # Demo run on generated tasks
  python -m federated_learning.client.delay_client --tenant-id demo --synthetic 80 --seed 7

Environment Variables:
  FL_SERVER_ADDRESS   Server address (default: localhost:8088)
  TENANT_ID           Tenant identifier (default: tenant_<pid>)
  FL_DATABASE_URL     Task database URL (default: sqlite:///./delay_prediction.db)
  FL_SYNTHETIC_TASKS  Generate N tasks instead of reading the database (default: 0)
        """,
    )

    parser.add_argument("--server", type=str, default=None, help="FL server address (host:port)")
    parser.add_argument("--tenant-id", type=str, default=None, help="Tenant identifier")
    parser.add_argument("--database-url", type=str, default=None, help="Task database URL")
    parser.add_argument(
        "--synthetic",
        type=int,
        default=None,
        metavar="N",
        help="Train on N synthetic tasks instead of the database",
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Don't wait for server to become available",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    start_delay_client(
        server_address=args.server,
        tenant_id=args.tenant_id,
        database_url=args.database_url,
        synthetic_tasks=args.synthetic,
        seed=args.seed,
        wait_for_ready=not args.no_wait,
    )


if __name__ == "__main__":
    main()
