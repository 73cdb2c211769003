"""
Federated Learning Server for Task Delay Prediction

This module runs the gRPC Flower server that federates the delay-risk
logistic regression across tenants that host their own task data.

================================================================================
FL DELAY PREDICTION SERVER
================================================================================

Port: 8088 (default)
Protocol: gRPC
Strategy: FederatedAveragingStrategy (sample-count weighted FedAvg)

Training Configuration:
- Rounds: 5 (configurable)
- Min Clients: 2 (configurable)
- Round Timeout: 600s

    Round 1: Initialize
    ├── Wait for min_clients to connect
    ├── Distribute all-zero weights (8 coefficients + intercept)
    └── Each tenant trains on its own completed tasks

    Round 2-N: Federated Training
    ├── Collect (weights, sample_count) from tenants
    ├── Reject updates with a foreign feature schema
    ├── Average weighted by sample count
    └── Evaluate the global weights on each tenant's holdout

    Final: Export
    └── Write the last global weights as JSON

The database-driven round lifecycle (pending → training → aggregating →
completed) lives in coordinator.py; this server is the network-transport
variant for tenants that cannot share a database with the coordinator.

================================================================================
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import flwr as fl
from flwr.common import Metrics, Scalar
from flwr.server import ServerConfig

from agents.delay_prediction.features import FEATURE_NAMES, NUM_FEATURES

from ..client.serde import ModelWeights
from .strategy import FederatedAveragingStrategy

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

class DelayServerConfig:
    """Configuration for the Delay Prediction FL Server."""

    # Network
    SERVER_ADDRESS: str = os.getenv("FL_SERVER_ADDRESS", "0.0.0.0:8088")
    GRPC_MAX_MESSAGE_LENGTH: int = 16_777_216  # 16MB

    # Training rounds
    NUM_ROUNDS: int = int(os.getenv("FL_NUM_ROUNDS", "5"))
    MIN_FIT_CLIENTS: int = int(os.getenv("FL_MIN_FIT_CLIENTS", "2"))
    MIN_EVALUATE_CLIENTS: int = int(os.getenv("FL_MIN_EVAL_CLIENTS", "2"))
    MIN_AVAILABLE_CLIENTS: int = int(os.getenv("FL_MIN_AVAILABLE_CLIENTS", "2"))

    # Local training settings pushed to clients each round
    LOCAL_EPOCHS: int = int(os.getenv("FL_LOCAL_EPOCHS", "100"))
    LEARNING_RATE: float = float(os.getenv("FL_LEARNING_RATE", "0.01"))

    ROUND_TIMEOUT: int = int(os.getenv("FL_ROUND_TIMEOUT", "600"))

    # Model persistence
    MODEL_SAVE_PATH: str = os.getenv("FL_MODEL_SAVE_PATH", "/tmp/fl_delay_model")


# =============================================================================
# METRICS AGGREGATION
# =============================================================================

def weighted_average_metrics(metrics: List[Tuple[int, Metrics]]) -> Metrics:
    """
    Aggregate client metrics using a sample-count weighted average.

    Non-numeric values (e.g. ``tenant_id``) are ignored.

    Args:
        metrics: List of (num_examples, metrics_dict) tuples from clients

    Returns:
        Dictionary of aggregated metrics

    Example:
        >>> metrics = [
        ...     (30, {"accuracy": 0.9, "f1": 0.8}),   # Tenant A
        ...     (10, {"accuracy": 0.5, "f1": 0.4}),   # Tenant B
        ... ]
        >>> weighted_average_metrics(metrics)["accuracy"]
        0.8
    """
    if not metrics:
        return {}

    total_examples = sum(num for num, _ in metrics)

    if total_examples == 0:
        return {"error": "No examples received"}

    all_keys = set()
    for _, m in metrics:
        all_keys.update(
            k for k, v in m.items() if isinstance(v, (int, float)) and not isinstance(v, bool)
        )

    aggregated: Dict[str, Scalar] = {}
    for key in sorted(all_keys):
        weighted_sum = 0.0
        weight_sum = 0

        for num_examples, client_metrics in metrics:
            value = client_metrics.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                weighted_sum += num_examples * float(value)
                weight_sum += num_examples

        if weight_sum > 0:
            aggregated[key] = weighted_sum / weight_sum

    aggregated["total_examples"] = total_examples
    aggregated["num_clients"] = len(metrics)
    aggregated["aggregation_time"] = datetime.now(timezone.utc).isoformat()

    return aggregated


def fit_metrics_aggregation(metrics: List[Tuple[int, Metrics]]) -> Metrics:
    """Aggregate training metrics; same weighting as evaluation."""
    aggregated = weighted_average_metrics(metrics)
    aggregated["fit_phase"] = True

    if "accuracy" in aggregated:
        logger.info(f"Training round complete - Aggregated accuracy: {aggregated['accuracy']:.4f}")

    return aggregated


def fit_config(server_round: int) -> Dict[str, Scalar]:
    """Per-round instructions sent to every client's ``fit``."""
    return {
        "server_round": server_round,
        "local_epochs": DelayServerConfig.LOCAL_EPOCHS,
        "learning_rate": DelayServerConfig.LEARNING_RATE,
    }


# =============================================================================
# SERVER STARTUP
# =============================================================================

def create_server_config() -> ServerConfig:
    """Create Flower server configuration."""
    return ServerConfig(
        num_rounds=DelayServerConfig.NUM_ROUNDS,
        round_timeout=DelayServerConfig.ROUND_TIMEOUT,
    )


def create_strategy() -> FederatedAveragingStrategy:
    """
    Create the FedAvg strategy for delay prediction.

    Every round starts from the previous global weights; round 1 starts
    from all-zero weights so no tenant's initialisation is privileged.
    """
    strategy = FederatedAveragingStrategy(
        expected_num_features=NUM_FEATURES,
        min_fit_clients=DelayServerConfig.MIN_FIT_CLIENTS,
        min_evaluate_clients=DelayServerConfig.MIN_EVALUATE_CLIENTS,
        min_available_clients=DelayServerConfig.MIN_AVAILABLE_CLIENTS,
        initial_parameters=ModelWeights.zeros(NUM_FEATURES).to_parameters(),
        on_fit_config_fn=fit_config,
        fit_metrics_aggregation_fn=fit_metrics_aggregation,
        evaluate_metrics_aggregation_fn=weighted_average_metrics,
    )

    logger.info(
        f"Created FederatedAveragingStrategy: "
        f"min_clients={DelayServerConfig.MIN_FIT_CLIENTS}, "
        f"rounds={DelayServerConfig.NUM_ROUNDS}"
    )

    return strategy


def save_global_model(weights: Optional[ModelWeights], num_rounds: int) -> Optional[Path]:
    """
    Write the final global weights as JSON.

    Returns:
        Path of the written file, or None when there was nothing to save
    """
    if weights is None:
        logger.warning("No global weights to save")
        return None

    save_dir = Path(DelayServerConfig.MODEL_SAVE_PATH)
    save_dir.mkdir(parents=True, exist_ok=True)
    model_path = save_dir / f"global_model_round_{num_rounds}.json"

    payload = {
        "weights": weights.to_dict(),
        "feature_names": list(FEATURE_NAMES),
        "rounds": num_rounds,
        "saved_at": datetime.now(timezone.utc).isoformat(),
    }
    with open(model_path, "w") as f:
        json.dump(payload, f, indent=2)

    logger.info(f"Saved global model to {model_path}")
    return model_path


def start_delay_server(
    server_address: Optional[str] = None,
    num_rounds: Optional[int] = None,
    min_clients: Optional[int] = None,
) -> None:
    """
    Start the Federated Learning server for delay prediction.

    Args:
        server_address: Address to bind (e.g., "0.0.0.0:8088")
        num_rounds: Number of training rounds
        min_clients: Minimum number of tenants required per round
    """
    if server_address:
        DelayServerConfig.SERVER_ADDRESS = server_address
    if num_rounds:
        DelayServerConfig.NUM_ROUNDS = num_rounds
    if min_clients:
        DelayServerConfig.MIN_FIT_CLIENTS = min_clients
        DelayServerConfig.MIN_EVALUATE_CLIENTS = min_clients
        DelayServerConfig.MIN_AVAILABLE_CLIENTS = min_clients

    print_startup_banner()

    strategy = create_strategy()
    config = create_server_config()

    logger.info(f"Starting FL Delay Server on {DelayServerConfig.SERVER_ADDRESS}")

    try:
        fl.server.start_server(
            server_address=DelayServerConfig.SERVER_ADDRESS,
            config=config,
            strategy=strategy,
            grpc_max_message_length=DelayServerConfig.GRPC_MAX_MESSAGE_LENGTH,
        )
    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
        return

    logger.info("FL Delay Server completed successfully")
    logger.info(f"Final aggregation summary: {strategy.get_aggregation_summary()}")
    save_global_model(strategy.latest_weights, DelayServerConfig.NUM_ROUNDS)


def print_startup_banner() -> None:
    """Print a startup banner with server information."""
    banner = f"""
    ╔══════════════════════════════════════════════════════════════════════════════╗
    ║                                                                              ║
    ║            FEDERATED LEARNING SERVER - TASK DELAY PREDICTION                 ║
    ║                                                                              ║
    ╠══════════════════════════════════════════════════════════════════════════════╣
    ║                                                                              ║
    ║   Server Address:    {DelayServerConfig.SERVER_ADDRESS:<56}║
    ║   Training Rounds:   {DelayServerConfig.NUM_ROUNDS:<56}║
    ║   Min Clients:       {DelayServerConfig.MIN_FIT_CLIENTS:<56}║
    ║   Strategy:          FederatedAveragingStrategy (sample-weighted FedAvg)     ║
    ║                                                                              ║
    ╠══════════════════════════════════════════════════════════════════════════════╣
    ║                                                                              ║
    ║   DATA SOVEREIGNTY GUARANTEE:                                                ║
    ║   • Task history NEVER leaves a tenant                                       ║
    ║   • Only 8 coefficients and an intercept are transmitted                     ║
    ║                                                                              ║
    ╠══════════════════════════════════════════════════════════════════════════════╣
    ║                                                                              ║
    ║   WAITING FOR CLIENTS TO CONNECT...                                          ║
    ║                                                                              ║
    ╚══════════════════════════════════════════════════════════════════════════════╝

    Started at: {datetime.now(timezone.utc).isoformat()}
    """
    print(banner)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main() -> None:
    """Main entry point for the delay prediction FL server."""
    parser = argparse.ArgumentParser(
        description="Federated Learning Server for Task Delay Prediction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start server with defaults (5 rounds, min 2 clients)
  python -m federated_learning.server.delay_server

  # Start with custom configuration
  python -m federated_learning.server.delay_server --rounds 10 --min-clients 3

Environment Variables:
  FL_SERVER_ADDRESS      Server bind address (default: 0.0.0.0:8088)
  FL_NUM_ROUNDS          Number of training rounds (default: 5)
  FL_MIN_FIT_CLIENTS     Minimum clients for training (default: 2)
  FL_LOCAL_EPOCHS        Local SGD epochs per round (default: 100)
  FL_MODEL_SAVE_PATH     Path to save the global model (default: /tmp/fl_delay_model)
        """,
    )

    parser.add_argument(
        "--address",
        type=str,
        default=None,
        help=f"Server address (default: {DelayServerConfig.SERVER_ADDRESS})",
    )
    parser.add_argument(
        "--rounds",
        type=int,
        default=None,
        help=f"Number of training rounds (default: {DelayServerConfig.NUM_ROUNDS})",
    )
    parser.add_argument(
        "--min-clients",
        type=int,
        default=None,
        help=f"Minimum number of clients (default: {DelayServerConfig.MIN_FIT_CLIENTS})",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    start_delay_server(
        server_address=args.address,
        num_rounds=args.rounds,
        min_clients=args.min_clients,
    )


if __name__ == "__main__":
    main()
