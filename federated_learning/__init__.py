"""
Federated Learning for Task Delay Prediction

================================================================================
FEDERATED LEARNING: SHARED SIGNAL WITHOUT SHARED TASKS
================================================================================

Each tenant of the task tracker owns its task history. A tenant with a
handful of completed tasks cannot train a useful delay model on its own,
yet pooling raw tasks across tenants would leak customer data.

With federated learning, the MODEL travels, the TASKS stay put:

    ┌──────────────────────────────────────────────────────────────────────────┐
    │                        AGGREGATOR / COORDINATOR                          │
    │                                                                          │
    │   • Runs training rounds (pending → training → aggregating → completed) │
    │   • Averages weights by sample count                                     │
    │   • Never sees a task, an assignee or a description                      │
    └──────────────────────────────────────────────────────────────────────────┘
                                    │
              ┌─────────────────────┼─────────────────────┐
              ▼                     ▼                     ▼
    ┌──────────────────┐  ┌──────────────────┐  ┌──────────────────┐
    │    Tenant A      │  │    Tenant B      │  │    Tenant C      │
    │  [Task History]  │  │  [Task History]  │  │  [Task History]  │
    │        ↓         │  │        ↓         │  │        ↓         │
    │  [Local Model]   │  │  [Local Model]   │  │  [Local Model]   │
    │  9 floats only → │  │  9 floats only → │  │  9 floats only → │
    └──────────────────┘  └──────────────────┘  └──────────────────┘

PACKAGE STRUCTURE
──────────────────────────────────────────────────────────────────────────────

federated_learning/
├── errors.py               # DelayRiskError taxonomy
├── server/
│   ├── strategy.py         # federated_average, hybrid_update, Flower strategy
│   ├── coordinator.py      # TrainingRoundCoordinator (database rounds)
│   ├── records.py          # Round / model-version records, store protocols
│   └── delay_server.py     # gRPC Flower server (port 8088)
│
└── client/
    ├── serde.py            # ModelWeights and its wire formats
    └── delay_client.py     # Flower NumPyClient for one tenant

TWO WAYS TO RUN A ROUND
──────────────────────────────────────────────────────────────────────────────

1. In-process (shared database), through the agent's REST API:

    POST /rounds                      start a round, train eligible tenants
    POST /rounds/{round_id}/aggregate average, blend, write new versions

2. Over the network, one Flower client per tenant:

    python -m federated_learning.server.delay_server --rounds 5 --min-clients 2
    python -m federated_learning.client.delay_client --tenant-id acme

AGGREGATION
──────────────────────────────────────────────────────────────────────────────

    w_global = Σ (n_k / n_total) * w_k
    w_next_k = momentum * w_local_k + (1 - momentum) * w_global

================================================================================
"""

__version__ = "1.0.0"

from .client.serde import ModelWeights
from .errors import DelayRiskError
from .server.strategy import FederatedAveragingStrategy, federated_average, hybrid_update

__all__ = [
    "ModelWeights",
    "DelayRiskError",
    "FederatedAveragingStrategy",
    "federated_average",
    "hybrid_update",
]
