from .models import (
    UpdateState, MachineDeployment, MachineSet, Machine, Node, RolloutStrategy,
    ControllerConfig, ReconcileResult
)
from .errors import RolloutError, ClusterError, NotFoundError, InvariantViolationError, OwnershipTransferError
from .cluster import Cluster
from .engine import InPlaceRolloutEngine
from .fake import InMemoryCluster, FakeUpdateAgent
from .failure import FailureInjector

__all__ = [
    "UpdateState", "MachineDeployment", "MachineSet", "Machine", "Node", "RolloutStrategy",
    "ControllerConfig", "ReconcileResult",
    "RolloutError", "ClusterError", "NotFoundError", "InvariantViolationError", "OwnershipTransferError",
    "Cluster", "InPlaceRolloutEngine", "InMemoryCluster", "FakeUpdateAgent", "FailureInjector"
]
