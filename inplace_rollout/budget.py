import math
from dataclasses import dataclass

from .logger import get_logger
from .machinesets import available_replica_count, replica_count

logger = get_logger("budget")


def _resolve(value, total, round_up):
    """Resolve an int or percentage string against ``total``"""
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("%"):
            scaled = total * int(text[:-1]) / 100.0
            return math.ceil(scaled) if round_up else math.floor(scaled)
        return int(text)
    if value is None:
        return 0
    return int(value)


def resolve_fenceposts(strategy, replicas):
    """Return (max_surge, max_unavailable) for ``replicas`` desired machines.

    Surge rounds up and unavailable rounds down. When both come out as zero,
    unavailable is bumped to one so the rollout can still make progress.
    """
    surge = _resolve(strategy.max_surge, replicas, round_up=True)
    unavailable = _resolve(strategy.max_unavailable, replicas, round_up=False)
    if surge < 0 or unavailable < 0:
        raise ValueError(f"maxSurge and maxUnavailable must be >= 0, got {surge} and {unavailable}")
    if surge == 0 and unavailable == 0:
        unavailable = 1
    return surge, unavailable


def max_unavailable(deployment):
    if deployment.replicas == 0:
        return 0
    _, unavailable = resolve_fenceposts(deployment.strategy, deployment.replicas)
    return min(unavailable, deployment.replicas)


@dataclass
class UpdateBudget:
    total_replicas: int
    min_available: int
    new_set_unavailable: int
    in_flight: int
    max_update_possible: int

    @property
    def allows_update(self):
        return self.max_update_possible > 0


def compute_budget(deployment, all_sets, new_set, in_flight):
    """How many more machines may start updating, given ``in_flight`` old machines already selected"""
    total = replica_count(all_sets)
    min_available = deployment.replicas - max_unavailable(deployment)
    new_unavailable = new_set.replicas - new_set.available_replicas
    budget = UpdateBudget(
        total_replicas=total,
        min_available=min_available,
        new_set_unavailable=new_unavailable,
        in_flight=in_flight,
        max_update_possible=total - min_available - new_unavailable - in_flight,
    )
    logger.debug(f"Budget for {deployment.name}: {budget}")
    return budget


def selection_cap(deployment, all_sets, in_flight):
    """Machines that may be selected now without dropping below minAvailable (0 when none)"""
    min_available = deployment.replicas - max_unavailable(deployment)
    available = available_replica_count(all_sets) - in_flight
    if available <= min_available:
        return 0
    return available - min_available
