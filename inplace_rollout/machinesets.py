from .errors import RolloutError
from .models import equal_ignore_hash


def replica_count(machine_sets):
    """Sum of desired replicas"""
    return sum(ms.replicas for ms in machine_sets if ms is not None)


def available_replica_count(machine_sets):
    return sum(ms.available_replicas for ms in machine_sets if ms is not None)


def filter_active_machine_sets(machine_sets):
    return [ms for ms in machine_sets if ms is not None and ms.replicas > 0]


def machine_sets_scaled_to_zero(machine_sets):
    return all(ms.replicas == 0 for ms in machine_sets if ms is not None)


def _creation_key(ms):
    ts = ms.creation_timestamp.timestamp() if ms.creation_timestamp else float("-inf")
    return ts, ms.name


def sort_by_creation_timestamp(machine_sets):
    """Oldest first, ties broken by name"""
    return sorted(machine_sets, key=_creation_key)


def split_machine_sets(deployment, machine_sets):
    """Return the machine set running the deployment's template and all the others"""
    new_set = None
    old_sets = []
    for ms in sort_by_creation_timestamp(machine_sets):
        if new_set is None and equal_ignore_hash(ms.template, deployment.template):
            new_set = ms
        else:
            old_sets.append(ms)
    if new_set is None:
        raise RolloutError(f"no machine set of {deployment.name} runs the current template")
    return new_set, old_sets


def deployment_complete(deployment):
    """True once the last synced status shows every desired machine updated and available"""
    status = deployment.status
    return (status.updated_replicas == deployment.replicas
            and status.replicas == deployment.replicas
            and status.available_replicas == deployment.replicas
            and status.observed_generation >= deployment.generation)
