from collections import Counter

from .labels import merge_string_maps, state_of
from .logger import get_logger
from .models import LABEL_CANDIDATE_FOR_UPDATE, LABEL_SELECTED_FOR_UPDATE, UpdateState

logger = get_logger("selector")


async def machines_for_drain(cluster, ms, ready_for_drain):
    """Up to ``ready_for_drain`` machines of ``ms`` that are candidates and not yet selected.

    Machines are taken in name order.
    """
    if ready_for_drain <= 0:
        return []
    machines = await cluster.list_machines(merge_string_maps(ms.selector, {LABEL_CANDIDATE_FOR_UPDATE: "true"}))
    eligible = sorted((m for m in machines if state_of(m.labels) == UpdateState.CANDIDATE),
                      key=lambda m: m.name)
    logger.debug(f"Machine set {ms.name}: {len(eligible)} machines eligible for drain, want {ready_for_drain}")
    return eligible[:ready_for_drain]


async def machines_undergoing_update(cluster, machine_sets):
    """Number of machines of ``machine_sets`` currently selected for update"""
    count = 0
    for ms in machine_sets:
        machines = await cluster.list_machines(merge_string_maps(ms.selector, {LABEL_SELECTED_FOR_UPDATE: "true"}))
        count += len(machines)
    return count


def machine_for_node(machines, node):
    for machine in machines:
        if machine.node_name == node.name:
            return machine
    return None


async def count_by_state(cluster, ms):
    """How many machines of ``ms`` sit in each update state"""
    machines = await cluster.list_machines(ms.selector)
    counts = Counter(state_of(m.labels) for m in machines)
    return {state: counts.get(state, 0) for state in UpdateState}
