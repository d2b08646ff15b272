from .budget import compute_budget, selection_cap
from .errors import InvariantViolationError, NotFoundError
from .labels import Signal, advance, label_patch
from .logger import get_logger
from .machinesets import replica_count, sort_by_creation_timestamp
from .models import LABEL_CANDIDATE_FOR_UPDATE, LABEL_SELECTED_FOR_UPDATE, UpdateState
from .selector import machines_for_drain, machines_undergoing_update


class OldSetReconciler:
    """Moves machines of the old machine sets towards update by labeling them"""

    def __init__(self, cluster):
        self.cluster = cluster
        self.logger = get_logger("old_sets")

    async def _advance_machine(self, machine, signal):
        """Patch the machine's labels for ``signal``. Returns True if they changed."""
        new_labels, state = advance(machine.labels, signal)
        if new_labels == machine.labels:
            return False
        patch = {"metadata": {"labels": label_patch(machine.labels, new_labels)}}
        await self.cluster.patch_machine(machine.namespace, machine.name, patch)
        self.logger.debug(f"Machine {machine.name} is now {state.name}")
        return True

    async def label_candidates(self, old_sets):
        """Mark the machines of ``old_sets`` that have a node, and their nodes, as candidates for update"""
        for ms in old_sets:
            if ms is None:
                continue
            marked = 0
            for machine in await self.cluster.list_machines(ms.selector):
                if not machine.node_name:
                    continue
                if await self._advance_machine(machine, Signal.MARK_CANDIDATE):
                    marked += 1

                try:
                    node = await self.cluster.get_node(machine.node_name)
                except NotFoundError:
                    continue
                if node.labels.get(LABEL_CANDIDATE_FOR_UPDATE) == "true":
                    continue
                await self.cluster.patch_node(node.name, {"metadata": {"labels": {LABEL_CANDIDATE_FOR_UPDATE: "true"}}})
            if marked:
                self.logger.info(f"Marked {marked} machines of machine set {ms.name} as candidates for update")

    async def reconcile(self, deployment, all_sets, old_sets, new_set):
        """Select old machines for update as far as the budget allows. Returns how many were selected."""
        if replica_count(old_sets) == 0:
            return 0

        in_flight = await machines_undergoing_update(self.cluster, old_sets)
        budget = compute_budget(deployment, all_sets, new_set, in_flight)
        self.logger.info(
            f"Deployment {deployment.name}: total={budget.total_replicas} minAvailable={budget.min_available} "
            f"newUnavailable={budget.new_set_unavailable} inFlight={in_flight} "
            f"maxUpdatePossible={budget.max_update_possible}"
        )
        if not budget.allows_update:
            return 0

        return await self.select_machines_for_update(deployment, all_sets, old_sets, in_flight)

    async def select_machines_for_update(self, deployment, all_sets, old_sets, in_flight):
        cap = selection_cap(deployment, all_sets, in_flight)
        if cap <= 0:
            return 0

        total_selected = 0
        # oldest first, so fewer generations stay around at the same time
        for ms in sort_by_creation_timestamp(old_sets):
            if total_selected >= cap:
                break
            if ms.replicas == 0:
                continue
            ready_for_update = min(ms.replicas, cap - total_selected)
            new_replicas = ms.replicas - ready_for_update
            if new_replicas > ms.replicas or new_replicas < 0:
                raise InvariantViolationError(
                    f"when selecting machines from old machine set for update, got invalid request "
                    f"{ms.name} {ms.replicas} -> {new_replicas}"
                )
            total_selected += await self.label_machines_selected_for_update(ms, new_replicas)

        self.logger.info(f"Selected {total_selected} machines for update (cap {cap})")
        return total_selected

    async def label_machines_selected_for_update(self, ms, new_scale):
        selected = 0
        for machine in await machines_for_drain(self.cluster, ms, ms.replicas - new_scale):
            # the update agent starts draining on this label
            if await self._advance_machine(machine, Signal.SELECT):
                selected += 1
        return selected

    async def label_machines_marked_on_node(self, old_sets):
        """Copy an operator's selected-for-update mark from nodes to their machines.

        Nodes that cannot be read are skipped. Returns how many machines were labeled.
        """
        selected = 0
        for ms in old_sets:
            if ms.replicas == 0:
                continue
            for machine in await self.cluster.list_machines(ms.selector):
                if not machine.node_name:
                    continue
                try:
                    node = await self.cluster.get_node(machine.node_name)
                except Exception as e:
                    self.logger.warning(f"Cannot get node {machine.node_name}: {e}")
                    continue

                if LABEL_SELECTED_FOR_UPDATE not in node.labels:
                    continue
                if await self._advance_machine(machine, Signal.SELECT):
                    selected += 1
                elif machine.labels.get(LABEL_SELECTED_FOR_UPDATE) is None:
                    self.logger.warning(f"Node {node.name} is marked for update but machine {machine.name} "
                                        f"is not a candidate ({UpdateState.CANDIDATE.name} required)")
        return selected
