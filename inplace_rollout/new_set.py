from .errors import OwnershipTransferError, RolloutError
from .labels import Signal, label_patch, merge_with_overwrite_and_filter, next_state, state_of, with_state
from .logger import get_logger
from .models import LABEL_UPDATE_SUCCESSFUL, PREFER_NO_SCHEDULE_TAINT, OwnerReference, UpdateState
from .selector import machine_for_node


class NewSetReconciler:
    """Hands machines whose node finished updating over to the new machine set.

    A transfer re-labels and re-parents the machine in one patch. The old set
    is then scaled down and the new set scaled up by the same amount, so the
    total number of desired replicas does not change.
    """

    def __init__(self, cluster, taint=None):
        self.cluster = cluster
        self.taint = taint if taint else PREFER_NO_SCHEDULE_TAINT
        self.logger = get_logger("new_set")

    async def reconcile(self, deployment, old_sets, new_set):
        """Returns whether any machine set was scaled"""
        if new_set.replicas == deployment.replicas:
            return False
        if new_set.replicas > deployment.replicas:
            scaled, _ = await self.cluster.scale_machine_set(new_set, deployment.replicas, deployment)
            return scaled

        self.logger.debug(f"Reconciling new machine set {new_set.name}")
        added = 0

        for ms in old_sets:
            transferred = 0
            machines = await self.cluster.list_machines(ms.selector)
            nodes = await self.cluster.list_nodes({LABEL_UPDATE_SUCCESSFUL: "true"})
            self.logger.debug(f"Machine set {ms.name}: {len(machines)} machines, "
                              f"{len(nodes)} nodes updated successfully")

            for node in sorted(nodes, key=lambda n: n.name):
                machine = machine_for_node(machines, node)
                if machine is None:
                    continue  # belongs to another machine set
                if transferred >= ms.replicas:
                    self.logger.warning(f"Machine set {ms.name} has no replicas left to hand over, "
                                        f"leaving machine {machine.name} for a later pass")
                    break
                if next_state(state_of(machine.labels), Signal.UPDATE_SUCCEEDED) != UpdateState.SUCCESSFUL:
                    self.logger.warning(f"Node {node.name} reports a successful update but machine "
                                        f"{machine.name} was never selected for update, skipping")
                    continue

                try:
                    await self.transfer_ownership(machine, ms, new_set)
                except Exception as e:
                    self.logger.error(f"Failed to transfer machine {machine.name} to {new_set.name}: {e}")
                    compensated = await self._compensate(deployment, new_set, added, ms, transferred)
                    raise OwnershipTransferError(machine.name, e, added, compensated) from e

                transferred += 1
                added += 1

                try:
                    await self.release_node(node)
                except Exception as e:
                    await self._compensate(deployment, new_set, added, ms, transferred)
                    raise RolloutError(f"failed to uncordon the node {node.name}") from e

            self.logger.info(f"Transferred {transferred} machines from {ms.name} to {new_set.name}")
            try:
                await self.cluster.scale_machine_set(ms, ms.replicas - transferred, deployment)
            except Exception as e:
                self.logger.error(f"Scale down of {ms.name} failed: {e}")
                # count only the machines whose old set was already scaled down
                await self._compensate(deployment, new_set, added - transferred, None, 0)
                raise

        self.logger.info(f"Scaling up new machine set {new_set.name} by {added}")
        scaled, _ = await self.cluster.scale_machine_set(new_set, new_set.replicas + added, deployment)
        return scaled

    async def transfer_ownership(self, machine, old_set, new_set):
        """Re-parent ``machine`` to ``new_set`` and move its labels onto the new selector in one patch"""
        new_labels = with_state(
            merge_with_overwrite_and_filter(machine.labels, old_set.selector, new_set.selector),
            UpdateState.SUCCESSFUL,
        )
        owner = OwnerReference(name=new_set.name, uid=new_set.uid)
        patch = {
            "metadata": {
                "uid": machine.uid,  # precondition: fails if the machine was recreated
                "ownerReferences": [owner.to_dict()],
                "labels": label_patch(machine.labels, new_labels),
            }
        }
        await self.cluster.patch_machine(machine.namespace, machine.name, patch)
        self.logger.debug(f"Machine {machine.name} now owned by {new_set.name}")

    async def _compensate(self, deployment, new_set, added, old_set, transferred):
        """Account for the machines moved before a failure. Returns True if every scale call succeeded."""
        try:
            await self.cluster.scale_machine_set(new_set, new_set.replicas + added, deployment)
        except Exception as e:
            self.logger.warning(f"Scale up of {new_set.name} after failed transfer failed: {e}")
            return False
        if old_set is None:
            return True
        try:
            await self.cluster.scale_machine_set(old_set, old_set.replicas - transferred, deployment)
        except Exception as e:
            self.logger.warning(f"Scale down of {old_set.name} after failed transfer failed: {e}")
            return False
        return True

    async def release_node(self, node):
        """Uncordon a node whose machine now belongs to the new set, and drop the rollout taint from it"""
        spec = {"unschedulable": False}
        if node.has_taint(self.taint):
            spec["taints"] = [t.to_dict() for t in node.taints
                              if not (t.key == self.taint.key and t.effect == self.taint.effect)]
        await self.cluster.patch_node(node.name, {"spec": spec})
