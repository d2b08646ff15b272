from .errors import OwnershipTransferError
from .logger import get_logger
from .machinesets import (
    deployment_complete, filter_active_machine_sets, machine_sets_scaled_to_zero, replica_count,
)
from .models import AUTOSCALER_SCALE_DOWN_ANNOTATIONS, LABEL_MACHINE_SET_SKIP_UPDATE, ControllerConfig, ReconcileResult
from .new_set import NewSetReconciler
from .old_sets import OldSetReconciler


class InPlaceRolloutEngine:
    """Runs reconciliation passes of an in-place rollout.

    Each pass makes at most one kind of progress: it either transfers updated
    machines to the new machine set or selects more machines for update,
    never both. The caller requeues the deployment and the next pass starts
    again from freshly listed state.
    """

    def __init__(self, cluster, config=None):
        self.cluster = cluster
        self.config = config if config else ControllerConfig()
        self.old_set_reconciler = OldSetReconciler(cluster)
        self.new_set_reconciler = NewSetReconciler(cluster, self.config.taint)
        self.logger = get_logger("engine")

    async def rollout(self, deployment, machine_sets):
        """Run one pass with the variant the deployment's strategy asks for"""
        if deployment.is_manual:
            return await self.rollout_manual(deployment, machine_sets)
        return await self.rollout_auto(deployment, machine_sets)

    async def rollout_auto(self, deployment, machine_sets):
        """Machines are selected by the controller within the availability budget"""
        return await self._rollout(deployment, machine_sets, manual=False)

    async def rollout_manual(self, deployment, machine_sets):
        """Machines are selected by an operator marking their nodes"""
        return await self._rollout(deployment, machine_sets, manual=True)

    async def _taint_old_nodes(self, old_sets):
        try:
            await self.cluster.taint_nodes_backing_machine_sets(old_sets, self.config.taint)
        except Exception as e:
            self.logger.warning(f"Failed to add {self.config.taint.key} on all nodes: {e}")

    async def _prepare(self, deployment, all_sets, old_sets, manual):
        """Taint, label and annotate everything the rollout is about to touch"""
        await self._taint_old_nodes(old_sets)

        rollout_ongoing = len(old_sets) > 0 and not machine_sets_scaled_to_zero(old_sets)
        if manual and rollout_ongoing:
            # the scale executor must not replace machines an operator is updating
            try:
                await self.cluster.label_machine_sets(old_sets, {LABEL_MACHINE_SET_SKIP_UPDATE: "true"})
            except Exception as e:
                self.logger.error(f"Failed to add {LABEL_MACHINE_SET_SKIP_UPDATE} on all machine sets: {e}")
                raise

        if self.config.autoscaler_scale_down_annotation_during_rollout and rollout_ongoing:
            # also covers the new set's nodes in case a later step of this pass fails
            try:
                await self.cluster.annotate_nodes_backing_machine_sets(all_sets, AUTOSCALER_SCALE_DOWN_ANNOTATIONS)
            except Exception as e:
                self.logger.error(f"Failed to add {AUTOSCALER_SCALE_DOWN_ANNOTATIONS} on all nodes: {e}")
                raise

        await self.old_set_reconciler.label_candidates(old_sets)

    async def _select(self, deployment, all_sets, old_sets, new_set, manual):
        if not manual:
            return await self.old_set_reconciler.reconcile(
                deployment, all_sets, filter_active_machine_sets(old_sets), new_set
            )
        try:
            return await self.old_set_reconciler.label_machines_marked_on_node(old_sets)
        except Exception as e:
            self.logger.error(f"Failed to label machines selected for update: {e}")
            return 0

    async def _rollout(self, deployment, machine_sets, manual):
        result = ReconcileResult()
        new_set, old_sets = await self.cluster.get_all_machine_sets_and_sync_revision(deployment, machine_sets)
        all_sets = old_sets + [new_set]
        self.logger.info(f"Reconciling deployment {deployment.name} ({'manual' if manual else 'auto'}): "
                         f"new={new_set.name} {new_set.replicas}/{new_set.available_replicas}, "
                         f"old={len(old_sets)} sets with {replica_count(old_sets)} replicas")

        total = replica_count(all_sets)
        if total != deployment.replicas:
            self.logger.warning(f"Machine sets of {deployment.name} sum to {total} replicas, want {deployment.replicas}")

        await self._prepare(deployment, all_sets, old_sets, manual)

        try:
            scaled = await self.new_set_reconciler.reconcile(deployment, old_sets, new_set)
        except OwnershipTransferError as e:
            if e.partial_progress:
                await self.cluster.sync_rollout_status(all_sets, new_set, deployment)
            raise
        if scaled:
            result.progress = "transferred"
            result.scaled = True
            result.history.append({"event": "transferred", "new_set": new_set.name})
            await self.cluster.sync_rollout_status(all_sets, new_set, deployment)
            return result

        selected = await self._select(deployment, all_sets, old_sets, new_set, manual)
        if selected > 0:
            result.progress = "selected"
            result.selected = selected
            result.history.append({"event": "selected", "count": selected})
            await self.cluster.sync_rollout_status(all_sets, new_set, deployment)
            return result

        if deployment_complete(deployment):
            if self.config.autoscaler_scale_down_annotation_during_rollout:
                # only after completion, or the autoscaler could scale down mid-rollout
                await self.cluster.remove_autoscaler_annotations_if_required(all_sets, AUTOSCALER_SCALE_DOWN_ANNOTATIONS)
            await self.cluster.cleanup_machine_deployment(old_sets, deployment)
            result.progress = "completed"
            result.completed = True
            result.history.append({"event": "completed"})
            self.logger.info(f"Rollout of deployment {deployment.name} complete")

        await self.cluster.sync_rollout_status(all_sets, new_set, deployment)
        return result
