import abc

from .errors import InvariantViolationError, NotFoundError
from .logger import get_logger
from .machinesets import available_replica_count, replica_count, split_machine_sets
from .models import ANNOTATION_SCALE_DOWN_DISABLED_BY_MCM, DeploymentStatus

logger = get_logger("cluster")


class Cluster(abc.ABC):
    """Remote primitives plus the composite operations built on them; composites skip calls that would change nothing"""

    # --- primitives -------------------------------------------------------

    @abc.abstractmethod
    async def list_machines(self, selector):
        """Machines whose labels contain every pair of ``selector``"""

    @abc.abstractmethod
    async def list_nodes(self, selector):
        """Nodes whose labels contain every pair of ``selector``"""

    @abc.abstractmethod
    async def get_node(self, name):
        """Return the node or raise NotFoundError"""

    @abc.abstractmethod
    async def patch_machine(self, namespace, name, patch):
        """Apply a JSON merge patch to a machine"""

    @abc.abstractmethod
    async def patch_node(self, name, patch):
        """Apply a JSON merge patch to a node"""

    @abc.abstractmethod
    async def get_machine_set(self, namespace, name):
        """Return the machine set or raise NotFoundError"""

    @abc.abstractmethod
    async def patch_machine_set(self, ms, patch):
        """Apply a JSON merge patch to a machine set and return the result"""

    @abc.abstractmethod
    async def delete_machine_set(self, ms):
        pass

    @abc.abstractmethod
    async def update_deployment_status(self, deployment, status):
        pass

    # --- collaborator operations ------------------------------------------

    async def get_all_machine_sets_and_sync_revision(self, deployment, machine_sets):
        new_set, old_sets = split_machine_sets(deployment, machine_sets)
        logger.debug(f"Deployment {deployment.name}: new machine set {new_set.name}, "
                     f"old machine sets {[ms.name for ms in old_sets]}")
        return new_set, old_sets

    async def scale_machine_set(self, ms, replicas, deployment):
        """Scale ``ms`` to ``replicas``. Returns (scaled, machine set)."""
        if replicas < 0:
            raise InvariantViolationError(f"cannot scale machine set {ms.name} to {replicas} replicas")
        if ms.replicas == replicas:
            return False, ms
        direction = "up" if replicas > ms.replicas else "down"
        updated = await self.patch_machine_set(ms, {"spec": {"replicas": replicas}})
        logger.info(f"Scaled {direction} machine set {ms.name} from {ms.replicas} to {replicas} "
                    f"for deployment {deployment.name}")
        return True, updated

    async def nodes_backing_machine_sets(self, machine_sets):
        """Yield the existing nodes behind the machines of ``machine_sets``"""
        for ms in machine_sets:
            if ms is None:
                continue
            for machine in await self.list_machines(ms.selector):
                if not machine.node_name:
                    continue
                try:
                    node = await self.get_node(machine.node_name)
                except NotFoundError:
                    continue
                yield node

    async def taint_nodes_backing_machine_sets(self, machine_sets, taint):
        async for node in self.nodes_backing_machine_sets(machine_sets):
            if node.has_taint(taint):
                continue
            taints = [t.to_dict() for t in node.taints] + [taint.to_dict()]
            await self.patch_node(node.name, {"spec": {"taints": taints}})
            logger.debug(f"Tainted node {node.name} with {taint.key}")

    async def annotate_nodes_backing_machine_sets(self, machine_sets, annotations):
        async for node in self.nodes_backing_machine_sets(machine_sets):
            if all(node.annotations.get(k) == v for k, v in annotations.items()):
                continue
            await self.patch_node(node.name, {"metadata": {"annotations": dict(annotations)}})
            logger.debug(f"Annotated node {node.name} with {annotations}")

    async def remove_autoscaler_annotations_if_required(self, machine_sets, annotations):
        """Drop ``annotations`` from nodes that got them from this controller.

        A scale-down-disabled annotation without the by-controller marker was
        put there by a user and is left alone.
        """
        async for node in self.nodes_backing_machine_sets(machine_sets):
            if node.annotations.get(ANNOTATION_SCALE_DOWN_DISABLED_BY_MCM) != "true":
                continue
            await self.patch_node(node.name, {"metadata": {"annotations": {k: None for k in annotations}}})
            logger.debug(f"Removed autoscaler annotations from node {node.name}")

    async def label_machine_sets(self, machine_sets, labels):
        for ms in machine_sets:
            if all(ms.labels.get(k) == v for k, v in labels.items()):
                continue
            await self.patch_machine_set(ms, {"metadata": {"labels": dict(labels)}})
            logger.debug(f"Labeled machine set {ms.name} with {labels}")

    async def sync_rollout_status(self, all_sets, new_set, deployment):
        """Recompute the deployment status from the machine sets as they are now"""
        current = []
        new_replicas = 0
        for ms in all_sets:
            try:
                fresh = await self.get_machine_set(ms.namespace, ms.name)
            except NotFoundError:
                continue
            current.append(fresh)
            if fresh.name == new_set.name:
                new_replicas = fresh.replicas
        status = DeploymentStatus(
            replicas=replica_count(current),
            updated_replicas=new_replicas,
            available_replicas=available_replica_count(current),
            observed_generation=deployment.generation,
        )
        if status == deployment.status:
            return status
        await self.update_deployment_status(deployment, status)
        logger.debug(f"Synced status of deployment {deployment.name}: {status}")
        return status

    async def cleanup_machine_deployment(self, old_sets, deployment):
        """Delete old machine sets that are scaled to zero and own no machine any more"""
        for ms in old_sets:
            if ms.replicas != 0:
                continue
            if await self.list_machines(ms.selector):
                continue
            await self.delete_machine_set(ms)
            logger.info(f"Deleted exhausted machine set {ms.name} of deployment {deployment.name}")
