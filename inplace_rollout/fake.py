"""In-memory cluster and update agent for tests and the state-file commands"""
import asyncio
import copy
import itertools

from .cluster import Cluster
from .errors import ClusterError, NotFoundError
from .failure import FailureInjector
from .logger import get_logger
from .models import (
    LABEL_CANDIDATE_FOR_UPDATE, LABEL_SELECTED_FOR_UPDATE, LABEL_UPDATE_SUCCESSFUL,
    Machine, MachineDeployment, MachineSet, Node,
)

logger = get_logger("fake")


def apply_merge_patch(target, patch):
    """Apply a JSON merge patch (RFC 7386) to a dict in place"""
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            apply_merge_patch(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


class InMemoryCluster(Cluster):

    def __init__(self, deployments=(), machine_sets=(), machines=(), nodes=(), failure_injector=None):
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.deployments = {}
        self.machine_sets = {}
        self.machines = {}
        self.nodes = {}
        self.mutations = []  # (operation, object name) of every successful write
        self._uids = itertools.count(1)
        for d in deployments:
            self.add_deployment(d)
        for ms in machine_sets:
            self.add_machine_set(ms)
        for m in machines:
            self.add_machine(m)
        for n in nodes:
            self.add_node(n)

    def _with_uid(self, obj, prefix):
        obj = copy.deepcopy(obj)
        if not obj.uid:
            obj.uid = f"{prefix}-{next(self._uids)}"
        return obj

    def add_deployment(self, deployment):
        self.deployments[deployment.name] = self._with_uid(deployment, "md")

    def add_machine_set(self, ms):
        self.machine_sets[ms.name] = self._with_uid(ms, "ms")

    def add_machine(self, machine):
        self.machines[machine.name] = self._with_uid(machine, "m")

    def add_node(self, node):
        self.nodes[node.name] = copy.deepcopy(node)

    # --- inspection -------------------------------------------------------

    def deployment(self, name):
        return copy.deepcopy(self.deployments[name])

    def machine_set(self, name):
        return copy.deepcopy(self.machine_sets[name])

    def machine(self, name):
        return copy.deepcopy(self.machines[name])

    def node(self, name):
        return copy.deepcopy(self.nodes[name])

    def all_machine_sets(self):
        return [copy.deepcopy(ms) for _, ms in sorted(self.machine_sets.items())]

    def writes(self, include_status=False):
        if include_status:
            return list(self.mutations)
        return [m for m in self.mutations if m[0] != "update_deployment_status"]

    def refresh_status(self):
        """Recompute availableReplicas: a machine counts when its node exists and is schedulable"""
        for ms in self.machine_sets.values():
            available = 0
            for machine in self.machines.values():
                if not machine.matches(ms.selector):
                    continue
                node = self.nodes.get(machine.node_name)
                if node is not None and not node.unschedulable:
                    available += 1
            ms.available_replicas = min(available, ms.replicas)

    # --- primitives -------------------------------------------------------

    async def _call(self, operation, name):
        await asyncio.sleep(self.failure_injector.delay_seconds())
        if self.failure_injector.should_fail(operation, name):
            raise ClusterError(operation, name, "injected failure")

    async def list_machines(self, selector):
        await self._call("list_machines", "*")
        return [copy.deepcopy(m) for _, m in sorted(self.machines.items()) if m.matches(selector)]

    async def list_nodes(self, selector):
        await self._call("list_nodes", "*")
        return [copy.deepcopy(n) for _, n in sorted(self.nodes.items()) if n.matches(selector)]

    async def get_node(self, name):
        await self._call("get_node", name)
        if name not in self.nodes:
            raise NotFoundError("get_node", name)
        return copy.deepcopy(self.nodes[name])

    async def patch_machine(self, namespace, name, patch):
        await self._call("patch_machine", name)
        if name not in self.machines:
            raise NotFoundError("patch_machine", name)
        patch = copy.deepcopy(patch)
        uid = patch.get("metadata", {}).pop("uid", None)
        current = self.machines[name]
        if uid is not None and uid != current.uid:
            raise ClusterError("patch_machine", name, f"uid precondition failed: {uid} != {current.uid}")
        self.machines[name] = Machine.from_dict(apply_merge_patch(current.to_dict(), patch))
        self.mutations.append(("patch_machine", name))

    async def patch_node(self, name, patch):
        await self._call("patch_node", name)
        if name not in self.nodes:
            raise NotFoundError("patch_node", name)
        self.nodes[name] = Node.from_dict(apply_merge_patch(self.nodes[name].to_dict(), patch))
        self.mutations.append(("patch_node", name))

    async def get_machine_set(self, namespace, name):
        await self._call("get_machine_set", name)
        if name not in self.machine_sets:
            raise NotFoundError("get_machine_set", name)
        return copy.deepcopy(self.machine_sets[name])

    async def patch_machine_set(self, ms, patch):
        await self._call("patch_machine_set", ms.name)
        if ms.name not in self.machine_sets:
            raise NotFoundError("patch_machine_set", ms.name)
        updated = MachineSet.from_dict(apply_merge_patch(self.machine_sets[ms.name].to_dict(), patch))
        self.machine_sets[ms.name] = updated
        self.mutations.append(("patch_machine_set", ms.name))
        return copy.deepcopy(updated)

    async def delete_machine_set(self, ms):
        await self._call("delete_machine_set", ms.name)
        self.machine_sets.pop(ms.name, None)
        self.mutations.append(("delete_machine_set", ms.name))

    async def update_deployment_status(self, deployment, status):
        await self._call("update_deployment_status", deployment.name)
        self.deployments[deployment.name].status = copy.deepcopy(status)
        self.mutations.append(("update_deployment_status", deployment.name))

    # --- state files ------------------------------------------------------

    @classmethod
    def from_state(cls, state):
        return cls(
            deployments=[MachineDeployment.from_dict(d) for d in state.get("deployments", [])],
            machine_sets=[MachineSet.from_dict(ms) for ms in state.get("machineSets", [])],
            machines=[Machine.from_dict(m) for m in state.get("machines", [])],
            nodes=[Node.from_dict(n) for n in state.get("nodes", [])],
        )

    def to_state(self):
        return {
            "deployments": [d.to_dict() for _, d in sorted(self.deployments.items())],
            "machineSets": [ms.to_dict() for _, ms in sorted(self.machine_sets.items())],
            "machines": [m.to_dict() for _, m in sorted(self.machines.items())],
            "nodes": [n.to_dict() for _, n in sorted(self.nodes.items())],
        }


class FakeUpdateAgent:
    """Plays the out-of-band agent that updates nodes in place.

    Each ``step`` moves every machine selected for update one stage on: its
    node is first cordoned, then reported as updated successfully. With
    ``operator_batch`` set it also plays the operator of a manual rollout,
    marking that many candidate nodes for update whenever none is in flight.
    """

    def __init__(self, cluster, operator_batch=0):
        self.cluster = cluster
        self.operator_batch = operator_batch

    async def step(self):
        changes = 0
        for machine in await self.cluster.list_machines({LABEL_SELECTED_FOR_UPDATE: "true"}):
            if machine.labels.get(LABEL_UPDATE_SUCCESSFUL) == "true" or not machine.node_name:
                continue
            node = await self.cluster.get_node(machine.node_name)
            if node.labels.get(LABEL_UPDATE_SUCCESSFUL) == "true":
                continue
            if not node.unschedulable:
                await self.cluster.patch_node(node.name, {
                    "metadata": {"labels": {LABEL_SELECTED_FOR_UPDATE: "true"}},
                    "spec": {"unschedulable": True},
                })
                logger.info(f"Agent drained node {node.name}")
            else:
                await self.cluster.patch_node(node.name, {"metadata": {"labels": {LABEL_UPDATE_SUCCESSFUL: "true"}}})
                logger.info(f"Agent updated node {node.name}")
            changes += 1

        if self.operator_batch:
            changes += await self._operator_marks()
        return changes

    async def _operator_marks(self):
        nodes = await self.cluster.list_nodes({LABEL_CANDIDATE_FOR_UPDATE: "true"})
        if any(LABEL_SELECTED_FOR_UPDATE in n.labels and LABEL_UPDATE_SUCCESSFUL not in n.labels for n in nodes):
            return 0
        marked = 0
        for node in nodes:
            if marked >= self.operator_batch:
                break
            if LABEL_SELECTED_FOR_UPDATE in node.labels or LABEL_UPDATE_SUCCESSFUL in node.labels:
                continue
            await self.cluster.patch_node(node.name, {"metadata": {"labels": {LABEL_SELECTED_FOR_UPDATE: "true"}}})
            logger.info(f"Operator marked node {node.name} for update")
            marked += 1
        return marked
