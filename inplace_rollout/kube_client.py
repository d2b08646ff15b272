import asyncio

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .cluster import Cluster
from .errors import NotFoundError
from .labels import format_selector
from .logger import get_logger
from .models import API_GROUP, Machine, MachineDeployment, MachineSet, Node

logger = get_logger("kube")

VERSION = "v1alpha1"


class KubeCluster(Cluster):
    """Machines, machine sets and deployments live in one namespace; nodes are cluster scoped."""

    def __init__(self, namespace, in_cluster=True, context=None):
        """
        Args:
            namespace: Namespace of the machine objects
            in_cluster: Whether running inside the cluster (default: True)
            context: Kubeconfig context name (optional)
        """
        self.namespace = namespace

        try:
            if in_cluster:
                config.load_incluster_config()
            elif context:
                config.load_kube_config(context=context)
            else:
                config.load_kube_config()

            self.core = client.CoreV1Api()
            self.custom = client.CustomObjectsApi()
            logger.info(f"Kubernetes client initialized for namespace: {namespace}")

        except Exception as e:
            logger.error(f"Failed to initialize Kubernetes client: {e}")
            raise

    async def _call(self, description, fn, *args, **kwargs):
        # the client is synchronous; keep the event loop free so a pass can be cancelled
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to {description}: {e.status} {e.reason}")
            raise

    def _to_dict(self, obj):
        return self.core.api_client.sanitize_for_serialization(obj)

    async def _custom(self, description, verb, plural, *args, **kwargs):
        fn = getattr(self.custom, f"{verb}_namespaced_custom_object")
        return await self._call(description, fn, API_GROUP, VERSION, self.namespace, plural, *args, **kwargs)

    # --- primitives -------------------------------------------------------

    async def list_machines(self, selector):
        result = await self._custom("list machines", "list", "machines", label_selector=format_selector(selector))
        return [Machine.from_dict(item) for item in result.get("items", [])]

    async def list_nodes(self, selector):
        result = await self._call("list nodes", self.core.list_node, label_selector=format_selector(selector))
        return [Node.from_dict(self._to_dict(item)) for item in result.items]

    async def get_node(self, name):
        try:
            node = await self._call(f"get node {name}", self.core.read_node, name)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError("get_node", name) from e
            raise
        return Node.from_dict(self._to_dict(node))

    async def patch_machine(self, namespace, name, patch):
        fn = self.custom.patch_namespaced_custom_object
        await self._call(f"patch machine {name}", fn, API_GROUP, VERSION, namespace, "machines", name, patch)

    async def patch_node(self, name, patch):
        await self._call(f"patch node {name}", self.core.patch_node, name, patch)

    async def get_machine_set(self, namespace, name):
        fn = self.custom.get_namespaced_custom_object
        try:
            result = await self._call(f"get machine set {name}", fn, API_GROUP, VERSION, namespace, "machinesets", name)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError("get_machine_set", name) from e
            raise
        return MachineSet.from_dict(result)

    async def patch_machine_set(self, ms, patch):
        result = await self._custom(f"patch machine set {ms.name}", "patch", "machinesets", ms.name, patch)
        return MachineSet.from_dict(result)

    async def delete_machine_set(self, ms):
        await self._custom(f"delete machine set {ms.name}", "delete", "machinesets", ms.name)

    async def update_deployment_status(self, deployment, status):
        fn = self.custom.patch_namespaced_custom_object_status
        await self._call(f"update status of {deployment.name}", fn, API_GROUP, VERSION, self.namespace,
                         "machinedeployments", deployment.name, {"status": status.to_dict()})

    # --- lookups for the CLI ----------------------------------------------

    async def get_machine_deployment(self, name):
        result = await self._custom(f"get machine deployment {name}", "get", "machinedeployments", name)
        return MachineDeployment.from_dict(result)

    async def list_machine_sets(self, deployment):
        """Machine sets controlled by ``deployment``"""
        result = await self._custom("list machine sets", "list", "machinesets")
        owned = []
        for item in result.get("items", []):
            refs = item.get("metadata", {}).get("ownerReferences") or []
            if any(ref.get("uid") == deployment.uid and ref.get("controller") for ref in refs):
                owned.append(MachineSet.from_dict(item))
        return owned
