from types import SimpleNamespace
from unittest.mock import patch

import pytest
from kubernetes.client.rest import ApiException

from inplace_rollout.errors import NotFoundError
from inplace_rollout.kube_client import KubeCluster
from inplace_rollout.models import API_GROUP, DeploymentStatus, MachineDeployment, MachineSet

NAMESPACE = "shoot--dev"


def machine_set_dict(name, replicas, owner_uid="md-workers", controller=True):
    return {
        "metadata": {"name": name, "namespace": NAMESPACE, "uid": f"ms-{name}",
                     "ownerReferences": [{"name": "workers", "uid": owner_uid, "controller": controller}]},
        "spec": {"replicas": replicas, "selector": {"matchLabels": {"name": "workers"}}},
        "status": {"availableReplicas": replicas},
    }


@pytest.fixture
def kube():
    """A KubeCluster whose API objects are mocks"""
    with patch("inplace_rollout.kube_client.config"), patch("inplace_rollout.kube_client.client"):
        cluster = KubeCluster(NAMESPACE, in_cluster=False, context="kind-dev")
    # nodes are handed over as plain dicts already
    cluster.core.api_client.sanitize_for_serialization.side_effect = lambda obj: obj
    return cluster


class TestClientSetup:
    """Loading cluster credentials."""

    def test_kubeconfig_context(self):
        with patch("inplace_rollout.kube_client.config") as kube_config, \
                patch("inplace_rollout.kube_client.client"):
            KubeCluster(NAMESPACE, in_cluster=False, context="kind-dev")
        kube_config.load_kube_config.assert_called_once_with(context="kind-dev")
        kube_config.load_incluster_config.assert_not_called()

    def test_in_cluster(self):
        with patch("inplace_rollout.kube_client.config") as kube_config, \
                patch("inplace_rollout.kube_client.client"):
            KubeCluster(NAMESPACE)
        kube_config.load_incluster_config.assert_called_once_with()

    def test_load_failure_is_logged_and_raised(self, caplog):
        with patch("inplace_rollout.kube_client.config") as kube_config, \
                patch("inplace_rollout.kube_client.client"):
            kube_config.load_incluster_config.side_effect = RuntimeError("no service account")
            with pytest.raises(RuntimeError, match="no service account"):
                KubeCluster(NAMESPACE)
        assert "Failed to initialize Kubernetes client" in caplog.text


class TestKubeCalls:
    """Primitives map onto the right API calls."""

    @pytest.mark.asyncio
    async def test_list_machines_by_selector(self, kube):
        kube.custom.list_namespaced_custom_object.return_value = {"items": [
            {"metadata": {"name": "workers-v1-0", "labels": {"name": "workers", "node": "n1"}}},
        ]}

        machines = await kube.list_machines({"name": "workers", "machine-template-hash": "v1"})

        assert [m.name for m in machines] == ["workers-v1-0"]
        assert machines[0].node_name == "n1"
        kube.custom.list_namespaced_custom_object.assert_called_once_with(
            API_GROUP, "v1alpha1", NAMESPACE, "machines", label_selector="machine-template-hash=v1,name=workers")

    @pytest.mark.asyncio
    async def test_list_and_get_nodes(self, kube):
        node = {"metadata": {"name": "n1", "labels": {"a": "b"}}, "spec": {"unschedulable": True}}
        kube.core.list_node.return_value = SimpleNamespace(items=[node])
        kube.core.read_node.return_value = node

        listed = await kube.list_nodes({"a": "b"})
        fetched = await kube.get_node("n1")

        assert listed[0].name == "n1"
        assert fetched.unschedulable is True
        kube.core.list_node.assert_called_once_with(label_selector="a=b")
        kube.core.read_node.assert_called_once_with("n1")

    @pytest.mark.asyncio
    async def test_patch_machine_goes_to_its_namespace(self, kube):
        patch_body = {"metadata": {"uid": "m-1", "labels": {"x": None}}}

        await kube.patch_machine("other-ns", "workers-v1-0", patch_body)

        kube.custom.patch_namespaced_custom_object.assert_called_once_with(
            API_GROUP, "v1alpha1", "other-ns", "machines", "workers-v1-0", patch_body)

    @pytest.mark.asyncio
    async def test_patch_node(self, kube):
        await kube.patch_node("n1", {"spec": {"unschedulable": False}})
        kube.core.patch_node.assert_called_once_with("n1", {"spec": {"unschedulable": False}})

    @pytest.mark.asyncio
    async def test_scale_machine_set_patches_replicas(self, kube):
        kube.custom.patch_namespaced_custom_object.return_value = machine_set_dict("workers-v1", 2)
        ms = MachineSet.from_dict(machine_set_dict("workers-v1", 3))

        scaled, updated = await kube.scale_machine_set(ms, 2, MachineDeployment(name="workers", replicas=3))

        assert scaled is True
        assert updated.replicas == 2
        kube.custom.patch_namespaced_custom_object.assert_called_once_with(
            API_GROUP, "v1alpha1", NAMESPACE, "machinesets", "workers-v1", {"spec": {"replicas": 2}})

    @pytest.mark.asyncio
    async def test_delete_machine_set(self, kube):
        await kube.delete_machine_set(MachineSet.from_dict(machine_set_dict("workers-v1", 0)))
        kube.custom.delete_namespaced_custom_object.assert_called_once_with(
            API_GROUP, "v1alpha1", NAMESPACE, "machinesets", "workers-v1")

    @pytest.mark.asyncio
    async def test_status_goes_to_status_subresource(self, kube):
        deployment = MachineDeployment(name="workers", replicas=3)
        status = DeploymentStatus(replicas=3, updated_replicas=1, available_replicas=2, observed_generation=4)

        await kube.update_deployment_status(deployment, status)

        kube.custom.patch_namespaced_custom_object_status.assert_called_once_with(
            API_GROUP, "v1alpha1", NAMESPACE, "machinedeployments", "workers", {"status": {
                "replicas": 3, "updatedReplicas": 1, "availableReplicas": 2, "observedGeneration": 4,
            }})
        kube.custom.patch_namespaced_custom_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_list_machine_sets_keeps_controlled_ones(self, kube):
        kube.custom.list_namespaced_custom_object.return_value = {"items": [
            machine_set_dict("workers-v1", 3),
            machine_set_dict("workers-v2", 0),
            machine_set_dict("other-v1", 1, owner_uid="md-other"),
            machine_set_dict("adopted", 1, controller=False),
        ]}

        owned = await kube.list_machine_sets(MachineDeployment(name="workers", replicas=3, uid="md-workers"))

        assert [ms.name for ms in owned] == ["workers-v1", "workers-v2"]


class TestKubeErrors:
    """HTTP errors from the API server."""

    @pytest.mark.asyncio
    async def test_missing_node_is_not_found(self, kube):
        kube.core.read_node.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(NotFoundError) as exc_info:
            await kube.get_node("gone")
        assert exc_info.value.name == "gone"
        assert isinstance(exc_info.value.__cause__, ApiException)

    @pytest.mark.asyncio
    async def test_missing_machine_set_is_not_found(self, kube):
        kube.custom.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(NotFoundError):
            await kube.get_machine_set(NAMESPACE, "workers-v0")

    @pytest.mark.asyncio
    async def test_other_errors_pass_through_after_logging(self, kube, caplog):
        error = ApiException(status=500, reason="Internal Server Error")
        kube.core.read_node.side_effect = error

        with pytest.raises(ApiException) as exc_info:
            await kube.get_node("n1")

        assert exc_info.value is error
        assert "Failed to get node n1: 500 Internal Server Error" in caplog.text

    @pytest.mark.asyncio
    async def test_conflict_on_patch_is_not_translated(self, kube):
        error = ApiException(status=409, reason="Conflict")
        kube.custom.patch_namespaced_custom_object.side_effect = error

        with pytest.raises(ApiException) as exc_info:
            await kube.patch_machine(NAMESPACE, "workers-v1-0", {"metadata": {"uid": "stale"}})
        assert exc_info.value.status == 409
