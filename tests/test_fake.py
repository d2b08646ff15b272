import pytest
from inplace_rollout.errors import ClusterError, NotFoundError
from inplace_rollout.failure import FailureInjector
from inplace_rollout.fake import FakeUpdateAgent, InMemoryCluster, apply_merge_patch
from inplace_rollout.models import (
    LABEL_CANDIDATE_FOR_UPDATE, LABEL_SELECTED_FOR_UPDATE, LABEL_UPDATE_SUCCESSFUL, Machine, Node,
)
from conftest import select_machine, set_node_labels, total_replicas


class TestMergePatch:

    def test_nested_merge_and_delete(self):
        target = {"metadata": {"labels": {"a": "1", "b": "2"}}, "spec": {"replicas": 1}}
        apply_merge_patch(target, {"metadata": {"labels": {"a": None, "c": "3"}}, "spec": {"replicas": 2}})
        assert target == {"metadata": {"labels": {"b": "2", "c": "3"}}, "spec": {"replicas": 2}}

    def test_lists_are_replaced(self):
        target = {"spec": {"taints": [{"key": "a"}, {"key": "b"}]}}
        apply_merge_patch(target, {"spec": {"taints": [{"key": "b"}]}})
        assert target == {"spec": {"taints": [{"key": "b"}]}}


class TestFailureInjector:

    def test_fails_first_attempts_only(self):
        injector = FailureInjector(fail_attempts={("patch_node", "n1"): 2})
        results = [injector.should_fail("patch_node", "n1") for _ in range(3)]
        assert results == [True, True, False]
        assert injector.should_fail("patch_node", "n2") is False

    def test_wildcard_name(self):
        injector = FailureInjector(fail_attempts={("get_node", "*"): 1})
        assert injector.should_fail("get_node", "n1") is True
        assert injector.should_fail("get_node", "n2") is False


class TestInMemoryCluster:

    @pytest.mark.asyncio
    async def test_reads_hand_out_copies(self, make_cluster):
        cluster = make_cluster(desired=1, old=(("v1", 1, 1),))
        machine = (await cluster.list_machines({}))[0]
        machine.labels["x"] = "y"
        assert "x" not in cluster.machine("workers-v1-0").labels

    @pytest.mark.asyncio
    async def test_uid_precondition(self, make_cluster):
        cluster = make_cluster(desired=1, old=(("v1", 1, 1),))

        await cluster.patch_machine("default", "workers-v1-0", {"metadata": {"uid": "m-v1-0", "labels": {"x": "y"}}})
        assert cluster.machine("workers-v1-0").labels["x"] == "y"
        assert cluster.machine("workers-v1-0").uid == "m-v1-0"

        with pytest.raises(ClusterError, match="uid precondition failed"):
            await cluster.patch_machine("default", "workers-v1-0", {"metadata": {"uid": "other"}})

    @pytest.mark.asyncio
    async def test_missing_objects(self, make_cluster):
        cluster = make_cluster(desired=1)
        with pytest.raises(NotFoundError):
            await cluster.get_node("nope")
        with pytest.raises(NotFoundError):
            await cluster.get_machine_set("default", "nope")
        with pytest.raises(NotFoundError):
            await cluster.patch_node("nope", {})

    @pytest.mark.asyncio
    async def test_injected_failure_records_nothing(self, make_cluster):
        injector = FailureInjector(fail_attempts={("patch_node", "node-v1-0"): 1})
        cluster = make_cluster(desired=1, old=(("v1", 1, 1),), failure_injector=injector)
        with pytest.raises(ClusterError, match="injected failure"):
            await cluster.patch_node("node-v1-0", {"spec": {"unschedulable": True}})
        assert cluster.mutations == []
        assert cluster.node("node-v1-0").unschedulable is False

    def test_refresh_status_counts_schedulable_nodes(self, make_cluster):
        cluster = make_cluster(desired=3, old=(("v1", 3, 0),))
        cluster.nodes["node-v1-1"].unschedulable = True
        del cluster.nodes["node-v1-2"]
        cluster.refresh_status()
        assert cluster.machine_set("workers-v1").available_replicas == 1

    def test_state_survives_a_round_trip(self, make_cluster):
        cluster = make_cluster(desired=2, old=(("v1", 2, 2),))
        restored = InMemoryCluster.from_state(cluster.to_state())
        assert restored.to_state() == cluster.to_state()
        assert restored.machine_set("workers-v1").creation_timestamp == cluster.machine_set("workers-v1").creation_timestamp

    @pytest.mark.parametrize("desired", [1, 3, 6])
    def test_default_fleet_holds_desired_replicas(self, make_cluster, desired):
        cluster = make_cluster(desired=desired)
        assert cluster.machine_set("workers-v1").replicas == desired
        assert len(cluster.machines) == desired
        assert total_replicas(cluster) == desired

    def test_uids_assigned_when_missing(self):
        cluster = InMemoryCluster(machines=[Machine(name="a"), Machine(name="b")])
        assert cluster.machine("a").uid
        assert cluster.machine("a").uid != cluster.machine("b").uid


class TestFakeUpdateAgent:

    @pytest.mark.asyncio
    async def test_drains_then_reports_success(self, make_cluster):
        cluster = make_cluster(desired=2, old=(("v1", 2, 2),))
        select_machine(cluster, "v1", 0)
        agent = FakeUpdateAgent(cluster)

        assert await agent.step() == 1
        node = cluster.node("node-v1-0")
        assert node.unschedulable is True
        assert node.labels[LABEL_SELECTED_FOR_UPDATE] == "true"
        assert LABEL_UPDATE_SUCCESSFUL not in node.labels

        assert await agent.step() == 1
        assert cluster.node("node-v1-0").labels[LABEL_UPDATE_SUCCESSFUL] == "true"
        assert await agent.step() == 0
        assert cluster.node("node-v1-1").unschedulable is False

    @pytest.mark.asyncio
    async def test_operator_marks_one_batch_at_a_time(self, make_cluster):
        cluster = make_cluster(desired=3, old=(("v1", 3, 3),))
        for i in range(3):
            set_node_labels(cluster, f"node-v1-{i}", LABEL_CANDIDATE_FOR_UPDATE)
        cluster.add_node(Node(name="unrelated"))
        agent = FakeUpdateAgent(cluster, operator_batch=2)

        assert await agent.step() == 2
        marked = [n for n in cluster.nodes.values() if LABEL_SELECTED_FOR_UPDATE in n.labels]
        assert [n.name for n in marked] == ["node-v1-0", "node-v1-1"]

        # both are still in flight
        assert await agent.step() == 0
