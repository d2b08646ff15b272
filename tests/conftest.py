from datetime import datetime, timedelta, timezone

import pytest

from inplace_rollout.fake import InMemoryCluster
from inplace_rollout.models import (
    LABEL_CANDIDATE_FOR_UPDATE, LABEL_SELECTED_FOR_UPDATE, LABEL_UPDATE_SUCCESSFUL,
    Machine, MachineDeployment, MachineSet, Node, OwnerReference, RolloutStrategy,
)

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def template(version):
    return {"metadata": {"labels": {"name": "workers", "machine-template-hash": version}},
            "spec": {"class": {"name": f"workers-{version}"}}}


def selector(version):
    return {"name": "workers", "machine-template-hash": version}


def build_cluster(desired=5, max_unavailable=1, max_surge=0, old=None, new=(0, 0),
                  orchestration="Auto", failure_injector=None):
    """A deployment rolling onto "v2" with one machine and node per old replica.

    ``old`` lists (version, replicas, available) per old machine set, oldest first,
    and defaults to one "v1" set holding every desired replica;
    ``new`` is (replicas, available) of the "v2" set.
    """
    if old is None:
        old = (("v1", desired, desired),)
    deployment = MachineDeployment(
        name="workers", replicas=desired, uid="md-workers",
        strategy=RolloutStrategy(max_surge=max_surge, max_unavailable=max_unavailable,
                                 orchestration=orchestration),
        template=template("v2"),
    )
    cluster = InMemoryCluster(deployments=[deployment], failure_injector=failure_injector)
    for age, (version, replicas, available) in enumerate(old):
        ms = MachineSet(name=f"workers-{version}", uid=f"ms-{version}", selector=selector(version),
                        replicas=replicas, available_replicas=available, template=template(version),
                        creation_timestamp=BASE_TIME + timedelta(days=age))
        cluster.add_machine_set(ms)
        for i in range(replicas):
            node_name = f"node-{version}-{i}"
            cluster.add_machine(Machine(
                name=f"workers-{version}-{i}", uid=f"m-{version}-{i}",
                labels={**selector(version), "node": node_name, "team": "infra"},
                owner_references=[OwnerReference(name=ms.name, uid=ms.uid)],
            ))
            cluster.add_node(Node(name=node_name))
    cluster.add_machine_set(MachineSet(
        name="workers-v2", uid="ms-v2", selector=selector("v2"), replicas=new[0], available_replicas=new[1],
        template=template("v2"), creation_timestamp=BASE_TIME + timedelta(days=len(old)),
    ))
    return cluster


def set_machine_labels(cluster, name, *keys):
    for key in keys:
        cluster.machines[name].labels[key] = "true"


def set_node_labels(cluster, name, *keys):
    for key in keys:
        cluster.nodes[name].labels[key] = "true"


def select_machine(cluster, version, i):
    """Put machine i of ``version`` into the selected-for-update state"""
    set_machine_labels(cluster, f"workers-{version}-{i}", LABEL_CANDIDATE_FOR_UPDATE, LABEL_SELECTED_FOR_UPDATE)
    set_node_labels(cluster, f"node-{version}-{i}", LABEL_CANDIDATE_FOR_UPDATE)


def finish_update(cluster, version, i):
    """What the update agent reports once node i of ``version`` is updated"""
    set_node_labels(cluster, f"node-{version}-{i}", LABEL_SELECTED_FOR_UPDATE, LABEL_UPDATE_SUCCESSFUL)
    cluster.nodes[f"node-{version}-{i}"].unschedulable = True


def total_replicas(cluster):
    return sum(ms.replicas for ms in cluster.machine_sets.values())


@pytest.fixture
def make_cluster():
    return build_cluster
