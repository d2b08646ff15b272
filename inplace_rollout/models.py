import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Dict, List, Optional

API_GROUP = "machine.sapcloud.io"
API_VERSION = f"{API_GROUP}/v1alpha1"

# Label keys shared with the update agent, the scale executor and the autoscaler
LABEL_CANDIDATE_FOR_UPDATE = "node.machine.sapcloud.io/candidate-for-update"
LABEL_SELECTED_FOR_UPDATE = "node.machine.sapcloud.io/selected-for-update"
LABEL_UPDATE_SUCCESSFUL = "node.machine.sapcloud.io/update-successful"
LABEL_MACHINE_SET_SKIP_UPDATE = "node.machine.sapcloud.io/machine-set-skip-update"
NODE_LABEL_KEY = "node"
TEMPLATE_HASH_LABEL_KEY = "machine-template-hash"

ANNOTATION_SCALE_DOWN_DISABLED = "cluster-autoscaler.kubernetes.io/scale-down-disabled"
ANNOTATION_SCALE_DOWN_DISABLED_BY_MCM = "cluster-autoscaler.kubernetes.io/scale-down-disabled-by-mcm"
AUTOSCALER_SCALE_DOWN_ANNOTATIONS = {
    ANNOTATION_SCALE_DOWN_DISABLED: "true",
    ANNOTATION_SCALE_DOWN_DISABLED_BY_MCM: "true",
}

PREFER_NO_SCHEDULE_KEY = "deployment.machine.sapcloud.io/prefer-no-schedule"

ORCHESTRATION_AUTO = "Auto"
ORCHESTRATION_MANUAL = "Manual"


class UpdateState(IntEnum):
    """Where a machine is in its in-place update. Values only ever increase."""
    NONE = 0
    CANDIDATE = 1
    SELECTED = 2
    SUCCESSFUL = 3


def _parse_time(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _format_time(value):
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


@dataclass
class OwnerReference:
    name: str
    uid: str
    kind: str = "MachineSet"
    api_version: str = API_VERSION
    controller: bool = True
    block_owner_deletion: bool = True

    @classmethod
    def from_dict(cls, data):
        return cls(
            name=data["name"],
            uid=data.get("uid", ""),
            kind=data.get("kind", "MachineSet"),
            api_version=data.get("apiVersion", API_VERSION),
            controller=data.get("controller", False),
            block_owner_deletion=data.get("blockOwnerDeletion", False),
        )

    def to_dict(self):
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }


@dataclass
class Taint:
    key: str
    value: str = ""
    effect: str = "PreferNoSchedule"

    @classmethod
    def from_dict(cls, data):
        return cls(data["key"], data.get("value", ""), data.get("effect", "PreferNoSchedule"))

    def to_dict(self):
        return {"key": self.key, "value": self.value, "effect": self.effect}


PREFER_NO_SCHEDULE_TAINT = Taint(PREFER_NO_SCHEDULE_KEY, "True", "PreferNoSchedule")


@dataclass
class RolloutStrategy:
    """In-place update parameters. Surge and unavailable take an int or a percentage string like "25%"."""
    max_surge: object = 1
    max_unavailable: object = 0
    orchestration: str = ORCHESTRATION_AUTO

    @classmethod
    def from_dict(cls, data):
        params = (data or {}).get("inPlaceUpdate", {})
        return cls(
            max_surge=params.get("maxSurge", 1),
            max_unavailable=params.get("maxUnavailable", 0),
            orchestration=params.get("orchestrationType", ORCHESTRATION_AUTO),
        )

    def to_dict(self):
        return {
            "type": "InPlaceUpdate",
            "inPlaceUpdate": {
                "maxSurge": self.max_surge,
                "maxUnavailable": self.max_unavailable,
                "orchestrationType": self.orchestration,
            },
        }


@dataclass
class DeploymentStatus:
    replicas: int = 0
    updated_replicas: int = 0
    available_replicas: int = 0
    observed_generation: int = 0

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            replicas=data.get("replicas", 0),
            updated_replicas=data.get("updatedReplicas", 0),
            available_replicas=data.get("availableReplicas", 0),
            observed_generation=data.get("observedGeneration", 0),
        )

    def to_dict(self):
        return {
            "replicas": self.replicas,
            "updatedReplicas": self.updated_replicas,
            "availableReplicas": self.available_replicas,
            "observedGeneration": self.observed_generation,
        }


@dataclass
class MachineDeployment:
    name: str
    replicas: int
    namespace: str = "default"
    uid: str = ""
    strategy: RolloutStrategy = field(default_factory=RolloutStrategy)
    template: Dict = field(default_factory=dict)
    generation: int = 1
    status: DeploymentStatus = field(default_factory=DeploymentStatus)

    @property
    def is_manual(self):
        return self.strategy.orchestration == ORCHESTRATION_MANUAL

    @classmethod
    def from_dict(cls, data):
        meta = data.get("metadata", {})
        spec = data.get("spec", {})
        return cls(
            name=meta["name"],
            namespace=meta.get("namespace", "default"),
            uid=meta.get("uid", ""),
            replicas=spec.get("replicas", 0),
            strategy=RolloutStrategy.from_dict(spec.get("strategy")),
            template=spec.get("template", {}),
            generation=meta.get("generation", 1),
            status=DeploymentStatus.from_dict(data.get("status")),
        )

    def to_dict(self):
        return {
            "metadata": {"name": self.name, "namespace": self.namespace, "uid": self.uid,
                         "generation": self.generation},
            "spec": {"replicas": self.replicas, "strategy": self.strategy.to_dict(),
                     "template": self.template},
            "status": self.status.to_dict(),
        }


@dataclass
class MachineSet:
    """One generation of machines, claimed through its selector"""
    name: str
    selector: Dict[str, str]
    replicas: int
    available_replicas: int = 0
    namespace: str = "default"
    uid: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    template: Dict = field(default_factory=dict)
    creation_timestamp: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data):
        meta = data.get("metadata", {})
        spec = data.get("spec", {})
        return cls(
            name=meta["name"],
            namespace=meta.get("namespace", "default"),
            uid=meta.get("uid", ""),
            labels=meta.get("labels") or {},
            creation_timestamp=_parse_time(meta.get("creationTimestamp")),
            selector=spec.get("selector", {}).get("matchLabels") or {},
            replicas=spec.get("replicas", 0),
            template=spec.get("template", {}),
            available_replicas=(data.get("status") or {}).get("availableReplicas", 0),
        )

    def to_dict(self):
        return {
            "metadata": {"name": self.name, "namespace": self.namespace, "uid": self.uid,
                         "labels": dict(self.labels),
                         "creationTimestamp": _format_time(self.creation_timestamp)},
            "spec": {"replicas": self.replicas, "selector": {"matchLabels": dict(self.selector)},
                     "template": self.template},
            "status": {"availableReplicas": self.available_replicas},
        }


@dataclass
class Machine:
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    namespace: str = "default"
    uid: str = ""
    owner_references: List[OwnerReference] = field(default_factory=list)

    @property
    def node_name(self):
        return self.labels.get(NODE_LABEL_KEY, "")

    @property
    def controller_ref(self):
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    def matches(self, selector):
        return all(self.labels.get(k) == v for k, v in selector.items())

    @classmethod
    def from_dict(cls, data):
        meta = data.get("metadata", {})
        return cls(
            name=meta["name"],
            namespace=meta.get("namespace", "default"),
            uid=meta.get("uid", ""),
            labels=meta.get("labels") or {},
            owner_references=[OwnerReference.from_dict(r) for r in meta.get("ownerReferences") or []],
        )

    def to_dict(self):
        return {
            "metadata": {"name": self.name, "namespace": self.namespace, "uid": self.uid,
                         "labels": dict(self.labels),
                         "ownerReferences": [r.to_dict() for r in self.owner_references]},
        }


@dataclass
class Node:
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    unschedulable: bool = False
    taints: List[Taint] = field(default_factory=list)

    def matches(self, selector):
        return all(self.labels.get(k) == v for k, v in selector.items())

    def has_taint(self, taint):
        return any(t.key == taint.key and t.effect == taint.effect for t in self.taints)

    @classmethod
    def from_dict(cls, data):
        meta = data.get("metadata", {})
        spec = data.get("spec") or {}
        return cls(
            name=meta["name"],
            labels=meta.get("labels") or {},
            annotations=meta.get("annotations") or {},
            unschedulable=bool(spec.get("unschedulable", False)),
            taints=[Taint.from_dict(t) for t in spec.get("taints") or []],
        )

    def to_dict(self):
        return {
            "metadata": {"name": self.name, "labels": dict(self.labels),
                         "annotations": dict(self.annotations)},
            "spec": {"unschedulable": self.unschedulable,
                     "taints": [t.to_dict() for t in self.taints]},
        }


def equal_ignore_hash(template1, template2):
    """Compare two machine templates, ignoring the template-hash label"""
    t1 = copy.deepcopy(template1 or {})
    t2 = copy.deepcopy(template2 or {})
    for t in (t1, t2):
        t.get("metadata", {}).get("labels", {}).pop(TEMPLATE_HASH_LABEL_KEY, None)
    return t1 == t2


@dataclass
class ControllerConfig:
    """Controller-wide switches"""
    autoscaler_scale_down_annotation_during_rollout: bool = True  # keep the autoscaler off nodes mid-rollout
    taint: Taint = field(default_factory=lambda: copy.copy(PREFER_NO_SCHEDULE_TAINT))


@dataclass
class ReconcileResult:
    """What one reconciliation pass did"""
    progress: str = "idle"  # transferred, selected, completed or idle
    scaled: bool = False
    selected: int = 0  # machines newly labeled selected-for-update
    completed: bool = False
    history: list = field(default_factory=list)
