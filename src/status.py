"""
Status Resolver - Canonical instance status from cluster state.

Two sources feed an instance's status:

* the replica counts of its generated workloads (the Redis StatefulSet and
  the Sentinel Deployment), and
* the status block of the RedisFailover resource itself, which may carry a
  scalar phase/state/status field or a Kubernetes-style conditions list.

Workload status wins once workloads exist; the resource's own status is only
consulted before that. Every function in this module is pure.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from document import Document

RUNNING = "Running"
PROVISIONING = "Provisioning"
FAILED = "Failed"
UNKNOWN = "Unknown"
PENDING = "Pending"

SCALAR_STATUS_FIELDS = ("phase", "state", "status")
CONDITION_PRIORITY = ("Ready", "Available", "Reconciling", "Progressing")
READY_CONDITION_TYPES = frozenset({"Ready", "Available"})

_SYNONYMS: Dict[str, str] = {
    "Running": RUNNING,
    "Ready": RUNNING,
    "Available": RUNNING,
    "Healthy": RUNNING,
    "Provisioning": PROVISIONING,
    "Pending": PROVISIONING,
    "Reconciling": PROVISIONING,
    "Progressing": PROVISIONING,
    "Creating": PROVISIONING,
    "Error": FAILED,
    "Failed": FAILED,
    "Degraded": FAILED,
}


@dataclass(frozen=True)
class WorkloadState:
    """Observed replica counts of one workload."""

    replicas: int = 0
    ready_replicas: int = 0

    @classmethod
    def from_document(cls, doc: Document) -> "WorkloadState":
        return cls(
            replicas=doc.get_int("status.replicas") or 0,
            ready_replicas=doc.get_int("status.readyReplicas") or 0,
        )


def normalize(token: str) -> str:
    """
    Map a status token onto Running, Provisioning or Failed.

    Unrecognized tokens are returned unchanged.
    """
    return _SYNONYMS.get(token, token)


def workload_status(replicas: int, ready_replicas: int, expected_replicas: int) -> str:
    """Status of a single workload from its replica counts."""
    expected = expected_replicas if expected_replicas > 0 else replicas
    if replicas == 0:
        return PROVISIONING
    if ready_replicas >= expected:
        return RUNNING
    return PROVISIONING


def workload_status_of(state: Optional[WorkloadState], expected_replicas: int) -> str:
    """Like workload_status, but a missing workload resolves to ""."""
    if state is None:
        return ""
    return workload_status(state.replicas, state.ready_replicas, expected_replicas)


def instance_live_status(role_a: str, role_b: str) -> str:
    """Combine the statuses of the two workload roles."""
    if not role_a and not role_b:
        return PROVISIONING
    if role_a == FAILED or role_b == FAILED:
        return FAILED
    if role_a == RUNNING and role_b == RUNNING:
        return RUNNING
    return PROVISIONING


def _status_from_conditions(conditions: list) -> str:
    for wanted in CONDITION_PRIORITY:
        for cond in conditions:
            if not isinstance(cond, dict) or cond.get("type") != wanted:
                continue
            cond_status = cond.get("status")
            reason = cond.get("reason")
            reason = reason if isinstance(reason, str) else ""

            if cond_status == "True":
                if wanted in READY_CONDITION_TYPES:
                    return RUNNING
                return normalize(wanted)
            if cond_status == "False":
                if reason:
                    return normalize(reason)
                if wanted in READY_CONDITION_TYPES:
                    return PENDING
                return normalize(wanted)

    first = conditions[0]
    if isinstance(first, dict):
        reason = first.get("reason")
        if isinstance(reason, str) and reason:
            return normalize(reason)
        cond_type = first.get("type")
        if isinstance(cond_type, str) and cond_type:
            return normalize(cond_type)
    return ""


def status_from_resource_body(resource: Any) -> str:
    """
    Status reported by the resource's own status block.

    Scalar fields take precedence over conditions; within conditions the
    type priority decides, not the list order.
    """
    doc = resource if isinstance(resource, Document) else Document(resource)
    if doc.get_map("status") is None:
        return UNKNOWN

    for field_name in SCALAR_STATUS_FIELDS:
        value = doc.get_str(f"status.{field_name}")
        if value:
            return normalize(value)

    conditions = doc.get_list("status.conditions")
    if conditions:
        resolved = _status_from_conditions(conditions)
        if resolved:
            return resolved

    return UNKNOWN


def resolve_instance_status(body_status: str, live_status: str) -> str:
    """
    Pick the status to record for an instance.

    live_status is the combined workload status, or "" when no workload
    exists yet.
    """
    if live_status:
        return live_status
    if body_status in ("", UNKNOWN, "-"):
        return PROVISIONING
    return body_status
