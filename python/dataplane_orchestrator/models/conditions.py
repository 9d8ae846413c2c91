"""
dataplane_orchestrator/models/conditions.py

Condition vocabulary and the ordered condition map carried on every status.

A ConditionSet is keyed by condition type and always iterated in sorted type
order so aggregate readiness and serialization are reproducible. Setting a
condition whose status and reason are unchanged keeps its previous
lastTransitionTime.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import Field

from dataplane_orchestrator.models.meta import CamelModel, utcnow

# Condition types
READY = "Ready"
SETUP_READY = "SetupReady"
INPUT_READY = "InputReady"
DEPLOYMENT_READY = "DeploymentReady"
SERVICE_ACCOUNT_READY = "ServiceAccountReady"
NODESET_IP_RESERVATION_READY = "NodeSetIPReservationReady"
NODESET_DNS_DATA_READY = "NodeSetDNSDataReady"
NODESET_BAREMETAL_PROVISION_READY = "NodeSetBaremetalProvisionReady"
NODESET_DEPLOYMENT_READY = "NodeSetDeploymentReady"

# Reasons
INIT_REASON = "Init"
READY_REASON = "Ready"
REQUESTED_REASON = "Requested"
ERROR_REASON = "Error"
BACKOFF_LIMIT_EXCEEDED_REASON = "BackoffLimitExceeded"

# Messages
READY_MESSAGE = "Setup complete"
INIT_MESSAGE = "%s not started"
INPUT_READY_MESSAGE = "Input data complete"
INPUT_READY_WAITING_MESSAGE = "Waiting for input %s, not yet ready"
INPUT_READY_ERROR_MESSAGE = "Input data error occurred %s"
NODESET_READY_MESSAGE = "NodeSet Ready"
TLS_INPUT_ERROR_MESSAGE = "TLSInput error occured in TLS sources %s"
SERVICE_ERROR_MESSAGE = "Service error occurred %s"
DEPLOYMENT_READY_INIT_MESSAGE = "Deployment not started"
DEPLOYMENT_READY_MESSAGE = "Deployment completed"
DEPLOYMENT_READY_RUNNING_MESSAGE = "Deployment in progress"
DEPLOYMENT_READY_ERROR_MESSAGE = "Deployment error occurred %s"
SERVICE_ACCOUNT_READY_MESSAGE = "ServiceAccount created"
SERVICE_ACCOUNT_ERROR_MESSAGE = "ServiceAccount error occurred %s"
SETUP_READY_WAITING_MESSAGE = "Setup not yet complete"
SETUP_READY_ERROR_MESSAGE = "DataPlaneNodeSet error occurred %s"
IP_RESERVATION_READY_MESSAGE = "NodeSetIPReservationReady ready"
IP_RESERVATION_WAITING_MESSAGE = "NodeSetIPReservationReady not yet ready"
IP_RESERVATION_ERROR_MESSAGE = "NodeSetIPReservationReady error occurred %s"
DNS_DATA_READY_MESSAGE = "NodeSetDNSDataReady ready"
DNS_DATA_WAITING_MESSAGE = "NodeSetDNSDataReady not yet ready"
DNS_DATA_ERROR_MESSAGE = "NodeSetDNSDataReady error occurred %s"
DNS_DATA_MULTIPLE_DNSMASQ_MESSAGE = (
    "NodeSet DNSData error occurred. Multiple DNSMasq resources exist."
)
BAREMETAL_READY_MESSAGE = "NodeSetBaremetalProvisionReady ready"
BAREMETAL_WAITING_MESSAGE = "NodeSetBaremetalProvisionReady not yet ready"
BAREMETAL_ERROR_MESSAGE = "NodeSetBaremetalProvisionReady error occurred %s"
SERVICE_DEPLOYMENT_READY_MESSAGE = "Deployment ready for %s service"
SERVICE_DEPLOYMENT_WAITING_MESSAGE = "Deployment not yet ready for %s service"
SERVICE_DEPLOYMENT_ERROR_MESSAGE = "Deployment error occurred in %s service"
NODESET_DEPLOYMENT_READY_MESSAGE = "Deployment ready for NodeSet"
NODESET_DEPLOYMENT_WAITING_MESSAGE = "Deployment not yet ready for NodeSet"
NODESET_DEPLOYMENT_ERROR_MESSAGE = "Deployment error occurred %s for NodeSet"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Severity(str, Enum):
    NONE = ""
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


class Condition(CamelModel):
    """One typed status record."""

    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    severity: Severity = Severity.NONE
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utcnow)

    def same_state(self, other: "Condition") -> bool:
        return self.status == other.status and self.reason == other.reason

    def rank(self) -> int:
        """Lower is worse: False/Error, False/Warning, False/Info, Unknown, True."""
        if self.status == ConditionStatus.FALSE:
            if self.severity == Severity.ERROR:
                return 0
            if self.severity == Severity.WARNING:
                return 1
            return 2
        if self.status == ConditionStatus.UNKNOWN:
            return 3
        return 4


def unknown_condition(
    ctype: str, reason: str = INIT_REASON, message: Optional[str] = None
) -> Condition:
    """Build an Unknown condition, defaulting to the 'not started' message."""
    return Condition(
        type=ctype,
        status=ConditionStatus.UNKNOWN,
        reason=reason,
        message=message if message is not None else INIT_MESSAGE % ctype,
    )


class ConditionSet(CamelModel):
    """Small ordered map of conditions keyed by type."""

    items: Dict[str, Condition] = Field(default_factory=dict)

    def init(self, conditions: Iterable[Condition]) -> None:
        """Reset to Ready=Unknown plus the given conditions."""
        self.items = {READY: unknown_condition(READY)}
        for cond in conditions:
            self.items[cond.type] = cond

    def sorted(self) -> List[Condition]:
        return [self.items[k] for k in sorted(self.items)]

    def types(self) -> List[str]:
        return sorted(self.items)

    def get(self, ctype: str) -> Optional[Condition]:
        return self.items.get(ctype)

    def set(self, cond: Condition) -> None:
        previous = self.items.get(cond.type)
        if previous is not None and previous.same_state(cond):
            cond = cond.model_copy(
                update={"last_transition_time": previous.last_transition_time}
            )
        self.items[cond.type] = cond

    def remove(self, ctype: str) -> None:
        self.items.pop(ctype, None)

    def mark_true(self, ctype: str, message: str) -> None:
        self.set(
            Condition(
                type=ctype,
                status=ConditionStatus.TRUE,
                reason=READY_REASON,
                message=message,
            )
        )

    def mark_false(
        self, ctype: str, reason: str, severity: Severity, message: str
    ) -> None:
        self.set(
            Condition(
                type=ctype,
                status=ConditionStatus.FALSE,
                reason=reason,
                severity=severity,
                message=message,
            )
        )

    def _status_is(self, ctype: str, status: ConditionStatus) -> bool:
        cond = self.items.get(ctype)
        return cond is not None and cond.status == status

    def is_true(self, ctype: str) -> bool:
        return self._status_is(ctype, ConditionStatus.TRUE)

    def is_false(self, ctype: str) -> bool:
        return self._status_is(ctype, ConditionStatus.FALSE)

    def is_unknown(self, ctype: str) -> bool:
        cond = self.items.get(ctype)
        return cond is None or cond.status == ConditionStatus.UNKNOWN

    def is_error(self, ctype: str) -> bool:
        cond = self.items.get(ctype)
        return (
            cond is not None
            and cond.status == ConditionStatus.FALSE
            and cond.severity == Severity.ERROR
        )

    def all_sub_conditions_true(self) -> bool:
        return all(
            c.status == ConditionStatus.TRUE
            for t, c in self.items.items()
            if t != READY
        )

    def mirror(self, target: str = READY) -> Condition:
        """
        Summarize every other condition into one condition of type `target`.

        Returns:
            Condition: True with the ready message when every sub-condition is
            True, otherwise a copy of the worst sub-condition (ties broken by
            type name).
        """
        subs = [c for c in self.sorted() if c.type != target]
        if not subs or all(c.status == ConditionStatus.TRUE for c in subs):
            return Condition(
                type=target,
                status=ConditionStatus.TRUE,
                reason=READY_REASON,
                message=READY_MESSAGE,
            )
        worst = min(subs, key=lambda c: (c.rank(), c.type))
        return Condition(
            type=target,
            status=worst.status,
            reason=worst.reason,
            severity=worst.severity,
            message=worst.message,
        )

    def summarize(self, ready_message: str = READY_MESSAGE) -> None:
        """Recompute Ready from the other conditions."""
        if self.all_sub_conditions_true():
            self.mark_true(READY, ready_message)
        else:
            self.set(self.mirror(READY))

    def restore_last_transition_times(self, previous: "ConditionSet") -> None:
        """Carry over transition times of conditions whose state did not change."""
        for ctype, cond in self.items.items():
            old = previous.get(ctype)
            if old is not None and old.same_state(cond):
                cond.last_transition_time = old.last_transition_time
