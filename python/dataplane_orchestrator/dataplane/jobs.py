"""
dataplane_orchestrator/dataplane/jobs.py

Job execution facade: creates and polls automation runs (AnsibleExecution
records) on behalf of the deployment orchestrator.

Exactly one run exists per (service, deployment, nodeset), or per
(service, deployment) when the service runs against every NodeSet at once.
Runs are found again through their labels, never through their names, so
that a renamed or truncated run is still picked up.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel

from dataplane_orchestrator.errors import JobConsistencyError
from dataplane_orchestrator.models.conditions import (
    BACKOFF_LIMIT_EXCEEDED_REASON,
    ERROR_REASON,
)
from dataplane_orchestrator.models.deployment import Deployment
from dataplane_orchestrator.models.external import (
    AnsibleEESpec,
    AnsibleExecution,
    AnsibleExecutionSpec,
    KeyToPath,
    SecretVolumeSource,
    VolMounts,
    Volume,
    VolumeMount,
)
from dataplane_orchestrator.models.meta import ObjectMeta
from dataplane_orchestrator.models.nodeset import NodeSet
from dataplane_orchestrator.models.service import Service
from dataplane_orchestrator.store.base import StateStore
from dataplane_orchestrator.utils.hashing import object_hash
from dataplane_orchestrator.utils.naming import truncate_label

logger = logging.getLogger(__name__)

SERVICE_LABEL = "openstackdataplaneservice"
DEPLOYMENT_LABEL = "openstackdataplanedeployment"
NODESET_LABEL = "openstackdataplanenodeset"

SERVICE_NAME_PREFIX_LENGTH = 53
SSH_PRIVATE_KEY = "ssh-privatekey"
INVENTORY_SECRET_KEY = "inventory"


class JobState(str, Enum):
    SUCCEEDED = "succeeded"
    WAITING = "waiting"
    FAILED = "failed"


class JobOutcome(BaseModel):
    """What polling one run tells the caller."""

    state: JobState
    name: str = ""
    reason: str = ""
    message: str = ""


def execution_name(service: Service, deployment_name: str, nodeset_name: str) -> str:
    """
    Name of the run for one target.

    The service name is clipped so the deployment name survives; the result is
    clamped to one DNS label.
    """
    name = f"{service.name[:SERVICE_NAME_PREFIX_LENGTH]}-{deployment_name}"
    if not service.is_global:
        name = f"{name}-{nodeset_name}"
    return truncate_label(name)


def execution_labels(
    service: Service, deployment_name: str, nodeset_name: str
) -> Dict[str, str]:
    """Dedup labels of a run; the NodeSet is left out for global services."""
    labels = {
        SERVICE_LABEL: service.name,
        DEPLOYMENT_LABEL: deployment_name,
    }
    if not service.is_global:
        labels[NODESET_LABEL] = nodeset_name
    return labels


async def get_ansible_execution(
    store: StateStore, namespace: str, labels: Dict[str, str]
) -> Optional[AnsibleExecution]:
    """
    Find the single run carrying `labels`.

    Raises:
        JobConsistencyError: If more than one run matches.
    """
    found = await store.list(AnsibleExecution, namespace=namespace, labels=labels)
    if len(found) > 1:
        raise JobConsistencyError(
            f"multiple AnsibleExecutions found with label {labels}"
        )
    return found[0] if found else None


def format_cmd_line(aee_spec: AnsibleEESpec) -> str:
    parts: List[str] = []
    if aee_spec.ansible_tags:
        parts.append(f"--tags {aee_spec.ansible_tags}")
    if aee_spec.ansible_limit:
        parts.append(f"--limit {aee_spec.ansible_limit}")
    if aee_spec.ansible_skip_tags:
        parts.append(f"--skip-tags {aee_spec.ansible_skip_tags}")
    return " ".join(parts)


def format_extra_vars(
    aee_spec: AnsibleEESpec,
    service: Service,
    nodeset_name: str,
    services_override: List[str],
) -> Dict[str, Any]:
    extra_vars: Dict[str, Any] = dict(aee_spec.extra_vars)
    extra_vars["edpm_override_hosts"] = "all" if service.is_global else nodeset_name
    extra_vars["edpm_service_type"] = service.service_type
    if services_override:
        extra_vars["edpm_services_override"] = list(services_override)
    return extra_vars


def ssh_key_mounts(
    service: Service, nodeset_name: str, ssh_key_secrets: Mapping[str, str]
) -> VolMounts:
    """SSH keys of every NodeSet for a global service, else only this NodeSet's."""
    mounts = VolMounts()
    for name in sorted(ssh_key_secrets):
        if not service.is_global and name != nodeset_name:
            continue
        volume_name = f"ssh-key-{name}"
        sub_path = f"ssh_key_{name}"
        mounts.volumes.append(
            Volume(
                name=volume_name,
                secret=SecretVolumeSource(
                    secret_name=ssh_key_secrets[name],
                    items=[KeyToPath(key=SSH_PRIVATE_KEY, path=sub_path)],
                ),
            )
        )
        mounts.mounts.append(
            VolumeMount(
                name=volume_name,
                mount_path=f"/runner/env/ssh_key/{sub_path}",
                sub_path=sub_path,
            )
        )
    return mounts


def inventory_mounts(
    service: Service, nodeset_name: str, inventory_secrets: Mapping[str, str]
) -> VolMounts:
    """
    Inventories a run needs.

    A global service gets every NodeSet's inventory as `inventory-<i>` in
    sorted NodeSet order; anything else gets its own NodeSet's inventory as
    `hosts`.
    """
    mounts = VolMounts()
    for index, name in enumerate(sorted(inventory_secrets)):
        if service.is_global:
            volume_name = f"inventory-{index}"
            mount_path = f"/runner/inventory/{volume_name}"
        elif name == nodeset_name:
            volume_name = "inventory"
            mount_path = "/runner/inventory/hosts"
        else:
            continue
        mounts.volumes.append(
            Volume(
                name=volume_name,
                secret=SecretVolumeSource(
                    secret_name=inventory_secrets[name],
                    items=[KeyToPath(key=INVENTORY_SECRET_KEY, path=volume_name)],
                ),
            )
        )
        mounts.mounts.append(
            VolumeMount(name=volume_name, mount_path=mount_path, sub_path=volume_name)
        )
    return mounts


def build_execution_spec(
    deployment: Deployment,
    service: Service,
    nodeset: NodeSet,
    aee_spec: AnsibleEESpec,
    ssh_key_secrets: Mapping[str, str],
    inventory_secrets: Mapping[str, str],
    name: str,
) -> AnsibleExecutionSpec:
    """Assemble the run spec for one (service, target)."""
    playbook = service.spec.playbook
    extra_mounts = list(aee_spec.extra_mounts)
    extra_mounts.append(ssh_key_mounts(service, nodeset.name, ssh_key_secrets))
    extra_mounts.append(inventory_mounts(service, nodeset.name, inventory_secrets))
    return AnsibleExecutionSpec(
        image=aee_spec.runner_image,
        args=["ansible-runner", "run", "/runner", "-p", playbook, "-i", name],
        cmd_line=format_cmd_line(aee_spec),
        extra_vars=format_extra_vars(
            aee_spec, service, nodeset.name, deployment.spec.services_override
        ),
        extra_mounts=extra_mounts,
        playbook=playbook,
        playbook_contents=service.spec.playbook_contents,
        role=service.spec.role,
        backoff_limit=deployment.spec.backoff_limit,
        preserve_jobs=deployment.spec.preserve_jobs,
        network_attachments=list(aee_spec.network_attachments),
        dns_config=aee_spec.dns_config,
        service_account_name=aee_spec.service_account_name,
        node_selector=dict(deployment.spec.ansible_job_node_selector),
    )


def poll(execution: AnsibleExecution) -> JobOutcome:
    """
    Judge one run.

    Returns:
        JobOutcome: SUCCEEDED once any attempt succeeded, FAILED once the
        failed attempts exceed the run's backoff limit (reason taken from the
        run's failure condition), WAITING otherwise.
    """
    status = execution.status
    if status.succeeded > 0:
        return JobOutcome(state=JobState.SUCCEEDED, name=execution.name)
    if status.failed > execution.spec.backoff_limit:
        cond = execution.status.failure_condition()
        reason = cond.reason if cond is not None and cond.reason else ERROR_REASON
        if reason == BACKOFF_LIMIT_EXCEEDED_REASON:
            message = (
                f"backoff limit reached for execution.name {execution.name} "
                f"execution.namespace {execution.namespace} "
                f"execution.condition.message: {cond.message if cond else ''}"
            )
        else:
            message = (
                f"execution.name {execution.name} "
                f"execution.namespace {execution.namespace} "
                f"failed pods: {status.failed}"
            )
        return JobOutcome(
            state=JobState.FAILED, name=execution.name, reason=reason, message=message
        )
    return JobOutcome(state=JobState.WAITING, name=execution.name)


class JobExecutionFacade(ABC):
    """Automation run collaborator."""

    @abstractmethod
    async def find(
        self, deployment: Deployment, service: Service, nodeset: NodeSet
    ) -> Optional[AnsibleExecution]:
        """
        The existing run for this target, if any.

        Raises:
            JobConsistencyError: If more than one run matches the target's labels.
        """
        pass

    @abstractmethod
    async def ensure(
        self,
        deployment: Deployment,
        service: Service,
        nodeset: NodeSet,
        aee_spec: AnsibleEESpec,
        ssh_key_secrets: Mapping[str, str],
        inventory_secrets: Mapping[str, str],
    ) -> AnsibleExecution:
        """
        Create the run for this target unless one exists already.

        The spec hash of the run is recorded in
        `deployment.status.ansible_ee_hashes`.
        """
        pass


class StoreJobExecutionFacade(JobExecutionFacade):
    """Runs are AnsibleExecution records picked up by the automation engine."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    async def find(
        self, deployment: Deployment, service: Service, nodeset: NodeSet
    ) -> Optional[AnsibleExecution]:
        labels = execution_labels(service, deployment.name, nodeset.name)
        return await get_ansible_execution(self.store, deployment.namespace, labels)

    async def ensure(
        self,
        deployment: Deployment,
        service: Service,
        nodeset: NodeSet,
        aee_spec: AnsibleEESpec,
        ssh_key_secrets: Mapping[str, str],
        inventory_secrets: Mapping[str, str],
    ) -> AnsibleExecution:
        existing = await self.find(deployment, service, nodeset)
        if existing is not None:
            if existing.status.succeeded > 0:
                logger.info(
                    "AnsibleExecution %s already succeeded, not re-issuing", existing.name
                )
            deployment.status.ansible_ee_hashes[existing.name] = object_hash(existing.spec)
            return existing

        name = execution_name(service, deployment.name, nodeset.name)
        labels = execution_labels(service, deployment.name, nodeset.name)
        execution = AnsibleExecution(
            metadata=ObjectMeta(
                name=name,
                namespace=deployment.namespace,
                labels=labels,
                owner_references=[deployment.owner_reference()],
            ),
            spec=build_execution_spec(
                deployment,
                service,
                nodeset,
                aee_spec,
                ssh_key_secrets,
                inventory_secrets,
                name,
            ),
        )
        stored, result = await self.store.create_or_patch(execution)
        logger.info("AnsibleExecution %s %s", name, result.value)
        deployment.status.ansible_ee_hashes[name] = object_hash(stored.spec)
        return stored
