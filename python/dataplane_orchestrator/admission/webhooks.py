"""
dataplane_orchestrator/admission/webhooks.py

Admission gate: defaulting and validation applied to NodeSets, Services and
Deployments before they are written.

  - NodeSets get host names, the automation user and the provisioning SSH
    secret filled in; names must be RFC 1123, a node may belong to only one
    NodeSet, and a NodeSet may not change while a deployment of it runs.
  - Services get their service type; exactly one of playbook, inline
    playbook or role must be set.
  - Deployments are immutable once created.

AdmittingStore wraps any StateStore so every create and patch passes the gate.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple, Type

from dataplane_orchestrator.errors import AdmissionError
from dataplane_orchestrator.models.conditions import NODESET_DEPLOYMENT_READY
from dataplane_orchestrator.models.deployment import Deployment
from dataplane_orchestrator.models.meta import ObjectKey
from dataplane_orchestrator.models.nodeset import NodeSet
from dataplane_orchestrator.models.service import Service
from dataplane_orchestrator.store.base import (
    OperationResult,
    R,
    StateStore,
    WatchHandler,
)
from dataplane_orchestrator.utils.naming import is_dns1123_subdomain, is_fqdn

logger = logging.getLogger(__name__)

DEFAULT_ANSIBLE_USER = "cloud-admin"
ARTIFACT_MESSAGE = "Playbook, PlaybookContents and Role cannot be empty at the same time"


def _reject(kind: str, name: str, problems: List[Tuple[str, str]]) -> None:
    if not problems:
        return
    logger.info("validation failed for %s %s", kind, name)
    message = "; ".join(f"{path}: {msg}" for path, msg in problems)
    raise AdmissionError(f"{kind} {name} is invalid: {message}", field=problems[0][0])


# NodeSet


def default_nodeset(nodeset: NodeSet) -> NodeSet:
    """Fill in host names, the automation user and the provisioning SSH secret."""
    spec = nodeset.spec
    domain = spec.baremetal_set_template.domain_name
    for node_name, node in spec.nodes.items():
        if not node.host_name:
            node.host_name = node_name
        if not spec.pre_provisioned and not is_fqdn(node.host_name) and domain:
            node.host_name = f"{node_name}.{domain}"

    if not spec.pre_provisioned:
        spec.node_template.ansible.ansible_user = spec.baremetal_set_template.cloud_user_name
        if not spec.baremetal_set_template.deployment_ssh_secret:
            spec.baremetal_set_template.deployment_ssh_secret = (
                spec.node_template.ansible_ssh_private_key_secret
            )
    elif not spec.node_template.ansible.ansible_user:
        spec.node_template.ansible.ansible_user = DEFAULT_ANSIBLE_USER
    return nodeset


def duplicate_nodes(nodeset: NodeSet, others: List[NodeSet]) -> List[str]:
    """Host names of nodes that another NodeSet already declares."""
    existing: List[str] = []
    for other in others:
        if other.name == nodeset.name:
            continue
        for _, node in other.sorted_nodes():
            existing.append(node.host_name)
            if node.ansible.ansible_host:
                existing.append(node.ansible.ansible_host)

    duplicates: List[str] = []
    for _, node in nodeset.sorted_nodes():
        ansible_host = node.ansible.ansible_host
        if node.host_name in existing or (ansible_host and ansible_host in existing):
            duplicates.append(node.host_name)
        else:
            existing.append(node.host_name)
            if ansible_host:
                existing.append(ansible_host)
    return duplicates


async def _nodeset_problems(store: StateStore, nodeset: NodeSet) -> List[Tuple[str, str]]:
    problems: List[Tuple[str, str]] = []
    others = await store.list(NodeSet, namespace=nodeset.namespace)
    for host in duplicate_nodes(nodeset, others):
        problems.append(("spec.nodes", f"node {host} already exists in another cluster"))
    if not is_dns1123_subdomain(nodeset.name):
        problems.append(
            (
                "metadata.name",
                f"Error validating OpenStackDataPlaneNodeSet name {nodeset.name}, "
                "name must follow RFC1123",
            )
        )
    return problems


async def validate_nodeset_create(store: StateStore, nodeset: NodeSet) -> None:
    """
    Admit a new NodeSet.

    Raises:
        AdmissionError: If the name is not RFC 1123 or a node is already
            declared by another NodeSet.
    """
    logger.info("validate create nodeset %s", nodeset.name)
    _reject(NodeSet.KIND, nodeset.name, await _nodeset_problems(store, nodeset))


async def validate_nodeset_update(store: StateStore, nodeset: NodeSet, old: NodeSet) -> None:
    """
    Admit a change to an existing NodeSet.

    Raises:
        AdmissionError: On the create-time problems, or if a deployment of the
            NodeSet is still running.
    """
    logger.info("validate update nodeset %s", nodeset.name)
    _reject(NodeSet.KIND, nodeset.name, await _nodeset_problems(store, nodeset))
    if old.spec == nodeset.spec:
        return
    for deployment_name in sorted(old.status.deployment_statuses):
        conds = old.status.deployment_statuses[deployment_name]
        if conds.is_true(NODESET_DEPLOYMENT_READY) or conds.is_error(NODESET_DEPLOYMENT_READY):
            continue
        raise AdmissionError(
            f"could not patch openstackdataplanenodeset while openstackdataplanedeployment "
            f"{deployment_name} (blocked on {NODESET_DEPLOYMENT_READY} condition) is running",
            field="spec",
        )


# Service


def default_service(service: Service) -> Service:
    if not service.spec.edpm_service_type:
        service.spec.edpm_service_type = service.name
    return service


def validate_service(service: Service) -> None:
    """
    Admit a service definition.

    Raises:
        AdmissionError: If none of playbook, playbookContents and role is set.
    """
    spec = service.spec
    if not (spec.playbook or spec.playbook_contents or spec.role):
        _reject(
            Service.KIND,
            service.name,
            [
                (path, ARTIFACT_MESSAGE)
                for path in ("spec.playbook", "spec.playbookContents", "spec.role")
            ],
        )


# Deployment


def validate_deployment_create(deployment: Deployment) -> None:
    """
    Admit a new Deployment.

    Raises:
        AdmissionError: If the name is not RFC 1123.
    """
    if not is_dns1123_subdomain(deployment.name):
        _reject(
            Deployment.KIND,
            deployment.name,
            [
                (
                    "metadata.name",
                    f"Error validating OpenStackDataPlaneDeployment name {deployment.name}, "
                    "name must follow RFC1123",
                )
            ],
        )


def validate_deployment_update(deployment: Deployment, old: Deployment) -> None:
    """
    Admit a change to an existing Deployment.

    Raises:
        AdmissionError: If the spec differs from the stored one.
    """
    if deployment.spec != old.spec:
        _reject(
            Deployment.KIND,
            deployment.name,
            [("spec", "OpenStackDataPlaneDeployment spec is immutable after creation")],
        )


async def admit(store: StateStore, obj: R, old: Optional[R] = None) -> R:
    """
    Default and validate one record about to be written.

    Kinds the gate has no rules for pass through unchanged.

    Raises:
        AdmissionError: If the record is rejected.
    """
    if isinstance(obj, NodeSet):
        default_nodeset(obj)
        if isinstance(old, NodeSet):
            await validate_nodeset_update(store, obj, old)
        else:
            await validate_nodeset_create(store, obj)
    elif isinstance(obj, Service):
        default_service(obj)
        validate_service(obj)
    elif isinstance(obj, Deployment):
        if isinstance(old, Deployment):
            validate_deployment_update(obj, old)
        else:
            validate_deployment_create(obj)
    return obj


class AdmittingStore(StateStore):
    """A StateStore that passes every create and patch through the gate first."""

    def __init__(self, inner: StateStore) -> None:
        self.inner = inner

    async def find(self, cls: Type[R], namespace: str, name: str) -> Optional[R]:
        return await self.inner.find(cls, namespace, name)

    async def list(
        self,
        cls: Type[R],
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[R]:
        return await self.inner.list(cls, namespace=namespace, labels=labels)

    async def create(self, obj: R) -> R:
        return await self.inner.create(await admit(self.inner, obj.model_copy(deep=True)))

    async def create_or_patch(self, obj: R) -> Tuple[R, OperationResult]:
        old = await self.inner.find(type(obj), obj.namespace, obj.name)
        admitted = await admit(self.inner, obj.model_copy(deep=True), old)
        return await self.inner.create_or_patch(admitted)

    async def update_status(self, obj: R) -> R:
        return await self.inner.update_status(obj)

    async def delete(self, cls: Type[R], namespace: str, name: str) -> List[ObjectKey]:
        return await self.inner.delete(cls, namespace, name)

    def subscribe(self, handler: WatchHandler) -> None:
        self.inner.subscribe(handler)
