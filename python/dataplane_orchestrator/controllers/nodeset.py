"""
dataplane_orchestrator/controllers/nodeset.py

NodeSet controller. One reconcile pass:

  1) recompute the config hash over the node template and the nodes;
  2) populate the service catalog;
  3) reserve addresses, then name records (all-or-nothing, waits requeue);
  4) check the SSH key secret;
  5) ensure the automation service account;
  6) hand nodes to hardware provisioning unless pre-provisioned;
  7) regenerate the inventory unless a deployment is running or failed;
  8) fold the most recent deployment outcome into DeploymentReady.

Every pass starts from freshly initialized conditions and ends by
summarizing Ready and writing status, whichever step it stopped at.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from pydantic import BaseModel

from dataplane_orchestrator.controllers.result import Result
from dataplane_orchestrator.dataplane.baremetal import deploy_baremetal_set
from dataplane_orchestrator.dataplane.inventory import generate_nodeset_inventory
from dataplane_orchestrator.dataplane.ipam import AddressNameFacade
from dataplane_orchestrator.dataplane.jobs import DEPLOYMENT_LABEL
from dataplane_orchestrator.dataplane.service import ensure_services
from dataplane_orchestrator.dataplane.version import get_container_images, get_version
from dataplane_orchestrator.errors import ConfigurationError, ConflictError, OrchestratorError
from dataplane_orchestrator.models.conditions import (
    BAREMETAL_ERROR_MESSAGE,
    BAREMETAL_READY_MESSAGE,
    BAREMETAL_WAITING_MESSAGE,
    DEPLOYMENT_READY,
    DEPLOYMENT_READY_ERROR_MESSAGE,
    DEPLOYMENT_READY_INIT_MESSAGE,
    DEPLOYMENT_READY_MESSAGE,
    DEPLOYMENT_READY_RUNNING_MESSAGE,
    DNS_DATA_ERROR_MESSAGE,
    DNS_DATA_READY_MESSAGE,
    DNS_DATA_WAITING_MESSAGE,
    ERROR_REASON,
    INPUT_READY,
    INPUT_READY_MESSAGE,
    INPUT_READY_WAITING_MESSAGE,
    IP_RESERVATION_ERROR_MESSAGE,
    IP_RESERVATION_READY_MESSAGE,
    IP_RESERVATION_WAITING_MESSAGE,
    NODESET_BAREMETAL_PROVISION_READY,
    NODESET_DEPLOYMENT_READY,
    NODESET_DNS_DATA_READY,
    NODESET_IP_RESERVATION_READY,
    NODESET_READY_MESSAGE,
    READY_MESSAGE,
    REQUESTED_REASON,
    SERVICE_ACCOUNT_ERROR_MESSAGE,
    SERVICE_ACCOUNT_READY,
    SERVICE_ACCOUNT_READY_MESSAGE,
    SETUP_READY,
    SETUP_READY_ERROR_MESSAGE,
    SETUP_READY_WAITING_MESSAGE,
    ConditionSet,
    Severity,
    unknown_condition,
)
from dataplane_orchestrator.models.deployment import Deployment
from dataplane_orchestrator.models.external import AnsibleExecution
from dataplane_orchestrator.models.k8s import (
    KubernetesServiceAccount,
    RoleBinding,
    RoleRef,
    Secret,
    Subject,
)
from dataplane_orchestrator.models.meta import ObjectMeta
from dataplane_orchestrator.models.nodeset import NodeSet
from dataplane_orchestrator.models.service import Service
from dataplane_orchestrator.models.settings import OperatorSettings
from dataplane_orchestrator.store.base import StateStore
from dataplane_orchestrator.utils.async_retry import async_retry
from dataplane_orchestrator.utils.hashing import object_hash

logger = logging.getLogger(__name__)

SSH_PRIVATE_KEY = "ssh-privatekey"
SSH_AUTHORIZED_KEYS = "authorized_keys"
UPDATE_SERVICE_TYPE = "update"
REGISTRY_VIEWER_ROLE = "registry-viewer"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class DeploymentCheck(BaseModel):
    """Outcome of folding the deployments that reference one NodeSet."""

    ready: bool = False
    running: bool = False
    failed: bool = False
    failed_deployment: str = ""
    message: str = ""


def nodeset_config_hash(nodeset: NodeSet) -> str:
    """Digest of the spec fields whose change calls for a new deployment."""
    return object_hash(
        {
            "nodeTemplate": nodeset.spec.node_template,
            "nodes": nodeset.spec.nodes,
        }
    )


def deployment_order(deployment: Deployment) -> Tuple[datetime, str]:
    """
    Sort key, oldest first.

    Deployments are ordered by the transition time of their DeploymentReady
    condition; one that has never been reconciled falls back to its creation
    time, and the name breaks any remaining tie.
    """
    cond = deployment.status.conditions.get(DEPLOYMENT_READY)
    if cond is not None:
        return cond.last_transition_time, deployment.name
    return deployment.metadata.creation_timestamp or _EPOCH, deployment.name


def init_conditions(nodeset: NodeSet) -> None:
    """Reset every condition this controller owns to Unknown."""
    conditions = [
        unknown_condition(DEPLOYMENT_READY, message=DEPLOYMENT_READY_INIT_MESSAGE),
        unknown_condition(INPUT_READY),
        unknown_condition(SETUP_READY),
        unknown_condition(NODESET_IP_RESERVATION_READY),
        unknown_condition(NODESET_DNS_DATA_READY),
        unknown_condition(SERVICE_ACCOUNT_READY),
    ]
    if not nodeset.spec.pre_provisioned and nodeset.spec.nodes:
        conditions.append(unknown_condition(NODESET_BAREMETAL_PROVISION_READY))
    nodeset.status.conditions.init(conditions)
    nodeset.status.deployment_statuses = {}


class NodeSetController:
    """
    Reconciles OpenStackDataPlaneNodeSet records.

    Attributes:
        store (StateStore): Declarative store.
        settings (OperatorSettings): Operator configuration.
        address_names (AddressNameFacade): Address and name collaborator.
    """

    def __init__(
        self,
        store: StateStore,
        settings: OperatorSettings,
        address_names: AddressNameFacade,
    ) -> None:
        self.store = store
        self.settings = settings
        self.address_names = address_names

    async def reconcile(self, namespace: str, name: str) -> Result:
        """
        Run one pass, starting over from a fresh read on a stale status write.

        Raises:
            ConflictError: If every attempt hit a concurrent status write.
            OrchestratorError: For failures already surfaced on the NodeSet's
                status that are worth another pass later.
        """
        attempt = async_retry(
            retries=self.settings.status_write_retries,
            delay=self.settings.status_write_retry_delay,
            noisy=True,
            retry_on=(ConflictError,),
        )(self._reconcile_once)
        return await attempt(namespace, name)

    async def _reconcile_once(self, namespace: str, name: str) -> Result:
        nodeset = await self.store.find(NodeSet, namespace, name)
        if nodeset is None:
            logger.info("nodeset %s/%s no longer exists", namespace, name)
            return Result()
        logger.info("reconciling nodeset %s/%s", namespace, name)

        saved = nodeset.status.conditions.model_copy(deep=True)
        init_conditions(nodeset)
        nodeset.status.observed_generation = nodeset.metadata.generation
        try:
            return await self._reconcile_steps(nodeset)
        finally:
            nodeset.status.conditions.summarize(NODESET_READY_MESSAGE)
            nodeset.status.conditions.restore_last_transition_times(saved)
            await self.store.update_status(nodeset)

    async def _reconcile_steps(self, nodeset: NodeSet) -> Result:
        conditions = nodeset.status.conditions
        conditions.mark_false(
            SETUP_READY, REQUESTED_REASON, Severity.INFO, SETUP_READY_WAITING_MESSAGE
        )

        nodeset.status.config_hash = nodeset_config_hash(nodeset)
        if nodeset.status.config_hash != nodeset.status.deployed_config_hash:
            logger.info(
                "nodeset %s config hash %s differs from deployed %s",
                nodeset.name,
                nodeset.status.config_hash,
                nodeset.status.deployed_config_hash or "<none>",
            )

        try:
            await ensure_services(self.store, nodeset, self.settings.operator_services)
        except OrchestratorError as exc:
            logger.error("unable to ensure services for %s: %s", nodeset.name, exc)
            conditions.mark_false(
                SETUP_READY, ERROR_REASON, Severity.ERROR, SETUP_READY_ERROR_MESSAGE % exc
            )
            if isinstance(exc, ConfigurationError):
                return Result()
            raise

        # Addresses
        try:
            ip_result = await self.address_names.ensure_ip_sets(nodeset)
        except ConfigurationError as exc:
            conditions.mark_false(
                NODESET_IP_RESERVATION_READY,
                ERROR_REASON,
                Severity.ERROR,
                IP_RESERVATION_ERROR_MESSAGE % exc,
            )
            return Result()
        if not ip_result.ready:
            logger.info("nodeset %s waiting on IPSets: %s", nodeset.name, ip_result.message)
            conditions.mark_false(
                NODESET_IP_RESERVATION_READY,
                REQUESTED_REASON,
                Severity.INFO,
                IP_RESERVATION_WAITING_MESSAGE,
            )
            return Result(requeue_after=self.settings.requeue_seconds)
        conditions.mark_true(NODESET_IP_RESERVATION_READY, IP_RESERVATION_READY_MESSAGE)

        # Names
        try:
            dns = await self.address_names.ensure_dns_data(nodeset, ip_result.ip_sets)
        except ConfigurationError as exc:
            logger.error("nodeset %s: %s", nodeset.name, exc)
            conditions.mark_false(
                NODESET_DNS_DATA_READY,
                ERROR_REASON,
                Severity.ERROR,
                DNS_DATA_ERROR_MESSAGE % exc,
            )
            return Result()
        if not dns.ready:
            logger.info("nodeset %s waiting on DNS data: %s", nodeset.name, dns.message)
            conditions.mark_false(
                NODESET_DNS_DATA_READY,
                REQUESTED_REASON,
                Severity.INFO,
                DNS_DATA_WAITING_MESSAGE,
            )
            return Result(requeue_after=self.settings.requeue_seconds)
        conditions.mark_true(NODESET_DNS_DATA_READY, DNS_DATA_READY_MESSAGE)
        nodeset.status.dns_cluster_addresses = dns.cluster_addresses
        nodeset.status.ctlplane_search_domain = dns.ctlplane_search_domain
        nodeset.status.all_hostnames = dns.hostnames
        nodeset.status.all_ips = dns.all_ips

        # SSH credentials
        missing = await self._missing_ssh_keys(nodeset)
        if missing is not None:
            logger.info("nodeset %s waiting on ssh secret: %s", nodeset.name, missing)
            conditions.mark_false(
                INPUT_READY,
                REQUESTED_REASON,
                Severity.INFO,
                INPUT_READY_WAITING_MESSAGE % missing,
            )
            return Result(requeue_after=self.settings.existence_timeout_seconds)
        conditions.mark_true(INPUT_READY, INPUT_READY_MESSAGE)

        try:
            await self._ensure_service_account(nodeset)
        except OrchestratorError as exc:
            conditions.mark_false(
                SERVICE_ACCOUNT_READY,
                ERROR_REASON,
                Severity.WARNING,
                SERVICE_ACCOUNT_ERROR_MESSAGE % exc,
            )
            raise
        conditions.mark_true(SERVICE_ACCOUNT_READY, SERVICE_ACCOUNT_READY_MESSAGE)

        try:
            version = await get_version(self.store, nodeset.namespace)
        except ConfigurationError as exc:
            conditions.mark_false(
                SETUP_READY, ERROR_REASON, Severity.ERROR, SETUP_READY_ERROR_MESSAGE % exc
            )
            return Result()
        container_images = get_container_images(self.settings, version)

        if not nodeset.spec.pre_provisioned and nodeset.spec.nodes:
            try:
                provisioned = await deploy_baremetal_set(
                    self.store, nodeset, ip_result.ip_sets
                )
            except OrchestratorError as exc:
                conditions.mark_false(
                    NODESET_BAREMETAL_PROVISION_READY,
                    ERROR_REASON,
                    Severity.ERROR,
                    BAREMETAL_ERROR_MESSAGE % exc,
                )
                raise
            if not provisioned:
                conditions.mark_false(
                    NODESET_BAREMETAL_PROVISION_READY,
                    REQUESTED_REASON,
                    Severity.INFO,
                    BAREMETAL_WAITING_MESSAGE,
                )
                return Result(requeue_after=self.settings.requeue_seconds)
            conditions.mark_true(NODESET_BAREMETAL_PROVISION_READY, BAREMETAL_READY_MESSAGE)

        try:
            check = await self.check_deployments(nodeset)
        except OrchestratorError as exc:
            logger.error("unable to check deployments of %s: %s", nodeset.name, exc)
            conditions.mark_false(
                DEPLOYMENT_READY,
                ERROR_REASON,
                Severity.ERROR,
                DEPLOYMENT_READY_ERROR_MESSAGE % exc,
            )
            raise

        if not check.running and not check.failed:
            try:
                await generate_nodeset_inventory(
                    self.store,
                    nodeset,
                    ip_result.ip_sets,
                    dns.server_addresses,
                    container_images,
                    await self.address_names.service_net_map(nodeset.namespace),
                )
            except OrchestratorError as exc:
                message = f"Unable to generate inventory for {nodeset.name}: {exc}"
                logger.error("%s", message)
                conditions.mark_false(
                    SETUP_READY, ERROR_REASON, Severity.ERROR, SETUP_READY_ERROR_MESSAGE % message
                )
                if isinstance(exc, ConfigurationError):
                    return Result()
                raise

        conditions.mark_true(SETUP_READY, READY_MESSAGE)
        await self._fold_deployment(nodeset, check)
        return Result()

    async def _missing_ssh_keys(self, nodeset: NodeSet) -> Optional[str]:
        """Describe what is missing from the SSH key secret, or None if complete."""
        name = nodeset.spec.node_template.ansible_ssh_private_key_secret
        secret = await self.store.find(Secret, nodeset.namespace, name) if name else None
        if secret is None:
            return f"secret/{name}"
        required = [SSH_PRIVATE_KEY]
        if not nodeset.spec.pre_provisioned:
            required.append(SSH_AUTHORIZED_KEYS)
        absent = [key for key in required if key not in secret.data]
        if absent:
            return f"secret/{name} keys {', '.join(absent)}"
        return None

    async def _ensure_service_account(self, nodeset: NodeSet) -> None:
        meta = dict(
            name=nodeset.name,
            namespace=nodeset.namespace,
            owner_references=[nodeset.owner_reference()],
        )
        await self.store.create_or_patch(KubernetesServiceAccount(metadata=ObjectMeta(**meta)))
        await self.store.create_or_patch(
            RoleBinding(
                metadata=ObjectMeta(**meta),
                role_ref=RoleRef(kind="ClusterRole", name=REGISTRY_VIEWER_ROLE),
                subjects=[Subject(name=nodeset.name, namespace=nodeset.namespace)],
            )
        )

    async def check_deployments(self, nodeset: NodeSet) -> DeploymentCheck:
        """
        Fold every deployment that references this NodeSet, oldest first.

        The newest deployment decides ready/running, except that a failed one
        stops the walk. A successful deployment only counts while the hash it
        deployed still matches the NodeSet's config hash; it then copies its
        hashes and images onto the NodeSet.
        """
        deployments = await self.store.list(Deployment, namespace=nodeset.namespace)
        deployments.sort(key=deployment_order)

        check = DeploymentCheck()
        for deployment in deployments:
            if nodeset.name not in deployment.spec.node_sets:
                continue
            check.ready = False
            check.running = False
            conds = deployment.status.node_set_conditions.get(nodeset.name, ConditionSet())
            nodeset.status.deployment_statuses[deployment.name] = conds.model_copy(deep=True)

            if conds.is_error(NODESET_DEPLOYMENT_READY):
                cond = conds.get(NODESET_DEPLOYMENT_READY)
                check.failed = True
                check.failed_deployment = deployment.name
                check.message = cond.message if cond is not None else ""
                break
            if conds.is_false(NODESET_DEPLOYMENT_READY):
                check.running = True
            elif conds.is_true(NODESET_DEPLOYMENT_READY):
                deployed_hash = deployment.status.node_set_hashes.get(nodeset.name)
                if deployed_hash != nodeset.status.config_hash:
                    continue
                check.ready = True
                nodeset.status.config_map_hashes.update(deployment.status.config_map_hashes)
                nodeset.status.secret_hashes.update(deployment.status.secret_hashes)
                nodeset.status.container_images.update(deployment.status.container_images)
                nodeset.status.deployed_config_hash = deployed_hash

                services = deployment.spec.services_override or nodeset.spec.services
                for service_name in services:
                    service = await self.store.get(Service, nodeset.namespace, service_name)
                    if service.service_type == UPDATE_SERVICE_TYPE:
                        nodeset.status.deployed_version = deployment.status.deployed_version
        return check

    async def _failure_diagnostics(self, nodeset: NodeSet, deployment_name: str) -> List[str]:
        executions = await self.store.list(
            AnsibleExecution,
            namespace=nodeset.namespace,
            labels={DEPLOYMENT_LABEL: deployment_name},
        )
        details: List[str] = []
        for execution in executions:
            cond = execution.status.failure_condition()
            if cond is None and execution.status.failed == 0:
                continue
            reason = cond.reason if cond is not None else ""
            message = cond.message if cond is not None else ""
            logger.info(
                "automation run %s failed due to %s with message: %s",
                execution.name,
                reason,
                message,
            )
            details.append(f"{execution.name} failed due to {reason}: {message}")
        return details

    async def _fold_deployment(self, nodeset: NodeSet, check: DeploymentCheck) -> None:
        conditions = nodeset.status.conditions
        if conditions.is_unknown(DEPLOYMENT_READY):
            conditions.mark_false(
                DEPLOYMENT_READY,
                REQUESTED_REASON,
                Severity.INFO,
                DEPLOYMENT_READY_INIT_MESSAGE,
            )
        if check.ready:
            conditions.mark_true(DEPLOYMENT_READY, DEPLOYMENT_READY_MESSAGE)
        elif check.running:
            logger.info("deployment of nodeset %s still running", nodeset.name)
            conditions.mark_false(
                DEPLOYMENT_READY,
                REQUESTED_REASON,
                Severity.INFO,
                DEPLOYMENT_READY_RUNNING_MESSAGE,
            )
        elif check.failed:
            details = await self._failure_diagnostics(nodeset, check.failed_deployment)
            message = "; ".join([check.message] + details) if details else check.message
            conditions.mark_false(
                DEPLOYMENT_READY,
                ERROR_REASON,
                Severity.ERROR,
                DEPLOYMENT_READY_ERROR_MESSAGE % message,
            )
