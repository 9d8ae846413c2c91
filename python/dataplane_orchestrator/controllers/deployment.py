"""
dataplane_orchestrator/controllers/deployment.py

Deployment controller: sequences services across the NodeSets a Deployment
references.

A Deployment that is already deployed, or that ended with an exhausted retry
budget, is left alone. Otherwise each pass:

  1) resolves every referenced NodeSet (missing ones requeue, nothing more);
  2) waits for every NodeSet to finish its own setup;
  3) makes sure the certificate bundles of TLS-enabled NodeSets exist;
  4) computes each NodeSet's effective service list;
  5) walks the NodeSets concurrently, services strictly in order per NodeSet;
  6) folds the per-NodeSet outcomes into DeploymentReady.

Conditions are rebuilt from scratch on every pass; an existing automation run
is always found again through its labels, so re-walking a NodeSet never
starts a second run for the same service.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from dataplane_orchestrator.controllers.result import Result
from dataplane_orchestrator.dataplane.cert import (
    CertificateIssuer,
    CertOutcome,
    ensure_tls_certs,
)
from dataplane_orchestrator.dataplane.deployer import Deployer
from dataplane_orchestrator.dataplane.hashes import service_hashes
from dataplane_orchestrator.dataplane.inventory import inventory_secret_name
from dataplane_orchestrator.dataplane.jobs import JobExecutionFacade
from dataplane_orchestrator.dataplane.service import dedupe_services
from dataplane_orchestrator.dataplane.version import get_container_images, get_version
from dataplane_orchestrator.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    OrchestratorError,
)
from dataplane_orchestrator.models.conditions import (
    BACKOFF_LIMIT_EXCEEDED_REASON,
    DEPLOYMENT_READY,
    DEPLOYMENT_READY_ERROR_MESSAGE,
    DEPLOYMENT_READY_INIT_MESSAGE,
    DEPLOYMENT_READY_MESSAGE,
    DEPLOYMENT_READY_RUNNING_MESSAGE,
    ERROR_REASON,
    INPUT_READY,
    INPUT_READY_MESSAGE,
    NODESET_DEPLOYMENT_ERROR_MESSAGE,
    NODESET_DEPLOYMENT_READY,
    REQUESTED_REASON,
    SERVICE_ERROR_MESSAGE,
    SETUP_READY,
    TLS_INPUT_ERROR_MESSAGE,
    ConditionSet,
    Severity,
    unknown_condition,
)
from dataplane_orchestrator.models.deployment import Deployment
from dataplane_orchestrator.models.external import (
    AnsibleEESpec,
    DNSConfig,
    OpenStackVersion,
)
from dataplane_orchestrator.models.nodeset import NodeSet
from dataplane_orchestrator.models.service import Service
from dataplane_orchestrator.models.settings import OperatorSettings
from dataplane_orchestrator.store.base import StateStore
from dataplane_orchestrator.utils.async_retry import async_retry

logger = logging.getLogger(__name__)


class NodeSetOutcome(BaseModel):
    """Result of walking one NodeSet's services in one pass."""

    name: str
    done: bool = False
    error: Optional[str] = None
    reason: str = ""


def deployment_blocked(deployment: Deployment) -> bool:
    """True once the Deployment failed for good on an exhausted retry budget."""
    cond = deployment.status.conditions.get(DEPLOYMENT_READY)
    return (
        cond is not None
        and cond.severity == Severity.ERROR
        and cond.reason == BACKOFF_LIMIT_EXCEEDED_REASON
    )


def init_conditions(deployment: Deployment) -> None:
    """Reset the aggregate and per-NodeSet conditions to Unknown."""
    deployment.status.conditions.init(
        [
            unknown_condition(DEPLOYMENT_READY, message=DEPLOYMENT_READY_INIT_MESSAGE),
            unknown_condition(INPUT_READY),
        ]
    )
    node_set_conditions: Dict[str, ConditionSet] = {}
    for name in deployment.spec.node_sets:
        conds = ConditionSet()
        conds.set(
            unknown_condition(
                NODESET_DEPLOYMENT_READY, message=DEPLOYMENT_READY_INIT_MESSAGE
            )
        )
        node_set_conditions[name] = conds
    deployment.status.node_set_conditions = node_set_conditions
    deployment.status.deployed = False


def nodeset_aee_spec(deployment: Deployment, nodeset: NodeSet) -> AnsibleEESpec:
    """Run settings for one NodeSet, with the Deployment's overrides applied."""
    aee_spec = AnsibleEESpec(
        network_attachments=list(nodeset.spec.network_attachments),
        service_account_name=nodeset.name,
        ansible_tags=deployment.spec.ansible_tags,
        ansible_skip_tags=deployment.spec.ansible_skip_tags,
        ansible_limit=deployment.spec.ansible_limit,
        extra_vars=dict(deployment.spec.ansible_extra_vars),
    )
    if nodeset.status.dns_cluster_addresses and nodeset.status.ctlplane_search_domain:
        aee_spec.dns_config = DNSConfig(
            nameservers=list(nodeset.status.dns_cluster_addresses),
            searches=[nodeset.status.ctlplane_search_domain],
        )
    return aee_spec


class DeploymentController:
    """
    Reconciles OpenStackDataPlaneDeployment records.

    Attributes:
        store (StateStore): Declarative store.
        settings (OperatorSettings): Operator configuration.
        issuer (CertificateIssuer): Certificate issuing collaborator.
        jobs (JobExecutionFacade): Automation run collaborator.
    """

    def __init__(
        self,
        store: StateStore,
        settings: OperatorSettings,
        issuer: CertificateIssuer,
        jobs: JobExecutionFacade,
    ) -> None:
        self.store = store
        self.settings = settings
        self.issuer = issuer
        self.jobs = jobs

    async def reconcile(self, namespace: str, name: str) -> Result:
        """
        Run one pass, starting over from a fresh read on a stale status write.

        Raises:
            ConflictError: If every attempt hit a concurrent status write.
            OrchestratorError: For failures already surfaced on the
                Deployment's status that are worth another pass later.
        """
        attempt = async_retry(
            retries=self.settings.status_write_retries,
            delay=self.settings.status_write_retry_delay,
            noisy=True,
            retry_on=(ConflictError,),
        )(self._reconcile_once)
        return await attempt(namespace, name)

    async def _reconcile_once(self, namespace: str, name: str) -> Result:
        deployment = await self.store.find(Deployment, namespace, name)
        if deployment is None:
            logger.info("deployment %s/%s no longer exists", namespace, name)
            return Result()
        if deployment.status.deployed:
            logger.info("deployment %s already deployed", name)
            return Result()
        if deployment_blocked(deployment):
            logger.info(
                "deployment %s failed with backoff limit exceeded, skipping", name
            )
            return Result()
        logger.info("reconciling deployment %s/%s", namespace, name)

        saved = deployment.status.conditions.model_copy(deep=True)
        saved_node_sets = {
            name: conds.model_copy(deep=True)
            for name, conds in deployment.status.node_set_conditions.items()
        }
        init_conditions(deployment)
        deployment.status.observed_generation = deployment.metadata.generation
        try:
            return await self._reconcile_steps(deployment)
        finally:
            deployment.status.conditions.summarize()
            deployment.status.conditions.restore_last_transition_times(saved)
            for ns_name, conds in deployment.status.node_set_conditions.items():
                if ns_name in saved_node_sets:
                    conds.restore_last_transition_times(saved_node_sets[ns_name])
            await self.store.update_status(deployment)

    async def _reconcile_steps(self, deployment: Deployment) -> Result:
        conditions = deployment.status.conditions
        requeue = Result(requeue_after=float(deployment.spec.deployment_requeue_time))

        nodesets: List[NodeSet] = []
        for ns_name in deployment.spec.node_sets:
            nodeset = await self.store.find(NodeSet, deployment.namespace, ns_name)
            if nodeset is None:
                logger.info(
                    "nodeset %s of deployment %s not found, requeueing",
                    ns_name,
                    deployment.name,
                )
                return requeue
            nodesets.append(nodeset)

        inventory_secrets: Dict[str, str] = {}
        ssh_key_secrets: Dict[str, str] = {}
        for nodeset in nodesets:
            inventory_secrets[nodeset.name] = inventory_secret_name(nodeset.name)
            ssh_key_secrets[nodeset.name] = (
                nodeset.spec.node_template.ansible_ssh_private_key_secret
            )
            if not nodeset.status.conditions.is_true(SETUP_READY):
                logger.info("nodeset %s SetupReady is not True", nodeset.name)
                return requeue
            if nodeset.spec.tls_enabled:
                result = await self._ensure_certs(deployment, nodeset)
                if result is not None:
                    return result
        conditions.mark_true(INPUT_READY, INPUT_READY_MESSAGE)

        try:
            service_map = await dedupe_services(
                self.store,
                deployment.namespace,
                nodesets,
                deployment.spec.services_override,
            )
            version = await get_version(self.store, deployment.namespace)
        except ConfigurationError as exc:
            logger.error("deployment %s: %s", deployment.name, exc)
            conditions.mark_false(
                DEPLOYMENT_READY, ERROR_REASON, Severity.ERROR, SERVICE_ERROR_MESSAGE % exc
            )
            return Result()
        container_images = get_container_images(self.settings, version)

        conditions.mark_false(
            DEPLOYMENT_READY,
            REQUESTED_REASON,
            Severity.INFO,
            DEPLOYMENT_READY_RUNNING_MESSAGE,
        )
        # Every NodeSet is started before any of them is waited on.
        outcomes = await asyncio.gather(
            *[
                self._deploy_nodeset(
                    deployment,
                    nodeset,
                    service_map.get(nodeset.name, []),
                    container_images,
                    version,
                    inventory_secrets,
                    ssh_key_secrets,
                )
                for nodeset in nodesets
            ]
        )

        failed = [o for o in outcomes if o.error is not None]
        if failed:
            message = " & ".join(f"nodeSet: {o.name} error: {o.error}" for o in failed)
            backoff_exceeded = any(
                o.reason == BACKOFF_LIMIT_EXCEEDED_REASON for o in failed
            )
            if backoff_exceeded:
                conditions.mark_false(
                    DEPLOYMENT_READY,
                    BACKOFF_LIMIT_EXCEEDED_REASON,
                    Severity.ERROR,
                    DEPLOYMENT_READY_ERROR_MESSAGE % message,
                )
                return Result()
            conditions.mark_false(
                DEPLOYMENT_READY,
                ERROR_REASON,
                Severity.WARNING,
                DEPLOYMENT_READY_ERROR_MESSAGE % message,
            )
            return requeue

        if not all(o.done for o in outcomes):
            logger.info("not all nodesets done for deployment %s", deployment.name)
            return requeue

        conditions.mark_true(DEPLOYMENT_READY, DEPLOYMENT_READY_MESSAGE)
        deployment.status.deployed = True
        if version is not None:
            deployment.status.deployed_version = version.spec.target_version
        try:
            await self.set_hashes(deployment, nodesets)
        except OrchestratorError as exc:
            logger.error("error setting service hashes for %s: %s", deployment.name, exc)
        logger.info("deployment %s complete", deployment.name)
        return Result()

    async def _ensure_certs(
        self, deployment: Deployment, nodeset: NodeSet
    ) -> Optional[Result]:
        """
        Make sure every certificate bundle the NodeSet's services need exists.

        Returns:
            Optional[Result]: None when every bundle is in place, otherwise the
            result this pass should end with.
        """
        conditions = deployment.status.conditions
        ns_conditions = deployment.status.node_set_conditions[nodeset.name]
        services = deployment.spec.services_override or nodeset.spec.services
        for service_name in services:
            try:
                service = await self.store.get(Service, deployment.namespace, service_name)
                # A service of another type without certs of its own uses the
                # certs of the service it is typed after.
                if service.name != service.service_type and service.spec.tls_certs is None:
                    service = await self.store.get(
                        Service, deployment.namespace, service.service_type
                    )
            except NotFoundError as exc:
                logger.error("deployment %s: %s", deployment.name, exc)
                for conds, ctype in (
                    (conditions, INPUT_READY),
                    (ns_conditions, NODESET_DEPLOYMENT_READY),
                ):
                    conds.mark_false(
                        ctype, ERROR_REASON, Severity.ERROR, SERVICE_ERROR_MESSAGE % exc
                    )
                return Result(requeue_after=float(deployment.spec.deployment_requeue_time))

            for cert_key in sorted(service.spec.tls_certs or {}):
                try:
                    outcome = await ensure_tls_certs(
                        self.store, self.issuer, nodeset, service, cert_key
                    )
                except OrchestratorError as exc:
                    for conds, ctype in (
                        (conditions, INPUT_READY),
                        (ns_conditions, NODESET_DEPLOYMENT_READY),
                    ):
                        conds.mark_false(
                            ctype,
                            ERROR_REASON,
                            Severity.ERROR,
                            TLS_INPUT_ERROR_MESSAGE % exc,
                        )
                    raise
                if outcome != CertOutcome.READY:
                    logger.info(
                        "certificates %s/%s for nodeset %s %s",
                        service.name,
                        cert_key,
                        nodeset.name,
                        outcome.value,
                    )
                    return Result(requeue_after=self.settings.cert_requeue_seconds)
        return None

    async def _deploy_nodeset(
        self,
        deployment: Deployment,
        nodeset: NodeSet,
        services: List[str],
        container_images: Dict[str, str],
        version: Optional[OpenStackVersion],
        inventory_secrets: Dict[str, str],
        ssh_key_secrets: Dict[str, str],
    ) -> NodeSetOutcome:
        logger.info("deploying nodeset %s", nodeset.name)
        deployer = Deployer(
            self.store,
            self.jobs,
            deployment,
            nodeset,
            nodeset_aee_spec(deployment, nodeset),
            container_images,
            version,
            inventory_secrets,
            ssh_key_secrets,
        )
        outcome = NodeSetOutcome(name=nodeset.name)
        try:
            outcome.done = await deployer.deploy(services)
        except OrchestratorError as exc:
            logger.error(
                "deployment %s error for nodeset %s: %s", deployment.name, nodeset.name, exc
            )
            outcome.error = str(exc)

        ns_conditions = deployer.conditions
        if outcome.done:
            ns_conditions.mark_true(NODESET_DEPLOYMENT_READY, DEPLOYMENT_READY_MESSAGE)
            deployment.status.node_set_hashes[nodeset.name] = nodeset.status.config_hash
        else:
            ns_conditions.set(ns_conditions.mirror(NODESET_DEPLOYMENT_READY))
            if outcome.error is not None:
                if not ns_conditions.is_error(NODESET_DEPLOYMENT_READY):
                    ns_conditions.mark_false(
                        NODESET_DEPLOYMENT_READY,
                        ERROR_REASON,
                        Severity.ERROR,
                        NODESET_DEPLOYMENT_ERROR_MESSAGE % outcome.error,
                    )
                outcome.reason = ns_conditions.get(NODESET_DEPLOYMENT_READY).reason
        return outcome

    async def set_hashes(self, deployment: Deployment, nodesets: Sequence[NodeSet]) -> None:
        """
        Record the content hashes of everything the deployed services consumed.

        Services are the override list, else the union of the NodeSets'
        service lists.
        """
        if deployment.spec.services_override:
            services = list(deployment.spec.services_override)
        else:
            services = sorted({svc for ns in nodesets for svc in ns.spec.services})
        for service_name in services:
            await service_hashes(
                self.store,
                deployment.namespace,
                service_name,
                nodesets,
                deployment.status.config_map_hashes,
                deployment.status.secret_hashes,
            )
        for nodeset in nodesets:
            deployment.status.node_set_hashes[nodeset.name] = nodeset.status.config_hash
