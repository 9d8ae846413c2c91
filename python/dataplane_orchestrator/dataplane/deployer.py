"""
dataplane_orchestrator/dataplane/deployer.py

Walks one NodeSet's effective service list for one Deployment.

Services run strictly in list order: a service is only started once every
service before it reports success. Each service is tracked by its own
condition (`Service<Name>DeploymentReady`) in the Deployment's per-NodeSet
condition set, and the automation run behind it is created through the job
execution facade.
"""

from __future__ import annotations

import logging
import posixpath
from typing import Dict, List, Mapping, Optional

from dataplane_orchestrator.dataplane.cert import (
    NUMBER_OF_SECRETS_LABEL,
    service_certs_secret_name,
)
from dataplane_orchestrator.dataplane.datasource import get_data_source
from dataplane_orchestrator.dataplane.jobs import JobExecutionFacade, JobState, poll
from dataplane_orchestrator.dataplane.version import ANSIBLEEE_IMAGE
from dataplane_orchestrator.errors import ExecutionFailedError, NotFoundError, OrchestratorError
from dataplane_orchestrator.models.conditions import (
    ERROR_REASON,
    REQUESTED_REASON,
    SERVICE_DEPLOYMENT_ERROR_MESSAGE,
    SERVICE_DEPLOYMENT_READY_MESSAGE,
    SERVICE_DEPLOYMENT_WAITING_MESSAGE,
    ConditionSet,
    Severity,
)
from dataplane_orchestrator.models.deployment import Deployment
from dataplane_orchestrator.models.external import (
    AnsibleEESpec,
    ConfigMapVolumeSource,
    KeyToPath,
    OpenStackVersion,
    ProjectedVolumeSource,
    SecretVolumeSource,
    VolMounts,
    Volume,
    VolumeMount,
)
from dataplane_orchestrator.models.k8s import Secret
from dataplane_orchestrator.models.nodeset import NodeSet
from dataplane_orchestrator.models.service import Service
from dataplane_orchestrator.store.base import StateStore
from dataplane_orchestrator.utils.naming import hashed_volume_name, service_condition_type

logger = logging.getLogger(__name__)

CONFIG_PATHS = "/var/lib/openstack/configs"
CERT_PATHS = "/var/lib/openstack/certs"
CACERT_PATHS = "/var/lib/openstack/cacerts"


def _error_message(service_name: str, err: object) -> str:
    return f"{SERVICE_DEPLOYMENT_ERROR_MESSAGE % service_name} error {err}"


class Deployer:
    """
    Deploys services to one NodeSet on behalf of one Deployment.

    Attributes:
        store (StateStore): Declarative store.
        jobs (JobExecutionFacade): Creates and finds automation runs.
        deployment (Deployment): The Deployment being reconciled; its status is
            updated in place.
        nodeset (NodeSet): Target NodeSet.
        aee_spec (AnsibleEESpec): Run settings for this NodeSet; its extra
            mounts are the base every service starts from.
        container_images (Dict[str, str]): Resolved release image map.
        version (Optional[OpenStackVersion]): Release version record, if any.
        inventory_secrets (Mapping[str, str]): NodeSet name to inventory secret.
        ssh_key_secrets (Mapping[str, str]): NodeSet name to SSH key secret.
    """

    def __init__(
        self,
        store: StateStore,
        jobs: JobExecutionFacade,
        deployment: Deployment,
        nodeset: NodeSet,
        aee_spec: AnsibleEESpec,
        container_images: Dict[str, str],
        version: Optional[OpenStackVersion],
        inventory_secrets: Mapping[str, str],
        ssh_key_secrets: Mapping[str, str],
    ) -> None:
        self.store = store
        self.jobs = jobs
        self.deployment = deployment
        self.nodeset = nodeset
        self.aee_spec = aee_spec
        self.container_images = container_images
        self.version = version
        self.inventory_secrets = inventory_secrets
        self.ssh_key_secrets = ssh_key_secrets

    @property
    def conditions(self) -> ConditionSet:
        return self.deployment.status.node_set_conditions.setdefault(
            self.nodeset.name, ConditionSet()
        )

    @property
    def namespace(self) -> str:
        return self.deployment.namespace

    async def deploy(self, services: List[str]) -> bool:
        """
        Advance the NodeSet through `services`.

        Returns:
            bool: True once every service succeeded, False while one is still
            running.

        Raises:
            OrchestratorError: If a service cannot be resolved or mounted, or a
                run exhausted its retry budget (ExecutionFailedError).
        """
        base_mounts = list(self.aee_spec.extra_mounts)
        for name in services:
            ctype = service_condition_type(name)
            logger.info("deploying service %s to nodeset %s", name, self.nodeset.name)
            try:
                service = await self.store.get(Service, self.namespace, name)
                aee_spec = self.aee_spec.model_copy(deep=True)
                aee_spec.runner_image = (
                    service.spec.runner_image_override
                    or self.container_images.get(ANSIBLEEE_IMAGE, "")
                )
                aee_spec.extra_mounts = list(base_mounts)
                aee_spec.extra_mounts.extend(await self.data_source_mounts(service))
                if service.spec.add_cert_mounts:
                    aee_spec.extra_mounts.extend(await self.cert_mounts(services))
                elif service.spec.ca_certs:
                    aee_spec.extra_mounts.append(await self.cacert_mount(service))
            except OrchestratorError as exc:
                self.conditions.mark_false(
                    ctype, ERROR_REASON, Severity.ERROR, _error_message(name, exc)
                )
                raise

            await self.conditional_deploy(ctype, service, aee_spec)
            if not self.conditions.is_true(ctype):
                logger.info("condition %s not ready", ctype)
                return False
            logger.info("condition %s ready", ctype)

            if self.version is not None:
                for field in service.spec.container_image_fields:
                    image = self.version.status.container_images.get(field)
                    self.deployment.status.container_images[field] = image or ""
        return True

    async def conditional_deploy(
        self, ctype: str, service: Service, aee_spec: AnsibleEESpec
    ) -> None:
        """
        Start the service's run if its condition is Unknown, then judge the run.

        Raises:
            ExecutionFailedError: If the run failed more often than its backoff
                limit allows.
        """
        conditions = self.conditions
        waiting = SERVICE_DEPLOYMENT_WAITING_MESSAGE % service.name
        if conditions.is_unknown(ctype):
            logger.info("%s unknown, starting %s", ctype, service.name)
            await self.jobs.ensure(
                self.deployment,
                service,
                self.nodeset,
                aee_spec,
                self.ssh_key_secrets,
                self.inventory_secrets,
            )
            conditions.mark_false(ctype, REQUESTED_REASON, Severity.INFO, waiting)

        if not conditions.is_false(ctype):
            return

        try:
            execution = await self.jobs.find(self.deployment, service, self.nodeset)
        except OrchestratorError as exc:
            conditions.mark_false(
                ctype, ERROR_REASON, Severity.ERROR, _error_message(service.name, exc)
            )
            raise
        if execution is None:
            logger.info("%s automation run not found yet", ctype)
            return

        outcome = poll(execution)
        if outcome.state == JobState.SUCCEEDED:
            conditions.mark_true(ctype, SERVICE_DEPLOYMENT_READY_MESSAGE % service.name)
        elif outcome.state == JobState.FAILED:
            logger.info("condition %s error: %s", ctype, outcome.message)
            conditions.mark_false(
                ctype,
                outcome.reason,
                Severity.ERROR,
                _error_message(service.name, outcome.message),
            )
            raise ExecutionFailedError(outcome.message, reason=outcome.reason)
        else:
            logger.info(
                "automation run %s not yet completed: active %d, failed %d",
                execution.name,
                execution.status.active,
                execution.status.failed,
            )
            conditions.mark_false(ctype, REQUESTED_REASON, Severity.INFO, waiting)

    async def data_source_mounts(self, service: Service) -> List[VolMounts]:
        """One volume per key of every config map and secret the service lists."""
        base = posixpath.join(CONFIG_PATHS, service.service_type)
        config_mounts: List[VolMounts] = []
        secret_mounts: List[VolMounts] = []
        for source in service.spec.data_sources:
            cm, secret = await get_data_source(self.store, self.namespace, source)
            if cm is not None:
                mounts = VolMounts()
                for idx, key in enumerate(sorted(cm.data)):
                    vname = hashed_volume_name(f"{cm.name}-{idx}", "cm")
                    mounts.volumes.append(
                        Volume(
                            name=vname,
                            config_map=ConfigMapVolumeSource(
                                name=cm.name, items=[KeyToPath(key=key, path=key)]
                            ),
                        )
                    )
                    mounts.mounts.append(
                        VolumeMount(
                            name=vname, mount_path=posixpath.join(base, key), sub_path=key
                        )
                    )
                config_mounts.append(mounts)
            if secret is not None:
                mounts = VolMounts()
                for idx, key in enumerate(sorted(secret.data)):
                    vname = hashed_volume_name(f"{secret.name}-{idx}", "sec")
                    mounts.volumes.append(
                        Volume(
                            name=vname,
                            secret=SecretVolumeSource(
                                secret_name=secret.name,
                                items=[KeyToPath(key=key, path=key)],
                            ),
                        )
                    )
                    mounts.mounts.append(
                        VolumeMount(
                            name=vname, mount_path=posixpath.join(base, key), sub_path=key
                        )
                    )
                secret_mounts.append(mounts)
        return config_mounts + secret_mounts

    async def _cert_source(self, name: str, services: List[str]) -> Optional[Service]:
        """
        Service whose certificates `name` should mount.

        A service may borrow certificates through certsFrom or through its
        service type; nothing is mounted when the lender is deployed in the
        same list, since the lender mounts them itself.
        """
        service = await self.store.get(Service, self.namespace, name)
        if service.spec.certs_from and service.spec.tls_certs is None and not service.spec.ca_certs:
            if service.spec.certs_from in services:
                return None
            service = await self.store.get(Service, self.namespace, service.spec.certs_from)
        if service.service_type != service.name and service.spec.tls_certs is None:
            if service.service_type in services:
                return None
            service = await self.store.get(Service, self.namespace, service.service_type)
        return service

    async def cert_mounts(self, services: List[str]) -> List[VolMounts]:
        """Certificate bundle and CA mounts for every service in the list."""
        result: List[VolMounts] = []
        for name in services:
            service = await self._cert_source(name, services)
            if service is None:
                continue
            if service.spec.tls_certs is not None and self.nodeset.spec.tls_enabled:
                for cert_key in sorted(service.spec.tls_certs):
                    result.append(await self._cert_bundle_mount(service, cert_key))
            if service.spec.ca_certs:
                result.append(await self.cacert_mount(service))
        return result

    async def _cert_bundle_mount(self, service: Service, cert_key: str) -> VolMounts:
        first = service_certs_secret_name(self.nodeset.name, service.name, cert_key, 0)
        head = await self.store.get(Secret, self.namespace, first)
        try:
            count = int(head.metadata.labels.get(NUMBER_OF_SECRETS_LABEL, "0"))
        except ValueError:
            count = 0
        names: List[str] = []
        for index in range(count):
            bundle_name = service_certs_secret_name(
                self.nodeset.name, service.name, cert_key, index
            )
            if await self.store.find(Secret, self.namespace, bundle_name) is None:
                raise NotFoundError(Secret.KIND, self.namespace, bundle_name)
            names.append(bundle_name)

        vname = hashed_volume_name(first, "cert")
        cert_spec = service.spec.tls_certs[cert_key]  # type: ignore[index]
        mount_dir = cert_spec.edpm_role_service_name or service.service_type
        return VolMounts(
            volumes=[Volume(name=vname, projected=ProjectedVolumeSource(secret_names=names))],
            mounts=[
                VolumeMount(
                    name=vname, mount_path=posixpath.join(CERT_PATHS, mount_dir, cert_key)
                )
            ],
        )

    async def cacert_mount(self, service: Service) -> VolMounts:
        """Mount the CA bundle secret named by the service's caCerts."""
        logger.info("mounting CA cert bundle for service %s", service.name)
        await self.store.get(Secret, self.namespace, service.spec.ca_certs)
        vname = hashed_volume_name(f"{service.name}-{service.spec.ca_certs}", "cacert")
        return VolMounts(
            volumes=[
                Volume(name=vname, secret=SecretVolumeSource(secret_name=service.spec.ca_certs))
            ],
            mounts=[
                VolumeMount(
                    name=vname,
                    mount_path=posixpath.join(CACERT_PATHS, service.service_type),
                )
            ],
        )
