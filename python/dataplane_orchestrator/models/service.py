"""
dataplane_orchestrator/models/service.py

Defines the Service record: one declarative automation unit (playbook, role
or inline playbook) plus its certificate, data-source and image requirements.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import Field

from dataplane_orchestrator.models.meta import CamelModel, Resource


class ConfigMapEnvSource(CamelModel):
    name: str
    optional: Optional[bool] = None


class SecretEnvSource(CamelModel):
    name: str
    optional: Optional[bool] = None


class DataSource(CamelModel):
    """Reference to a config map or secret whose keys become automation variables."""

    prefix: str = ""
    config_map_ref: Optional[ConfigMapEnvSource] = None
    secret_ref: Optional[SecretEnvSource] = None


class ServiceCert(CamelModel):
    """Certificate requirements for one cert key of a service."""

    contents: List[str] = Field(default_factory=list)
    networks: List[str] = Field(default_factory=list)
    issuer: str = ""
    key_usages: List[str] = Field(default_factory=list)
    edpm_role_service_name: str = Field("", alias="edpmRoleServiceName")


class ServiceSpec(CamelModel):
    data_sources: List[DataSource] = Field(default_factory=list)
    tls_certs: Optional[Dict[str, ServiceCert]] = Field(None, alias="tlsCerts")
    playbook_contents: str = ""
    playbook: str = ""
    role: str = ""
    ca_certs: str = Field("", alias="caCerts")
    runner_image_override: str = Field("", alias="openStackAnsibleEERunnerImage")
    certs_from: str = ""
    add_cert_mounts: bool = False
    deploy_on_all_node_sets: bool = Field(False, alias="deployOnAllNodeSets")
    container_image_fields: List[str] = Field(default_factory=list)
    edpm_service_type: str = Field("", alias="edpmServiceType")


class Service(Resource):
    """A declarative automation unit dispatched by deployments."""

    KIND = "OpenStackDataPlaneService"

    spec: ServiceSpec = Field(default_factory=ServiceSpec)

    @property
    def service_type(self) -> str:
        return self.spec.edpm_service_type or self.name

    @property
    def is_global(self) -> bool:
        return self.spec.deploy_on_all_node_sets
