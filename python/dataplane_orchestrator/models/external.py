"""
dataplane_orchestrator/models/external.py

Defines Pydantic models for records owned by external collaborators that the
orchestrator creates, reads or polls:

  - NetConfig, IPSet, DNSMasq, DNSData (address and name management)
  - BaremetalSet (hardware provisioning)
  - Certificate (certificate issuing)
  - AnsibleExecution (one automation run) and its volume mounts
  - OpenStackVersion (release version and container image map)

Readiness of every collaborator record is reported through a Ready condition
on its status, written by the collaborator itself.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import Field

from dataplane_orchestrator.models.conditions import READY, ConditionSet
from dataplane_orchestrator.models.meta import CamelModel, Resource
from dataplane_orchestrator.models.nodeset import IPSetNetwork


class CollaboratorStatus(CamelModel):
    conditions: ConditionSet = Field(default_factory=ConditionSet)

    def is_ready(self) -> bool:
        return self.conditions.is_true(READY)


# Address and name management


class Subnet(CamelModel):
    name: str
    cidr: str
    vlan: Optional[int] = None
    gateway: Optional[str] = None
    routes: List[Dict[str, str]] = Field(default_factory=list)


class NetConfigNetwork(CamelModel):
    name: str
    dns_domain: str = ""
    mtu: int = 1500
    service_network: str = ""
    subnets: List[Subnet] = Field(default_factory=list)

    @property
    def effective_service_network(self) -> str:
        return self.service_network or self.name.lower()


class NetConfigSpec(CamelModel):
    networks: List[NetConfigNetwork] = Field(default_factory=list)


class NetConfig(Resource):
    KIND = "NetConfig"

    spec: NetConfigSpec = Field(default_factory=NetConfigSpec)

    def service_network_map(self) -> Dict[str, str]:
        """Lowercased network name to service network name."""
        return {
            net.name.lower(): net.effective_service_network
            for net in self.spec.networks
        }


class IPSetSpec(CamelModel):
    networks: List[IPSetNetwork] = Field(default_factory=list)
    immutable: bool = False


class IPSetReservation(CamelModel):
    network: str
    service_network: str = ""
    address: str
    cidr: str = ""
    vlan: Optional[int] = None
    mtu: int = 1500
    gateway: Optional[str] = None
    routes: List[Dict[str, str]] = Field(default_factory=list)
    dns_domain: str = Field("", alias="dnsDomain")

    @property
    def network_key(self) -> str:
        return self.service_network or self.network.lower()


class IPSetStatus(CollaboratorStatus):
    reservation: List[IPSetReservation] = Field(default_factory=list)


class IPSet(Resource):
    KIND = "IPSet"

    spec: IPSetSpec = Field(default_factory=IPSetSpec)
    status: IPSetStatus = Field(default_factory=IPSetStatus)


class DNSMasqStatus(CollaboratorStatus):
    dns_addresses: List[str] = Field(default_factory=list, alias="dnsAddresses")
    dns_cluster_addresses: List[str] = Field(
        default_factory=list, alias="dnsClusterAddresses"
    )


class DNSMasq(Resource):
    KIND = "DNSMasq"

    status: DNSMasqStatus = Field(default_factory=DNSMasqStatus)


class DNSHost(CamelModel):
    ip: str
    hostnames: List[str] = Field(default_factory=list)


class DNSDataSpec(CamelModel):
    hosts: List[DNSHost] = Field(default_factory=list)
    dns_data_label_selector_value: str = Field(
        "dnsdata", alias="dnsDataLabelSelectorValue"
    )


class DNSData(Resource):
    KIND = "DNSData"

    spec: DNSDataSpec = Field(default_factory=DNSDataSpec)
    status: CollaboratorStatus = Field(default_factory=CollaboratorStatus)


# Hardware provisioning


class BaremetalHost(CamelModel):
    ctl_plane_ip: str = Field("", alias="ctlPlaneIP")
    bmh_label_selector: Dict[str, str] = Field(default_factory=dict)


class BaremetalSetSpec(CamelModel):
    cloud_user_name: str = ""
    deployment_ssh_secret: str = Field("", alias="deploymentSSHSecret")
    ctlplane_interface: str = ""
    os_image: str = ""
    bmh_namespace: str = ""
    domain_name: str = ""
    baremetal_hosts: Dict[str, BaremetalHost] = Field(default_factory=dict)


class BaremetalSet(Resource):
    KIND = "OpenStackBaremetalSet"

    spec: BaremetalSetSpec = Field(default_factory=BaremetalSetSpec)
    status: CollaboratorStatus = Field(default_factory=CollaboratorStatus)


# Certificates


class CertificateSpec(CamelModel):
    common_name: str = ""
    dns_names: List[str] = Field(default_factory=list)
    ip_addresses: List[str] = Field(default_factory=list)
    issuer: str = ""
    usages: List[str] = Field(default_factory=list)
    secret_name: str = ""


class Certificate(Resource):
    KIND = "Certificate"

    spec: CertificateSpec = Field(default_factory=CertificateSpec)
    status: CollaboratorStatus = Field(default_factory=CollaboratorStatus)


# Automation runs


class KeyToPath(CamelModel):
    key: str
    path: str


class SecretVolumeSource(CamelModel):
    secret_name: str
    items: List[KeyToPath] = Field(default_factory=list)


class ConfigMapVolumeSource(CamelModel):
    name: str
    items: List[KeyToPath] = Field(default_factory=list)


class ProjectedVolumeSource(CamelModel):
    secret_names: List[str] = Field(default_factory=list)


class Volume(CamelModel):
    name: str
    secret: Optional[SecretVolumeSource] = None
    config_map: Optional[ConfigMapVolumeSource] = None
    projected: Optional[ProjectedVolumeSource] = None


class VolumeMount(CamelModel):
    name: str
    mount_path: str
    sub_path: str = ""


class VolMounts(CamelModel):
    volumes: List[Volume] = Field(default_factory=list)
    mounts: List[VolumeMount] = Field(default_factory=list)


class DNSConfig(CamelModel):
    nameservers: List[str] = Field(default_factory=list)
    searches: List[str] = Field(default_factory=list)


class AnsibleEESpec(CamelModel):
    """Run settings shared by every service of one NodeSet in one deployment pass."""

    extra_mounts: List[VolMounts] = Field(default_factory=list)
    extra_vars: Dict[str, Any] = Field(default_factory=dict)
    dns_config: Optional[DNSConfig] = None
    network_attachments: List[str] = Field(default_factory=list)
    runner_image: str = ""
    ansible_tags: str = ""
    ansible_limit: str = ""
    ansible_skip_tags: str = ""
    service_account_name: str = ""


class JobCondition(CamelModel):
    type: str
    status: str = "True"
    reason: str = ""
    message: str = ""


JOB_FAILED = "Failed"
JOB_COMPLETE = "Complete"


class AnsibleExecutionSpec(CamelModel):
    image: str = ""
    args: List[str] = Field(default_factory=list)
    cmd_line: str = ""
    extra_vars: Dict[str, Any] = Field(default_factory=dict)
    extra_mounts: List[VolMounts] = Field(default_factory=list)
    playbook: str = ""
    playbook_contents: str = ""
    role: str = ""
    backoff_limit: int = 6
    preserve_jobs: bool = True
    network_attachments: List[str] = Field(default_factory=list)
    dns_config: Optional[DNSConfig] = None
    service_account_name: str = ""
    node_selector: Dict[str, str] = Field(default_factory=dict)


class AnsibleExecutionStatus(CamelModel):
    active: int = 0
    succeeded: int = 0
    failed: int = 0
    conditions: List[JobCondition] = Field(default_factory=list)

    def failure_condition(self) -> Optional[JobCondition]:
        found: Optional[JobCondition] = None
        for cond in self.conditions:
            if cond.type == JOB_FAILED:
                found = cond
        return found


class AnsibleExecution(Resource):
    """One automation run of one service against one target."""

    KIND = "AnsibleExecution"

    spec: AnsibleExecutionSpec = Field(default_factory=AnsibleExecutionSpec)
    status: AnsibleExecutionStatus = Field(default_factory=AnsibleExecutionStatus)


# Release version


class OpenStackVersionSpec(CamelModel):
    target_version: str = ""


class OpenStackVersionStatus(CamelModel):
    deployed_version: str = ""
    container_images: Dict[str, Optional[str]] = Field(default_factory=dict)


class OpenStackVersion(Resource):
    KIND = "OpenStackVersion"

    spec: OpenStackVersionSpec = Field(default_factory=OpenStackVersionSpec)
    status: OpenStackVersionStatus = Field(default_factory=OpenStackVersionStatus)
