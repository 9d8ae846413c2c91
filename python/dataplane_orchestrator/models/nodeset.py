"""
dataplane_orchestrator/models/nodeset.py

Defines the NodeSet record: a named group of managed nodes sharing one
configuration template, together with the status its controller maintains.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from pydantic import Field

from dataplane_orchestrator.models.conditions import ConditionSet
from dataplane_orchestrator.models.meta import CamelModel, Resource
from dataplane_orchestrator.models.service import DataSource

CTLPLANE_NETWORK = "ctlplane"
DEFAULT_SECRET_MAX_SIZE = 1048576

DEFAULT_SERVICES: List[str] = [
    "download-cache",
    "bootstrap",
    "configure-network",
    "validate-network",
    "install-os",
    "configure-os",
    "ssh-known-hosts",
    "run-os",
    "reboot-os",
    "install-certs",
    "ovn",
    "neutron-metadata",
    "libvirt",
    "nova",
    "telemetry",
]


class AnsibleOpts(CamelModel):
    """Connection settings and variables handed to the automation engine."""

    ansible_user: str = ""
    ansible_host: str = ""
    ansible_port: int = 0
    ansible_vars: Dict[str, Any] = Field(default_factory=dict)
    ansible_vars_from: List[DataSource] = Field(default_factory=list)


class IPSetNetwork(CamelModel):
    """One network a node needs an address on."""

    name: str
    subnet_name: str = "subnet1"
    fixed_ip: Optional[str] = Field(None, alias="fixedIP")
    default_route: Optional[bool] = None


class NodeSection(CamelModel):
    """Per-node overrides of the template."""

    host_name: str = ""
    networks: List[IPSetNetwork] = Field(default_factory=list)
    management_network: str = ""
    ansible: AnsibleOpts = Field(default_factory=AnsibleOpts)
    bmh_label_selector: Dict[str, str] = Field(default_factory=dict)


class NodeTemplate(CamelModel):
    """Defaults shared by every node of the set."""

    ansible_ssh_private_key_secret: str = Field(
        "", alias="ansibleSSHPrivateKeySecret"
    )
    management_network: str = CTLPLANE_NETWORK
    networks: List[IPSetNetwork] = Field(default_factory=list)
    ansible: AnsibleOpts = Field(default_factory=AnsibleOpts)


class BaremetalSetTemplate(CamelModel):
    """Inputs forwarded to hardware provisioning when nodes are not pre-provisioned."""

    domain_name: str = ""
    cloud_user_name: str = "cloud-admin"
    deployment_ssh_secret: str = Field("", alias="deploymentSSHSecret")
    ctlplane_interface: str = ""
    os_image: str = ""
    bmh_namespace: str = "openshift-machine-api"


class NodeSetSpec(CamelModel):
    baremetal_set_template: BaremetalSetTemplate = Field(
        default_factory=BaremetalSetTemplate
    )
    node_template: NodeTemplate = Field(default_factory=NodeTemplate)
    nodes: Dict[str, NodeSection] = Field(default_factory=dict)
    network_attachments: List[str] = Field(default_factory=list)
    services: List[str] = Field(default_factory=lambda: list(DEFAULT_SERVICES))
    tags: List[str] = Field(default_factory=list)
    secret_max_size: int = DEFAULT_SECRET_MAX_SIZE
    pre_provisioned: bool = False
    tls_enabled: bool = Field(True, alias="tlsEnabled")


class NodeSetStatus(CamelModel):
    conditions: ConditionSet = Field(default_factory=ConditionSet)
    deployment_statuses: Dict[str, ConditionSet] = Field(default_factory=dict)
    all_hostnames: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    all_ips: Dict[str, Dict[str, str]] = Field(default_factory=dict, alias="allIPs")
    config_map_hashes: Dict[str, str] = Field(default_factory=dict)
    secret_hashes: Dict[str, str] = Field(default_factory=dict)
    dns_cluster_addresses: List[str] = Field(
        default_factory=list, alias="dnsClusterAddresses"
    )
    container_images: Dict[str, str] = Field(default_factory=dict)
    ctlplane_search_domain: str = ""
    config_hash: str = ""
    deployed_config_hash: str = ""
    inventory_secret_name: str = ""
    observed_generation: int = 0
    deployed_version: str = ""


class NodeSet(Resource):
    """A named group of nodes reconciled as one unit."""

    KIND = "OpenStackDataPlaneNodeSet"

    spec: NodeSetSpec = Field(default_factory=NodeSetSpec)
    status: NodeSetStatus = Field(default_factory=NodeSetStatus)

    def node_networks(self, node: NodeSection) -> List[IPSetNetwork]:
        """Networks for one node: its own list, else the template's."""
        return node.networks or self.spec.node_template.networks

    def sorted_nodes(self) -> List[Tuple[str, NodeSection]]:
        return sorted(self.spec.nodes.items())
