"""
dataplane_orchestrator/dataplane/inventory.py

Builds the automation inventory for a NodeSet and stores it in the secret
`dataplanenodeset-<nodeset>` under the key `inventory`.

Layout of the document (one group, named after the NodeSet):

    <nodeset>:
      vars:  {group variables}
      hosts:
        <short host name>: {host variables}

Group variables: values from the template's ansibleVarsFrom sources, then
computed defaults (connection settings, image references the user did not
set), then the template's ansibleVars, then NodeSet-level facts (networks,
services, TLS flag, SSH key path). Host variables follow the same order per
node and end with the address data resolved from the node's IPSet.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Dict, List, Mapping, Tuple

import yaml

from dataplane_orchestrator.errors import OrchestratorError
from dataplane_orchestrator.models.external import IPSet
from dataplane_orchestrator.models.k8s import Secret
from dataplane_orchestrator.models.meta import ObjectMeta
from dataplane_orchestrator.models.nodeset import (
    CTLPLANE_NETWORK,
    AnsibleOpts,
    IPSetNetwork,
    NodeSet,
)
from dataplane_orchestrator.models.service import Service
from dataplane_orchestrator.dataplane.datasource import get_ansible_vars_from
from dataplane_orchestrator.store.base import StateStore
from dataplane_orchestrator.utils.naming import is_fqdn, short_hostname

logger = logging.getLogger(__name__)

INVENTORY_KEY = "inventory"
SSH_KEY_PATH_TEMPLATE = "/runner/env/ssh_key/ssh_key_{}"

# Inventory variable -> release image field. Each is only filled in when the
# user did not set the variable.
IMAGE_VARS: Dict[str, str] = {
    "edpm_frr_image": "EdpmFrrImage",
    "edpm_iscsid_image": "EdpmIscsidImage",
    "edpm_logrotate_crond_image": "EdpmLogrotateCrondImage",
    "edpm_multipathd_image": "EdpmMultipathdImage",
    "edpm_neutron_dhcp_image": "EdpmNeutronDhcpAgentImage",
    "edpm_neutron_metadata_agent_image": "EdpmNeutronMetadataAgentImage",
    "edpm_neutron_ovn_agent_image": "EdpmNeutronOvnAgentImage",
    "edpm_neutron_sriov_image": "EdpmNeutronSriovAgentImage",
    "edpm_nova_compute_image": "NovaComputeImage",
    "edpm_ovn_controller_agent_image": "OvnControllerImage",
    "edpm_ovn_bgp_agent_image": "EdpmOvnBgpAgentImage",
    "edpm_telemetry_ceilometer_compute_image": "CeilometerComputeImage",
    "edpm_telemetry_ceilometer_ipmi_image": "CeilometerIpmiImage",
    "edpm_telemetry_node_exporter_image": "EdpmNodeExporterImage",
    "edpm_telemetry_kepler_image": "EdpmKeplerImage",
    "edpm_telemetry_podman_exporter_image": "EdpmPodmanExporterImage",
    "edpm_telemetry_openstack_network_exporter_image": "EdpmOpenstackNetworkExporterImage",
}


def inventory_secret_name(nodeset_name: str) -> str:
    return f"dataplanenodeset-{nodeset_name}"


def _network_vars(
    networks: List[IPSetNetwork], service_net_map: Mapping[str, str]
) -> Tuple[List[str], Dict[str, str]]:
    names: List[str] = []
    lowered: Dict[str, str] = {}
    for network in networks:
        service_net = service_net_map.get(network.name.lower(), network.name.lower())
        if service_net == CTLPLANE_NETWORK:
            continue
        names.append(network.name)
        lowered[network.name] = service_net
    return names, lowered


def _connection_vars(
    ansible: AnsibleOpts, management_network: str, target: Dict[str, Any]
) -> None:
    if ansible.ansible_user:
        target["ansible_user"] = ansible.ansible_user
    if ansible.ansible_port > 0:
        target["ansible_port"] = str(ansible.ansible_port)
    if management_network:
        target["management_network"] = management_network


def _apply_networks(
    networks: List[IPSetNetwork],
    service_net_map: Mapping[str, str],
    target: Dict[str, Any],
) -> None:
    if not networks:
        return
    names, lowered = _network_vars(networks, service_net_map)
    target["nodeset_networks"] = names
    target["networks_lower"] = lowered
    target["network_servicenet_map"] = lowered


def ipam_host_vars(ip_set: IPSet, dns_addresses: List[str], host_name: str) -> Dict[str, Any]:
    """
    Address variables for one host, derived from its reservations.

    Args:
        ip_set (IPSet): The host's address reservations.
        dns_addresses (List[str]): Name server addresses for the control plane.
        host_name (str): The node's configured host name.

    Returns:
        Dict[str, Any]: `<net>_ip`, `<net>_cidr`, `<net>_vlan_id`, `<net>_mtu`,
        `<net>_gateway_ip`, `<net>_host_routes`, plus `ctlplane_dns_nameservers`,
        `canonical_hostname` and `dns_search_domains`.
    """
    result: Dict[str, Any] = {}
    search_domains: List[str] = []
    for res in ip_set.status.reservation:
        entry = res.network_key
        result[f"{entry}_ip"] = res.address
        if res.cidr:
            try:
                result[f"{entry}_cidr"] = ipaddress.ip_network(res.cidr, strict=False).prefixlen
            except ValueError:
                logger.warning("ignoring malformed cidr %r for %s", res.cidr, host_name)
        if res.vlan is not None:
            result[f"{entry}_vlan_id"] = res.vlan
        result[f"{entry}_mtu"] = res.mtu
        result[f"{entry}_gateway_ip"] = res.gateway
        result[f"{entry}_host_routes"] = res.routes

        if entry == CTLPLANE_NETWORK:
            result[f"{entry}_dns_nameservers"] = list(dns_addresses)
            if is_fqdn(host_name):
                result["canonical_hostname"] = host_name
                domain = host_name.split(".", 1)[1]
                if domain != res.dns_domain:
                    search_domains.append(domain)
            else:
                result["canonical_hostname"] = f"{host_name}.{res.dns_domain}"
        search_domains.append(res.dns_domain)
    result["dns_search_domains"] = search_domains
    return result


def build_inventory(
    nodeset: NodeSet,
    group_vars_from: Dict[str, Any],
    host_vars_from: Dict[str, Dict[str, Any]],
    ip_sets: Dict[str, IPSet],
    dns_addresses: List[str],
    container_images: Dict[str, str],
    service_net_map: Mapping[str, str],
    service_types: List[str],
) -> Dict[str, Any]:
    """
    Assemble the inventory document for one NodeSet.

    Args:
        nodeset (NodeSet): The NodeSet being described.
        group_vars_from (Dict[str, Any]): Resolved template ansibleVarsFrom values.
        host_vars_from (Dict[str, Dict[str, Any]]): Resolved per-node
            ansibleVarsFrom values keyed by node name.
        ip_sets (Dict[str, IPSet]): Reservations keyed by host name.
        dns_addresses (List[str]): Control plane name servers.
        container_images (Dict[str, str]): Release image map.
        service_net_map (Mapping[str, str]): Lowercased network name to service network.
        service_types (List[str]): Service type of every entry in spec.services.

    Returns:
        Dict[str, Any]: The inventory, ready to be serialized.

    Raises:
        OrchestratorError: If a node has no IPSet.
    """
    template = nodeset.spec.node_template
    user_vars = set(template.ansible.ansible_vars) | set(group_vars_from)

    group: Dict[str, Any] = dict(group_vars_from)
    _connection_vars(template.ansible, template.management_network, group)
    for var, field in IMAGE_VARS.items():
        image = container_images.get(field)
        if var not in user_vars and image:
            group[var] = image
    group.update(template.ansible.ansible_vars)
    _apply_networks(template.networks, service_net_map, group)

    group["edpm_nodeset_name"] = nodeset.name
    group["edpm_tls_certs_enabled"] = nodeset.spec.tls_enabled
    if nodeset.spec.tags:
        group["nodeset_tags"] = list(nodeset.spec.tags)
    group["edpm_services"] = list(nodeset.spec.services)
    group["edpm_service_types"] = list(service_types)
    group["ansible_ssh_private_key_file"] = SSH_KEY_PATH_TEMPLATE.format(nodeset.name)

    hosts: Dict[str, Dict[str, Any]] = {}
    for node_name, node in nodeset.sorted_nodes():
        host: Dict[str, Any] = dict(host_vars_from.get(node_name, {}))
        host["ansible_host"] = node.ansible.ansible_host or node.host_name
        _connection_vars(node.ansible, node.management_network, host)
        host.update(node.ansible.ansible_vars)
        _apply_networks(node.networks, service_net_map, host)

        ip_set = ip_sets.get(node.host_name)
        if ip_set is None:
            raise OrchestratorError(f"no IPSet found for host: {node.host_name}")
        host.update(ipam_host_vars(ip_set, dns_addresses, node.host_name))
        hosts[short_hostname(node.host_name)] = host

    return {nodeset.name: {"vars": group, "hosts": hosts}}


async def resolve_service_types(
    store: StateStore, namespace: str, services: List[str]
) -> List[str]:
    """Service type for each name; unknown services fall back to their name."""
    types: List[str] = []
    for name in services:
        service = await store.find(Service, namespace, name)
        if service is None:
            logger.warning("could not get service %s, using name as service type", name)
            types.append(name)
        else:
            types.append(service.service_type)
    return types


async def generate_nodeset_inventory(
    store: StateStore,
    nodeset: NodeSet,
    ip_sets: Dict[str, IPSet],
    dns_addresses: List[str],
    container_images: Dict[str, str],
    service_net_map: Mapping[str, str],
) -> str:
    """
    Build the inventory and persist it as a secret owned by the NodeSet.

    Returns:
        str: Name of the inventory secret.
    """
    group_vars_from = await get_ansible_vars_from(
        store, nodeset.namespace, nodeset.spec.node_template.ansible
    )
    host_vars_from: Dict[str, Dict[str, Any]] = {}
    for node_name, node in nodeset.sorted_nodes():
        host_vars_from[node_name] = await get_ansible_vars_from(
            store, nodeset.namespace, node.ansible
        )
    service_types = await resolve_service_types(
        store, nodeset.namespace, nodeset.spec.services
    )
    document = build_inventory(
        nodeset,
        group_vars_from,
        host_vars_from,
        ip_sets,
        dns_addresses,
        container_images,
        service_net_map,
        service_types,
    )

    name = inventory_secret_name(nodeset.name)
    labels = {
        "openstack.org/operator-name": "dataplane",
        "openstackdataplanenodeset": nodeset.name,
        "inventory": "true",
    }
    labels.update(nodeset.metadata.labels)
    secret = Secret(
        metadata=ObjectMeta(
            name=name,
            namespace=nodeset.namespace,
            labels=labels,
            owner_references=[nodeset.owner_reference()],
        ),
        data={INVENTORY_KEY: yaml.safe_dump(document, sort_keys=True).encode("utf-8")},
    )
    await store.create_or_patch(secret)
    nodeset.status.inventory_secret_name = name
    return name
