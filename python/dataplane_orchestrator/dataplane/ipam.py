"""
dataplane_orchestrator/dataplane/ipam.py

Address/name facade: the NodeSet controller's window onto the external
address-management and name-resolution systems.

  - AddressNameFacade: abstract interface.
  - StoreAddressNameFacade: talks to those systems through records in the
    declarative store (NetConfig, IPSet, DNSMasq, DNSData) whose readiness is
    written by the systems themselves.

Both steps are all-or-nothing: either every node's reservation is ready or
the whole step reports waiting.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, List

from pydantic import BaseModel, Field

from dataplane_orchestrator.errors import ConfigurationError
from dataplane_orchestrator.models.conditions import DNS_DATA_MULTIPLE_DNSMASQ_MESSAGE
from dataplane_orchestrator.models.external import (
    DNSData,
    DNSDataSpec,
    DNSHost,
    DNSMasq,
    IPSet,
    IPSetSpec,
    NetConfig,
)
from dataplane_orchestrator.models.meta import ObjectMeta
from dataplane_orchestrator.models.nodeset import CTLPLANE_NETWORK, NodeSet
from dataplane_orchestrator.store.base import StateStore
from dataplane_orchestrator.utils.naming import is_fqdn, short_hostname

logger = logging.getLogger(__name__)

NODESET_OWNER_LABEL = "openstackdataplanenodeset"


class IPSetResult(BaseModel):
    ip_sets: Dict[str, IPSet] = Field(default_factory=dict)
    ready: bool = False
    message: str = ""


class DNSDetails(BaseModel):
    """What name resolution resolved for a NodeSet."""

    ready: bool = False
    message: str = ""
    server_addresses: List[str] = Field(default_factory=list)
    cluster_addresses: List[str] = Field(default_factory=list)
    ctlplane_search_domain: str = ""
    hostnames: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    all_ips: Dict[str, Dict[str, str]] = Field(default_factory=dict)


class AddressNameFacade(ABC):
    """Address reservation and name-record collaborator."""

    @abstractmethod
    async def ensure_ip_sets(self, nodeset: NodeSet) -> IPSetResult:
        """
        Reserve addresses for every node.

        Raises:
            ConfigurationError: If a node has no networks at all.
        """
        pass

    @abstractmethod
    async def ensure_dns_data(
        self, nodeset: NodeSet, ip_sets: Dict[str, IPSet]
    ) -> DNSDetails:
        """
        Publish name records for every reservation.

        Raises:
            ConfigurationError: If more than one name-resolution service exists.
        """
        pass

    @abstractmethod
    async def service_net_map(self, namespace: str) -> Dict[str, str]:
        """Lowercased network name to service network name."""
        pass


class StoreAddressNameFacade(AddressNameFacade):
    """Facade implemented on collaborator records in the declarative store."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    async def _cleanup_ip_sets(self, nodeset: NodeSet) -> None:
        wanted = {node.host_name for _, node in nodeset.sorted_nodes()}
        owned = await self.store.list(
            IPSet, namespace=nodeset.namespace, labels={NODESET_OWNER_LABEL: nodeset.name}
        )
        for ip_set in owned:
            if ip_set.name not in wanted:
                logger.info("deleting stale IPSet %s of nodeset %s", ip_set.name, nodeset.name)
                await self.store.delete(IPSet, ip_set.namespace, ip_set.name)

    async def ensure_ip_sets(self, nodeset: NodeSet) -> IPSetResult:
        await self._cleanup_ip_sets(nodeset)

        net_configs = await self.store.list(NetConfig, namespace=nodeset.namespace)
        if not net_configs:
            return IPSetResult(message="No NetConfig CR exists yet")

        result = IPSetResult(ready=True)
        for node_name, node in nodeset.sorted_nodes():
            networks = nodeset.node_networks(node)
            if not networks:
                raise ConfigurationError(
                    f"No Networks defined for node {node_name} or template"
                )
            ip_set = IPSet(
                metadata=ObjectMeta(
                    name=node.host_name,
                    namespace=nodeset.namespace,
                    labels={NODESET_OWNER_LABEL: nodeset.name},
                    owner_references=[nodeset.owner_reference()],
                ),
                spec=IPSetSpec(networks=networks, immutable=nodeset.spec.pre_provisioned),
            )
            stored, _ = await self.store.create_or_patch(ip_set)
            result.ip_sets[node.host_name] = stored
            if not stored.status.is_ready():
                result.ready = False
        if not result.ready:
            result.message = "waiting on IPSet reservations"
        return result

    async def ensure_dns_data(
        self, nodeset: NodeSet, ip_sets: Dict[str, IPSet]
    ) -> DNSDetails:
        details = DNSDetails()
        dnsmasqs = await self.store.list(DNSMasq, namespace=nodeset.namespace)
        if len(dnsmasqs) > 1:
            raise ConfigurationError(DNS_DATA_MULTIPLE_DNSMASQ_MESSAGE)
        if not dnsmasqs:
            details.message = "No DNSMasq CR exists yet"
            return details
        dnsmasq = dnsmasqs[0]
        if not dnsmasq.status.is_ready() or not dnsmasq.status.dns_cluster_addresses:
            details.message = "DNSMasq not ready yet"
            return details
        details.server_addresses = list(dnsmasq.status.dns_addresses)
        details.cluster_addresses = list(dnsmasq.status.dns_cluster_addresses)

        records: List[DNSHost] = []
        for _, node in nodeset.sorted_nodes():
            host_name = node.host_name
            short = short_hostname(host_name)
            names = details.hostnames.setdefault(host_name, {})
            ips = details.all_ips.setdefault(host_name, {})
            ip_set = ip_sets.get(host_name)
            if ip_set is None or not nodeset.node_networks(node):
                continue
            for res in ip_set.status.reservation:
                net = res.network.lower()
                fqdn_names: List[str] = []
                fqdn = f"{short}.{res.dns_domain}"
                if fqdn != host_name:
                    fqdn_names.append(fqdn)
                    names[net] = fqdn
                if is_fqdn(host_name) and net == CTLPLANE_NETWORK:
                    fqdn_names.append(host_name)
                    names[net] = host_name
                ips[net] = res.address
                records.append(DNSHost(ip=res.address, hostnames=fqdn_names))
                if net == CTLPLANE_NETWORK and not details.ctlplane_search_domain:
                    details.ctlplane_search_domain = res.dns_domain

        dns_data = DNSData(
            metadata=ObjectMeta(
                name=nodeset.name,
                namespace=nodeset.namespace,
                owner_references=[nodeset.owner_reference()],
            ),
            spec=DNSDataSpec(hosts=records),
        )
        stored, _ = await self.store.create_or_patch(dns_data)
        if not stored.status.is_ready():
            details.message = "DNSData not ready yet"
            return details
        details.ready = True
        return details

    async def service_net_map(self, namespace: str) -> Dict[str, str]:
        net_configs = await self.store.list(NetConfig, namespace=namespace)
        mapping: Dict[str, str] = {}
        for net_config in net_configs:
            mapping.update(net_config.service_network_map())
        return mapping
