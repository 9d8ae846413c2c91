import asyncio

import pytest

from dataplane_orchestrator.dataplane.ipam import NODESET_OWNER_LABEL, StoreAddressNameFacade
from dataplane_orchestrator.errors import ConfigurationError
from dataplane_orchestrator.models.conditions import READY
from dataplane_orchestrator.models.external import (
    DNSData,
    DNSMasq,
    DNSMasqStatus,
    IPSet,
    IPSetReservation,
    NetConfig,
    NetConfigNetwork,
    NetConfigSpec,
)
from dataplane_orchestrator.models.meta import ObjectMeta
from dataplane_orchestrator.models.nodeset import NodeSet
from dataplane_orchestrator.store.memory import InMemoryStore
from dataplane_orchestrator.tests.helpers import DNS_DOMAIN, NAMESPACE, make_nodeset, mark_ready


def _net_config() -> NetConfig:
    return NetConfig(
        metadata=ObjectMeta(name="netconfig", namespace=NAMESPACE),
        spec=NetConfigSpec(
            networks=[
                NetConfigNetwork(name="CtlPlane", dns_domain=DNS_DOMAIN),
                NetConfigNetwork(name="InternalApi", service_network="internal"),
            ]
        ),
    )


async def _reserve(store: InMemoryStore, host: str, address: str) -> None:
    ip_set = await store.get(IPSet, NAMESPACE, host)
    ip_set.status.reservation = [
        IPSetReservation(network="ctlplane", address=address, dns_domain=DNS_DOMAIN)
    ]
    ip_set.status.conditions.mark_true(READY, "reserved")
    await store.update_status(ip_set)


async def _dnsmasq(store: InMemoryStore, name: str = "dns", ready: bool = True) -> None:
    dnsmasq = await store.create(DNSMasq(metadata=ObjectMeta(name=name, namespace=NAMESPACE)))
    if ready:
        dnsmasq.status = DNSMasqStatus(
            dns_addresses=["192.168.122.80"], dns_cluster_addresses=["172.30.0.10"]
        )
        dnsmasq.status.conditions.mark_true(READY, "ready")
        await store.update_status(dnsmasq)


def test_ip_sets_wait_for_net_config():
    async def run() -> None:
        store = InMemoryStore()
        facade = StoreAddressNameFacade(store)
        result = await facade.ensure_ip_sets(await store.create(make_nodeset()))
        assert not result.ready
        assert result.message == "No NetConfig CR exists yet"
        assert await store.list(IPSet) == []

    asyncio.run(run())


def test_ip_sets_are_all_or_nothing():
    async def run() -> None:
        store = InMemoryStore()
        await store.create(_net_config())
        facade = StoreAddressNameFacade(store)
        nodeset = await store.create(make_nodeset(nodes=("compute-0", "compute-1")))

        result = await facade.ensure_ip_sets(nodeset)
        assert not result.ready
        assert sorted(result.ip_sets) == ["compute-0", "compute-1"]
        ip_set = await store.get(IPSet, NAMESPACE, "compute-0")
        assert ip_set.metadata.labels[NODESET_OWNER_LABEL] == "edpm-compute"
        assert ip_set.spec.immutable

        await _reserve(store, "compute-0", "192.168.122.100")
        assert not (await facade.ensure_ip_sets(nodeset)).ready
        await _reserve(store, "compute-1", "192.168.122.101")
        assert (await facade.ensure_ip_sets(nodeset)).ready

    asyncio.run(run())


def test_stale_ip_sets_are_removed():
    async def run() -> None:
        store = InMemoryStore()
        await store.create(_net_config())
        facade = StoreAddressNameFacade(store)
        nodeset = await store.create(make_nodeset(nodes=("compute-0", "compute-1")))
        await facade.ensure_ip_sets(nodeset)

        del nodeset.spec.nodes["compute-1"]
        await facade.ensure_ip_sets(nodeset)
        assert [s.name for s in await store.list(IPSet)] == ["compute-0"]

    asyncio.run(run())


def test_node_without_networks_is_a_configuration_error():
    async def run() -> None:
        store = InMemoryStore()
        await store.create(_net_config())
        nodeset = make_nodeset()
        nodeset.spec.node_template.networks = []
        with pytest.raises(ConfigurationError, match="No Networks defined for node compute-0"):
            await StoreAddressNameFacade(store).ensure_ip_sets(nodeset)

    asyncio.run(run())


def test_service_net_map():
    async def run() -> None:
        store = InMemoryStore()
        await store.create(_net_config())
        mapping = await StoreAddressNameFacade(store).service_net_map(NAMESPACE)
        assert mapping == {"ctlplane": "ctlplane", "internalapi": "internal"}

    asyncio.run(run())


def test_dns_data_requires_single_dnsmasq():
    async def run() -> None:
        store = InMemoryStore()
        facade = StoreAddressNameFacade(store)
        nodeset = make_nodeset()

        details = await facade.ensure_dns_data(nodeset, {})
        assert not details.ready and details.message == "No DNSMasq CR exists yet"

        await _dnsmasq(store, "dns-a", ready=False)
        details = await facade.ensure_dns_data(nodeset, {})
        assert details.message == "DNSMasq not ready yet"

        await _dnsmasq(store, "dns-b")
        with pytest.raises(ConfigurationError, match="Multiple DNSMasq"):
            await facade.ensure_dns_data(nodeset, {})

    asyncio.run(run())


def test_dns_data_records_and_readiness():
    async def run() -> None:
        store = InMemoryStore()
        await store.create(_net_config())
        await _dnsmasq(store)
        facade = StoreAddressNameFacade(store)
        nodeset = await store.create(make_nodeset(nodes=("compute-1", "compute-0.example.org")))
        await facade.ensure_ip_sets(nodeset)
        await _reserve(store, "compute-1", "192.168.122.101")
        await _reserve(store, "compute-0.example.org", "192.168.122.100")
        ip_result = await facade.ensure_ip_sets(nodeset)

        details = await facade.ensure_dns_data(nodeset, ip_result.ip_sets)
        assert not details.ready
        assert details.message == "DNSData not ready yet"
        dns_data = await store.get(DNSData, NAMESPACE, "edpm-compute")
        assert [h.ip for h in dns_data.spec.hosts] == ["192.168.122.100", "192.168.122.101"]
        assert dns_data.spec.hosts[0].hostnames == [
            f"compute-0.{DNS_DOMAIN}",
            "compute-0.example.org",
        ]

        await mark_ready(store, DNSData, "edpm-compute")
        details = await facade.ensure_dns_data(nodeset, ip_result.ip_sets)
        assert details.ready
        assert details.cluster_addresses == ["172.30.0.10"]
        assert details.server_addresses == ["192.168.122.80"]
        assert details.ctlplane_search_domain == DNS_DOMAIN
        assert details.hostnames["compute-1"] == {"ctlplane": f"compute-1.{DNS_DOMAIN}"}
        assert details.hostnames["compute-0.example.org"] == {"ctlplane": "compute-0.example.org"}
        assert details.all_ips["compute-1"] == {"ctlplane": "192.168.122.101"}

    asyncio.run(run())


def test_ip_sets_owned_by_nodeset_are_deleted_with_it():
    async def run() -> None:
        store = InMemoryStore()
        await store.create(_net_config())
        nodeset = await store.create(make_nodeset())
        await StoreAddressNameFacade(store).ensure_ip_sets(nodeset)
        await store.delete(NodeSet, NAMESPACE, "edpm-compute")
        assert await store.list(IPSet) == []

    asyncio.run(run())
