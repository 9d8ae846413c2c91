"""
dataplane_orchestrator/dataplane/baremetal.py

Hands nodes that are not pre-provisioned to the hardware provisioning system
by writing one BaremetalSet record per NodeSet.
"""

from __future__ import annotations

import logging
from typing import Dict

from dataplane_orchestrator.models.external import (
    BaremetalHost,
    BaremetalSet,
    BaremetalSetSpec,
    IPSet,
)
from dataplane_orchestrator.models.meta import ObjectMeta
from dataplane_orchestrator.models.nodeset import CTLPLANE_NETWORK, NodeSet
from dataplane_orchestrator.store.base import StateStore

logger = logging.getLogger(__name__)


def _ctlplane_ip(ip_set: IPSet) -> str:
    for res in ip_set.status.reservation:
        if res.network.lower() == CTLPLANE_NETWORK:
            return res.address
    return ""


async def deploy_baremetal_set(
    store: StateStore, nodeset: NodeSet, ip_sets: Dict[str, IPSet]
) -> bool:
    """
    Create or update the BaremetalSet for a NodeSet.

    Args:
        store (StateStore): Declarative store.
        nodeset (NodeSet): NodeSet whose nodes are provisioned.
        ip_sets (Dict[str, IPSet]): Ready reservations keyed by host name.

    Returns:
        bool: True once the provisioning system reports the set Ready.
    """
    template = nodeset.spec.baremetal_set_template
    hosts: Dict[str, BaremetalHost] = {}
    for _, node in nodeset.sorted_nodes():
        ip_set = ip_sets.get(node.host_name)
        hosts[node.host_name] = BaremetalHost(
            ctl_plane_ip=_ctlplane_ip(ip_set) if ip_set is not None else "",
            bmh_label_selector=node.bmh_label_selector,
        )
    baremetal = BaremetalSet(
        metadata=ObjectMeta(
            name=nodeset.name,
            namespace=nodeset.namespace,
            owner_references=[nodeset.owner_reference()],
        ),
        spec=BaremetalSetSpec(
            cloud_user_name=template.cloud_user_name,
            deployment_ssh_secret=(
                template.deployment_ssh_secret
                or nodeset.spec.node_template.ansible_ssh_private_key_secret
            ),
            ctlplane_interface=template.ctlplane_interface,
            os_image=template.os_image,
            bmh_namespace=template.bmh_namespace,
            domain_name=template.domain_name,
            baremetal_hosts=hosts,
        ),
    )
    stored, _ = await store.create_or_patch(baremetal)
    ready = stored.status.is_ready()
    if not ready:
        logger.info("BaremetalSet %s not ready yet", nodeset.name)
    return ready
