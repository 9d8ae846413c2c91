"""
dataplane_orchestrator/dataplane/cert.py

Per-node TLS certificates for services, and the packer that groups the
issued material into size-bounded secrets.

Packing only depends on the sorted key set: keys are grouped per host
(`<host>-ca.crt`, `<host>-tls.crt`, `<host>-tls.key`), hosts are walked in
sorted order and a new bundle is opened whenever the next group would push
the running size (data plus key name) past the bound. A single group larger
than the bound gets a bundle of its own and is not split further.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import Field

from dataplane_orchestrator.errors import CertificateError
from dataplane_orchestrator.models.external import Certificate, CertificateSpec
from dataplane_orchestrator.models.k8s import Secret
from dataplane_orchestrator.models.meta import CamelModel, ObjectMeta
from dataplane_orchestrator.models.nodeset import CTLPLANE_NETWORK, NodeSet
from dataplane_orchestrator.models.service import Service
from dataplane_orchestrator.store.base import OperationResult, StateStore
from dataplane_orchestrator.utils.naming import short_hostname

logger = logging.getLogger(__name__)

CERT_FIELDS: Tuple[str, ...] = ("ca.crt", "tls.crt", "tls.key")

HOSTNAME_LABEL = "hostname"
SERVICE_LABEL = "osdp-service"
SERVICE_KEY_LABEL = "osdp-service-cert-key"
NODESET_LABEL = "osdpns"
NUMBER_OF_SECRETS_LABEL = "numberOfSecrets"
SECRET_NUMBER_LABEL = "secretNumber"

ROOT_CA_ISSUER_INTERNAL_LABEL = "osp-rootca-issuer-internal"
DNS_NAMES = "dnsnames"
IP_VALUES = "ips"


class CertOutcome(str, Enum):
    READY = "ready"
    PENDING = "pending"
    CHANGED = "changed"


def service_certs_secret_name(
    nodeset_name: str, service_name: str, cert_key: str, index: int
) -> str:
    return f"{nodeset_name}-{service_name}-{cert_key}-certs-{index}"


def _split_cert_key(key: str) -> Tuple[str, int]:
    for pos, suffix in enumerate(CERT_FIELDS):
        if key.endswith("-" + suffix):
            return key[: -(len(suffix) + 1)], pos
    return key, len(CERT_FIELDS)


def pack_cert_bundles(certs: Dict[str, bytes], max_size: int) -> List[Dict[str, bytes]]:
    """
    Bin-pack certificate material into bundles no larger than `max_size`.

    Args:
        certs (Dict[str, bytes]): Blobs keyed by `<host>-{ca.crt|tls.crt|tls.key}`.
        max_size (int): Upper bound for the summed size of one bundle, where an
            entry counts as len(data) + len(key).

    Returns:
        List[Dict[str, bytes]]: Bundles in creation order.
    """
    groups: Dict[str, List[Tuple[int, str]]] = {}
    for key in sorted(certs):
        host, pos = _split_cert_key(key)
        groups.setdefault(host, []).append((pos, key))

    bundles: List[Dict[str, bytes]] = []
    total = 0
    for host in sorted(groups):
        members = [key for _, key in sorted(groups[host])]
        size = sum(len(certs[k]) + len(k) for k in members)
        if not bundles or total + size > max_size:
            bundles.append({})
            total = 0
        for key in members:
            bundles[-1][key] = certs[key]
        total += size
    return bundles


class CertificateRequest(CamelModel):
    cert_name: str
    issuer_label: str
    common_name: str
    hostnames: List[str] = Field(default_factory=list)
    ips: List[str] = Field(default_factory=list)
    usages: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)


class CertificateIssuer(ABC):
    """External collaborator that turns certificate requests into key material."""

    @abstractmethod
    async def ensure_certificate(
        self, owner: NodeSet, request: CertificateRequest
    ) -> Optional[Dict[str, bytes]]:
        """
        Make sure a certificate matching `request` exists.

        Returns:
            Optional[Dict[str, bytes]]: `ca.crt`, `tls.crt` and `tls.key` once
            issued, or None while issuing is still in progress.
        """
        pass


class StoreCertificateIssuer(CertificateIssuer):
    """
    Requests certificates by writing Certificate records to the store.

    The issuing system marks the record Ready and writes the key material to
    the secret named in `spec.secretName`.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store

    async def ensure_certificate(
        self, owner: NodeSet, request: CertificateRequest
    ) -> Optional[Dict[str, bytes]]:
        secret_name = f"cert-{request.cert_name}"
        cert = Certificate(
            metadata=ObjectMeta(
                name=request.cert_name,
                namespace=owner.namespace,
                labels=dict(request.labels),
                owner_references=[owner.owner_reference()],
            ),
            spec=CertificateSpec(
                common_name=request.common_name,
                dns_names=request.hostnames,
                ip_addresses=request.ips,
                issuer=request.issuer_label,
                usages=request.usages,
                secret_name=secret_name,
            ),
        )
        stored, _ = await self.store.create_or_patch(cert)
        if not stored.status.is_ready():
            return None
        secret = await self.store.find(Secret, owner.namespace, secret_name)
        if secret is None:
            return None
        return dict(secret.data)


def build_certificate_request(
    nodeset: NodeSet,
    node_name: str,
    host_name: str,
    service: Service,
    cert_key: str,
) -> Tuple[str, CertificateRequest]:
    """
    Work out the subject names for one node's certificate.

    Returns:
        Tuple[str, CertificateRequest]: The control plane host name used to key
        the issued material, and the request itself.

    Raises:
        CertificateError: If the node has no control plane host name.
    """
    cert_spec = (service.spec.tls_certs or {})[cert_key]
    dns_names = nodeset.status.all_hostnames.get(host_name, {})
    ips_map = nodeset.status.all_ips.get(host_name, {})

    hosts: List[str] = []
    ips: List[str] = []
    if DNS_NAMES in cert_spec.contents:
        if cert_spec.networks:
            hosts = [dns_names.get(n.lower(), "") for n in cert_spec.networks]
        else:
            hosts = [dns_names[n] for n in sorted(dns_names)]
    if IP_VALUES in cert_spec.contents:
        if cert_spec.networks:
            ips = [ips_map.get(n.lower(), "") for n in cert_spec.networks]
        else:
            ips = [ips_map[n] for n in sorted(ips_map)]

    base_name = dns_names.get(CTLPLANE_NETWORK)
    if base_name is None:
        raise CertificateError(
            f"control plane network not found for node {node_name} , "
            "tls-e requires a control plane network to be present"
        )

    request = CertificateRequest(
        cert_name=f"{service.name}-{cert_key}-{host_name}",
        issuer_label=cert_spec.issuer or ROOT_CA_ISSUER_INTERNAL_LABEL,
        common_name=short_hostname(base_name),
        hostnames=[h for h in hosts if h],
        ips=[ip for ip in ips if ip],
        usages=cert_spec.key_usages,
        labels={
            HOSTNAME_LABEL: host_name,
            SERVICE_LABEL: service.name,
            SERVICE_KEY_LABEL: cert_key,
            NODESET_LABEL: nodeset.name,
        },
    )
    return base_name, request


async def ensure_tls_certs(
    store: StateStore,
    issuer: CertificateIssuer,
    nodeset: NodeSet,
    service: Service,
    cert_key: str,
) -> CertOutcome:
    """
    Issue one certificate per node for (service, cert_key) and pack them.

    Args:
        store (StateStore): Where the packed secrets are written.
        issuer (CertificateIssuer): Certificate issuing collaborator.
        nodeset (NodeSet): NodeSet whose nodes need certificates; its status
            must already carry the resolved host names and addresses.
        service (Service): Service declaring the certificate.
        cert_key (str): Key into the service's tlsCerts.

    Returns:
        CertOutcome: PENDING while any certificate is still being issued,
        CHANGED if a packed secret was created or modified, READY otherwise.
    """
    certs: Dict[str, bytes] = {}
    for node_name, node in nodeset.sorted_nodes():
        base_name, request = build_certificate_request(
            nodeset, node_name, node.host_name, service, cert_key
        )
        issued = await issuer.ensure_certificate(nodeset, request)
        if issued is None:
            logger.info(
                "certificate %s for nodeset %s not yet issued",
                request.cert_name,
                nodeset.name,
            )
            return CertOutcome.PENDING
        for field in CERT_FIELDS:
            certs[f"{base_name}-{field}"] = issued.get(field, b"")

    bundles = pack_cert_bundles(certs, nodeset.spec.secret_max_size)
    outcome = CertOutcome.READY
    for index, bundle in enumerate(bundles):
        secret = Secret(
            metadata=ObjectMeta(
                name=service_certs_secret_name(nodeset.name, service.name, cert_key, index),
                namespace=nodeset.namespace,
                labels={
                    NUMBER_OF_SECRETS_LABEL: str(len(bundles)),
                    SECRET_NUMBER_LABEL: str(index),
                    NODESET_LABEL: nodeset.name,
                    SERVICE_LABEL: service.name,
                    SERVICE_KEY_LABEL: cert_key,
                },
                owner_references=[nodeset.owner_reference()],
            ),
            data=bundle,
        )
        _, result = await store.create_or_patch(secret)
        if result != OperationResult.UNCHANGED:
            outcome = CertOutcome.CHANGED

    # Bundles beyond the current count are left over from a larger packing.
    wanted = {
        service_certs_secret_name(nodeset.name, service.name, cert_key, index)
        for index in range(len(bundles))
    }
    packed = await store.list(
        Secret,
        namespace=nodeset.namespace,
        labels={
            NODESET_LABEL: nodeset.name,
            SERVICE_LABEL: service.name,
            SERVICE_KEY_LABEL: cert_key,
        },
    )
    for stale in packed:
        if SECRET_NUMBER_LABEL in stale.metadata.labels and stale.name not in wanted:
            logger.info("deleting stale certificate bundle %s", stale.name)
            await store.delete(Secret, stale.namespace, stale.name)
            outcome = CertOutcome.CHANGED
    return outcome
