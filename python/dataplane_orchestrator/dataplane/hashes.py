"""
dataplane_orchestrator/dataplane/hashes.py

Content hashes of the inputs a service consumes, recorded on a Deployment
once it succeeds so a NodeSet can later tell whether its deployed state is
still current.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable

from dataplane_orchestrator.dataplane.cert import (
    NODESET_LABEL,
    SERVICE_KEY_LABEL,
    SERVICE_LABEL,
)
from dataplane_orchestrator.dataplane.datasource import get_data_source
from dataplane_orchestrator.models.k8s import ConfigMap, Secret
from dataplane_orchestrator.models.nodeset import NodeSet
from dataplane_orchestrator.models.service import Service
from dataplane_orchestrator.store.base import StateStore
from dataplane_orchestrator.utils.hashing import object_hash

logger = logging.getLogger(__name__)


def config_map_hash(cm: ConfigMap) -> str:
    return object_hash(cm.data)


def secret_hash(secret: Secret) -> str:
    return object_hash(secret.data)


async def service_hashes(
    store: StateStore,
    namespace: str,
    service_name: str,
    nodesets: Iterable[NodeSet],
    config_map_hashes: Dict[str, str],
    secret_hashes: Dict[str, str],
) -> None:
    """
    Hash every config map and secret one service consumes.

    Data sources are hashed by name; certificate bundles are found through
    their (nodeset, service, cert key) labels. Results are written into the
    two maps passed in.

    Raises:
        NotFoundError: If the service or a required data source is missing.
    """
    service = await store.get(Service, namespace, service_name)
    for source in service.spec.data_sources:
        cm, secret = await get_data_source(store, namespace, source)
        if cm is not None:
            config_map_hashes[cm.name] = config_map_hash(cm)
        if secret is not None:
            secret_hashes[secret.name] = secret_hash(secret)

    for cert_key in sorted(service.spec.tls_certs or {}):
        for nodeset in nodesets:
            bundles = await store.list(
                Secret,
                namespace=namespace,
                labels={
                    NODESET_LABEL: nodeset.name,
                    SERVICE_LABEL: service_name,
                    SERVICE_KEY_LABEL: cert_key,
                },
            )
            for bundle in bundles:
                secret_hashes[bundle.name] = secret_hash(bundle)
