"""
dataplane_orchestrator/dataplane/service.py

Service catalog population and the per-deployment service deduplication.

Deduplication rules, applied per NodeSet in list order:
  - a service whose service type already appears in the NodeSet's list is
    dropped (first one wins);
  - a service flagged deployOnAllNodeSets is dispatched once per deployment;
    declaring it in the lists of two or more NodeSets is rejected outright;
  - a service that does not exist is kept so the deploy step can report it.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional, Sequence, Set, Tuple

import aiofiles
import yaml

from dataplane_orchestrator.errors import ConfigurationError
from dataplane_orchestrator.models.nodeset import NodeSet
from dataplane_orchestrator.models.service import Service
from dataplane_orchestrator.models.validator import validate_resource
from dataplane_orchestrator.store.base import StateStore
from dataplane_orchestrator.utils.naming import dns1123_errors

logger = logging.getLogger(__name__)


async def load_service_catalog(services_dir: str) -> List[Service]:
    """
    Read every `*.yaml` service definition under `services_dir`.

    Files of another kind are skipped.

    Raises:
        ConfigurationError: If a file cannot be parsed or a service name is not
            a valid RFC 1123 subdomain.
    """
    try:
        entries = sorted(os.listdir(services_dir))
    except OSError as exc:
        raise ConfigurationError(f"cannot read services directory {services_dir}: {exc}") from exc

    services: List[Service] = []
    for entry in entries:
        if not entry.endswith(".yaml"):
            logger.info("skipping service catalog file without .yaml suffix: %s", entry)
            continue
        path = os.path.join(services_dir, entry)
        async with aiofiles.open(path, "r") as f:
            raw = await f.read()
        try:
            doc = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"service YAML file {path} is invalid: {exc}") from exc
        if not isinstance(doc, dict) or doc.get("kind") != Service.KIND:
            logger.info("skipping %s: kind is not %s", path, Service.KIND)
            continue
        name = (doc.get("metadata") or {}).get("name", "")
        problems = dns1123_errors(name)
        if problems:
            raise ConfigurationError(
                f"service name {name!r} in {path} must follow RFC1123: {'; '.join(problems)}"
            )
        try:
            services.append(validate_resource(doc, Service))
        except ValueError as exc:
            raise ConfigurationError(f"service {name} in {path}: {exc}") from exc
    return services


async def ensure_services(store: StateStore, nodeset: NodeSet, services_dir: str) -> int:
    """
    Create or update every catalog service in the NodeSet's namespace.

    Returns:
        int: Number of catalog services ensured.
    """
    logger.info("ensuring services from %s for nodeset %s", services_dir, nodeset.name)
    catalog = await load_service_catalog(services_dir)
    for service in catalog:
        service.metadata.namespace = nodeset.namespace
        if not service.spec.edpm_service_type:
            service.spec.edpm_service_type = service.name
        await store.create_or_patch(service)
    return len(catalog)


def dedupe(
    nodeset_services: Sequence[Tuple[str, List[str]]],
    catalog: Dict[str, Service],
) -> Dict[str, List[str]]:
    """
    Compute the effective service list of each NodeSet.

    Args:
        nodeset_services (Sequence[Tuple[str, List[str]]]): (NodeSet name,
            declared services) in NodeSet order.
        catalog (Dict[str, Service]): Known services by name; names missing
            from it are kept as-is.

    Returns:
        Dict[str, List[str]]: Effective service list per NodeSet.

    Raises:
        ConfigurationError: If a global service is declared by two or more NodeSets.
    """
    declared_by: Dict[str, List[str]] = {}
    for nodeset_name, services in nodeset_services:
        for svc in services:
            service = catalog.get(svc)
            if service is not None and service.is_global:
                owners = declared_by.setdefault(svc, [])
                if nodeset_name not in owners:
                    owners.append(nodeset_name)
    for svc, owners in declared_by.items():
        if len(owners) > 1:
            raise ConfigurationError(
                f"service {svc} has deployOnAllNodeSets set and is defined multiple times, "
                f"in nodesets {', '.join(owners)}"
            )

    result: Dict[str, List[str]] = {}
    global_services: Set[str] = set()
    for nodeset_name, services in nodeset_services:
        deduped: List[str] = []
        service_types: Set[str] = set()
        for svc in services:
            service = catalog.get(svc)
            if service is None:
                if svc not in deduped:
                    logger.error("configured service %s does not exist", svc)
                    deduped.append(svc)
                continue
            if service.service_type in service_types or svc in deduped:
                continue
            if service.is_global:
                if svc in global_services:
                    continue
                global_services.add(svc)
            service_types.add(service.service_type)
            deduped.append(svc)
        result[nodeset_name] = deduped
    logger.info("global services: %s", sorted(global_services))
    return result


async def dedupe_services(
    store: StateStore,
    namespace: str,
    nodesets: Sequence[NodeSet],
    services_override: Optional[List[str]] = None,
) -> Dict[str, List[str]]:
    """
    Effective per-NodeSet service lists for one deployment.

    An override list applies verbatim to every NodeSet; otherwise each
    NodeSet's own list is deduplicated.
    """
    if services_override:
        return {ns.name: list(services_override) for ns in nodesets}
    catalog: Dict[str, Service] = {}
    for nodeset in nodesets:
        for svc in nodeset.spec.services:
            if svc not in catalog:
                found = await store.find(Service, namespace, svc)
                if found is not None:
                    catalog[svc] = found
    return dedupe([(ns.name, list(ns.spec.services)) for ns in nodesets], catalog)
