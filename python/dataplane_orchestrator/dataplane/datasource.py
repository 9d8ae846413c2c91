"""
dataplane_orchestrator/dataplane/datasource.py

Resolves data-source references (config maps or secrets) used both as
service mounts and as automation variables.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from dataplane_orchestrator.errors import ConfigurationError, NotFoundError
from dataplane_orchestrator.models.k8s import ConfigMap, Secret
from dataplane_orchestrator.models.meta import ObjectKey
from dataplane_orchestrator.models.nodeset import AnsibleOpts, NodeSet
from dataplane_orchestrator.models.service import DataSource
from dataplane_orchestrator.store.base import StateStore


async def get_data_source(
    store: StateStore, namespace: str, source: DataSource
) -> Tuple[Optional[ConfigMap], Optional[Secret]]:
    """
    Fetch the config map or secret a data source points at.

    Optional sources that do not exist resolve to (None, None).

    Raises:
        NotFoundError: If a required source is missing.
        ConfigurationError: If the source references neither kind.
    """
    if source.config_map_ref is not None:
        ref = source.config_map_ref
        cm = await store.find(ConfigMap, namespace, ref.name)
        if cm is None and not ref.optional:
            raise NotFoundError(ConfigMap.KIND, namespace, ref.name)
        return cm, None
    if source.secret_ref is not None:
        sref = source.secret_ref
        secret = await store.find(Secret, namespace, sref.name)
        if secret is None and not sref.optional:
            raise NotFoundError(Secret.KIND, namespace, sref.name)
        return None, secret
    raise ConfigurationError("data source must reference a configMap or a secret")


async def get_ansible_vars_from(
    store: StateStore, namespace: str, ansible: AnsibleOpts
) -> Dict[str, Any]:
    """
    Flatten every ansibleVarsFrom source into one variable map, prefix applied.

    Raises:
        NotFoundError: If a required source is missing.
        ConfigurationError: If a secret value is not valid UTF-8.
    """
    result: Dict[str, Any] = {}
    for source in ansible.ansible_vars_from:
        cm, secret = await get_data_source(store, namespace, source)
        if cm is not None:
            for key, value in cm.data.items():
                result[source.prefix + key] = value
        if secret is not None:
            for key, raw in secret.data.items():
                try:
                    result[source.prefix + key] = raw.decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise ConfigurationError(
                        f"secret {secret.name} key {key} is not valid UTF-8 "
                        f"and cannot be used as an automation variable: {exc}"
                    ) from exc
    return result


def data_source_key(namespace: str, source: DataSource) -> Optional[ObjectKey]:
    if source.config_map_ref is not None:
        return ObjectKey(kind=ConfigMap.KIND, namespace=namespace, name=source.config_map_ref.name)
    if source.secret_ref is not None:
        return ObjectKey(kind=Secret.KIND, namespace=namespace, name=source.secret_ref.name)
    return None


def nodeset_references(nodeset: NodeSet) -> List[ObjectKey]:
    """Every config map and secret whose change must re-enqueue this NodeSet."""
    sources = list(nodeset.spec.node_template.ansible.ansible_vars_from)
    for _, node in nodeset.sorted_nodes():
        sources.extend(node.ansible.ansible_vars_from)
    keys = [data_source_key(nodeset.namespace, s) for s in sources]
    refs = [k for k in keys if k is not None]
    ssh_secret = nodeset.spec.node_template.ansible_ssh_private_key_secret
    if ssh_secret:
        refs.append(ObjectKey(kind=Secret.KIND, namespace=nodeset.namespace, name=ssh_secret))
    return refs
