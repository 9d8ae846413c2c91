"""
dataplane_orchestrator/dataplane/version.py

Release version lookup and the container image map derived from it.
"""

from __future__ import annotations

from typing import Dict, Optional

from dataplane_orchestrator.errors import ConfigurationError
from dataplane_orchestrator.models.external import OpenStackVersion
from dataplane_orchestrator.models.settings import OperatorSettings
from dataplane_orchestrator.store.base import StateStore

ANSIBLEEE_IMAGE = "AnsibleeeImage"


async def get_version(store: StateStore, namespace: str) -> Optional[OpenStackVersion]:
    """
    Return the namespace's release version record, if any.

    Raises:
        ConfigurationError: If more than one version record exists.
    """
    versions = await store.list(OpenStackVersion, namespace=namespace)
    if len(versions) > 1:
        raise ConfigurationError(
            "found multiple OpenStackVersions when at most 1 should exist"
        )
    return versions[0] if versions else None


def get_container_images(
    settings: OperatorSettings, version: Optional[OpenStackVersion]
) -> Dict[str, str]:
    """Configured defaults overlaid with whatever the release version pins."""
    images = settings.default_container_images()
    if version is not None:
        for field, image in version.status.container_images.items():
            if image:
                images[field] = image
    return images
