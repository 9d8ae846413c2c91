"""
dataplane_orchestrator/models/k8s.py

Defines Pydantic models for the plain cluster records the orchestrator reads
and writes: secrets, config maps, and the service account and role binding
handed to automation runs.
"""

from __future__ import annotations

from typing import Dict, List

from pydantic import Field

from dataplane_orchestrator.models.meta import CamelModel, Resource


class Secret(Resource):
    """Opaque key/value blobs."""

    KIND = "Secret"

    data: Dict[str, bytes] = Field(default_factory=dict)
    type: str = "Opaque"


class ConfigMap(Resource):
    """Plain text key/value data."""

    KIND = "ConfigMap"

    data: Dict[str, str] = Field(default_factory=dict)


class KubernetesServiceAccount(Resource):
    """Service account that automation runs execute under."""

    KIND = "ServiceAccount"


class RoleRef(CamelModel):
    kind: str = "Role"
    name: str


class Subject(CamelModel):
    kind: str = "ServiceAccount"
    name: str
    namespace: str


class RoleBinding(Resource):
    """Binds a role to the automation service account."""

    KIND = "RoleBinding"

    role_ref: RoleRef
    subjects: List[Subject] = Field(default_factory=list)
