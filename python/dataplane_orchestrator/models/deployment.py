"""
dataplane_orchestrator/models/deployment.py

Defines the Deployment record: an immutable rollout request that sequences
services across one or more NodeSets.
"""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import Field, field_validator

from dataplane_orchestrator.models.conditions import ConditionSet
from dataplane_orchestrator.models.meta import CamelModel, Resource

DEFAULT_BACKOFF_LIMIT = 6
DEFAULT_REQUEUE_TIME = 15


class DeploymentSpec(CamelModel):
    node_sets: List[str] = Field(..., min_length=1)
    backoff_limit: int = DEFAULT_BACKOFF_LIMIT
    preserve_jobs: bool = True
    ansible_tags: str = ""
    ansible_limit: str = ""
    ansible_skip_tags: str = ""
    ansible_extra_vars: Dict[str, Any] = Field(default_factory=dict)
    services_override: List[str] = Field(default_factory=list)
    deployment_requeue_time: int = Field(DEFAULT_REQUEUE_TIME, ge=1)
    ansible_job_node_selector: Dict[str, str] = Field(default_factory=dict)

    @field_validator("backoff_limit")
    @classmethod
    def backoff_limit_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("backoffLimit must not be negative")
        return v


class DeploymentStatus(CamelModel):
    node_set_conditions: Dict[str, ConditionSet] = Field(default_factory=dict)
    ansible_ee_hashes: Dict[str, str] = Field(
        default_factory=dict, alias="ansibleEEHashes"
    )
    config_map_hashes: Dict[str, str] = Field(default_factory=dict)
    secret_hashes: Dict[str, str] = Field(default_factory=dict)
    node_set_hashes: Dict[str, str] = Field(default_factory=dict)
    container_images: Dict[str, str] = Field(default_factory=dict)
    conditions: ConditionSet = Field(default_factory=ConditionSet)
    observed_generation: int = 0
    deployed_version: str = ""
    deployed: bool = False


class Deployment(Resource):
    """A rollout request; its spec never changes once created."""

    KIND = "OpenStackDataPlaneDeployment"

    spec: DeploymentSpec
    status: DeploymentStatus = Field(default_factory=DeploymentStatus)
