"""
dataplane_orchestrator/models/settings.py

Operator configuration, built once at start-up and passed to every controller.

Container image defaults come from `RELATED_IMAGE_<NAME>_URL_DEFAULT`
environment variables, falling back to the values below. The settings object
is frozen so nothing can mutate it after construction.
"""

from __future__ import annotations

from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings

_PODIFIED = "quay.io/podified-antelope-centos9"

# Release image field name -> settings attribute
IMAGE_FIELDS: Dict[str, str] = {
    "AnsibleeeImage": "ansibleee_image",
    "CeilometerComputeImage": "ceilometer_compute_image",
    "CeilometerIpmiImage": "ceilometer_ipmi_image",
    "EdpmFrrImage": "edpm_frr_image",
    "EdpmIscsidImage": "edpm_iscsid_image",
    "EdpmKeplerImage": "edpm_kepler_image",
    "EdpmLogrotateCrondImage": "edpm_logrotate_crond_image",
    "EdpmMultipathdImage": "edpm_multipathd_image",
    "EdpmNeutronDhcpAgentImage": "edpm_neutron_dhcp_agent_image",
    "EdpmNeutronMetadataAgentImage": "edpm_neutron_metadata_agent_image",
    "EdpmNeutronOvnAgentImage": "edpm_neutron_ovn_agent_image",
    "EdpmNeutronSriovAgentImage": "edpm_neutron_sriov_agent_image",
    "EdpmNodeExporterImage": "edpm_node_exporter_image",
    "EdpmOpenstackNetworkExporterImage": "edpm_openstack_network_exporter_image",
    "EdpmOvnBgpAgentImage": "edpm_ovn_bgp_agent_image",
    "EdpmPodmanExporterImage": "edpm_podman_exporter_image",
    "NovaComputeImage": "nova_compute_image",
    "OsContainerImage": "os_container_image",
    "OvnControllerImage": "ovn_controller_image",
}


class OperatorSettings(BaseSettings):
    """
    Pydantic settings for the orchestrator process.

    `OPERATOR_SERVICES` points at the directory holding the service catalog.
    Image defaults map to `RELATED_IMAGE_*_URL_DEFAULT` variables.
    """

    operator_services: str = "config/services"
    requeue_seconds: float = 15.0
    existence_timeout_seconds: float = 5.0
    cert_requeue_seconds: float = 5.0
    status_write_retries: int = 3
    status_write_retry_delay: float = 0.1
    resync_seconds: float = 60.0

    ansibleee_image: str = Field(
        "quay.io/openstack-k8s-operators/openstack-ansibleee-runner:latest",
        alias="RELATED_IMAGE_ANSIBLEEE_IMAGE_URL_DEFAULT",
    )
    ceilometer_compute_image: str = Field(
        f"{_PODIFIED}/openstack-telemetry-ceilometer-compute:current-podified",
        alias="RELATED_IMAGE_CEILOMETER_COMPUTE_IMAGE_URL_DEFAULT",
    )
    ceilometer_ipmi_image: str = Field(
        f"{_PODIFIED}/openstack-telemetry-ceilometer-ipmi:current-podified",
        alias="RELATED_IMAGE_CEILOMETER_IPMI_IMAGE_URL_DEFAULT",
    )
    edpm_frr_image: str = Field(
        f"{_PODIFIED}/openstack-frr:current-podified",
        alias="RELATED_IMAGE_EDPM_FRR_IMAGE_URL_DEFAULT",
    )
    edpm_iscsid_image: str = Field(
        f"{_PODIFIED}/openstack-iscsid:current-podified",
        alias="RELATED_IMAGE_EDPM_ISCSID_IMAGE_URL_DEFAULT",
    )
    edpm_kepler_image: str = Field(
        "quay.io/sustainable_computing_io/kepler:release-0.7.12",
        alias="RELATED_IMAGE_EDPM_KEPLER_IMAGE_URL_DEFAULT",
    )
    edpm_logrotate_crond_image: str = Field(
        f"{_PODIFIED}/openstack-cron:current-podified",
        alias="RELATED_IMAGE_EDPM_LOGROTATE_CROND_IMAGE_URL_DEFAULT",
    )
    edpm_multipathd_image: str = Field(
        f"{_PODIFIED}/openstack-multipathd:current-podified",
        alias="RELATED_IMAGE_EDPM_MULTIPATHD_IMAGE_URL_DEFAULT",
    )
    edpm_neutron_dhcp_agent_image: str = Field(
        f"{_PODIFIED}/openstack-neutron-dhcp-agent:current-podified",
        alias="RELATED_IMAGE_EDPM_NEUTRON_DHCP_AGENT_IMAGE_URL_DEFAULT",
    )
    edpm_neutron_metadata_agent_image: str = Field(
        f"{_PODIFIED}/openstack-neutron-metadata-agent-ovn:current-podified",
        alias="RELATED_IMAGE_EDPM_NEUTRON_METADATA_AGENT_IMAGE_URL_DEFAULT",
    )
    edpm_neutron_ovn_agent_image: str = Field(
        f"{_PODIFIED}/openstack-neutron-ovn-agent:current-podified",
        alias="RELATED_IMAGE_EDPM_NEUTRON_OVN_AGENT_IMAGE_URL_DEFAULT",
    )
    edpm_neutron_sriov_agent_image: str = Field(
        f"{_PODIFIED}/openstack-neutron-sriov-agent:current-podified",
        alias="RELATED_IMAGE_EDPM_NEUTRON_SRIOV_AGENT_IMAGE_URL_DEFAULT",
    )
    edpm_node_exporter_image: str = Field(
        "quay.io/prometheus/node-exporter:v1.5.0",
        alias="RELATED_IMAGE_EDPM_NODE_EXPORTER_IMAGE_URL_DEFAULT",
    )
    edpm_openstack_network_exporter_image: str = Field(
        "quay.io/openstack-k8s-operators/openstack-network-exporter:current-podified",
        alias="RELATED_IMAGE_EDPM_OPENSTACK_NETWORK_EXPORTER_IMAGE_URL_DEFAULT",
    )
    edpm_ovn_bgp_agent_image: str = Field(
        f"{_PODIFIED}/openstack-ovn-bgp-agent:current-podified",
        alias="RELATED_IMAGE_EDPM_OVN_BGP_AGENT_IMAGE_URL_DEFAULT",
    )
    edpm_podman_exporter_image: str = Field(
        "quay.io/navidys/prometheus-podman-exporter:v1.10.1",
        alias="RELATED_IMAGE_EDPM_PODMAN_EXPORTER_IMAGE_URL_DEFAULT",
    )
    nova_compute_image: str = Field(
        f"{_PODIFIED}/openstack-nova-compute:current-podified",
        alias="RELATED_IMAGE_NOVA_COMPUTE_IMAGE_URL_DEFAULT",
    )
    os_container_image: str = Field(
        f"{_PODIFIED}/edpm-hardened-uefi:current-podified",
        alias="RELATED_IMAGE_OS_CONTAINER_IMAGE_URL_DEFAULT",
    )
    ovn_controller_image: str = Field(
        f"{_PODIFIED}/openstack-ovn-controller:current-podified",
        alias="RELATED_IMAGE_OVN_CONTROLLER_IMAGE_URL_DEFAULT",
    )

    class Config:
        frozen = True
        populate_by_name = True
        extra = "ignore"

    def default_container_images(self) -> Dict[str, str]:
        """Release image field name to its configured default."""
        return {field: getattr(self, attr) for field, attr in IMAGE_FIELDS.items()}
