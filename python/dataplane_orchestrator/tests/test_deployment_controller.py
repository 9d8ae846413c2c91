import asyncio

from dataplane_orchestrator.dataplane.cert import service_certs_secret_name
from dataplane_orchestrator.dataplane.jobs import NODESET_LABEL
from dataplane_orchestrator.models.conditions import (
    BACKOFF_LIMIT_EXCEEDED_REASON,
    DEPLOYMENT_READY,
    ERROR_REASON,
    INPUT_READY,
    NODESET_DEPLOYMENT_READY,
    READY,
    REQUESTED_REASON,
    ConditionStatus,
    Severity,
)
from dataplane_orchestrator.models.deployment import Deployment
from dataplane_orchestrator.models.external import OpenStackVersion, OpenStackVersionSpec
from dataplane_orchestrator.models.k8s import ConfigMap, Secret
from dataplane_orchestrator.models.meta import ObjectMeta
from dataplane_orchestrator.models.service import ConfigMapEnvSource, DataSource, SecretEnvSource, ServiceCert
from dataplane_orchestrator.tests.helpers import (
    NAMESPACE,
    Env,
    deploy_to_completion,
    fail_run,
    make_deployment,
    make_nodeset,
    make_secret,
    make_service,
    succeed_runs,
)
from dataplane_orchestrator.utils.hashing import object_hash
from dataplane_orchestrator.utils.naming import service_condition_type

SERVICES = ["bootstrap", "configure-network", "install-os"]


async def _env_with_services(tmp_path, *names: str, **spec) -> Env:
    env = Env(tmp_path / "services")
    for name in names:
        await env.add(make_service(name, **spec))
    return env


def test_successful_deployment(tmp_path):
    async def run() -> None:
        env = await _env_with_services(tmp_path, *SERVICES)
        nodeset = await env.ready_nodeset(make_nodeset(services=SERVICES))
        await env.add(make_deployment("deploy", ["edpm-compute"]))

        deployment = await deploy_to_completion(env, "deploy")
        conds = deployment.status.conditions
        assert conds.is_true(READY)
        assert conds.is_true(DEPLOYMENT_READY)
        assert conds.is_true(INPUT_READY)
        assert deployment.status.deployed
        assert deployment.status.node_set_hashes["edpm-compute"] == nodeset.status.config_hash

        ns_conds = deployment.status.node_set_conditions["edpm-compute"]
        assert ns_conds.is_true(NODESET_DEPLOYMENT_READY)
        for name in SERVICES:
            assert ns_conds.is_true(service_condition_type(name))
        assert len(await env.runs()) == 3
        assert len(deployment.status.ansible_ee_hashes) == 3

        # a deployed Deployment is never walked again
        version = deployment.metadata.resource_version
        result = await env.deployments.reconcile(NAMESPACE, "deploy")
        assert not result.requeue
        assert (await env.deployment("deploy")).metadata.resource_version == version

    asyncio.run(run())


def test_services_run_strictly_in_order(tmp_path):
    async def run() -> None:
        env = await _env_with_services(tmp_path, *SERVICES)
        await env.ready_nodeset(make_nodeset(services=SERVICES))
        await env.add(make_deployment("deploy", ["edpm-compute"], deployment_requeue_time=7))

        result = await env.deployments.reconcile(NAMESPACE, "deploy")
        assert result.requeue_after == 7
        runs = await env.runs()
        assert [r.name for r in runs] == ["bootstrap-deploy-edpm-compute"]

        deployment = await env.deployment("deploy")
        ns_conds = deployment.status.node_set_conditions["edpm-compute"]
        waiting = ns_conds.get(service_condition_type("bootstrap"))
        assert waiting.reason == REQUESTED_REASON
        assert ns_conds.get(NODESET_DEPLOYMENT_READY).status == ConditionStatus.FALSE
        assert deployment.status.conditions.get(DEPLOYMENT_READY).message == "Deployment in progress"

        # passes without progress never start the next service
        await env.deployments.reconcile(NAMESPACE, "deploy")
        assert len(await env.runs()) == 1

        await succeed_runs(env.store)
        await env.deployments.reconcile(NAMESPACE, "deploy")
        assert [r.name for r in await env.runs()] == [
            "bootstrap-deploy-edpm-compute",
            "configure-network-deploy-edpm-compute",
        ]

    asyncio.run(run())


def test_nodesets_are_walked_concurrently(tmp_path):
    async def run() -> None:
        env = await _env_with_services(tmp_path, *SERVICES)
        await env.ready_nodeset(make_nodeset("edpm-a", nodes=("compute-0",), services=SERVICES))
        await env.ready_nodeset(
            make_nodeset("edpm-b", nodes=("compute-1",), services=SERVICES, first_address=101)
        )
        await env.add(make_deployment("deploy", ["edpm-a", "edpm-b"]))

        await env.deployments.reconcile(NAMESPACE, "deploy")
        runs = await env.runs()
        assert sorted(r.metadata.labels[NODESET_LABEL] for r in runs) == ["edpm-a", "edpm-b"]

        deployment = await deploy_to_completion(env, "deploy")
        assert sorted(deployment.status.node_set_hashes) == ["edpm-a", "edpm-b"]
        assert len(await env.runs()) == 6

    asyncio.run(run())


def test_missing_nodeset_keeps_conditions_unknown(tmp_path):
    async def run() -> None:
        env = await _env_with_services(tmp_path, *SERVICES)
        await env.ready_nodeset(make_nodeset("edpm-a", services=SERVICES))
        await env.add(make_deployment("deploy", ["edpm-a", "edpm-missing"]))

        for _ in range(3):
            result = await env.deployments.reconcile(NAMESPACE, "deploy")
            assert result.requeue_after == 15

        deployment = await env.deployment("deploy")
        conds = deployment.status.conditions
        assert conds.is_unknown(READY)
        assert conds.is_unknown(INPUT_READY)
        assert conds.is_unknown(DEPLOYMENT_READY)
        assert not any(c.severity == Severity.ERROR for c in conds.sorted())
        assert await env.runs() == []

    asyncio.run(run())


def test_waits_for_nodeset_setup(tmp_path):
    async def run() -> None:
        env = await _env_with_services(tmp_path, *SERVICES)
        env.address_names.ip_sets_ready = False
        await env.ready_nodeset(make_nodeset(services=SERVICES))
        await env.add(make_deployment("deploy", ["edpm-compute"]))

        result = await env.deployments.reconcile(NAMESPACE, "deploy")
        assert result.requeue
        assert await env.runs() == []
        assert (await env.deployment("deploy")).status.conditions.is_unknown(INPUT_READY)

    asyncio.run(run())


def test_global_service_in_two_nodesets_is_rejected(tmp_path):
    async def run() -> None:
        env = await _env_with_services(tmp_path, "bootstrap")
        await env.add(make_service("ssh-known-hosts", deploy_on_all_node_sets=True))
        services = ["ssh-known-hosts", "bootstrap"]
        await env.ready_nodeset(make_nodeset("edpm-a", nodes=("compute-0",), services=services))
        await env.ready_nodeset(
            make_nodeset("edpm-b", nodes=("compute-1",), services=services, first_address=101)
        )
        await env.add(make_deployment("deploy", ["edpm-a", "edpm-b"]))

        result = await env.deployments.reconcile(NAMESPACE, "deploy")
        assert not result.requeue
        assert await env.runs() == []

        cond = (await env.deployment("deploy")).status.conditions.get(DEPLOYMENT_READY)
        assert cond.status == ConditionStatus.FALSE
        assert cond.severity == Severity.ERROR
        assert "defined multiple times" in cond.message

    asyncio.run(run())


def test_global_service_runs_once(tmp_path):
    async def run() -> None:
        env = await _env_with_services(tmp_path, "bootstrap")
        await env.add(make_service("ssh-known-hosts", deploy_on_all_node_sets=True))
        await env.ready_nodeset(
            make_nodeset("edpm-a", nodes=("compute-0",), services=["bootstrap", "ssh-known-hosts"])
        )
        await env.ready_nodeset(
            make_nodeset("edpm-b", nodes=("compute-1",), services=["bootstrap"], first_address=101)
        )
        await env.add(make_deployment("deploy", ["edpm-a", "edpm-b"]))

        await deploy_to_completion(env, "deploy")
        names = sorted(r.name for r in await env.runs())
        assert names == [
            "bootstrap-deploy-edpm-a",
            "bootstrap-deploy-edpm-b",
            "ssh-known-hosts-deploy",
        ]

    asyncio.run(run())


def test_backoff_exhaustion_is_terminal(tmp_path):
    async def run() -> None:
        env = await _env_with_services(tmp_path, *SERVICES)
        await env.ready_nodeset(make_nodeset(services=SERVICES))
        await env.add(make_deployment("deploy", ["edpm-compute"], backoff_limit=2))

        await env.deployments.reconcile(NAMESPACE, "deploy")
        await fail_run(env.store, "bootstrap-deploy-edpm-compute", attempts=2)
        result = await env.deployments.reconcile(NAMESPACE, "deploy")
        assert result.requeue  # still within the retry budget

        await fail_run(env.store, "bootstrap-deploy-edpm-compute")
        result = await env.deployments.reconcile(NAMESPACE, "deploy")
        assert not result.requeue

        deployment = await env.deployment("deploy")
        service_cond = deployment.status.node_set_conditions["edpm-compute"].get(
            service_condition_type("bootstrap")
        )
        assert service_cond.status == ConditionStatus.FALSE
        assert service_cond.reason == BACKOFF_LIMIT_EXCEEDED_REASON
        assert service_cond.severity == Severity.ERROR

        aggregate = deployment.status.conditions.get(DEPLOYMENT_READY)
        assert aggregate.reason == BACKOFF_LIMIT_EXCEEDED_REASON
        assert aggregate.severity == Severity.ERROR
        assert "nodeSet: edpm-compute error:" in aggregate.message
        assert deployment.status.conditions.get(READY).severity == Severity.ERROR

        # blocked for good: no further passes, no new runs
        version = deployment.metadata.resource_version
        await env.deployments.reconcile(NAMESPACE, "deploy")
        assert (await env.deployment("deploy")).metadata.resource_version == version
        assert len(await env.runs()) == 1

        await env.nodesets.reconcile(NAMESPACE, "edpm-compute")
        nodeset = await env.nodeset("edpm-compute")
        cond = nodeset.status.conditions.get(DEPLOYMENT_READY)
        assert cond.reason == ERROR_REASON
        assert cond.severity == Severity.ERROR
        assert "bootstrap-deploy-edpm-compute failed due to BackoffLimitExceeded" in cond.message

    asyncio.run(run())


def test_other_failures_are_warnings_and_retried(tmp_path):
    async def run() -> None:
        env = await _env_with_services(tmp_path, *SERVICES)
        await env.ready_nodeset(make_nodeset(services=SERVICES))
        await env.add(make_deployment("deploy", ["edpm-compute"], backoff_limit=0))

        await env.deployments.reconcile(NAMESPACE, "deploy")
        await fail_run(env.store, "bootstrap-deploy-edpm-compute", reason="DeadlineExceeded")
        result = await env.deployments.reconcile(NAMESPACE, "deploy")
        assert result.requeue

        aggregate = (await env.deployment("deploy")).status.conditions.get(DEPLOYMENT_READY)
        assert aggregate.reason == ERROR_REASON
        assert aggregate.severity == Severity.WARNING

    asyncio.run(run())


def test_missing_data_source_fails_service(tmp_path):
    async def run() -> None:
        env = Env(tmp_path / "services")
        await env.add(
            make_service(
                "nova", data_sources=[DataSource(secret_ref=SecretEnvSource(name="nova-config"))]
            )
        )
        await env.ready_nodeset(make_nodeset(services=["nova"]))
        await env.add(make_deployment("deploy", ["edpm-compute"]))

        result = await env.deployments.reconcile(NAMESPACE, "deploy")
        assert result.requeue
        deployment = await env.deployment("deploy")
        cond = deployment.status.node_set_conditions["edpm-compute"].get(
            service_condition_type("nova")
        )
        assert cond.reason == ERROR_REASON
        assert "nova-config" in cond.message
        assert await env.runs() == []

    asyncio.run(run())


def test_data_sources_are_mounted_and_hashed(tmp_path):
    async def run() -> None:
        env = Env(tmp_path / "services")
        await env.add(
            make_service(
                "nova",
                data_sources=[
                    DataSource(secret_ref=SecretEnvSource(name="nova-config")),
                    DataSource(config_map_ref=ConfigMapEnvSource(name="nova-extra")),
                    DataSource(config_map_ref=ConfigMapEnvSource(name="absent", optional=True)),
                ],
                container_image_fields=["NovaComputeImage"],
            )
        )
        config = make_secret("nova-config", {"01-nova.conf": b"[DEFAULT]"})
        extra = ConfigMap(
            metadata=ObjectMeta(name="nova-extra", namespace=NAMESPACE),
            data={"02-extra.conf": "[libvirt]"},
        )
        version = OpenStackVersion(
            metadata=ObjectMeta(name="openstack", namespace=NAMESPACE),
            spec=OpenStackVersionSpec(target_version="1.0.1"),
        )
        version.status.container_images = {"NovaComputeImage": "nova:1.0.1"}
        await env.add(config, extra, version)
        await env.ready_nodeset(make_nodeset(services=["nova"]))
        await env.add(make_deployment("deploy", ["edpm-compute"]))

        await env.deployments.reconcile(NAMESPACE, "deploy")
        run_spec = (await env.runs())[0].spec
        mounts = [m.mount_path for vm in run_spec.extra_mounts for m in vm.mounts]
        assert "/var/lib/openstack/configs/nova/02-extra.conf" in mounts
        assert "/var/lib/openstack/configs/nova/01-nova.conf" in mounts

        deployment = await deploy_to_completion(env, "deploy")
        assert deployment.status.secret_hashes["nova-config"] == object_hash(config.data)
        assert deployment.status.config_map_hashes["nova-extra"] == object_hash(extra.data)
        assert deployment.status.container_images == {"NovaComputeImage": "nova:1.0.1"}
        assert deployment.status.deployed_version == "1.0.1"

        await env.nodesets.reconcile(NAMESPACE, "edpm-compute")
        nodeset = await env.nodeset("edpm-compute")
        assert nodeset.status.secret_hashes == {"nova-config": object_hash(config.data)}
        assert nodeset.status.container_images == {"NovaComputeImage": "nova:1.0.1"}

    asyncio.run(run())


def test_tls_certificates_are_issued_before_dispatch(tmp_path):
    async def run() -> None:
        env = Env(tmp_path / "services")
        await env.add(
            make_service(
                "libvirt",
                tls_certs={"default": ServiceCert(contents=["dnsnames", "ips"], networks=["ctlplane"])},
            )
        )
        await env.ready_nodeset(make_nodeset(services=["libvirt"], tls_enabled=True))
        await env.add(make_deployment("deploy", ["edpm-compute"]))

        env.issuer.pending = True
        result = await env.deployments.reconcile(NAMESPACE, "deploy")
        assert result.requeue_after == env.settings.cert_requeue_seconds
        assert await env.runs() == []
        assert (await env.deployment("deploy")).status.conditions.is_unknown(INPUT_READY)

        env.issuer.pending = False
        result = await env.deployments.reconcile(NAMESPACE, "deploy")
        assert result.requeue_after == env.settings.cert_requeue_seconds
        bundle = await env.store.get(
            Secret, NAMESPACE, service_certs_secret_name("edpm-compute", "libvirt", "default", 0)
        )
        assert "compute-0.ctlplane.example.com-tls.crt" in bundle.data

        await env.deployments.reconcile(NAMESPACE, "deploy")
        assert [r.name for r in await env.runs()] == ["libvirt-deploy-edpm-compute"]
        assert (await env.deployment("deploy")).status.conditions.is_true(INPUT_READY)

        deployment = await deploy_to_completion(env, "deploy")
        assert bundle.name in deployment.status.secret_hashes

    asyncio.run(run())


def test_tls_missing_service_is_an_input_error(tmp_path):
    async def run() -> None:
        env = Env(tmp_path / "services")
        await env.ready_nodeset(make_nodeset(services=["absent"], tls_enabled=True))
        await env.add(make_deployment("deploy", ["edpm-compute"]))

        result = await env.deployments.reconcile(NAMESPACE, "deploy")
        assert result.requeue
        deployment = await env.deployment("deploy")
        assert deployment.status.conditions.is_error(INPUT_READY)
        assert deployment.status.node_set_conditions["edpm-compute"].is_error(
            NODESET_DEPLOYMENT_READY
        )

    asyncio.run(run())


def test_services_override_replaces_nodeset_lists(tmp_path):
    async def run() -> None:
        env = await _env_with_services(tmp_path, *SERVICES)
        await env.ready_nodeset(make_nodeset(services=SERVICES))
        await env.add(make_deployment("deploy", ["edpm-compute"], services_override=["install-os"]))

        deployment = await deploy_to_completion(env, "deploy")
        runs = await env.runs()
        assert [r.name for r in runs] == ["install-os-deploy-edpm-compute"]
        assert runs[0].spec.extra_vars["edpm_services_override"] == ["install-os"]
        assert deployment.status.deployed

    asyncio.run(run())


def test_condition_times_survive_idle_passes(tmp_path):
    async def run() -> None:
        env = await _env_with_services(tmp_path, *SERVICES)
        await env.ready_nodeset(make_nodeset(services=SERVICES))
        await env.add(make_deployment("deploy", ["edpm-compute"]))

        await env.deployments.reconcile(NAMESPACE, "deploy")
        first = await env.deployment("deploy")
        await env.deployments.reconcile(NAMESPACE, "deploy")
        second = await env.deployment("deploy")
        assert second.status == first.status
        assert second.metadata.resource_version == first.metadata.resource_version

    asyncio.run(run())


def test_stale_status_write_does_not_start_a_second_run(tmp_path, monkeypatch):
    async def run() -> None:
        env = await _env_with_services(tmp_path, *SERVICES)
        await env.ready_nodeset(make_nodeset(services=SERVICES))
        await env.add(make_deployment("deploy", ["edpm-compute"]))
        update_status = env.store.update_status
        versions = []

        async def racing_update_status(obj):
            if obj.KIND == Deployment.KIND:
                versions.append(obj.metadata.resource_version)
                if len(versions) == 1:
                    concurrent = await env.deployment(obj.name)
                    concurrent.metadata.labels["team"] = "compute"
                    await env.store.create_or_patch(concurrent)
            return await update_status(obj)

        monkeypatch.setattr(env.store, "update_status", racing_update_status)
        await env.deployments.reconcile(NAMESPACE, "deploy")
        assert len(versions) == 2
        assert [r.name for r in await env.runs()] == ["bootstrap-deploy-edpm-compute"]

        deployment = await env.deployment("deploy")
        assert deployment.metadata.labels["team"] == "compute"
        assert deployment.status.observed_generation == 2
        assert deployment.status.conditions.get(DEPLOYMENT_READY).message == "Deployment in progress"

        deployment = await deploy_to_completion(env, "deploy")
        assert deployment.status.deployed
        assert len(await env.runs()) == 3

    asyncio.run(run())
