import asyncio

from dataplane_orchestrator.controllers.manager import Manager, build_manager
from dataplane_orchestrator.models.conditions import SETUP_READY
from dataplane_orchestrator.models.external import DNSMasq
from dataplane_orchestrator.models.meta import ObjectKey, ObjectMeta
from dataplane_orchestrator.models.nodeset import NodeSet
from dataplane_orchestrator.models.service import DataSource, SecretEnvSource
from dataplane_orchestrator.models.settings import OperatorSettings
from dataplane_orchestrator.store.memory import InMemoryStore
from dataplane_orchestrator.tests.helpers import (
    NAMESPACE,
    SSH_SECRET,
    Env,
    make_deployment,
    make_nodeset,
    make_secret,
    make_service,
    make_ssh_secret,
)


def _manager(env: Env) -> Manager:
    return Manager(env.store, env.settings, env.nodesets, env.deployments)


def _nodeset_key(name: str) -> ObjectKey:
    return ObjectKey(kind=NodeSet.KIND, namespace=NAMESPACE, name=name)


def test_new_nodeset_is_queued_once():
    async def run() -> None:
        store = InMemoryStore()
        manager = build_manager(store, OperatorSettings())
        await store.create(make_nodeset())
        await store.create(make_secret("unrelated", {"a": b"1"}))
        assert manager.pending() == [_nodeset_key("edpm-compute")]

    asyncio.run(run())


def test_drain_converges(tmp_path):
    async def run() -> None:
        env = Env(tmp_path / "services")
        manager = _manager(env)
        await env.add(make_ssh_secret(), make_service("bootstrap"), make_nodeset())

        passes = await manager.drain()
        assert passes >= 1
        assert manager.pending() == []
        nodeset = await env.nodeset("edpm-compute")
        assert nodeset.status.conditions.is_true(SETUP_READY)

        # status writes of its own do not queue the NodeSet again
        await env.nodesets.reconcile(NAMESPACE, "edpm-compute")
        assert manager.pending() == []

    asyncio.run(run())


def test_referenced_secret_change_queues_nodeset(tmp_path):
    async def run() -> None:
        env = Env(tmp_path / "services")
        manager = _manager(env)
        await env.add(make_ssh_secret(), make_nodeset())
        await manager.drain()

        rotated = make_secret(SSH_SECRET, {"ssh-privatekey": b"rotated"})
        await env.store.create_or_patch(rotated)
        assert manager.pending() == [_nodeset_key("edpm-compute")]

    asyncio.run(run())


def test_deployment_queues_itself_and_its_nodesets(tmp_path):
    async def run() -> None:
        env = Env(tmp_path / "services")
        manager = _manager(env)
        deployment = make_deployment("deploy", ["edpm-a", "edpm-b"])
        await env.add(deployment)
        assert set(manager.pending()) == {
            deployment.key,
            _nodeset_key("edpm-a"),
            _nodeset_key("edpm-b"),
        }

    asyncio.run(run())


def test_nodeset_change_queues_pending_deployments(tmp_path):
    async def run() -> None:
        env = Env(tmp_path / "services")
        manager = _manager(env)
        await env.add(make_ssh_secret(), make_service("bootstrap"), make_nodeset())
        await manager.drain()
        deployment = make_deployment("deploy", ["edpm-compute"])
        await env.add(deployment)
        await manager.drain()

        changed = await env.nodeset("edpm-compute")
        changed.spec.node_template.ansible.ansible_vars["edpm_kernel_args"] = "hugepages"
        await env.store.create_or_patch(changed)
        assert set(manager.pending()) == {_nodeset_key("edpm-compute"), deployment.key}

    asyncio.run(run())


def test_namespace_wide_records_queue_every_nodeset(tmp_path):
    async def run() -> None:
        env = Env(tmp_path / "services")
        manager = _manager(env)
        await env.add(
            make_ssh_secret(),
            make_nodeset("edpm-a", nodes=("compute-0",)),
            make_nodeset("edpm-b", nodes=("compute-1",), first_address=101),
        )
        await manager.drain()

        await env.add(DNSMasq(metadata=ObjectMeta(name="dns", namespace=NAMESPACE)))
        assert manager.pending() == [_nodeset_key("edpm-a"), _nodeset_key("edpm-b")]

    asyncio.run(run())


def test_resync_queues_everything(tmp_path):
    async def run() -> None:
        env = Env(tmp_path / "services")
        deployment = make_deployment("deploy", ["edpm-compute"])
        await env.add(make_nodeset(), deployment)

        manager = _manager(env)
        assert manager.pending() == []
        await manager.resync()
        assert set(manager.pending()) == {_nodeset_key("edpm-compute"), deployment.key}

    asyncio.run(run())


def test_requeue_after_delay(tmp_path):
    async def run() -> None:
        env = Env(tmp_path / "services")
        settings = env.settings.model_copy(update={"existence_timeout_seconds": 0.01})
        env.nodesets.settings = settings
        manager = Manager(env.store, settings, env.nodesets, env.deployments)
        await env.add(make_nodeset())

        result = await manager.process(_nodeset_key("edpm-compute"))
        assert result is not None and result.requeue
        assert manager.pending() == []
        await asyncio.sleep(0.05)
        assert manager.pending() == [_nodeset_key("edpm-compute")]

    asyncio.run(run())


def test_undecodable_secret_does_not_stop_other_nodesets(tmp_path):
    async def run() -> None:
        env = Env(tmp_path / "services")
        manager = _manager(env)
        broken = make_nodeset("edpm-a", nodes=("compute-0",))
        broken.spec.node_template.ansible.ansible_vars_from = [
            DataSource(secret_ref=SecretEnvSource(name="bin"))
        ]
        await env.add(
            make_ssh_secret(),
            make_secret("bin", {"keytab": b"\xff\xfe\x00"}),
            broken,
            make_nodeset("edpm-b", nodes=("compute-1",), first_address=101),
        )

        await manager.drain()
        assert manager.pending() == []
        assert (await env.nodeset("edpm-a")).status.conditions.is_error(SETUP_READY)
        assert (await env.nodeset("edpm-b")).status.conditions.is_true(SETUP_READY)

    asyncio.run(run())


def test_unexpected_error_is_logged_and_retried(tmp_path, monkeypatch):
    async def run() -> None:
        env = Env(tmp_path / "services")
        settings = env.settings.model_copy(update={"requeue_seconds": 0.01})
        manager = Manager(env.store, settings, env.nodesets, env.deployments)
        calls = []

        async def failing_reconcile(namespace: str, name: str) -> None:
            calls.append(name)
            raise RuntimeError("store connection reset")

        monkeypatch.setattr(env.nodesets, "reconcile", failing_reconcile)
        await env.add(make_nodeset())

        assert await manager.process(_nodeset_key("edpm-compute")) is None
        assert calls == ["edpm-compute"]
        assert manager.pending() == []
        await asyncio.sleep(0.05)
        assert manager.pending() == [_nodeset_key("edpm-compute")]

    asyncio.run(run())
