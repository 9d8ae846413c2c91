"""
dataplane_orchestrator/controllers/manager.py

Watch-driven work queue that runs the NodeSet and Deployment controllers.

  1) Change notifications from the store are mapped to the NodeSet and
     Deployment keys they affect and queued.
  2) A key is queued at most once; a key that changes while it is being
     reconciled is queued again once that pass finishes, so one record is
     never reconciled by two workers at the same time.
  3) A pass that asks for a requeue, or fails, is queued again after a delay.
  4) Every NodeSet and Deployment is queued again on a periodic resync.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Set, cast

from dataplane_orchestrator.controllers.deployment import DeploymentController
from dataplane_orchestrator.controllers.nodeset import NodeSetController
from dataplane_orchestrator.controllers.result import Result
from dataplane_orchestrator.dataplane.cert import NODESET_LABEL as CERT_NODESET_LABEL
from dataplane_orchestrator.dataplane.cert import StoreCertificateIssuer
from dataplane_orchestrator.dataplane.datasource import nodeset_references
from dataplane_orchestrator.dataplane.ipam import StoreAddressNameFacade
from dataplane_orchestrator.dataplane.jobs import StoreJobExecutionFacade
from dataplane_orchestrator.errors import OrchestratorError
from dataplane_orchestrator.models.deployment import Deployment
from dataplane_orchestrator.models.external import DNSMasq, NetConfig, OpenStackVersion
from dataplane_orchestrator.models.k8s import ConfigMap, Secret
from dataplane_orchestrator.models.meta import ObjectKey
from dataplane_orchestrator.models.nodeset import NodeSet
from dataplane_orchestrator.models.settings import OperatorSettings
from dataplane_orchestrator.store.base import EventType, StateStore, WatchEvent
from dataplane_orchestrator.store.index import ReverseIndex

logger = logging.getLogger(__name__)

NAMESPACE_WIDE_KINDS = (DNSMasq.KIND, NetConfig.KIND, OpenStackVersion.KIND)
CONTROLLED_KINDS = (NodeSet.KIND, Deployment.KIND)


class Manager:
    """
    Feeds store changes to the controllers.

    Attributes:
        store (StateStore): Declarative store the controllers work on.
        settings (OperatorSettings): Operator configuration.
        nodesets (NodeSetController): NodeSet controller.
        deployments (DeploymentController): Deployment controller.
        index (ReverseIndex): Config map / secret key to dependent NodeSets.
    """

    def __init__(
        self,
        store: StateStore,
        settings: OperatorSettings,
        nodesets: NodeSetController,
        deployments: DeploymentController,
    ) -> None:
        self.store = store
        self.settings = settings
        self.nodesets = nodesets
        self.deployments = deployments
        self.index = ReverseIndex()
        self._queue: asyncio.Queue[ObjectKey] = asyncio.Queue()
        self._queued: Set[ObjectKey] = set()
        self._processing: Set[ObjectKey] = set()
        self._dirty: Set[ObjectKey] = set()
        self._generations: Dict[ObjectKey, int] = {}
        self._timers: Set[asyncio.Task] = set()
        store.subscribe(self.on_event)

    # Queue

    def enqueue(self, key: ObjectKey) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def enqueue_after(self, key: ObjectKey, delay: float) -> None:
        async def later() -> None:
            await asyncio.sleep(delay)
            self.enqueue(key)

        task = asyncio.ensure_future(later())
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    def pending(self) -> List[ObjectKey]:
        return sorted(self._queued, key=str)

    async def process(self, key: ObjectKey) -> Optional[Result]:
        """
        Reconcile one key and schedule whatever follow-up it asks for.

        Failures are logged and retried after the default requeue interval.
        """
        self._queued.discard(key)
        self._processing.add(key)
        result: Optional[Result] = None
        try:
            if key.kind == NodeSet.KIND:
                result = await self.nodesets.reconcile(key.namespace, key.name)
            elif key.kind == Deployment.KIND:
                result = await self.deployments.reconcile(key.namespace, key.name)
            else:
                logger.warning("no controller for %s", key)
        except OrchestratorError as exc:
            logger.error("reconcile of %s failed: %s", key, exc)
            self.enqueue_after(key, self.settings.requeue_seconds)
        except Exception as exc:
            # One broken record must not stop the workers serving the others.
            logger.exception("unexpected error reconciling %s: %s", key, exc)
            self.enqueue_after(key, self.settings.requeue_seconds)
        finally:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self.enqueue(key)
        if result is not None and result.requeue:
            logger.debug("requeueing %s after %ss", key, result.requeue_after)
            self.enqueue_after(key, result.requeue_after or 0.0)
        return result

    async def drain(self, limit: int = 1000) -> int:
        """
        Reconcile queued keys until the queue is empty.

        Delayed requeues are not waited for.

        Returns:
            int: Number of passes run.
        """
        passes = 0
        while not self._queue.empty() and passes < limit:
            key = self._queue.get_nowait()
            await self.process(key)
            passes += 1
        if passes >= limit:
            logger.warning("queue not drained after %d passes", passes)
        return passes

    async def resync(self) -> None:
        """Queue every NodeSet and Deployment."""
        for nodeset in await self.store.list(NodeSet):
            self.enqueue(nodeset.key)
        for deployment in await self.store.list(Deployment):
            self.enqueue(deployment.key)

    async def _worker(self) -> None:
        while True:
            key = await self._queue.get()
            await self.process(key)

    async def _resync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.resync_seconds)
            logger.debug("periodic resync")
            await self.resync()

    async def run(self, workers: int = 4) -> None:
        """Run workers and the resync loop until cancelled."""
        await self.resync()
        tasks = [asyncio.ensure_future(self._worker()) for _ in range(workers)]
        tasks.append(asyncio.ensure_future(self._resync_loop()))
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("manager shutting down")
        finally:
            for task in tasks + list(self._timers):
                task.cancel()

    # Event mapping

    async def on_event(self, event: WatchEvent) -> None:
        kind = event.key.kind
        if kind == NodeSet.KIND:
            await self._on_nodeset(event)
        elif kind == Deployment.KIND:
            await self._on_deployment(event)
        else:
            if kind in (ConfigMap.KIND, Secret.KIND):
                await self._on_referenced(event)
            if kind in NAMESPACE_WIDE_KINDS:
                for nodeset in await self.store.list(NodeSet, namespace=event.key.namespace):
                    self.enqueue(nodeset.key)
            for ref in event.obj.metadata.owner_references:
                if ref.kind in CONTROLLED_KINDS:
                    self.enqueue(
                        ObjectKey(kind=ref.kind, namespace=event.key.namespace, name=ref.name)
                    )

    def _generation_changed(self, event: WatchEvent) -> bool:
        if event.type == EventType.DELETED:
            self._generations.pop(event.key, None)
            return False
        previous = self._generations.get(event.key)
        current = event.obj.metadata.generation
        self._generations[event.key] = current
        return previous != current

    async def _deployments_for(self, namespace: str, nodeset_name: str) -> List[ObjectKey]:
        """Keys of the not yet deployed Deployments that reference a NodeSet."""
        return [
            d.key
            for d in await self.store.list(Deployment, namespace=namespace)
            if nodeset_name in d.spec.node_sets and not d.status.deployed
        ]

    async def _on_nodeset(self, event: WatchEvent) -> None:
        if event.type == EventType.DELETED:
            self.index.remove(event.key)
        else:
            nodeset = cast(NodeSet, event.obj)
            self.index.update(event.key, nodeset_references(nodeset))
        if self._generation_changed(event):
            self.enqueue(event.key)
        for key in await self._deployments_for(event.key.namespace, event.key.name):
            self.enqueue(key)

    async def _on_deployment(self, event: WatchEvent) -> None:
        deployment = cast(Deployment, event.obj)
        if self._generation_changed(event):
            self.enqueue(event.key)
        for name in deployment.spec.node_sets:
            self.enqueue(ObjectKey(kind=NodeSet.KIND, namespace=event.key.namespace, name=name))

    async def _on_referenced(self, event: WatchEvent) -> None:
        for key in self.index.dependents(event.key):
            self.enqueue(key)
        nodeset_name = event.obj.metadata.labels.get(CERT_NODESET_LABEL)
        if event.key.kind == Secret.KIND and nodeset_name:
            for key in await self._deployments_for(event.key.namespace, nodeset_name):
                self.enqueue(key)


def build_manager(store: StateStore, settings: OperatorSettings) -> Manager:
    """Wire both controllers to store-backed collaborators."""
    nodesets = NodeSetController(store, settings, StoreAddressNameFacade(store))
    deployments = DeploymentController(
        store,
        settings,
        StoreCertificateIssuer(store),
        StoreJobExecutionFacade(store),
    )
    return Manager(store, settings, nodesets, deployments)
