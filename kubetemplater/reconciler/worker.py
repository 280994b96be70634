"""Worker threads draining the work queue into the template reconciler."""

import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional

from kubetemplater.exceptions import KubeTemplaterError, MalformedTemplateError
from kubetemplater.models.template import (KubeTemplate, NamespacedName,
                                           TemplatePhase, TemplateStatus)
from kubetemplater.queue.work_queue import WorkItem, WorkQueue
from kubetemplater.reconciler.cluster import KubeTemplateClient
from kubetemplater.reconciler.template_reconciler import (ReconcileResult,
                                                          TemplateReconciler,
                                                          TemplateStatusWriter)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0  # seconds


class TemplateProcessor(threading.Thread):
    """One worker: dequeue, reconcile, then ``done`` or ``requeue``.

    Pausing a template whose retries are exhausted happens here, because the
    queue only reports the drop.
    """

    def __init__(
        self,
        worker_id: int,
        queue: WorkQueue,
        reconciler: TemplateReconciler,
        templates: KubeTemplateClient,
        status_writer: TemplateStatusWriter,
        stop_event: Optional[threading.Event] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        super().__init__(name=f"template-processor-{worker_id}", daemon=True)
        self.worker_id = worker_id
        self.queue = queue
        self.reconciler = reconciler
        self.templates = templates
        self.status_writer = status_writer
        self.stop_event = stop_event or threading.Event()
        self.poll_interval = poll_interval

    def run(self):
        logger.info("Starting template processor worker", extra={"worker_id": self.worker_id})

        while not self.stop_event.is_set():
            item, ok = self.queue.dequeue(timeout=self.poll_interval)
            if not ok:
                break
            if item is None:
                continue
            try:
                self.process(item)
            except Exception as e:
                logger.error(
                    f"Unexpected error processing KubeTemplate {item.identity}: {e}",
                    exc_info=True,
                    extra={"worker_id": self.worker_id},
                )
                self.queue.requeue(item, e)

        logger.info(
            "Shutting down template processor worker", extra={"worker_id": self.worker_id}
        )

    def process(self, item: WorkItem):
        """Reconcile one dequeued item and settle it with the queue."""
        identity = item.identity

        try:
            body = self.templates.get(identity)
        except KubeTemplaterError as e:
            logger.error(f"Failed to get KubeTemplate {identity}: {e}")
            self.queue.requeue(item, e)
            return

        if body is None:
            logger.info(f"KubeTemplate {identity} no longer exists, skipping")
            self.queue.done(item)
            return

        try:
            template = KubeTemplate.from_resource(body)
        except MalformedTemplateError as e:
            logger.error(str(e))
            self.queue.done(item)
            self._write_status(
                identity,
                TemplateStatus(
                    phase=TemplatePhase.FAILED,
                    message=f"Error: {e}",
                    errors=[str(e)],
                    processed_at=datetime.now(timezone.utc),
                ),
            )
            return

        result = self.reconciler.reconcile(
            template, on_phase=lambda phase: self._write_phase(identity, phase)
        )
        status = self.settle(item, result)
        self._write_status(identity, status)

    def settle(self, item: WorkItem, result: ReconcileResult) -> TemplateStatus:
        """Hand the item back to the queue and return the status to record."""
        status = result.status

        if not result.retry:
            self.queue.done(item)
            logger.debug(f"Processed {item.identity}: {status.phase.value}")
            return status

        if self.queue.requeue(item, result.error):
            status.phase = TemplatePhase.REQUEUED
            status.retry_count = item.retry_count
            status.retry_cycle = item.retry_cycle
            return status

        now = datetime.now(timezone.utc)
        reason = (
            f"Maximum retry cycles ({item.retry_cycle}) exhausted. Last error: "
            f"{result.error}. Add annotation kubetemplater.io/resume=true to retry."
        )
        logger.warning(f"Pausing KubeTemplate {item.identity}: {reason}")
        return TemplateStatus(
            phase=TemplatePhase.PAUSED,
            message=f"Paused: {result.error}",
            errors=list(status.errors),
            resources_total=status.resources_total,
            resources_synced=status.resources_synced,
            retry_count=item.retry_count,
            retry_cycle=item.retry_cycle,
            processed_at=now,
            applied_spec_hash=status.applied_spec_hash,
            paused_reason=reason,
            paused_at=now,
        )

    def _write_phase(self, identity: NamespacedName, phase: TemplatePhase):
        self.status_writer.write(identity, {"processingPhase": phase.value})

    def _write_status(self, identity: NamespacedName, status: TemplateStatus):
        try:
            self.status_writer.write(identity, status.to_dict())
        except KubeTemplaterError as e:
            logger.error(f"Failed to update status of KubeTemplate {identity}: {e}")


class WorkerPool:
    """A fixed set of TemplateProcessor threads sharing one stop flag."""

    def __init__(self, workers: List[TemplateProcessor], stop_event: threading.Event):
        self.workers = workers
        self.stop_event = stop_event

    def start(self):
        for worker in self.workers:
            worker.start()
        logger.info(f"Started {len(self.workers)} template processor workers")

    def stop(self, timeout: Optional[float] = None):
        """Signal every worker and wait for them to finish their current item."""
        self.stop_event.set()
        for worker in self.workers:
            worker.join(timeout)

    def alive(self) -> int:
        return sum(1 for worker in self.workers if worker.is_alive())


def start_workers(
    num_workers: int,
    queue: WorkQueue,
    reconciler: TemplateReconciler,
    templates: KubeTemplateClient,
    status_writer: TemplateStatusWriter,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> WorkerPool:
    stop_event = threading.Event()
    workers = [
        TemplateProcessor(
            worker_id=i,
            queue=queue,
            reconciler=reconciler,
            templates=templates,
            status_writer=status_writer,
            stop_event=stop_event,
            poll_interval=poll_interval,
        )
        for i in range(num_workers)
    ]
    pool = WorkerPool(workers, stop_event)
    pool.start()
    return pool
