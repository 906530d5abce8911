"""
Signal Relay - Queue Controller
Layer 1: Signal Network

This module runs many independent operations against one endpoint under a
concurrency cap. Each trigger becomes a task moving through
pending -> running -> success | error | aborted, with retry re-entering
pending from error or aborted.

Handles permit gating, cooperative cancellation, per-task plugin contexts
and progress statistics for subscribers.
"""
import asyncio
import itertools
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from ..central_cortex.executor import PluginExecutor
from ..central_cortex.plugins import LifecyclePhase, OperationType
from ..shared.config import get_settings
from ..shared.errors import CancellationError
from ..shared.logging_config import CorrelationContext
from ..shared.metrics_collector import get_metrics_collector
from ..shared.schemas import QUEUE_CLEAR_EVENT, QueueClearEvent, QueueStats, Response
from ..synaptic_vesicle.query_key import create_query_key
from ..synaptic_vesicle.state_store import CacheStore
from .cancellation import CancellationToken
from .event_bus import EventBus
from .semaphore import PermitPool

logger = structlog.get_logger(__name__)

Transport = Callable[[Dict[str, Any], CancellationToken], Awaitable[Any]]

# Trigger input keys that make up the request fragment; the rest are plugin options
REQUEST_FIELDS = ("query", "params", "body", "headers")


class TaskStatus(str, Enum):
    """Queue task states."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    ABORTED = "aborted"


ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.RUNNING)
RETRYABLE_STATUSES = (TaskStatus.ERROR, TaskStatus.ABORTED)


@dataclass
class QueueTask:
    """One queued operation and its settled outcome."""
    id: str
    input: Dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    data: Any = None
    error: Any = None
    meta: Optional[Dict[str, Any]] = None
    created_at: float = field(default_factory=time.time)
    attempt: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert task to dictionary for serialization."""
        return {
            "id": self.id,
            "status": self.status.value,
            "input": self.input,
            "data": self.data,
            "error": str(self.error) if self.error is not None else None,
            "meta": self.meta,
        }


def _aborted_response() -> Response:
    return Response(error=CancellationError("Aborted"), aborted=True)


class QueueController:
    """
    Concurrency-bounded task queue for one endpoint.

    Features:
    - FIFO permit pool with resizable capacity
    - Fire-and-forget execution returning a future per trigger
    - Abort, retry, remove and clear controls
    - Snapshot accessors and synchronous subscriber notification
    """

    def __init__(
        self,
        path: str,
        method: str,
        transport: Transport,
        store: CacheStore,
        bus: EventBus,
        executor: PluginExecutor,
        concurrency: Optional[int] = None,
        operation_type: OperationType = OperationType.QUEUE,
        hook_options: Optional[Dict[str, Any]] = None
    ):
        self.path = path
        self.method = method.upper()
        self.transport = transport
        self.store = store
        self.bus = bus
        self.executor = executor
        self.operation_type = OperationType(operation_type)
        self.hook_options = dict(hook_options or {})

        self.concurrency = concurrency if concurrency is not None else get_settings().default_concurrency
        self.pool = PermitPool(self.concurrency)
        self.metrics = get_metrics_collector()

        # Task management
        self._tasks: List[QueueTask] = []
        self._tokens: Dict[str, CancellationToken] = {}
        self._futures: Dict[str, asyncio.Future] = {}
        self._runners: Set[asyncio.Task] = set()
        self._ids = itertools.count(1)
        self._pool_generation = 0

        # Subscribers
        self._subscribers: List[Callable[[], None]] = []
        self._snapshot: List[QueueTask] = []

        logger.info("Queue controller initialized",
                    path=self.path,
                    method=self.method,
                    concurrency=self.concurrency)

    # Public controls

    def trigger(self, input: Optional[Dict[str, Any]] = None) -> "asyncio.Future[Response]":
        """
        Append a task and start executing it without blocking the caller.

        Returns:
            A future settling with the task's Response. It never raises; failures
            are carried in ``error`` and ``aborted``.
        """
        task = QueueTask(id=self._generate_id(), input=dict(input or {}))
        self._tasks.append(task)
        self._notify()

        future = asyncio.get_running_loop().create_future()
        self._futures[task.id] = future
        self._spawn(task)

        logger.info("Task queued", task_id=task.id, path=self.path)
        return future

    def abort(self, task_id: Optional[str] = None) -> None:
        """Cancel one active task, or every active task when no id is given."""
        targets = [t for t in self._tasks if task_id is None or t.id == task_id]
        changed = False
        for task in targets:
            if not task.is_active:
                continue
            self._abort_task(task)
            changed = True

        if changed or task_id is None:
            self._notify()

    def retry(self, task_id: Optional[str] = None) -> None:
        """
        Re-run tasks that ended in error or aborted.

        The future returned by the original trigger is not settled again;
        retried outcomes are observable through subscribe, get_queue and get_stats.
        """
        targets = [
            t for t in self._tasks
            if t.status in RETRYABLE_STATUSES and (task_id is None or t.id == task_id)
        ]
        if not targets:
            return

        loop = asyncio.get_running_loop()
        for task in targets:
            task.status = TaskStatus.PENDING
            task.error = None
            task.attempt += 1
            self._futures[task.id] = loop.create_future()
            self._spawn(task)

        self._notify()
        logger.info("Tasks retried", count=len(targets), path=self.path)

    def remove(self, task_id: Optional[str] = None) -> None:
        """
        Delete one task (cancelling it if active), or drop every settled task.
        """
        if task_id is not None:
            task = self._find(task_id)
            if task is not None:
                if task.is_active:
                    self._abort_task(task)
                self._tasks.remove(task)
        else:
            self._tasks = [t for t in self._tasks if t.is_active]

        self._notify()

    def clear(self) -> None:
        """
        Cancel every active task, empty the queue and reset the permit pool.

        Emits the queue-clear event with the query keys of the cancelled tasks
        so collaborators can purge them from the cache store.
        """
        discarded = []
        for task in self._tasks:
            if task.is_active:
                self._abort_task(task)
                discarded.append(self._task_query_key(task))

        if discarded:
            self.bus.emit(QUEUE_CLEAR_EVENT, QueueClearEvent(query_keys=discarded))

        self._tasks = []
        self._pool_generation += 1
        self.pool.reset()
        self._notify()

        logger.info("Queue cleared", path=self.path, discarded=len(discarded))

    def set_concurrency(self, concurrency: int) -> None:
        self.concurrency = concurrency
        self.pool.set_concurrency(concurrency)

    # Snapshots

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def get_queue(self) -> List[QueueTask]:
        """Snapshot of the tasks as of the last notification."""
        return [replace(task) for task in self._snapshot]

    def get_stats(self) -> QueueStats:
        pending = running = success = failed = 0
        for task in self._tasks:
            if task.status == TaskStatus.PENDING:
                pending += 1
            elif task.status == TaskStatus.RUNNING:
                running += 1
            elif task.status == TaskStatus.SUCCESS:
                success += 1
            else:
                failed += 1

        settled = success + failed
        total = len(self._tasks)
        return QueueStats(
            pending=pending,
            running=running,
            settled=settled,
            success=success,
            failed=failed,
            total=total,
            percentage=int(settled * 100 / total + 0.5) if total > 0 else 0,
        )

    async def join(self) -> None:
        """Wait until every execution started so far (including retries) has finished."""
        while self._runners:
            await asyncio.gather(*list(self._runners), return_exceptions=True)

    # Execution

    def _generate_id(self) -> str:
        return f"q-{int(time.time() * 1000)}-{next(self._ids)}"

    def _find(self, task_id: str) -> Optional[QueueTask]:
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    def _task_query_key(self, task: QueueTask) -> str:
        return create_query_key(self.path, self.method, {**task.input, "_queue_id": task.id})

    def _spawn(self, task: QueueTask) -> None:
        runner = asyncio.ensure_future(self._execute(task, task.attempt))
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

    def _abort_task(self, task: QueueTask) -> None:
        token = self._tokens.get(task.id)
        if token is not None:
            token.cancel()
        task.status = TaskStatus.ABORTED
        self._settle(task.id, _aborted_response())
        logger.info("Task aborted", task_id=task.id)

    def _settle(self, task_id: str, response: Response) -> None:
        future = self._futures.pop(task_id, None)
        if future is not None and not future.done():
            future.set_result(response)

    async def _execute(self, task: QueueTask, attempt: int) -> Response:
        generation = self._pool_generation
        acquired = await self.pool.acquire()

        superseded = task.attempt != attempt
        if not acquired or superseded or task.status == TaskStatus.ABORTED:
            if acquired and generation == self._pool_generation:
                self.pool.release()
            response = _aborted_response()
            if not superseded:
                self._settle(task.id, response)
            return response

        token = CancellationToken()
        self._tokens[task.id] = token
        query_key = self._task_query_key(task)
        request = {k: task.input[k] for k in REQUEST_FIELDS if k in task.input}
        request.setdefault("headers", {})
        request.update(path=self.path, method=self.method)
        plugin_options = {
            **self.hook_options,
            **{k: v for k, v in task.input.items() if k not in REQUEST_FIELDS},
        }

        context = self.executor.create_context(
            operation_type=self.operation_type,
            path=self.path,
            method=self.method,
            query_key=query_key,
            store=self.store,
            bus=self.bus,
            tags=[],
            request=request,
            plugin_options=plugin_options,
            token=token,
        )

        async def core() -> Any:
            return await self.transport(context.request, token)

        task.status = TaskStatus.RUNNING
        self.metrics.queue_tasks_running.increment()
        self._notify()

        status = TaskStatus.ABORTED
        response = _aborted_response()
        with CorrelationContext(task_id=task.id, query_key=query_key):
            try:
                await self.executor.execute_lifecycle(
                    LifecyclePhase.BEFORE_CALL, self.operation_type, context
                )
                response = await self.executor.execute_middleware(
                    self.operation_type, context, core
                )
                phase = LifecyclePhase.ERROR if response.error is not None else LifecyclePhase.SUCCESS
                await self.executor.execute_lifecycle(phase, self.operation_type, context)
                await self.executor.execute_lifecycle(
                    LifecyclePhase.AFTER_CALL, self.operation_type, context
                )

                if token.cancelled or response.aborted:
                    # Abort is final even if the transport completed anyway
                    response = Response(
                        status=response.status,
                        error=response.error or CancellationError(token.reason or "Aborted"),
                        aborted=True,
                    )
                else:
                    status = TaskStatus.ERROR if response.error is not None else TaskStatus.SUCCESS

            except Exception as e:
                if token.cancelled:
                    response = Response(error=e, aborted=True)
                else:
                    status = TaskStatus.ERROR
                    response = Response(error=e)
                    logger.error("Task execution failed", error=str(e))

            finally:
                # A retry started while this run was still in flight owns the task now
                if task.attempt == attempt:
                    entry = self.store.get_cache(query_key)
                    task.status = status
                    if status == TaskStatus.SUCCESS:
                        task.data = response.data
                    elif status == TaskStatus.ERROR:
                        task.error = response.error
                    if status != TaskStatus.ABORTED:
                        task.meta = dict(entry.meta) if entry is not None and entry.meta else None
                    self._settle(task.id, response)

                if self._tokens.get(task.id) is token:
                    del self._tokens[task.id]
                self.metrics.queue_tasks_running.decrement()
                self.metrics.queue_tasks_settled.increment(status=status.value)
                self._notify()
                if generation == self._pool_generation:
                    self.pool.release()
                logger.debug("Task settled", status=status.value)

        return response

    def _notify(self) -> None:
        self._snapshot = [replace(task) for task in self._tasks]
        for callback in list(self._subscribers):
            try:
                callback()
            except Exception as e:
                logger.error("Error in queue subscriber", error=str(e))
