import logging
import os
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from django.db import close_old_connections
from django.utils import timezone

from .cloud import TimedCloud
from .config import DirectorConfig
from .errors import TaskCancelled, TaskNotFound, ValidationError
from .locks import DeploymentLock, deployment_lock
from .models import Task
from .task_logs import TaskLog, TaskOutput, read_output

logger = logging.getLogger(__name__)


class CancellationToken:
    """Answers "was this task cancelled?" at the points where stopping is safe.

    A lock attached to the token is refreshed at every checkpoint so long
    running handlers keep their deployment lock alive.
    """

    def __init__(self, task_id: int):
        self.task_id = task_id
        self.lock: Optional[DeploymentLock] = None

    def attach(self, lock: DeploymentLock) -> None:
        self.lock = lock

    def is_cancelled(self) -> bool:
        return Task.objects.filter(id=self.task_id, state="cancelling").exists()

    def checkpoint(self) -> None:
        if self.is_cancelled():
            raise TaskCancelled("Task cancelled")
        if self.lock is not None:
            self.lock.refresh()


@dataclass
class TaskContext:
    task: Task
    config: DirectorConfig
    log: TaskLog
    token: CancellationToken
    director: Any
    params: Dict[str, Any] = field(default_factory=dict)
    reserved_lock: Optional[DeploymentLock] = None

    def lock(self, deployment_name: Optional[str] = None) -> DeploymentLock:
        name = deployment_name or self.task.deployment_name
        if self.reserved_lock is not None and self.reserved_lock.deployment_name == name:
            lock = self.reserved_lock
        else:
            lock = deployment_lock(name, owner=f"task:{self.task.id}", ttl=self.config.lock_ttl, token=self.token)
        self.token.attach(lock)
        return lock

    def cloud(self, kind: Optional[str] = None) -> TimedCloud:
        provider = self.director.clouds.get_provider(kind or self.config.default_infrastructure)
        return TimedCloud(provider, self.config.cpi_timeout, cpi_log=self.log.cpi)


class InProcessDispatcher:
    mode = "inprocess"

    def __init__(self, runner: Callable[[int], None], workers: int = 3):
        self.runner = runner
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="armada-task")

    def _run(self, task_id: int) -> None:
        try:
            self.runner(task_id)
        finally:
            close_old_connections()

    def dispatch(self, task_id: int) -> None:
        self._executor.submit(self._run, task_id)

    def defer(self, task_id: int, delay: float) -> None:
        """Dispatch again after ``delay`` seconds without holding a pool slot meanwhile."""
        timer = threading.Timer(delay, self.dispatch, args=(task_id,))
        timer.daemon = True
        timer.start()


class RedisDispatcher:
    """Enqueues task ids on rq; deferred tasks need a worker started with the scheduler."""

    mode = "redis"

    def __init__(self, redis_url: str, queue_name: str = "armada-tasks"):
        self.redis_url = redis_url
        self.queue_name = queue_name

    def _queue(self):
        import redis
        from rq import Queue

        return Queue(self.queue_name, connection=redis.Redis.from_url(self.redis_url))

    def dispatch(self, task_id: int) -> str:
        job = self._queue().enqueue("armada_director.worker_tasks.run_task", task_id, job_timeout=-1)
        return job.id

    def defer(self, task_id: int, delay: float) -> str:
        job = self._queue().enqueue_in(
            timedelta(seconds=delay), "armada_director.worker_tasks.run_task", task_id, job_timeout=-1
        )
        return job.id


class ManualDispatcher:
    """Holds task ids until ``drain()`` runs them in submission order.

    Deferred ids wait in ``deferred`` and rejoin the queue on the next drain.
    """

    mode = "manual"

    def __init__(self, runner: Callable[[int], None]):
        self.runner = runner
        self.pending: deque = deque()
        self.deferred: deque = deque()

    def dispatch(self, task_id: int) -> None:
        self.pending.append(task_id)

    def defer(self, task_id: int, delay: float) -> None:
        self.deferred.append(task_id)

    def drain(self) -> List[int]:
        self.pending.extend(self.deferred)
        self.deferred.clear()
        ran = []
        while self.pending:
            task_id = self.pending.popleft()
            self.runner(task_id)
            ran.append(task_id)
        return ran


def build_dispatcher(config: DirectorConfig, runner: Callable[[int], None]):
    mode = (config.async_jobs_mode or "").strip().lower()
    if mode == "redis":
        return RedisDispatcher(config.jobs_redis_url, config.jobs_queue)
    if mode == "manual":
        return ManualDispatcher(runner)
    return InProcessDispatcher(runner, workers=config.workers)


class TaskManager:
    def __init__(self, config: DirectorConfig, director: Any = None, dispatcher=None):
        self.config = config
        self.director = director
        self.dispatcher = dispatcher or build_dispatcher(config, self.run)

    def submit(self, task_type: str, description: str, params: Optional[Dict[str, Any]] = None, user=None,
               deployment_name: str = "") -> Task:
        task = Task.objects.create(
            type=task_type,
            description=description,
            params_json=params or {},
            deployment_name=deployment_name or "",
            user=user if user is not None and getattr(user, "is_authenticated", False) else None,
        )
        task.output = os.path.join(self.config.task_log_root, str(task.id))
        task.save(update_fields=["output"])
        logger.info("Queued task %s (%s) %s", task.id, task_type, description)
        self.dispatcher.dispatch(task.id)
        return task

    def get(self, task_id) -> Task:
        try:
            return Task.objects.select_related("user").get(id=int(task_id))
        except (Task.DoesNotExist, TypeError, ValueError):
            raise TaskNotFound(f"Task {task_id} not found")

    def cancel(self, task_id) -> Task:
        task = self.get(task_id)
        if not Task.transition(task.id, ("queued", "processing"), "cancelling"):
            task.refresh_from_db()
            if task.state != "cancelling":
                raise ValidationError(f"Cannot cancel task {task.id}: task is {task.state}")
        task.refresh_from_db()
        logger.info("Task %s marked for cancellation", task.id)
        return task

    def status(self, task_id) -> Dict[str, Any]:
        return task_status(self.get(task_id))

    def output(self, task_id, log_type: Optional[str] = None, start: Optional[int] = None,
               end: Optional[int] = None, suffix: Optional[int] = None) -> TaskOutput:
        task = self.get(task_id)
        return read_output(task.output, log_type, start=start, end=end, suffix=suffix)

    def list(self, states: Optional[Iterable[str]] = None, limit: Optional[int] = None,
             deployment: Optional[str] = None) -> List[Task]:
        qs = Task.objects.select_related("user").order_by("-id")
        if states:
            qs = qs.filter(state__in=list(states))
        if deployment:
            qs = qs.filter(deployment_name=deployment)
        if limit:
            qs = qs[: int(limit)]
        return list(qs)

    def drain(self) -> List[int]:
        drain = getattr(self.dispatcher, "drain", None)
        return drain() if drain else []

    def _cancel_unstarted(self, task_id: int) -> bool:
        if Task.transition(task_id, ("cancelling",), "cancelled", result="Task cancelled before it started"):
            logger.info("Task %s cancelled before it started", task_id)
            return True
        return False

    def _reserve_deployment(self, task: Task) -> Optional[DeploymentLock]:
        """Take the deployment lock without waiting, or put the task back on the queue."""
        lock = deployment_lock(task.deployment_name, owner=f"task:{task.id}", ttl=self.config.lock_ttl)
        if lock.try_acquire():
            return lock
        logger.info(
            "Deployment %s is locked by %s; task %s stays queued", task.deployment_name, lock.holder(), task.id
        )
        self.dispatcher.defer(task.id, self.config.lock_retry_interval)
        return None

    def run(self, task_id: int) -> None:
        """Execute one task to a terminal state; never raises.

        A task whose deployment is locked by another task stays ``queued``
        and is dispatched again later, so it never occupies a worker while
        it waits.
        """
        from .handlers import HANDLERS, get_handler

        if self._cancel_unstarted(task_id):
            return
        task = Task.objects.filter(id=task_id, state="queued").first()
        if task is None:
            logger.info("Task %s is not queued, skipping", task_id)
            return
        reserved = None
        handler_class = HANDLERS.get(task.type)
        if handler_class is not None and handler_class.locks_deployment and task.deployment_name:
            reserved = self._reserve_deployment(task)
            if reserved is None:
                return
        if not Task.transition(task_id, ("queued",), "processing", started_at=timezone.now()):
            if reserved is not None:
                reserved.release()
            if not self._cancel_unstarted(task_id):
                logger.info("Task %s is not queued, skipping", task_id)
            return
        task.refresh_from_db()
        log = TaskLog(self.config.task_log_root, task.id).open()
        token = CancellationToken(task.id)
        if reserved is not None:
            reserved.token = token
            token.attach(reserved)
        context = TaskContext(
            task=task, config=self.config, log=log, token=token, director=self.director,
            params=task.params_json or {}, reserved_lock=reserved,
        )
        log.debug.info("Director task %s (%s) started: %s", task.id, task.type, task.description)
        handler = None
        try:
            handler = get_handler(task.type)(context)
            token.checkpoint()
            result = handler.perform() or ""
        except TaskCancelled as exc:
            log.debug.info("Task %s cancelled", task.id)
            log.write_result(str(exc))
            Task.transition(task.id, ("processing", "cancelling"), "cancelled", result=str(exc))
        except Exception as exc:
            log.debug.exception("Task %s failed: %s", task.id, exc)
            logger.exception("Task %s (%s) failed", task.id, task.type)
            if not Task.transition(task.id, ("processing",), "error", result=str(exc)):
                self._finish_cancelled(task, log, f"Task cancelled; it failed before stopping: {exc}")
            else:
                log.write_result(str(exc))
        else:
            if Task.transition(task.id, ("processing",), "done", result=result):
                log.write_result(result)
                log.debug.info("Task %s done: %s", task.id, result)
                on_done = getattr(handler, "on_done", None)
                if on_done is not None:
                    try:
                        on_done()
                    except Exception:
                        logger.exception("Completion hook of task %s failed", task.id)
            else:
                self._finish_cancelled(task, log, f"Task cancelled after its work completed: {result}")
        finally:
            if token.lock is not None:
                token.lock.release()
            if reserved is not None:
                reserved.release()
            log.close()

    def _finish_cancelled(self, task: Task, log: TaskLog, result: str) -> None:
        log.debug.info("Task %s cancelled: %s", task.id, result)
        log.write_result(result)
        Task.transition(task.id, ("cancelling",), "cancelled", result=result)


def task_status(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "type": task.type,
        "state": task.state,
        "description": task.description,
        "timestamp": int(task.timestamp.timestamp()) if task.timestamp else None,
        "result": task.result or None,
        "user": task.user.username if task.user_id else None,
    }
