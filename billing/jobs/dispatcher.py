"""
Job Dispatcher

Асинхронная очередь фоновых задач (fire-and-forget) для пост-обработки заказов:
- Регистрация обработчиков по имени задачи
- Ограниченная очередь: переполнение = ошибка постановки
- Пул воркеров с повтором неудачных задач (at-least-once в пределах процесса)
- Корректная остановка с ожиданием активных задач
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from billing.exceptions import JobSchedulingFailed

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class Job:
    name: str
    payload: Dict[str, Any]
    attempt: int = 1


class AsyncioJobDispatcher:
    """
    In-process job dispatcher on top of asyncio.Queue.

    Jobs can be dispatched before start(); they wait in the queue until the
    workers run.
    """

    def __init__(
        self,
        workers: int = 4,
        queue_size: int = 1000,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        timeout: int = 30,
    ):
        """
        Args:
            workers: Number of worker tasks
            queue_size: Maximum number of waiting jobs
            max_attempts: Attempts per job before it is dropped
            retry_delay: Seconds to wait before re-enqueuing a failed job
            timeout: Seconds stop() waits for the queue to drain
        """
        self.workers = workers
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.handlers: Dict[str, JobHandler] = {}
        self.active_tasks: set = set()
        self._workers: List[asyncio.Task] = []
        self.is_shutting_down = False

        # Statistics
        self.started_at: Optional[datetime] = None
        self.completed_jobs = 0
        self.failed_jobs = 0

    def register(self, name: str, handler: JobHandler) -> None:
        self.handlers[name] = handler
        logging.debug(f"Job dispatcher: Registered handler {handler.__name__} for '{name}'")

    async def dispatch(self, name: str, payload: Dict[str, Any]) -> None:
        """
        Enqueue a job.

        Raises:
            JobSchedulingFailed: unknown job, dispatcher stopping or queue full
        """
        if name not in self.handlers:
            raise JobSchedulingFailed(f"No handler registered for job '{name}'")
        if self.is_shutting_down:
            raise JobSchedulingFailed(f"Dispatcher is shutting down, job '{name}' rejected")
        try:
            self.queue.put_nowait(Job(name=name, payload=dict(payload)))
        except asyncio.QueueFull as e:
            raise JobSchedulingFailed(f"Job queue is full ({self.queue.maxsize}), job '{name}' rejected") from e
        logging.debug(f"Job dispatcher: Enqueued '{name}' {payload}")

    def start(self) -> None:
        if self._workers:
            return
        self.is_shutting_down = False
        self.started_at = datetime.now()
        for i in range(self.workers):
            task = asyncio.create_task(self._worker(), name=f"job-worker-{i}")
            self._workers.append(task)
        logging.info(f"Job dispatcher: Started {self.workers} workers")

    async def stop(self) -> None:
        """Wait for queued jobs (up to timeout), then cancel the workers."""
        if self.is_shutting_down:
            logging.warning("Job dispatcher: Already stopping, ignoring duplicate request")
            return
        self.is_shutting_down = True

        if self._workers:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logging.warning(
                    f"Job dispatcher: Timeout ({self.timeout}s) reached, "
                    f"{self.queue.qsize()} jobs still queued. Cancelling..."
                )

        for task in list(self.active_tasks):
            if not task.done():
                task.cancel()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, *self.active_tasks, return_exceptions=True)
        self._workers = []

        logging.info(
            f"Job dispatcher: Stopped (completed={self.completed_jobs}, failed={self.failed_jobs})"
        )

    def track_task(self, task: asyncio.Task) -> None:
        self.active_tasks.add(task)
        task.add_done_callback(self.active_tasks.discard)

    async def _worker(self) -> None:
        while True:
            job = await self.queue.get()
            try:
                await self._run(job)
            finally:
                self.queue.task_done()

    async def _run(self, job: Job) -> None:
        handler = self.handlers[job.name]
        try:
            await handler(job.payload)
            self.completed_jobs += 1
            logging.debug(f"Job dispatcher: '{job.name}' {job.payload} done")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if job.attempt >= self.max_attempts:
                self.failed_jobs += 1
                logging.error(
                    f"Job dispatcher: '{job.name}' {job.payload} failed after "
                    f"{job.attempt} attempts: {e}",
                    exc_info=True
                )
                return
            logging.warning(
                f"Job dispatcher: '{job.name}' {job.payload} attempt {job.attempt} failed: {e}, retrying"
            )
            retry = Job(name=job.name, payload=job.payload, attempt=job.attempt + 1)
            self.track_task(asyncio.create_task(self._requeue(retry), name=f"retry-{job.name}"))

    async def _requeue(self, job: Job) -> None:
        await asyncio.sleep(self.retry_delay)
        try:
            self.queue.put_nowait(job)
        except asyncio.QueueFull:
            self.failed_jobs += 1
            logging.error(f"Job dispatcher: queue full, dropping retry of '{job.name}' {job.payload}")
