"""
Worker pool for CPU-bound tile work.

Each PooledWorker owns a single-slot executor (a separate process by
default, a thread when configured) and talks to it with picklable
WorkerMessage / WorkerReply objects through ``loop.run_in_executor``.

Lifecycle:
    - ``start()`` creates the first workers eagerly and waits for each one
      to answer INIT with READY.
    - ``acquire()`` hands out an idle worker, creates one lazily while the
      pool is below ``max_workers``, or polls until one frees up.
    - ``submit()`` runs one message on a leased worker; a worker that misses
      its timeout is retired (its process terminated) and replaced lazily.
    - ``shutdown()`` stops every executor. The pool is also an async
      context manager.
"""

import asyncio
import itertools
import os
import threading
import time
from concurrent.futures import BrokenExecutor, Executor, ProcessPoolExecutor, ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, List, Optional

import numpy as np

from .classifier import ContentKind
from .config import PoolConfig, QuantizationParams
from .errors import WorkerTaskError, WorkerTimeout, WorkerUnavailable
from .logger_setup import setup_logger
from .quantization import quantize_pixels

log = setup_logger("pool")

TileTask = Callable[[np.ndarray, ContentKind, QuantizationParams], None]


class MessageKind(Enum):
    INIT = "init"
    READY = "ready"
    COMPRESS = "compress"
    RESULT = "result"
    ERROR = "error"
    HEARTBEAT = "heartbeat"


@dataclass
class TileJob:
    """
    Payload of a COMPRESS message.

    ``task`` replaces the default quantization pass; with the process
    executor it has to be a module-level function so it can be pickled.
    """

    pixels: np.ndarray
    kind: ContentKind
    params: QuantizationParams
    task: Optional[TileTask] = None


@dataclass
class WorkerMessage:
    kind: MessageKind
    task_id: str = ""
    payload: Any = None


@dataclass
class WorkerReply:
    kind: MessageKind
    task_id: str = ""
    payload: Any = None
    error: Optional[str] = None
    pid: int = 0


def worker_main(message: WorkerMessage) -> WorkerReply:
    """
    Entry point executed inside a worker.

    Never raises: task failures come back as ERROR replies so the caller
    can tell them apart from a dead executor.
    """
    pid = os.getpid()
    if message.kind is MessageKind.INIT:
        return WorkerReply(MessageKind.READY, message.task_id, pid=pid)
    if message.kind is MessageKind.HEARTBEAT:
        return WorkerReply(MessageKind.HEARTBEAT, message.task_id, pid=pid)
    if message.kind is MessageKind.COMPRESS:
        try:
            job: TileJob = message.payload
            # Thread workers receive views of the source; never write into them
            pixels = np.array(job.pixels, dtype=np.uint8, copy=True)
            (job.task or quantize_pixels)(pixels, job.kind, job.params)
            return WorkerReply(MessageKind.RESULT, message.task_id, payload=pixels, pid=pid)
        except Exception as e:
            return WorkerReply(MessageKind.ERROR, message.task_id, error=f"{type(e).__name__}: {e}", pid=pid)
    return WorkerReply(MessageKind.ERROR, message.task_id, error=f"Unexpected message kind {message.kind}", pid=pid)


class PooledWorker:
    """One worker slot with its own single-worker executor."""

    def __init__(self, worker_id: int, executor_kind: str = "process"):
        self.id = worker_id
        self.busy = False
        self.last_used_at = time.monotonic()
        self._executor = self._make_executor(executor_kind)

    def _make_executor(self, executor_kind: str) -> Executor:
        if executor_kind == "thread":
            return ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"tile-worker-{self.id}")
        if executor_kind == "process":
            return ProcessPoolExecutor(max_workers=1)
        raise ValueError(f"Unknown executor kind '{executor_kind}'")

    async def call(self, message: WorkerMessage, timeout: float) -> WorkerReply:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, worker_main, message)
        return await asyncio.wait_for(future, timeout)

    def stop(self, wait: bool = False, terminate: bool = False) -> None:
        """
        Shut the executor down.

        A running task cannot be cancelled; with ``terminate`` the child
        process of a process worker is killed so a hung task does not
        outlive the worker. Thread workers finish their current task.
        """
        if terminate and isinstance(self._executor, ProcessPoolExecutor):
            for process in list((self._executor._processes or {}).values()):
                if process.is_alive():
                    process.terminate()
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def __repr__(self) -> str:
        return f"PooledWorker(id={self.id}, busy={self.busy})"


class WorkerPool:
    """
    Bounded pool of PooledWorkers.

    Args:
        config (PoolConfig, optional): Bound, executor kind and timeouts.
    """

    def __init__(self, config: Optional[PoolConfig] = None):
        self.config = config or PoolConfig()
        if self.config.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.config.max_workers}")
        self._workers: List[PooledWorker] = []
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._started = False
        self._closed = False

    @property
    def max_workers(self) -> int:
        return self.config.max_workers

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._workers)

    @property
    def busy_count(self) -> int:
        with self._lock:
            return sum(1 for w in self._workers if w.busy)

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> "WorkerPool":
        """Create the eager workers and wait for their READY handshake."""
        if self._closed:
            raise WorkerUnavailable("Worker pool is shut down")
        if self._started:
            return self
        self._started = True
        eager = min(2, self.max_workers)
        spawned = await asyncio.gather(*(self._spawn() for _ in range(eager)), return_exceptions=True)
        failures = [s for s in spawned if isinstance(s, BaseException)]
        for worker in spawned:
            if isinstance(worker, PooledWorker):
                self.release(worker)
        if failures and self.size == 0:
            raise failures[0]
        for failure in failures:
            log.warning(str(failure))
        log.info(f"Worker pool ready: {self.size}/{self.max_workers} {self.config.executor_kind} workers")
        return self

    async def _spawn(self, deadline: Optional[float] = None) -> Optional[PooledWorker]:
        """
        Create one worker (returned busy) or None when the pool is full.

        The INIT handshake waits at most ``init_timeout`` and never past
        ``deadline``.
        """
        timeout = self.config.init_timeout
        if deadline is not None:
            timeout = min(timeout, deadline - time.monotonic())
            if timeout <= 0:
                return None
        with self._lock:
            if len(self._workers) >= self.max_workers:
                return None
            worker = PooledWorker(next(self._ids), self.config.executor_kind)
            worker.busy = True
            self._workers.append(worker)

        try:
            reply = await worker.call(WorkerMessage(MessageKind.INIT, f"init-{worker.id}"), timeout)
        except asyncio.CancelledError:
            self._retire(worker)
            raise
        except Exception as e:
            self._retire(worker)
            raise WorkerUnavailable(f"Worker {worker.id} failed to initialise: {e!r}", cause=e) from e
        if reply.kind is not MessageKind.READY:
            self._retire(worker)
            raise WorkerUnavailable(f"Worker {worker.id} answered INIT with {reply.kind.value}")
        log.debug(f"Worker {worker.id} ready (pid {reply.pid})")
        return worker

    def _claim_idle(self) -> Optional[PooledWorker]:
        with self._lock:
            for worker in self._workers:
                if not worker.busy:
                    worker.busy = True
                    return worker
        return None

    async def acquire(self, deadline: Optional[float] = None) -> PooledWorker:
        """
        Lease a worker.

        Args:
            deadline (float, optional): ``time.monotonic()`` value after which
                to give up. Defaults to now plus ``acquire_timeout``.

        Raises:
            WorkerUnavailable: If the pool is closed or no worker frees up in time.
        """
        if deadline is None:
            deadline = time.monotonic() + self.config.acquire_timeout
        while True:
            if self._closed:
                raise WorkerUnavailable("Worker pool is shut down")
            worker = self._claim_idle()
            if worker is not None:
                return worker
            try:
                worker = await self._spawn(deadline)
            except WorkerUnavailable as e:
                log.warning(str(e))
                worker = None
            if worker is not None:
                return worker
            if time.monotonic() >= deadline:
                raise WorkerUnavailable(f"No worker became available (max {self.max_workers})")
            await asyncio.sleep(self.config.poll_interval)

    def release(self, worker: PooledWorker) -> None:
        with self._lock:
            worker.busy = False
            worker.last_used_at = time.monotonic()

    @asynccontextmanager
    async def lease(self, deadline: Optional[float] = None) -> AsyncIterator[PooledWorker]:
        worker = await self.acquire(deadline)
        try:
            yield worker
        finally:
            self.release(worker)

    def _retire(self, worker: PooledWorker) -> None:
        with self._lock:
            if worker in self._workers:
                self._workers.remove(worker)
        worker.stop(wait=False, terminate=True)

    async def submit(self, message: WorkerMessage, timeout: Optional[float] = None) -> WorkerReply:
        """
        Run one message on a leased worker.

        ``timeout`` bounds waiting for a worker; once a worker is leased the
        call itself gets the full ``timeout`` again, so time spent creating
        the worker never counts against its answer.

        Raises:
            WorkerUnavailable: If no worker could be leased.
            WorkerTimeout: If the worker did not answer in time (it is retired).
            WorkerTaskError: If the worker answered ERROR or its executor broke.
        """
        timeout = self.config.acquire_timeout if timeout is None else timeout
        async with self.lease(time.monotonic() + timeout) as worker:
            try:
                reply = await worker.call(message, timeout)
            except asyncio.TimeoutError as e:
                log.warning(f"Worker {worker.id} timed out on {message.task_id or message.kind.value}; retiring it")
                self._retire(worker)
                raise WorkerTimeout(f"Task {message.task_id} exceeded {timeout:.2f}s", cause=e) from e
            except asyncio.CancelledError:
                # The executor is still busy with the abandoned task
                self._retire(worker)
                raise
            except BrokenExecutor as e:
                log.error(f"Worker {worker.id} died: {e}")
                self._retire(worker)
                raise WorkerTaskError(f"Worker {worker.id} executor broke: {e}", cause=e) from e
        if reply.kind is MessageKind.ERROR:
            raise WorkerTaskError(f"Task {reply.task_id} failed in worker: {reply.error}")
        return reply

    async def heartbeat(self, timeout: float = 1.0) -> int:
        """Ping idle workers, retire the silent ones, return how many remain."""
        idle = []
        while True:
            worker = self._claim_idle()
            if worker is None:
                break
            idle.append(worker)

        async def ping(worker: PooledWorker) -> None:
            alive = False
            try:
                reply = await worker.call(WorkerMessage(MessageKind.HEARTBEAT, f"hb-{worker.id}"), timeout)
                alive = reply.kind is MessageKind.HEARTBEAT
            except (asyncio.TimeoutError, BrokenExecutor, RuntimeError) as e:
                log.warning(f"Worker {worker.id} missed heartbeat ({e!r}); retiring it")
            finally:
                if alive:
                    self.release(worker)
                else:
                    self._retire(worker)

        await asyncio.gather(*(ping(w) for w in idle))
        return self.size

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        with self._lock:
            workers, self._workers = self._workers, []
        for worker in workers:
            worker.stop(wait=wait)
        if workers:
            log.debug(f"Worker pool shut down ({len(workers)} workers)")

    async def __aenter__(self) -> "WorkerPool":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await asyncio.to_thread(self.shutdown, True)
