"""
Worker pool: N worker processes serve one shared listening socket.

The supervisor keeps the pool at N for its whole lifetime. Workers report
("listening", pid) on the events queue once their server accepts
connections; the listening set grows with those reports and shrinks as
workers exit, and every exit is answered with exactly one replacement.
"""

import asyncio
import multiprocessing
import os
import queue
import threading
from multiprocessing.connection import wait
from typing import Callable, Dict, Optional, Sequence, Set

import structlog
import uvicorn

from .logging_setup import configure_worker_logging
from .server import create_app

logger = structlog.get_logger(__name__)

spawn = multiprocessing.get_context("spawn")

LISTENING = "listening"


class WorkerRecord:
    def __init__(self, process):
        self.process = process
        self.listening = False

    @property
    def pid(self) -> int:
        return self.process.pid


class Supervisor:
    """Keeps `size` processes running `target(*args, events)`."""

    def __init__(
        self,
        size: int,
        target: Callable,
        args: Sequence = (),
        on_ready: Optional[Callable[[Set[int]], None]] = None,
        poll_interval: float = 0.5,
    ):
        if size < 1:
            raise ValueError(f"pool size must be at least 1, got {size}")
        self.size = size
        self.target = target
        self.args = tuple(args)
        self.on_ready = on_ready
        self.poll_interval = poll_interval

        self.events = spawn.Queue()
        self.workers: Dict[int, WorkerRecord] = {}
        self.listening: Set[int] = set()
        self.spawned = 0
        self.ready = threading.Event()
        self._should_exit = threading.Event()

    def spawn_worker(self) -> WorkerRecord:
        process = spawn.Process(target=self.target, args=(*self.args, self.events))
        process.start()
        record = WorkerRecord(process)
        self.workers[record.pid] = record
        self.spawned += 1
        logger.debug("worker_started", pid=record.pid)
        return record

    def run(self) -> None:
        """Start the pool and supervise it until stop() is called."""
        logger.info("starting_workers", workers=self.size)
        for _ in range(self.size):
            self.spawn_worker()

        try:
            while not self._should_exit.is_set():
                self._drain_events()
                sentinels = {record.process.sentinel: record for record in self.workers.values()}
                for sentinel in wait(list(sentinels), timeout=self.poll_interval):
                    self._on_exit(sentinels[sentinel])
        finally:
            self.shutdown()

    def stop(self) -> None:
        self._should_exit.set()

    def shutdown(self, timeout: float = 5.0) -> None:
        self._should_exit.set()
        for record in list(self.workers.values()):
            if record.process.is_alive():
                record.process.terminate()
        for record in list(self.workers.values()):
            record.process.join(timeout)
            if record.process.is_alive():
                logger.warning("worker_kill", pid=record.pid)
                record.process.kill()
                record.process.join()
        self.workers.clear()
        self.listening.clear()
        self.ready.clear()
        logger.info("workers_stopped")

    def _drain_events(self) -> None:
        while True:
            try:
                kind, pid = self.events.get_nowait()
            except queue.Empty:
                return
            if kind == LISTENING:
                self._on_listening(pid)

    def _on_listening(self, pid: int) -> None:
        record = self.workers.get(pid)
        # late report from a worker that already exited
        if record is None or record.listening:
            return
        record.listening = True
        self.listening.add(pid)
        logger.debug("listening", pid=pid)

        if len(self.listening) == self.size:
            logger.info("all_workers_listening", workers=len(self.listening))
            self.ready.set()
            if self.on_ready:
                self.on_ready(set(self.listening))

    def _on_exit(self, record: WorkerRecord) -> None:
        record.process.join()
        self.workers.pop(record.pid, None)
        self.listening.discard(record.pid)
        self.ready.clear()
        logger.warning("worker_died", pid=record.pid, exitcode=record.process.exitcode)

        if not self._should_exit.is_set():
            self.spawn_worker()


async def _serve(server, sockets, events) -> None:
    serving = asyncio.ensure_future(server.serve(sockets=sockets))
    while not server.started and not serving.done():
        await asyncio.sleep(0.05)
    if server.started:
        events.put((LISTENING, os.getpid()))
    await serving


def serve_worker(settings, sockets, log_queue, events) -> None:
    """Worker process entry point: one event loop serving the shared socket."""
    configure_worker_logging(log_queue, settings.loglevel)
    app = create_app(settings)
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        access_log=False,
    )
    server = uvicorn.Server(config)
    asyncio.run(_serve(server, sockets, events))
