import logging
import queue
import threading
from concurrent.futures import Future
from typing import Callable, Optional

logger = logging.getLogger("SerialWorker")


class SerialWorker:
    """
    One background thread draining a FIFO of jobs.

    Jobs run strictly in submission order, one at a time. Each submit()
    returns a concurrent.futures.Future. stop() enqueues a sentinel so every
    job queued before it still runs.
    """

    def __init__(self, name: str):
        self.name = name
        self.jobs: queue.Queue = queue.Queue()
        self.thread: Optional[threading.Thread] = None
        self.running = False
        self._pending = 0
        self._idle = threading.Condition()

    def start(self):
        if self.running:
            return
        self.running = True
        self.thread = threading.Thread(target=self._worker_loop, daemon=True, name=self.name)
        self.thread.start()
        logger.info(f"{self.name} started")

    def stop(self, timeout: Optional[float] = None):
        if not self.running:
            return
        self.running = False
        self.jobs.put(None)  # Sentinel
        if self.thread and threading.current_thread() is not self.thread:
            self.thread.join(timeout=timeout)
        logger.info(f"{self.name} stopped")

    @property
    def on_worker_thread(self) -> bool:
        return self.thread is not None and threading.current_thread() is self.thread

    @property
    def pending(self) -> int:
        with self._idle:
            return self._pending

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        future: Future = Future()
        if not self.running:
            future.set_exception(RuntimeError(f"{self.name} is not running"))
            return future
        with self._idle:
            self._pending += 1
        self.jobs.put((future, fn, args, kwargs))
        return future

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every submitted job has finished. Returns False on timeout.
        """
        if self.on_worker_thread:
            return self._pending <= 1
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def _worker_loop(self):
        while True:
            item = self.jobs.get()
            if item is None:
                break
            future, fn, args, kwargs = item
            try:
                if future.set_running_or_notify_cancel():
                    try:
                        future.set_result(fn(*args, **kwargs))
                    except BaseException as e:
                        future.set_exception(e)
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()

        # Fail anything queued behind the sentinel
        while True:
            try:
                item = self.jobs.get_nowait()
            except queue.Empty:
                break
            if item is None:
                continue
            future = item[0]
            if future.set_running_or_notify_cancel():
                future.set_exception(RuntimeError(f"{self.name} stopped"))
            with self._idle:
                self._pending -= 1
                self._idle.notify_all()
