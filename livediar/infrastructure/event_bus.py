import logging
import queue
import threading
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from livediar.infrastructure.events import Event, EventType

logger = logging.getLogger("EventBus")

Listener = Callable[[Event], None]


class EventBus:
    """
    Typed pub/sub between the capture, inference and control contexts.

    - BOUNDED subscriber queues, Drop-Oldest on overflow.
    - Synchronous listeners for callers that prefer callbacks.
    - publish() never blocks and never raises into the publisher.
    """

    MAX_QUEUE_SIZE = 1000

    def __init__(self, max_queue_size: int = MAX_QUEUE_SIZE):
        self.max_queue_size = max_queue_size
        self.subscribers: Dict[str, queue.Queue] = {}
        self.listeners: List[Tuple[Listener, Optional[Set[EventType]]]] = []
        self.dropped_events = 0
        self.active = True
        self.lock = threading.Lock()

    def subscribe(self, consumer_name: str) -> queue.Queue:
        """
        Returns a bounded queue for the consumer. Events arrive in publish order;
        None marks bus shutdown.
        """
        q = queue.Queue(maxsize=self.max_queue_size)
        with self.lock:
            self.subscribers[consumer_name] = q
        logger.info(f"Subscriber connected: {consumer_name}")
        return q

    def unsubscribe(self, consumer_name: str):
        with self.lock:
            self.subscribers.pop(consumer_name, None)

    def add_listener(self, callback: Listener, types: Optional[Iterable[EventType]] = None):
        with self.lock:
            self.listeners.append((callback, set(types) if types else None))

    def remove_listener(self, callback: Listener):
        with self.lock:
            self.listeners = [(cb, t) for cb, t in self.listeners if cb is not callback]

    def publish(self, event: Event):
        if not self.active:
            return

        with self.lock:
            queues = list(self.subscribers.values())
            listeners = list(self.listeners)

        for q in queues:
            self._put_drop_oldest(q, event)

        for callback, types in listeners:
            if types is not None and event.type not in types:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Listener failed on {event.type.value}: {e}")

    def _put_drop_oldest(self, q: queue.Queue, item):
        while True:
            try:
                q.put_nowait(item)
                return
            except queue.Full:
                try:
                    q.get_nowait()
                    self.dropped_events += 1
                except queue.Empty:
                    pass

    def shutdown(self):
        if not self.active:
            return
        self.active = False
        with self.lock:
            queues = list(self.subscribers.values())
            self.subscribers.clear()
            self.listeners.clear()
        for q in queues:
            self._put_drop_oldest(q, None)  # Poison Pill
        logger.info("EventBus shutdown complete.")
