import logging
import threading
from typing import Callable, Optional

from livediar.services.audio_device import InputDevice

logger = logging.getLogger("DeviceMonitor")


class DeviceMonitor:
    """
    Polls the input route and reports changes (device swapped, rate changed).
    PortAudio has no route-change notification, so this stands in for one.
    """

    def __init__(self, device: InputDevice, on_change: Callable[[str], None], interval: float = 2.0):
        self.device = device
        self.on_change = on_change
        self.interval = interval
        self.last_route: Optional[str] = None
        self.changes = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self.last_route = self.device.current_route()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="DeviceMonitor")
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread and threading.current_thread() is not self._thread:
            self._thread.join(timeout=self.interval + 1.0)

    def check(self) -> bool:
        route = self.device.current_route()
        if route is None or route == self.last_route:
            return False
        previous, self.last_route = self.last_route, route
        self.changes += 1
        logger.info(f"Input route changed: {previous} -> {route}")
        self.on_change(f"route-change: {route}")
        return True

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.check()
            except Exception as e:
                logger.error(f"Route check failed: {e}")
