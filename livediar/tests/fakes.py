import threading
import time

import numpy as np

from livediar.dtos import AudioFormat, AudioFrame
from livediar.errors import DeviceConfigurationError
from livediar.services.audio_device import CaptureHandle, InputDevice

SR = 16000


def tone(freq: float, seconds: float, sr: int = SR, amp: float = 0.5, phase_samples: int = 0) -> np.ndarray:
    t = (np.arange(int(seconds * sr)) + phase_samples) / sr
    return (amp * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def canonical_frames(samples: np.ndarray, frame_seconds: float = 0.1, sr: int = SR):
    fmt = AudioFormat.canonical(sr)
    step = int(frame_seconds * sr)
    for start in range(0, len(samples), step):
        yield AudioFrame(samples=samples[start:start + step], format=fmt)


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start
        self.lock = threading.Lock()

    def __call__(self) -> float:
        with self.lock:
            return self.now

    def advance(self, seconds: float):
        with self.lock:
            self.now += seconds


class FakeHandle(CaptureHandle):
    def __init__(self, device):
        self.device = device
        self.closed = False

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.device.closes += 1
        self.device.callback = None


class FakeInputDevice(InputDevice):
    """
    Scriptable stand-in for a microphone. push() plays the device callback.
    """

    def __init__(self, fmt: AudioFormat = None, fail_opens: int = 0, route: str = "built-in"):
        self.fmt = fmt or AudioFormat.canonical(SR)
        self.fail_opens = fail_opens
        self.route = route
        self.opens = 0
        self.closes = 0
        self.callback = None
        self.opened_formats = []

    def native_format(self) -> AudioFormat:
        return self.fmt

    def open(self, callback, fmt, blocksize):
        self.opens += 1
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise DeviceConfigurationError("device busy")
        self.callback = callback
        self.opened_formats.append(fmt)
        return FakeHandle(self)

    def push(self, samples: np.ndarray, timestamp: float = 0.0) -> bool:
        callback = self.callback
        if callback is None:
            return False
        if samples.ndim == 1:
            samples = samples.reshape(-1, 1)
        callback(samples, timestamp)
        return True

    def current_route(self):
        return self.route


class EventRecorder:
    def __init__(self, bus):
        self.events = []
        self.lock = threading.Lock()
        self.cond = threading.Condition(self.lock)
        bus.add_listener(self)

    def __call__(self, event):
        with self.cond:
            self.events.append(event)
            self.cond.notify_all()

    def of(self, event_type):
        with self.lock:
            return [e for e in self.events if e.type is event_type]

    def wait_for(self, event_type, timeout: float = 5.0) -> bool:
        with self.cond:
            return self.cond.wait_for(lambda: any(e.type is event_type for e in self.events), timeout=timeout)
