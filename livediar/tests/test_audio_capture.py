import threading
import time
import unittest

import numpy as np

from livediar.config import DiarizerConfig
from livediar.dtos import AudioFormat, SampleType
from livediar.errors import StopCause
from livediar.infrastructure.event_bus import EventBus
from livediar.infrastructure.events import EventType
from livediar.services.audio_capture import AudioCaptureEngine, CaptureState
from livediar.services.device_monitor import DeviceMonitor
from livediar.tests.fakes import EventRecorder, FakeInputDevice, tone, wait_for

FAST_WATCHDOG = dict(
    watchdog_initial_timeout=0.05,
    watchdog_retry_base=0.02,
    watchdog_retry_step=0.01,
    watchdog_retry_max=0.05,
    watchdog_max_attempts=4,
    reconfigure_watchdog_timeout=0.05,
)


class TestAudioCaptureEngine(unittest.TestCase):

    def setUp(self):
        self.frames = []
        self.lock = threading.Lock()
        self.bus = EventBus()
        self.events = EventRecorder(self.bus)
        self.stops = []
        self.engine = None

    def tearDown(self):
        if self.engine is not None:
            self.engine.stop()

    def _sink(self, frame):
        with self.lock:
            self.frames.append(frame)

    def _engine(self, device, **cfg_changes):
        self.engine = AudioCaptureEngine(device, self._sink, self.bus, DiarizerConfig(**cfg_changes),
                                         on_self_stop=self.stops.append)
        return self.engine

    def test_frames_reach_sink_at_native_format(self):
        """Frames are forwarded unconverted; first audio is announced once."""
        fmt = AudioFormat(48000, 2, SampleType.INT16)
        device = FakeInputDevice(fmt)
        engine = self._engine(device)
        engine.start()
        self.assertEqual(device.opened_formats, [fmt])

        stereo = np.zeros((1024, 2), dtype=np.int16)
        device.push(stereo)
        device.push(stereo)
        self.assertTrue(wait_for(lambda: len(self.frames) == 2))

        self.assertEqual(self.frames[0].format, fmt)
        self.assertEqual(self.frames[0].samples.shape, (1024, 2))
        self.assertEqual(len(self.events.of(EventType.FIRST_AUDIO_DETECTED)), 1)
        self.assertTrue(engine.ever_received_audio)

    def test_mono_frames_are_flattened(self):
        device = FakeInputDevice()
        engine = self._engine(device)
        engine.start()
        device.push(tone(220, 0.1))
        self.assertTrue(wait_for(lambda: len(self.frames) == 1))
        self.assertEqual(self.frames[0].samples.ndim, 1)

    def test_stop_flushes_queued_frames(self):
        """Every frame delivered before stop() reaches the sink."""
        device = FakeInputDevice()
        engine = self._engine(device)
        engine.start()
        for i in range(50):
            device.push(np.full(160, i / 100.0, dtype=np.float32))
        engine.stop()

        self.assertEqual(len(self.frames), 50)
        self.assertIs(engine.state, CaptureState.STOPPED)
        self.assertEqual(device.closes, 1)
        self.assertFalse(device.push(tone(220, 0.1)))

        engine.stop()
        self.assertEqual(device.closes, 1)

    def test_silence_timeout_after_max_attempts(self):
        """A device that never delivers is reinstalled, then reported silent."""
        device = FakeInputDevice()
        engine = self._engine(device, **FAST_WATCHDOG)
        engine.start()

        self.assertTrue(self.events.wait_for(EventType.SILENCE_TIMEOUT, timeout=5.0))
        self.assertTrue(wait_for(lambda: self.stops == [StopCause.SILENCE_TIMEOUT]))
        self.assertIs(engine.stop_cause, StopCause.SILENCE_TIMEOUT)
        self.assertEqual(device.opens, 4)
        self.assertEqual(engine.reconfigure_count, 3)
        self.assertEqual(device.closes, device.opens)
        self.assertEqual(self.events.of(EventType.SILENCE_TIMEOUT)[0].get("attempts"), 4)

    def test_retry_timeouts_escalate(self):
        engine = self._engine(FakeInputDevice())
        self.assertEqual([engine.retry_timeout(n) for n in range(1, 6)], [8.0, 10.0, 12.0, 12.0, 12.0])

    def test_audio_disarms_watchdog(self):
        """Audio within the timeout keeps the original install."""
        device = FakeInputDevice()
        engine = self._engine(device, **FAST_WATCHDOG)
        engine.start()
        device.push(tone(220, 0.1))
        time.sleep(0.3)
        self.assertEqual(device.opens, 1)
        self.assertEqual(self.events.of(EventType.SILENCE_TIMEOUT), [])
        self.assertIs(engine.state, CaptureState.CAPTURING)

    def test_reconfigure_ignores_stale_callbacks(self):
        """After a reinstall, late callbacks from the old stream are dropped."""
        device = FakeInputDevice()
        engine = self._engine(device)
        engine.start()
        old_callback = device.callback

        self.assertTrue(engine.schedule_reconfigure("route-change"))
        self.assertEqual((device.opens, device.closes), (2, 1))
        reconfigured = self.events.of(EventType.DEVICE_RECONFIGURED)
        self.assertEqual(reconfigured[0].get("reason"), "route-change")

        old_callback(np.zeros((160, 1), dtype=np.float32), 0.0)
        device.push(tone(220, 0.1))
        self.assertTrue(wait_for(lambda: len(self.frames) == 1))
        time.sleep(0.05)
        self.assertEqual(len(self.frames), 1)

        engine.stop()
        self.assertFalse(engine.schedule_reconfigure("late"))

    def test_install_failure_is_retried(self):
        """A failed open is retried by the watchdog and capture recovers."""
        device = FakeInputDevice(fail_opens=1)
        engine = self._engine(device, watchdog_initial_timeout=0.05, watchdog_retry_base=0.3,
                              watchdog_retry_step=0.0, watchdog_retry_max=0.3)
        engine.start()
        self.assertIsNone(engine.handle)

        self.assertTrue(wait_for(lambda: device.callback is not None, timeout=2.0))
        device.push(tone(220, 0.1))
        self.assertTrue(wait_for(lambda: len(self.frames) == 1))
        self.assertEqual(engine.no_audio_attempts, 0)
        self.assertEqual(self.events.of(EventType.SILENCE_TIMEOUT), [])

    def test_start_twice_fails(self):
        engine = self._engine(FakeInputDevice())
        engine.start()
        with self.assertRaises(RuntimeError):
            engine.start()


class TestDeviceMonitor(unittest.TestCase):

    def test_route_change_reported_once(self):
        device = FakeInputDevice(route="built-in")
        changes = []
        monitor = DeviceMonitor(device, changes.append, interval=10.0)
        monitor.last_route = device.current_route()

        self.assertFalse(monitor.check())
        device.route = "bluetooth-headset"
        self.assertTrue(monitor.check())
        self.assertFalse(monitor.check())
        self.assertEqual(changes, ["route-change: bluetooth-headset"])

    def test_polling_thread(self):
        device = FakeInputDevice(route="a")
        changes = []
        monitor = DeviceMonitor(device, changes.append, interval=0.02)
        monitor.start()
        device.route = "b"
        self.assertTrue(wait_for(lambda: changes == ["route-change: b"]))
        monitor.stop()


if __name__ == '__main__':
    unittest.main()
