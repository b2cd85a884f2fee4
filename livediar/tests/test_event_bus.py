import unittest

from livediar.infrastructure.event_bus import EventBus
from livediar.infrastructure.events import Event, EventType


class TestEventBus(unittest.TestCase):

    def test_subscriber_receives_in_order(self):
        bus = EventBus()
        q = bus.subscribe("ui")
        bus.publish(Event.silence_timeout(1))
        bus.publish(Event.session_stopped("user"))
        self.assertIs(q.get_nowait().type, EventType.SILENCE_TIMEOUT)
        self.assertEqual(q.get_nowait().get("cause"), "user")

    def test_full_queue_drops_oldest(self):
        """A slow subscriber loses the oldest events, never the newest."""
        bus = EventBus(max_queue_size=2)
        q = bus.subscribe("slow")
        for i in range(5):
            bus.publish(Event.inference_failed(i, "boom"))
        self.assertEqual(bus.dropped_events, 3)
        self.assertEqual([q.get_nowait().get("window") for _ in range(2)], [3, 4])

    def test_listener_filter_and_isolation(self):
        """A failing listener does not stop delivery to the others."""
        bus = EventBus()
        seen = []
        record = seen.append

        def broken(event):
            raise RuntimeError("listener bug")

        bus.add_listener(broken)
        bus.add_listener(record, types=[EventType.BACKPRESSURE])
        bus.publish(Event.backpressure(15.0, 3))
        bus.publish(Event.first_audio("16000Hz/1ch/float32"))

        self.assertEqual([e.type for e in seen], [EventType.BACKPRESSURE])
        self.assertEqual(seen[0].get("consecutive_drops"), 3)

        bus.remove_listener(record)
        bus.publish(Event.backpressure(15.0, 4))
        self.assertEqual(len(seen), 1)

    def test_shutdown_sends_poison_pill(self):
        bus = EventBus()
        q = bus.subscribe("worker")
        bus.shutdown()
        self.assertIsNone(q.get_nowait())
        bus.publish(Event.session_stopped("user"))
        self.assertTrue(q.empty())


if __name__ == '__main__':
    unittest.main()
