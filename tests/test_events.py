"""Unit tests for the in-process EventBus."""

import threading

from localdesk_audio.events import EventBus


class TestEmit:
    def test_envelope_shape(self, bus):
        envelope = bus.emit("audio.models.download.done", {})
        assert envelope == {"seq": 1, "type": "audio.models.download.done", "payload": {}}

    def test_payload_defaults_to_empty_dict(self, bus):
        assert bus.emit("x")["payload"] == {}

    def test_seq_increases(self, bus):
        seqs = [bus.emit("x")["seq"] for _ in range(3)]
        assert seqs == [1, 2, 3]
        assert bus.last_seq == 3

    def test_seq_unique_across_threads(self, bus):
        def _worker():
            for _ in range(100):
                bus.emit("x")

        threads = [threading.Thread(target=_worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        seqs = [e["seq"] for e in bus.events()]
        assert sorted(seqs) == list(range(1, 401))


class TestSubscribers:
    def test_subscriber_receives_envelopes(self, bus):
        received = []
        bus.subscribe(received.append)
        bus.emit("a", {"n": 1})
        assert received == [{"seq": 1, "type": "a", "payload": {"n": 1}}]

    def test_unsubscribe(self, bus):
        received = []
        unsubscribe = bus.subscribe(received.append)
        unsubscribe()
        unsubscribe()
        bus.emit("a")
        assert received == []

    def test_failing_subscriber_does_not_reach_producer(self, bus):
        received = []

        def _boom(envelope):
            raise RuntimeError("subscriber broke")

        bus.subscribe(_boom)
        bus.subscribe(received.append)
        envelope = bus.emit("a")
        assert received == [envelope]


class TestBuffer:
    def test_filter_by_type(self, bus):
        bus.emit("a")
        bus.emit("b")
        bus.emit("a")
        assert [e["seq"] for e in bus.events("a")] == [1, 3]

    def test_since(self, bus):
        for _ in range(5):
            bus.emit("a")
        assert [e["seq"] for e in bus.since(3)] == [4, 5]

    def test_bounded(self):
        bus = EventBus(max_events=2)
        for _ in range(5):
            bus.emit("a")
        assert [e["seq"] for e in bus.events()] == [4, 5]

    def test_clear_keeps_seq(self, bus):
        bus.emit("a")
        bus.clear()
        assert bus.events() == []
        assert bus.emit("a")["seq"] == 2
