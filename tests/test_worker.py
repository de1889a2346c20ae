import threading
import time
from unittest.mock import MagicMock

from miimii.worker import TIMEOUT_MESSAGE, MessageDeduplicator, TurnWorker

from conftest import text_event


class RecordingEngine:
    """Records (phone, body) per turn and notes any overlap within one sender."""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.seen = []
        self.active = set()
        self.overlap = False
        self.lock = threading.Lock()

    def handle(self, event):
        with self.lock:
            if event.phone in self.active:
                self.overlap = True
            self.active.add(event.phone)
        time.sleep(self.delay)
        with self.lock:
            self.seen.append((event.phone, event.body))
            self.active.discard(event.phone)


class TestTurnWorker:

    def test_same_sender_runs_in_order(self):
        engine = RecordingEngine(delay=0.01)
        worker = TurnWorker(engine, MagicMock(), threads=4)
        for n in range(10):
            worker.submit(text_event(str(n)))
        for n in range(10):
            worker.submit(text_event(f"other {n}", phone="+2348099999999"))
        worker.shutdown(wait=True)

        mine = [body for phone, body in engine.seen if phone == "+2348012345678"]
        theirs = [body for phone, body in engine.seen if phone == "+2348099999999"]
        assert mine == [str(n) for n in range(10)]
        assert theirs == [f"other {n}" for n in range(10)]
        assert not engine.overlap

    def test_slow_turn_gets_a_timeout_message(self):
        notifier = MagicMock()
        engine = RecordingEngine(delay=0.5)
        worker = TurnWorker(engine, notifier, threads=2, turn_timeout=0.05)
        worker.submit(text_event("slow"))
        worker.shutdown(wait=True)
        notifier.text.assert_called_once_with("+2348012345678", TIMEOUT_MESSAGE)

    def test_next_event_waits_for_a_late_turn(self):
        notifier = MagicMock()
        engine = RecordingEngine(delay=0.3)
        worker = TurnWorker(engine, notifier, threads=4, turn_timeout=0.05)
        worker.submit(text_event("slow"))
        worker.submit(text_event("next"))
        worker.shutdown(wait=True)

        assert [body for _, body in engine.seen] == ["slow", "next"]
        assert not engine.overlap
        assert notifier.text.call_count == 2

    def test_engine_crash_does_not_stop_the_lane(self):
        engine = MagicMock()
        engine.handle.side_effect = [RuntimeError("boom"), None]
        worker = TurnWorker(engine, MagicMock(), threads=2)
        worker.submit(text_event("one"))
        worker.submit(text_event("two"))
        worker.shutdown(wait=True)
        assert engine.handle.call_count == 2
        assert worker.queue_depth == 0


class TestDeduplicator:

    def test_redelivery_is_dropped(self, db, clock):
        dedupe = MessageDeduplicator(db, clock)
        assert dedupe.first_time("wamid.1")
        assert not dedupe.first_time("wamid.1")
        assert dedupe.first_time("wamid.2")

    def test_purge_after_a_day(self, db, clock):
        dedupe = MessageDeduplicator(db, clock)
        dedupe.first_time("wamid.1")
        clock.advance(hours=23)
        assert dedupe.purge() == 0
        clock.advance(hours=2)
        assert dedupe.purge() == 1
        assert dedupe.first_time("wamid.1")
