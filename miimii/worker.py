"""
Inbound worker
==============
The webhook answers 200 straight away and hands events to TurnWorker.
Events for the same sender run one at a time in arrival order; different
senders run in parallel on a thread pool.

A turn that runs past the timeout gets the sender a "please try again"
message straight away, but the sender's lane stays closed until that turn
finishes, so a late turn can never write over state saved by a newer one.
"""

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as TurnTimeout
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict

from miimii.database import Database, is_unique_violation
from miimii.events import InboundEvent
from miimii.models import utcnow
from miimii.notifications import NotificationEmitter
from miimii.phone import mask
from miimii.state_machine import ConversationEngine

logger = logging.getLogger(__name__)

PROCESSED_RETENTION = timedelta(hours=24)
TIMEOUT_MESSAGE = "⏳ That took longer than expected. Please try again in a moment."


class MessageDeduplicator:
    """Remembers inbound message ids so platform re-deliveries are dropped."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def first_time(self, message_id: str) -> bool:
        if not message_id:
            return True
        try:
            self.db.create("processed_messages", {"message_id": message_id,
                                                  "received_at": self.clock().isoformat()})
        except Exception as e:
            if is_unique_violation(e):
                return False
            raise
        return True

    def purge(self) -> int:
        cutoff = (self.clock() - PROCESSED_RETENTION).isoformat()
        removed = self.db.delete("processed_messages", {"received_at__lt": cutoff})
        if removed:
            logger.info(f"Purged {removed} processed message ids")
        return removed


class TurnWorker:

    def __init__(self, engine: ConversationEngine, notifier: NotificationEmitter,
                 threads: int = 8, turn_timeout: float = 30.0):
        self.engine = engine
        self.notifier = notifier
        self.turn_timeout = turn_timeout
        self._lanes = ThreadPoolExecutor(max_workers=threads, thread_name_prefix="lane")
        self._turns = ThreadPoolExecutor(max_workers=threads, thread_name_prefix="turn")
        self._queues: Dict[str, Deque[InboundEvent]] = {}
        self._lock = threading.Lock()

    @property
    def queue_depth(self) -> int:
        with self._lock:
            return sum(len(queue) for queue in self._queues.values())

    def submit(self, event: InboundEvent):
        key = event.phone or "-"
        with self._lock:
            queue = self._queues.get(key)
            if queue is not None:
                # A lane for this sender is already draining; it will pick this up.
                queue.append(event)
                return
            self._queues[key] = deque([event])
        self._lanes.submit(self._drain, key)

    def _drain(self, key: str):
        while True:
            with self._lock:
                queue = self._queues[key]
                if not queue:
                    del self._queues[key]
                    return
                event = queue.popleft()
            self._run(event)

    def _run(self, event: InboundEvent):
        future = self._turns.submit(self.engine.handle, event)
        try:
            future.result(timeout=self.turn_timeout)
        except TurnTimeout:
            logger.error(f"Turn {event.message_id} for {mask(event.phone)} exceeded "
                         f"{self.turn_timeout:.0f}s; holding the lane until it finishes")
            self.notifier.text(event.phone, TIMEOUT_MESSAGE)
            self._settle(event, future)
        except Exception as e:
            logger.error(f"Turn {event.message_id} failed outside the engine: {e}", exc_info=True)

    def _settle(self, event: InboundEvent, future: Future):
        try:
            future.result()
        except Exception as e:
            logger.error(f"Late turn {event.message_id} failed outside the engine: {e}", exc_info=True)
            return
        logger.info(f"Late turn {event.message_id} for {mask(event.phone)} finished; reopening lane")

    def shutdown(self, wait: bool = True):
        self._lanes.shutdown(wait=wait)
        self._turns.shutdown(wait=wait)
