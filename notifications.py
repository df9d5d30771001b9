"""
In-process status channel.

Sync code publishes human-readable status strings; the Flask app streams them to
browsers as Server-Sent Events. Purely observational: a slow or absent observer
never blocks or fails a sync pass.
"""

import json
import logging
import queue
import threading
from collections import deque
from datetime import datetime

logger = logging.getLogger(__name__)

HISTORY_SIZE = 200
SUBSCRIBER_QUEUE_SIZE = 500


class StatusBroadcaster:
    def __init__(self, history_size=HISTORY_SIZE):
        self._lock = threading.Lock()
        self._subscribers = []
        self._history = deque(maxlen=history_size)

    def publish(self, message, level=logging.INFO):
        logger.log(level, message)
        event = {"time": datetime.now().strftime("%Y-%m-%d %H:%M:%S"), "message": message}
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers)
        for q in subscribers:
            try:
                q.put_nowait(event)
            except queue.Full:
                pass
        return event

    def subscribe(self):
        q = queue.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q):
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def recent(self, limit=20):
        with self._lock:
            events = list(self._history)
        return events[-limit:] if limit else events

    def stream(self, q, keepalive_seconds=15):
        """Yield SSE frames for one subscriber until the client disconnects"""
        try:
            while True:
                try:
                    event = q.get(timeout=keepalive_seconds)
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event)}\n\n"
        finally:
            self.unsubscribe(q)


broadcaster = StatusBroadcaster()


def publish(message, level=logging.INFO):
    return broadcaster.publish(message, level)
