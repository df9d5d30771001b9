import copy
import threading


class SnapshotStore:
    """Last fetched rows per source table, used as the baseline for the next pass."""

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshots = {}

    def get(self, table_name):
        with self._lock:
            return self._snapshots.get(table_name)

    def put(self, table_name, rows):
        # rows are replaced wholesale, never mutated in place
        with self._lock:
            self._snapshots[table_name] = copy.copy(rows)

    def clear(self):
        with self._lock:
            self._snapshots.clear()

    def tables(self):
        with self._lock:
            return sorted(self._snapshots)

    def __len__(self):
        with self._lock:
            return len(self._snapshots)
