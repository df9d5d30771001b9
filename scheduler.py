import schedule as sched
import threading
import datetime
import logging
from concurrent.futures import ThreadPoolExecutor

from access_sync import process_access_database, SyncConnectionError
from manage_server import load_config, get_sync_interval, get_skip_prefix
from notifications import publish
from snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

IDLE = "IDLE"
RUNNING = "RUNNING"

JOB_TAG = "access-sync"


class SyncScheduler:
    """
    Owns the recurring sync job and the single worker that runs every pass.

    Scheduled ticks and on-demand requests are both submitted to a one-thread
    executor, so two passes never touch the snapshot store at the same time.
    Ticks that fire while a pass is still running are dropped, not queued.
    """

    def __init__(self, sync_func=process_access_database, interval_minutes=None,
                 skip_prefix=None, store=None, poll_seconds=1):
        if interval_minutes is None or skip_prefix is None:
            config = load_config()
            interval_minutes = interval_minutes or get_sync_interval(config)
            skip_prefix = skip_prefix if skip_prefix is not None else get_skip_prefix(config)
        self.sync_func = sync_func
        self.interval_minutes = interval_minutes
        self.skip_prefix = skip_prefix
        self.store = store if store is not None else SnapshotStore()
        self.poll_seconds = poll_seconds
        self.state = IDLE
        self.last_run = None

        self._jobs = sched.Scheduler()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="access-sync")
        self._lock = threading.Lock()
        self._in_flight = None
        self._stop_epoch = 0
        self._thread = None
        self._stop_event = None
        self._access_conf = None
        self._pg_conf = None

    # ---------------- Worker ----------------
    def _run_pass(self, access_conf, pg_conf, trigger):
        timestamp = datetime.datetime.now()
        logger.info(f"[SYNC] STARTED ({trigger}) at {timestamp.strftime('%Y-%m-%d %H:%M:%S')}")
        status = "success"
        error_message = None
        summary = None
        try:
            summary = self.sync_func(access_conf, pg_conf, self.store, self.skip_prefix)
        except SyncConnectionError as e:
            status = "failed"
            error_message = str(e)
            logger.error(f"[SYNC] ABORTED ({trigger}): {error_message}")
        except Exception as e:
            status = "failed"
            error_message = str(e)
            logger.exception(f"[SYNC] FAILED ({trigger})")
            publish(f"❌ Sync failed: {error_message}", logging.ERROR)

        self.last_run = {
            "trigger": trigger,
            "time": timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            "status": status,
            "error": error_message,
            "summary": summary.to_dict() if summary is not None else None,
            "details": summary.describe() if summary is not None else None,
        }
        logger.info(f"[SYNC] {status.upper()} ({trigger})")
        return self.last_run

    def _submit(self, access_conf, pg_conf, trigger):
        with self._lock:
            future = self._executor.submit(self._run_pass, access_conf, pg_conf, trigger)
            self._in_flight = future
        return future

    def _tick(self):
        with self._lock:
            if self.state != RUNNING:
                return
            if self._in_flight is not None and not self._in_flight.done():
                logger.info("[SYNC] Previous pass still running, skipping this tick")
                return
            self._in_flight = self._executor.submit(
                self._run_pass, self._access_conf, self._pg_conf, "scheduled"
            )

    def _loop(self, stop_event):
        while not stop_event.is_set():
            self._jobs.run_pending()
            stop_event.wait(self.poll_seconds)

    # ---------------- Control ----------------
    def _start(self, access_conf, pg_conf, epoch=None):
        with self._lock:
            if epoch is not None and epoch != self._stop_epoch:
                return None
            if self.state == RUNNING:
                return False
            self._access_conf = access_conf
            self._pg_conf = pg_conf
            self._jobs.every(self.interval_minutes).minutes.do(self._tick).tag(JOB_TAG)
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop, args=(self._stop_event,), name="access-sync-timer", daemon=True
            )
            self.state = RUNNING
            self._thread.start()
        logger.info(f"[SCHEDULER] Started, syncing every {self.interval_minutes} minute(s)")
        return True

    def start_or_run_sync(self, access_conf, pg_conf):
        """Run a pass now; on success make sure the recurring job is active.

        A stop that lands while the pass is running wins: the job is not restarted.
        """
        with self._lock:
            epoch = self._stop_epoch
        result = self._submit(access_conf, pg_conf, "manual").result()
        if result["status"] != "success":
            return {"success": False, "message": f"Sync failed: {result['error']}"}

        started = self._start(access_conf, pg_conf, epoch)
        if started is None:
            message = "Data Migration Completed! Scheduler was stopped during the pass."
        elif started:
            message = f"Data Migration Completed! Sync scheduled every {self.interval_minutes} minute(s)."
        else:
            message = "Data Migration Completed! Scheduler already running."
        publish(f"🕒 {message}")
        return {"success": True, "message": message}

    def stop(self):
        with self._lock:
            if self.state == IDLE:
                return {"success": True, "message": "Scheduler is not running"}
            self._stop_epoch += 1
            self._jobs.clear(JOB_TAG)
            self._stop_event.set()
            self.state = IDLE
            # runs after any in-flight pass
            self._executor.submit(self.store.clear)
        logger.info("[SCHEDULER] Stopped, snapshots cleared")
        publish("🛑 Scheduler stopped")
        return {"success": True, "message": "Scheduler stopped"}

    def shutdown(self):
        self.stop()
        self._executor.shutdown(wait=False)

    # ---------------- Introspection ----------------
    @property
    def active_jobs(self):
        return len(self._jobs.get_jobs(JOB_TAG))

    @property
    def is_running(self):
        return self.state == RUNNING

    def is_busy(self):
        with self._lock:
            return self._in_flight is not None and not self._in_flight.done()

    def status(self):
        next_run = self._jobs.next_run if self.is_running else None
        return {
            "state": self.state,
            "interval_minutes": self.interval_minutes,
            "active_jobs": self.active_jobs,
            "busy": self.is_busy(),
            "next_run": next_run.strftime("%Y-%m-%d %H:%M:%S") if next_run else None,
            "tracked_tables": self.store.tables(),
            "last_run": self.last_run,
        }


_scheduler = None
_scheduler_lock = threading.Lock()


def get_scheduler():
    """Process-wide scheduler, created on first use"""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = SyncScheduler()
        return _scheduler


def start_or_run_sync(access_conf, pg_conf):
    return get_scheduler().start_or_run_sync(access_conf, pg_conf)


def stop_scheduler():
    return get_scheduler().stop()
