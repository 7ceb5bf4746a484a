"""Background worker: drains the retry queue and runs periodic maintenance."""

import sys
import time
import threading

from .assessments import scrub_expired_contact_data
from .config import get_queue_config
from .retry_queue import RetryQueueService
from .sessions import cleanup_expired_sessions


def run_once(batch_size=None, retry_queue=None):
    """Release stale claims, then process one batch of due entries."""
    retry_queue = retry_queue or RetryQueueService()
    retry_queue.release_stale_claims()
    return retry_queue.process_pending_queue(batch_size)


def run_maintenance(retry_queue=None):
    retry_queue = retry_queue or RetryQueueService()
    return {
        "expired_sessions_deleted": cleanup_expired_sessions(),
        "contact_data": scrub_expired_contact_data(),
        "completed_entries_deleted": retry_queue.cleanup_completed_entries(),
    }


def run_forever(stop_event=None, retry_queue=None, clock=time.monotonic):
    """
    Poll the queue every processing_interval seconds and run maintenance
    every maintenance_interval seconds until stop_event is set. A failing
    cycle is logged and the loop carries on.
    """
    stop_event = stop_event or threading.Event()
    retry_queue = retry_queue or RetryQueueService()
    cfg = get_queue_config()
    next_maintenance = clock()

    print(
        f"[worker] Started (batch {cfg['batch_size']}, every {cfg['processing_interval']}s)",
        file=sys.stderr,
    )
    while not stop_event.is_set():
        try:
            run_once(cfg['batch_size'], retry_queue=retry_queue)
        except Exception as e:
            print(f"[worker] Queue processing failed: {e}", file=sys.stderr)

        if clock() >= next_maintenance:
            try:
                run_maintenance(retry_queue=retry_queue)
            except Exception as e:
                print(f"[worker] Maintenance failed: {e}", file=sys.stderr)
            next_maintenance = clock() + cfg['maintenance_interval']

        stop_event.wait(cfg['processing_interval'])

    print("[worker] Stopped", file=sys.stderr)


def start_background_worker(stop_event=None):
    """Run the worker loop in a daemon thread. Returns (thread, stop_event)."""
    stop_event = stop_event or threading.Event()
    thread = threading.Thread(target=run_forever, args=(stop_event,), daemon=True, name="sync-worker")
    thread.start()
    return thread, stop_event
