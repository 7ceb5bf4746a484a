"""Health checks and operational metrics for the HubSpot integration.

Everything here is read-only: the rate limiter is inspected with
get_status(), never check_rate_limit(), so polling /health costs no quota.
"""

import sys
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from . import database, hubspot_client
from .config import get_health_config
from .errors import HubSpotError
from .models import QUEUE_COMPLETED, QUEUE_FAILED, QUEUE_PENDING, format_datetime
from .rate_limiter import get_rate_limiter


def _timed(check):
    """Run a check function, adding response_time_ms and turning exceptions into an unhealthy result."""
    start = time.monotonic()
    try:
        result = check()
    except Exception as e:
        result = {"healthy": False, "error": str(e) or type(e).__name__}
        if isinstance(e, HubSpotError):
            result["details"] = {"status_code": e.status_code, "error_type": e.error_type}
    result["response_time_ms"] = round((time.monotonic() - start) * 1000, 1)
    return result


class HealthMonitor:

    def __init__(self, client=hubspot_client, rate_limiter=None):
        self.client = client
        self._rate_limiter = rate_limiter

    @property
    def rate_limiter(self):
        if self._rate_limiter is None:
            self._rate_limiter = get_rate_limiter()
        return self._rate_limiter

    # ─── Individual checks ───────────────────────────────────────────────

    def check_hubspot_api(self):
        self.client.get_account_details()
        return {"healthy": True, "details": {"endpoint": "/account-info/v3/details"}}

    def check_database(self):
        return {"healthy": database.ping(), "details": {"connection": "active"}}

    def check_rate_limiter(self):
        status = self.rate_limiter.get_status()
        config = self.rate_limiter.get_configuration()
        return {
            "healthy": True,
            "details": {
                "remaining_requests": status.remaining_requests,
                "max_requests": config["max_requests"],
                "window_seconds": config["window_seconds"],
                "backend": config["backend"],
                "reset_time": status.reset_time.isoformat() if status.reset_time else None,
            },
        }

    def check_queue_health(self):
        cfg = get_health_config()
        since = database.utcnow() - timedelta(hours=cfg["failure_window_hours"])

        pending = database.count_entries(QUEUE_PENDING)
        failed = database.count_entries(QUEUE_FAILED)
        recent_failures = database.count_entries(QUEUE_FAILED, updated_since=since)

        backlogged = pending > cfg["max_pending"]
        too_many_failures = recent_failures > cfg["max_recent_failures"]
        return {
            "healthy": not backlogged and not too_many_failures,
            "details": {
                "pending_count": pending,
                "failed_count": failed,
                "recent_failures": recent_failures,
                "queue_backlogged": backlogged,
                "too_many_failures": too_many_failures,
            },
        }

    # ─── Aggregate ───────────────────────────────────────────────────────

    def perform_health_check(self):
        """
        Run all four checks in parallel.

        status is "healthy" when every check passes, "unhealthy" when none
        do, and "degraded" otherwise.
        """
        checks = {
            "hubspot_api": self.check_hubspot_api,
            "database": self.check_database,
            "rate_limiter": self.check_rate_limiter,
            "queue_health": self.check_queue_health,
        }
        with ThreadPoolExecutor(max_workers=len(checks) + 1) as pool:
            futures = {name: pool.submit(_timed, fn) for name, fn in checks.items()}
            metrics_future = pool.submit(self._safe_metrics)
            results = {name: f.result() for name, f in futures.items()}
            metrics = metrics_future.result()

        passed = [r["healthy"] for r in results.values()]
        if all(passed):
            status = "healthy"
        elif any(passed):
            status = "degraded"
        else:
            status = "unhealthy"

        if status != "healthy":
            failing = [name for name, r in results.items() if not r["healthy"]]
            print(f"[health] Status {status}; failing checks: {', '.join(failing)}", file=sys.stderr)

        return {
            "healthy": status == "healthy",
            "status": status,
            "timestamp": format_datetime(database.utcnow()),
            "checks": results,
            "metrics": metrics,
        }

    def get_metrics(self):
        """Sync totals, success rate, backlog and limiter utilisation."""
        counts = database.count_entries_by_status()
        completed = counts.get(QUEUE_COMPLETED, 0)
        failed = counts.get(QUEUE_FAILED, 0)
        finished = completed + failed
        success_rate = completed / finished * 100 if finished else 0.0

        status = self.rate_limiter.get_status()
        max_requests = self.rate_limiter.max_requests
        utilization = (max_requests - status.remaining_requests) / max_requests * 100

        last = database.last_processed_at()
        return {
            "total_syncs": sum(counts.values()),
            "successful_syncs": completed,
            "failed_syncs": failed,
            "success_rate": round(success_rate, 2),
            "pending_queue_size": counts.get(QUEUE_PENDING, 0),
            "rate_limit_utilization": round(utilization, 2),
            "last_sync_time": last.isoformat() if last else None,
        }

    def _safe_metrics(self):
        try:
            return self.get_metrics()
        except Exception as e:
            print(f"[health] Failed to gather metrics: {e}", file=sys.stderr)
            return {"error": str(e)}
