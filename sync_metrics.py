# """
# ==============================================================================
# FILE: sync_metrics.py
# ROLE: In-Memory Sync Counters
# DESCRIPTION:
# Counts runs, failures and durations per operation type and keeps the last
# errors with ids, URLs, IPs and ports blanked out so the snapshot can be
# shown to anyone. Lives only as long as the process.
# ==============================================================================
# """

import re
import threading
from datetime import datetime, timezone

OPERATION_TYPES = ("sync", "deployment", "rollback", "template_update")
MAX_RECENT_ERRORS = 50
SNAPSHOT_ERRORS = 20
MAX_ERROR_LENGTH = 200

UUID_PATTERN = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
URL_PATTERN = re.compile(r"https?://\S+")
IP_PATTERN = re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}\b")
PORT_PATTERN = re.compile(r"\bport \d+\b", re.IGNORECASE)


def normalize_error(message):
    text = UUID_PATTERN.sub("[ID]", str(message))
    text = URL_PATTERN.sub("[URL]", text)
    text = IP_PATTERN.sub("[IP]", text)
    text = PORT_PATTERN.sub("port [PORT]", text)
    return text[:MAX_ERROR_LENGTH]


def _now():
    return datetime.now(timezone.utc)


def _empty_stats():
    return {
        "count": 0,
        "success_count": 0,
        "failure_count": 0,
        "last_run": None,
        "last_success": None,
        "last_failure": None,
        "total_duration_ms": 0.0,
        "avg_duration_ms": 0.0,
        "min_duration_ms": None,
        "max_duration_ms": None,
    }


class SyncMetrics:
    """Thread-safe counters shared by the executor and the scheduler."""

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def reset(self):
        with self._lock:
            self.started_at = _now()
            self.operations = {op: _empty_stats() for op in OPERATION_TYPES}
            self.recent_errors = []

    def record(self, operation, success, duration_ms, error=None):
        if operation not in OPERATION_TYPES:
            raise ValueError(f"Unknown operation type: {operation}")
        now = _now()
        with self._lock:
            stats = self.operations[operation]
            stats["count"] += 1
            stats["last_run"] = now
            if success:
                stats["success_count"] += 1
                stats["last_success"] = now
            else:
                stats["failure_count"] += 1
                stats["last_failure"] = now

            stats["total_duration_ms"] += duration_ms
            stats["avg_duration_ms"] = stats["total_duration_ms"] / stats["count"]
            stats["min_duration_ms"] = duration_ms if stats["min_duration_ms"] is None \
                else min(stats["min_duration_ms"], duration_ms)
            stats["max_duration_ms"] = duration_ms if stats["max_duration_ms"] is None \
                else max(stats["max_duration_ms"], duration_ms)

            if error:
                self.recent_errors.append({
                    "timestamp": now,
                    "operation": operation,
                    "message": normalize_error(error),
                })
                del self.recent_errors[:-MAX_RECENT_ERRORS]

    def snapshot(self):
        with self._lock:
            now = _now()
            total = sum(s["count"] for s in self.operations.values())
            successes = sum(s["success_count"] for s in self.operations.values())
            return {
                "started_at": self.started_at.isoformat(),
                "uptime_seconds": (now - self.started_at).total_seconds(),
                "operations": {
                    op: {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in stats.items()}
                    for op, stats in self.operations.items()
                },
                "recent_errors": [
                    dict(e, timestamp=e["timestamp"].isoformat())
                    for e in self.recent_errors[-SNAPSHOT_ERRORS:]
                ],
                "totals": {
                    "operations": total,
                    "successes": successes,
                    "failures": total - successes,
                    "success_rate": round(successes / total * 100, 2) if total else 100,
                },
            }
