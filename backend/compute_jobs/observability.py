"""
Observability and metrics collection for the compute worker.
Tracks job outcomes, LLM usage, fallbacks and notification delivery paths.
"""
import logging
from typing import Dict, Any
from dataclasses import dataclass, field
from threading import Lock

logger = logging.getLogger(__name__)

@dataclass
class MetricsCollector:
    """Thread-safe metrics collector for job processing."""

    # Jobs
    jobs_started: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    operations_completed: int = 0
    operations_failed: int = 0
    poll_errors: int = 0

    # LLM metrics
    llm_calls_total: int = 0
    llm_tokens_in: int = 0
    llm_tokens_out: int = 0
    llm_cost: float = 0.0
    llm_timeouts: int = 0

    # Fallback tracking
    fallback_counts: Dict[str, int] = field(default_factory=dict)

    # Notification delivery, keyed by path (broker/direct/dropped)
    broadcast_counts: Dict[str, int] = field(default_factory=dict)

    # Thread safety
    _lock: Lock = field(default_factory=Lock)

    def record_job(self, outcome: str):
        """Record a job lifecycle event (started/completed/failed)."""
        with self._lock:
            if outcome == "started":
                self.jobs_started += 1
            elif outcome == "completed":
                self.jobs_completed += 1
            elif outcome == "failed":
                self.jobs_failed += 1

    def record_operation(self, succeeded: bool):
        with self._lock:
            if succeeded:
                self.operations_completed += 1
            else:
                self.operations_failed += 1

    def record_poll_error(self):
        with self._lock:
            self.poll_errors += 1

    def record_llm_call(self, tokens_in: int, tokens_out: int, cost: float, timeout: bool = False):
        """Record an LLM call."""
        with self._lock:
            self.llm_calls_total += 1
            self.llm_tokens_in += tokens_in
            self.llm_tokens_out += tokens_out
            self.llm_cost += cost
            if timeout:
                self.llm_timeouts += 1

    def record_fallback(self, reason_code: str):
        """Record a switch to local arithmetic."""
        with self._lock:
            self.fallback_counts[reason_code] = self.fallback_counts.get(reason_code, 0) + 1

    def record_broadcast(self, path: str):
        with self._lock:
            self.broadcast_counts[path] = self.broadcast_counts.get(path, 0) + 1

    def reset(self):
        with self._lock:
            self.jobs_started = self.jobs_completed = self.jobs_failed = 0
            self.operations_completed = self.operations_failed = 0
            self.poll_errors = 0
            self.llm_calls_total = self.llm_tokens_in = self.llm_tokens_out = self.llm_timeouts = 0
            self.llm_cost = 0.0
            self.fallback_counts.clear()
            self.broadcast_counts.clear()

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            total_ops = self.operations_completed + self.operations_failed
            total_broadcasts = sum(self.broadcast_counts.values())

            return {
                "jobs": {
                    "started": self.jobs_started,
                    "completed": self.jobs_completed,
                    "failed": self.jobs_failed,
                    "poll_errors": self.poll_errors,
                },
                "operations": {
                    "completed": self.operations_completed,
                    "failed": self.operations_failed,
                    "failure_ratio": self.operations_failed / max(total_ops, 1),
                },
                "llm": {
                    "calls_total": self.llm_calls_total,
                    "tokens_in": self.llm_tokens_in,
                    "tokens_out": self.llm_tokens_out,
                    "cost": round(self.llm_cost, 6),
                    "timeouts": self.llm_timeouts,
                },
                "fallbacks": dict(self.fallback_counts),
                "broadcasts": {
                    "counts": dict(self.broadcast_counts),
                    "dropped_ratio": self.broadcast_counts.get("dropped", 0) / max(total_broadcasts, 1),
                },
            }

# Global metrics collector instance
_metrics_collector = MetricsCollector()

def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    return _metrics_collector

def record_fallback(reason_code: str):
    """Convenience function to record a fallback."""
    _metrics_collector.record_fallback(reason_code)

def record_llm_call(tokens_in: int, tokens_out: int, cost: float, timeout: bool = False):
    """Convenience function to record an LLM call."""
    _metrics_collector.record_llm_call(tokens_in, tokens_out, cost, timeout)

def record_broadcast(path: str):
    _metrics_collector.record_broadcast(path)
