"""
In-memory metrics shared by every session of a run.

Four kinds of metric are kept, named after what a k6 summary shows:
counters, trends (timing samples in milliseconds), rates (fraction of true
samples) and checks (pass/fail assertions). One lock guards all of them so
any number of greenlets or threads can record at once.
"""
import json
import logging
import math
import threading
from collections import defaultdict

logger = logging.getLogger(__name__)

MESSAGES_SENT = "messages_sent"
MESSAGES_RECEIVED = "messages_received"
CONNECT_TIME = "connect_time"
SEND_MESSAGE_TIME = "send_message_time"
MESSAGE_RECEIVED_TIME = "message_received_time"
MESSAGE_DELIVERY_TIME = "message_delivery_time"
MESSAGE_ERROR_RATE = "message_error_rate"
SESSIONS_STARTED = "sessions_started"
SESSIONS_FAILED = "sessions_failed"


def _percentile(ordered, p):
    if not ordered:
        return None
    k = (len(ordered) - 1) * (p / 100.0)
    f = math.floor(k)
    c = min(f + 1, len(ordered) - 1)
    if f == c:
        return ordered[f]
    return ordered[f] * (c - k) + ordered[c] * (k - f)


class MetricsSink:
    def __init__(self, keep_samples=True):
        """
        :param keep_samples: keep every timing sample so percentiles can be
            exported; without it trends only carry count, min, max and avg
        """
        self._keep_samples = keep_samples
        self._lock = threading.Lock()
        self._counters = defaultdict(float)
        self._trends = defaultdict(list)
        # name -> [count, min, max, total] when samples are not kept
        self._aggregates = {}
        self._rates = defaultdict(lambda: [0, 0])
        self._checks = defaultdict(lambda: [0, 0])
        self._listeners = []

    def add_listener(self, callback):
        """Call ``callback(kind, name, value)`` for every recorded sample."""
        self._listeners.append(callback)

    def _notify(self, kind, name, value):
        for callback in self._listeners:
            try:
                callback(kind, name, value)
            except Exception:
                logger.warning("Metrics listener %r failed for %s", callback, name, exc_info=True)

    def record_duration(self, name, value):
        try:
            value = float(value)
        except (TypeError, ValueError):
            logger.warning("Dropping non-numeric sample %r for %s", value, name)
            return
        with self._lock:
            if self._keep_samples:
                self._trends[name].append(value)
            else:
                self._fold(name, value)
        self._notify("trend", name, value)

    def _fold(self, name, value):
        agg = self._aggregates.get(name)
        if agg is None:
            self._aggregates[name] = [1, value, value, value]
        else:
            agg[0] += 1
            agg[1] = min(agg[1], value)
            agg[2] = max(agg[2], value)
            agg[3] += value

    def increment(self, name, amount=1):
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            logger.warning("Dropping non-numeric increment %r for %s", amount, name)
            return
        with self._lock:
            self._counters[name] += amount
        self._notify("counter", name, amount)

    def add_rate(self, name, hit):
        with self._lock:
            sample = self._rates[name]
            sample[0] += 1 if hit else 0
            sample[1] += 1
        self._notify("rate", name, bool(hit))

    def check(self, name, passed):
        with self._lock:
            self._checks[name][0 if passed else 1] += 1
        self._notify("check", name, bool(passed))
        return bool(passed)

    def export(self):
        with self._lock:
            counters = dict(self._counters)
            trends = {name: sorted(samples) for name, samples in self._trends.items()}
            aggregates = {name: tuple(agg) for name, agg in self._aggregates.items()}
            rates = {name: tuple(sample) for name, sample in self._rates.items()}
            checks = {name: tuple(sample) for name, sample in self._checks.items()}

        summary = {"counters": {}, "trends": {}, "rates": {}, "checks": {}}
        for name, value in counters.items():
            summary["counters"][name] = int(value) if value.is_integer() else value
        for name, ordered in trends.items():
            summary["trends"][name] = {
                "count": len(ordered),
                "min": ordered[0] if ordered else None,
                "max": ordered[-1] if ordered else None,
                "avg": sum(ordered) / len(ordered) if ordered else None,
                "med": _percentile(ordered, 50),
                "p90": _percentile(ordered, 90),
                "p95": _percentile(ordered, 95),
            }
        for name, (count, low, high, total) in aggregates.items():
            summary["trends"][name] = {
                "count": count,
                "min": low,
                "max": high,
                "avg": total / count,
                "med": None,
                "p90": None,
                "p95": None,
            }
        for name, (hits, total) in rates.items():
            summary["rates"][name] = {
                "hits": hits,
                "total": total,
                "rate": hits / total if total else 0.0,
            }
        for name, (passes, fails) in checks.items():
            summary["checks"][name] = {"passes": passes, "fails": fails}
        return summary

    def write_summary(self, path):
        summary = self.export()
        with open(path, "w") as f:
            json.dump(summary, f, indent=2, sort_keys=True)
        return summary


def format_summary(summary):
    """Render ``MetricsSink.export()`` as the lines printed at the end of a run."""
    lines = []
    for name, check in sorted(summary["checks"].items()):
        total = check["passes"] + check["fails"]
        lines.append(f"check {name}: {check['passes']}/{total} passed")
    for name, value in sorted(summary["counters"].items()):
        lines.append(f"{name}: {value}")
    for name, rate in sorted(summary["rates"].items()):
        lines.append(f"{name}: {rate['rate'] * 100:.2f}% ({rate['hits']}/{rate['total']})")
    for name, trend in sorted(summary["trends"].items()):
        if not trend["count"]:
            continue
        parts = [
            f"{key}={trend[key]:.2f}"
            for key in ("avg", "min", "med", "p90", "p95", "max")
            if trend[key] is not None
        ]
        lines.append(f"{name} ms: {' '.join(parts)} n={trend['count']}")
    return lines
