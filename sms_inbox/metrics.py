# --------------------------------------------------
# metrics.py
# --------------------------------------------------
# In-process Prometheus-style counters, exposed at /metrics
# in plain text exposition format. Nothing is persisted;
# values restart from zero with the process.
#
# Counter families (name -> labels):
#   http_requests_total      path, status
#   webhook_requests_total   result: created | duplicate | ignored | invalid_json
#   push_requests_total      result: sent | failed
#   gateway_sends_total      mode, result: ok | error | no_device
#
# plus the request_latency_ms histogram (100 / 500 / +Inf ms).
# --------------------------------------------------

from collections import defaultdict
import threading
from typing import Dict, Tuple

COUNTERS: Dict[str, Tuple[str, ...]] = {
    "http_requests_total": ("path", "status"),
    "webhook_requests_total": ("result",),
    "push_requests_total": ("result",),
    "gateway_sends_total": ("mode", "result"),
}

LATENCY_BOUNDS_MS = (100, 500)


class Metrics:
    """
    Thread-safe collector. Handlers and background tasks share one
    instance; the lock keeps concurrent increments exact.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.counters = {name: defaultdict(int) for name in COUNTERS}
        # One slot per bound, plus the overflow (+Inf) slot.
        self.latency_buckets = [0] * (len(LATENCY_BOUNDS_MS) + 1)
        self.latency_sum_ms = 0.0

    def _inc(self, name: str, *labels):
        with self.lock:
            self.counters[name][tuple(str(v) for v in labels)] += 1

    def inc_http(self, path: str, status: int):
        self._inc("http_requests_total", path, status)

    def inc_webhook(self, result: str):
        self._inc("webhook_requests_total", result)

    def inc_push(self, result: str):
        self._inc("push_requests_total", result)

    def inc_gateway(self, mode: str, result: str):
        self._inc("gateway_sends_total", mode, result)

    def observe_latency(self, ms: float):
        slot = len(LATENCY_BOUNDS_MS)
        for i, bound in enumerate(LATENCY_BOUNDS_MS):
            if ms <= bound:
                slot = i
                break
        with self.lock:
            self.latency_buckets[slot] += 1
            self.latency_sum_ms += ms

    def value(self, name: str, **labels) -> int:
        """Current value of one labelled counter (0 if never touched)."""
        key = tuple(str(labels[label]) for label in COUNTERS[name])
        with self.lock:
            return self.counters[name].get(key, 0)

    def reset(self):
        with self.lock:
            for counter in self.counters.values():
                counter.clear()
            self.latency_buckets = [0] * (len(LATENCY_BOUNDS_MS) + 1)
            self.latency_sum_ms = 0.0

    def render_prometheus(self) -> str:
        """
        Examples:

            http_requests_total{path="/webhook",status="200"} 15
            webhook_requests_total{result="duplicate"} 3
            gateway_sends_total{mode="private",result="ok"} 4
            request_latency_ms_bucket{le="100"} 20
            request_latency_ms_count 25
        """
        lines = []

        with self.lock:
            for name, label_names in COUNTERS.items():
                for key, value in sorted(self.counters[name].items()):
                    labels = ",".join(f'{label}="{v}"' for label, v in zip(label_names, key))
                    lines.append(f"{name}{{{labels}}} {value}")

            buckets = list(self.latency_buckets)
            latency_sum = self.latency_sum_ms

        cumulative = 0
        for bound, count in zip(LATENCY_BOUNDS_MS, buckets):
            cumulative += count
            lines.append(f'request_latency_ms_bucket{{le="{bound}"}} {cumulative}')
        total = sum(buckets)
        lines.append(f'request_latency_ms_bucket{{le="+Inf"}} {total}')
        lines.append(f"request_latency_ms_sum {latency_sum:.3f}")
        lines.append(f"request_latency_ms_count {total}")

        # Prometheus expects a trailing newline.
        return "\n".join(lines) + "\n"


# Global shared instance
metrics = Metrics()
