import itertools
import logging
import os
from dataclasses import replace

from locust import LoadTestShape, User, constant, events, task

from chatload.config import HarnessConfig
from chatload.metrics import MetricsSink, format_summary
from chatload.scheduler import desired_concurrency
from chatload.session import VirtualUserSession

logger = logging.getLogger(__name__)

CONFIG = HarnessConfig.from_env()
SUMMARY_EXPORT = os.environ.get("CHATLOAD_SUMMARY_EXPORT")

# Locust polls the shape about once a second
SHAPE_TICK = 1.0

# ids are shared by every user in this process so odd/even stays stable
_session_ids = itertools.count(1)


def report_to_locust(kind, name, value):
    """Forward timing samples and failed checks into Locust's request stats."""
    if kind == "trend":
        events.request.fire(
            request_type="WS",
            name=name,
            response_time=value,
            response_length=0,
            exception=None,
        )
    elif kind == "check" and not value:
        events.request.fire(
            request_type="WS",
            name=name,
            response_time=0,
            response_length=0,
            exception=AssertionError(f"check failed: {name}"),
        )
    elif kind == "rate" and value:
        events.request.fire(
            request_type="WS",
            name=name,
            response_time=0,
            response_length=0,
            exception=RuntimeError("message error"),
        )


# Locust keeps its own percentiles, so only running aggregates are kept here
metrics = MetricsSink(keep_samples=False)
metrics.add_listener(report_to_locust)


@events.test_stop.add_listener
def export_summary(environment, **kwargs):
    summary = metrics.export()
    for line in format_summary(summary):
        logger.info(line)
    if SUMMARY_EXPORT:
        metrics.write_summary(SUMMARY_EXPORT)
        logger.info("Summary written to %s", SUMMARY_EXPORT)
    return summary


class ChatUser(User):
    wait_time = constant(1)

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        host = self.environment.host or ""
        self.config = replace(CONFIG, url=host) if host.startswith(("ws://", "wss://")) else CONFIG
        self.session = None

    @task
    def chat(self):
        self.session = VirtualUserSession(next(_session_ids), self.config, metrics)
        self.session.run()

    def on_stop(self):
        if self.session is not None:
            self.session.stop()


class StagesShape(LoadTestShape):
    stages = CONFIG.stages

    def tick(self):
        target = desired_concurrency(self.stages, self.get_run_time(), lookahead=SHAPE_TICK)
        if target is None:
            return None
        return target, max(target, 1)
