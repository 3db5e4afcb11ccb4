"""
Staged ramp of concurrent virtual users.

The scheduler wakes up every ``tick`` seconds (and at every stage boundary),
works out how many sessions the stage profile wants by the next wake-up and
starts or stops sessions until the live count matches.
"""
import itertools
import logging
import math
import time

import gevent
from gevent.pool import Group

from .metrics import MetricsSink
from .session import VirtualUserSession

logger = logging.getLogger(__name__)


def _current_stage(stages, elapsed):
    """Return ``(previous_target, start, stage)`` for the stage running at ``elapsed``."""
    previous = 0
    start = 0.0
    for stage in stages:
        end = start + stage.duration
        if elapsed < end:
            return previous, start, stage
        previous = stage.target
        start = end
    return None


def desired_concurrency(stages, elapsed, lookahead=0.0):
    """
    Target number of sessions ``elapsed`` seconds into the run.

    Interpolates linearly from the previous stage's target (0 before the
    first stage) to the current one, rounding up. With ``lookahead`` the
    value is taken that many seconds later, clamped to the end of the
    current stage, so a caller polling every ``lookahead`` seconds still
    reaches each stage's target. Returns None once every stage has elapsed.
    """
    current = _current_stage(stages, elapsed)
    if current is None:
        return None
    previous, start, stage = current
    point = min(elapsed + lookahead, start + stage.duration)
    if point >= start + stage.duration:
        return stage.target
    fraction = (point - start) / stage.duration
    return int(math.ceil(previous + (stage.target - previous) * fraction))


def time_to_next_boundary(stages, elapsed):
    """Seconds until the current stage ends, or None after the last one."""
    current = _current_stage(stages, elapsed)
    if current is None:
        return None
    _, start, stage = current
    return start + stage.duration - elapsed


class LoadScheduler:
    def __init__(self, config, metrics=None, session_factory=VirtualUserSession, clock=time.monotonic, sleep=gevent.sleep):
        self.config = config
        self.metrics = metrics if metrics is not None else MetricsSink()
        self._session_factory = session_factory
        self._clock = clock
        self._sleep = sleep
        self._ids = itertools.count(1)
        self._group = Group()
        # session id -> (session, greenlet), in start order
        self._live = {}
        self.total_started = 0

    @property
    def active_count(self):
        self._reap()
        return len(self._live)

    def run(self):
        """Run the whole profile, then return the exported metrics."""
        stages = self.config.stages
        logger.info(
            "Starting load profile against %s: %d stage(s), %.0fs total",
            self.config.url, len(stages), self.config.total_duration,
        )
        started = self._clock()
        last_target = None
        try:
            while True:
                elapsed = self._clock() - started
                target = desired_concurrency(stages, elapsed, lookahead=self.config.tick)
                if target is None:
                    break
                if target != last_target:
                    logger.debug("Target concurrency %d (active %d)", target, self.active_count)
                    last_target = target
                self.reconcile(target)
                # wake at the stage boundary so no stage is skipped
                self._sleep(min(self.config.tick, time_to_next_boundary(stages, elapsed)))
        finally:
            self.shutdown()

        summary = self.metrics.export()
        logger.info("Load profile finished, %d session(s) started", self.total_started)
        return summary

    def reconcile(self, target):
        """Start or stop sessions until ``target`` are live."""
        self._reap()
        live = len(self._live)
        if live < target:
            for _ in range(target - live):
                self._spawn()
        elif live > target:
            newest = list(self._live.values())[target - live:]
            for session, _ in reversed(newest):
                session.stop()
                # still in the group until it winds down, but no longer counted
                del self._live[session.id]

    def shutdown(self):
        for session, _ in list(self._live.values()):
            session.stop()
        if not self._group.join(timeout=self.config.graceful_stop):
            logger.warning("%d session(s) still running after graceful stop, killing", len(self._group))
            self._group.kill(block=True)
        self._reap()

    def _spawn(self):
        session = self._session_factory(next(self._ids), self.config, self.metrics)
        greenlet = self._group.spawn(session.run)
        self._live[session.id] = (session, greenlet)
        self.total_started += 1

    def _reap(self):
        for session_id, (_, greenlet) in list(self._live.items()):
            if greenlet.dead:
                del self._live[session_id]
