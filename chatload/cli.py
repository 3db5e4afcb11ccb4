from gevent import monkey

monkey.patch_all()

import argparse  # noqa: E402
import logging  # noqa: E402
import sys  # noqa: E402

from locust.log import setup_logging  # noqa: E402

from .config import HarnessConfig, parse_duration, parse_stages  # noqa: E402
from .errors import ConfigError  # noqa: E402
from .metrics import MetricsSink, format_summary  # noqa: E402
from .scheduler import LoadScheduler  # noqa: E402
from .session import CHECK_CONNECTED  # noqa: E402

logger = logging.getLogger(__name__)


def build_parser():
    parser = argparse.ArgumentParser(
        prog="chatload",
        description="Ramp virtual chat users against a WebSocket pub/sub server.",
    )
    parser.add_argument("--url", help="WebSocket URL (default: $CHATLOAD_URL or ws://localhost:8383/ws)")
    parser.add_argument("--channel", dest="channels", action="append",
                        help="Channel to subscribe to, repeatable (default: chat)")
    parser.add_argument("--messages", dest="messages_per_user", type=int,
                        help="Chat messages each user sends (default: 5)")
    parser.add_argument("--stages", type=parse_stages,
                        help='Ramp profile, e.g. "2m:1000,4m:2800,4m:2800,2m:0"')
    parser.add_argument("--no-unsubscribe-odd", dest="unsubscribe_odd", action="store_false", default=None,
                        help="Keep odd users connected instead of unsubscribing and closing")
    parser.add_argument("--tick", type=parse_duration, help="Scheduler reconcile interval (default: 1s)")
    parser.add_argument("--graceful-stop", type=parse_duration,
                        help="How long to wait for sessions when the profile ends (default: 30s)")
    parser.add_argument("--connect-timeout", type=parse_duration, help="Handshake timeout")
    parser.add_argument("--summary-export", metavar="PATH", help="Write the end-of-run summary as JSON")
    parser.add_argument("--loglevel", "-L", default="INFO", help="DEBUG/INFO/WARNING/ERROR/CRITICAL")
    parser.add_argument("--logfile", help="Log to this file instead of stderr")
    return parser


def config_from_args(args):
    return HarnessConfig.from_env(
        url=args.url,
        channels=tuple(args.channels) if args.channels else None,
        messages_per_user=args.messages_per_user,
        stages=args.stages,
        unsubscribe_odd=args.unsubscribe_odd,
        tick=args.tick,
        graceful_stop=args.graceful_stop,
        connect_timeout=args.connect_timeout,
    )


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.loglevel.upper(), args.logfile)

    try:
        config = config_from_args(args)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        sys.exit(2)

    metrics = MetricsSink()
    scheduler = LoadScheduler(config, metrics)
    try:
        summary = scheduler.run()
    except KeyboardInterrupt:
        logger.info("Interrupted, exporting what was recorded so far")
        summary = metrics.export()

    for line in format_summary(summary):
        logger.info(line)
    if args.summary_export:
        metrics.write_summary(args.summary_export)
        logger.info("Summary written to %s", args.summary_export)

    connected = summary["checks"].get(CHECK_CONNECTED, {}).get("passes", 0)
    if scheduler.total_started and not connected:
        logger.error("No session completed the WebSocket handshake")
        sys.exit(1)
    sys.exit(0)
