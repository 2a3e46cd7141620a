# 📄 File: scripts/process_followups.py
#
# Follow-up processor. Run it periodically (e.g. every hour) to send due
# follow-up steps and escalation notices:
#
#   python3 -m scripts.process_followups
#
# or from crontab:
#   0 * * * * cd /path/to/proposalai && python3 -m scripts.process_followups
#
# With --loop it keeps polling every POLL_INTERVAL_SECONDS instead.

import argparse
import logging
import sys

from proposalai.config import settings
from proposalai.engine import FollowUpEngine
from proposalai.logging_config import cron_logger, setup_logging

logger = logging.getLogger("proposalai.scripts.process_followups")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Process due follow-up sequences")
    parser.add_argument("--loop", action="store_true", help="keep polling instead of running once")
    parser.add_argument("--interval", type=int, default=settings.POLL_INTERVAL_SECONDS,
                        help="seconds between passes with --loop")
    args = parser.parse_args(argv)

    setup_logging()
    cron_logger().info("Cron job fired")

    engine = FollowUpEngine.from_settings()
    if args.loop:
        logger.info("Starting follow-up processor loop (every %ss)", args.interval)
        engine.run_forever(args.interval)
        return 0

    report = engine.tick()
    logger.info("Follow-up processing completed: %s, escalated=%s", report.summary(), report.escalated)
    return 1 if report.aborted else 0


if __name__ == "__main__":
    sys.exit(main())
