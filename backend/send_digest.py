#!/usr/bin/env python3
"""
Standalone script to run the digest scheduler once.
Can be run via GitHub Actions or any cron scheduler at minute 0 of each hour,
or with --topic to send one digest right away.
"""

import argparse
import logging
import sys
from datetime import datetime

import pytz

from app_context import build_context
from config import is_generator_configured
from logging_setup import configure_logging

logger = logging.getLogger("send_digest")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one digest scheduler tick, or a manual digest")
    parser.add_argument("--at", type=str, default="", help="UTC ISO time to run the tick for (default: now)")
    parser.add_argument("--recipient", type=str, default="cli", help="Recipient id for a manual digest")
    parser.add_argument("--topic", type=str, default="", help="Send a manual digest for this topic")
    parser.add_argument("--custom-prompt", type=str, default="", help="Custom prompt for a manual digest")
    parser.add_argument("--push-token", type=str, default=None, help="Expo push token for a manual digest")
    return parser


def parse_at(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        return pytz.utc.localize(moment)
    return moment.astimezone(pytz.utc)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    if not is_generator_configured():
        logger.error("Content generation not configured. Set ANTHROPIC_API_KEY or OPENAI_API_KEY.")
        return 1

    context = build_context()
    try:
        if args.topic:
            result = context.pipeline.trigger_manual_digest(
                args.recipient, args.topic, args.custom_prompt, args.push_token
            )
            if not result.success:
                logger.error("Manual digest failed: %s", result.error)
                return 1
            logger.info("Manual digest %s stored (delivered=%s)", result.digest.id, result.delivered)
            print(result.content)
            return 0

        now = parse_at(args.at) if args.at else None
        context.scheduler.rebuild(now)
        report = context.scheduler.tick(now)
        logger.info(
            "Tick finished: %d due, %d generated, %d delivered, %d failed",
            report.due,
            report.succeeded,
            report.delivered,
            report.failed,
        )
        return 1 if report.failed or report.persistence_failures else 0
    finally:
        context.close()


if __name__ == "__main__":
    sys.exit(main())
