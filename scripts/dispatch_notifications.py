"""Deliver pending approval notifications from the outbox."""

from __future__ import annotations

import argparse
import time

from socialflow.notifications.dispatcher import NotificationDispatcher
from socialflow.notifications.email_client import get_resend_client
from socialflow.storage.db import get_session_factory, load_models
from socialflow.storage.redis_client import get_client


def _run_once(limit: int | None) -> None:
    session = get_session_factory()()
    try:
        dispatcher = NotificationDispatcher(
            session,
            redis_client=get_client(),
            email_client=get_resend_client(),
        )
        report = dispatcher.dispatch_pending(limit=limit)
    finally:
        session.close()

    print(
        f"acquired={report.acquired} sent={report.sent} "
        f"retried={report.retried} failed={report.failed}"
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Dispatch pending SocialFlow notifications.")
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--loop", action="store_true", help="Keep polling instead of running once.")
    parser.add_argument("--interval", type=float, default=30.0)
    args = parser.parse_args()

    if args.limit is not None and args.limit <= 0:
        raise ValueError("--limit must be positive")
    if args.interval <= 0:
        raise ValueError("--interval must be positive")

    load_models()
    while True:
        _run_once(args.limit)
        if not args.loop:
            break
        time.sleep(args.interval)


if __name__ == "__main__":
    main()
