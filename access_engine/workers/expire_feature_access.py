"""Expiry sweep: persist EXPIRED on lapsed entitlement records and
deactivate payment links whose window has closed.

Run on a schedule (cron, k8s CronJob):
    python -m access_engine.workers.expire_feature_access
"""
import argparse
import logging
import time

from access_engine.core.config import settings
from access_engine.core.logging import configure_logging
from access_engine.features.feature_access.service import expire_lapsed_access
from access_engine.features.feature_requests.service import expire_payment_links

logger = logging.getLogger("access_engine.workers.expire_feature_access")


def run_once() -> dict:
    result = expire_lapsed_access()
    links = expire_payment_links()
    result["payment_links_deactivated"] = links["deactivated"]
    result["payment_link_failures"] = links["failed"]
    logger.info("[sweeper] run complete", extra=result)
    return result


def run_forever(interval_seconds: int) -> None:
    logger.info("[sweeper] started", extra={"interval_seconds": interval_seconds})
    while True:
        try:
            run_once()
        except Exception:
            # keep the loop alive; the next tick retries
            logger.exception("[sweeper] run failed")
        time.sleep(interval_seconds)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Expire lapsed feature access records")
    parser.add_argument("--loop", action="store_true", help="keep running, sweeping every --interval seconds")
    parser.add_argument("--interval", type=int, default=3600)
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    if args.loop:
        run_forever(args.interval)
        return 0
    print(run_once())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
