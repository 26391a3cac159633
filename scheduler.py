"""
scheduler.py — Periodic Alert Recomputation Scheduler.

Wraps the alert stages of the pipeline in APScheduler so project financial
alerts are re-evaluated on a fixed interval (default every 60 minutes) and
critical ones are pushed to the webhook. Designed to run as a persistent
daemon process.

Features:
    - Timezone-aware interval scheduling
    - Graceful shutdown on SIGINT / SIGTERM
    - Retry on failure with configurable delay
    - Rotating file logging independent of main.py log

Usage:
    python scheduler.py                  # Run daemon (blocks)
    python scheduler.py --run-now        # Trigger one immediate run then exit
    python scheduler.py --config custom.yaml
"""

import argparse
import logging
import logging.handlers
import signal
import sys
import time
from datetime import datetime
from pathlib import Path

import yaml

# APScheduler v3.x
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from governance.config import load_config
from governance.errors import GovernanceError
from governance.service import GovernanceService


logger = logging.getLogger(__name__)


def _configure_scheduler_logging(log_dir: str) -> None:
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    log_file = Path(log_dir) / "scheduler.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=14, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)

    # Suppress APScheduler internals below WARNING
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_alert_args(config_path: str) -> argparse.Namespace:
    """Namespace equivalent to `main.py --recompute-alerts --notify`."""
    return argparse.Namespace(
        config=config_path,
        log_level="INFO",
        as_of=None,
        full_run=False,
        classify=False,
        approve=False,
        recompute_alerts=True,
        export_audit=None,
        report=False,
        notify=True,
    )


def _run_alert_cycle(
    config_path: str,
    max_retries: int,
    retry_delay: int,
    service: GovernanceService | None = None,
) -> bool:
    """Run one alert recomputation cycle with retry logic.

    Called by APScheduler on each trigger. Delegates to main.run_pipeline()
    so the scheduler and CLI share identical stage logic. Every cycle runs
    against the same `service`, so alerts raised by an earlier cycle are
    updated, left alone or auto-resolved instead of raised again.

    Returns:
        True if a run succeeded within `max_retries` attempts.
    """
    from main import run_pipeline

    logger.info("=" * 70)
    logger.info("SCHEDULED ALERT RUN — %s", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
    logger.info("=" * 70)

    args = build_alert_args(config_path)

    for attempt in range(1, max_retries + 1):
        try:
            exit_code = run_pipeline(args, logger, service=service)
            if exit_code == 0:
                logger.info("Scheduled run completed successfully (attempt %d)", attempt)
                return True
            logger.error(
                "Pipeline returned non-zero exit code %d (attempt %d)",
                exit_code,
                attempt,
            )
        except Exception as exc:
            logger.error(
                "Pipeline raised exception (attempt %d): %s",
                attempt,
                exc,
                exc_info=True,
            )

        if attempt < max_retries:
            logger.info("Retrying in %d seconds...", retry_delay)
            time.sleep(retry_delay)

    logger.error(
        "Alert run failed after %d attempt(s) — will retry at next scheduled time",
        max_retries,
    )
    return False


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="scheduler",
        description="APScheduler daemon for periodic financial alert recomputation.",
    )
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to configuration YAML (default: config.yaml)",
    )
    parser.add_argument(
        "--run-now",
        action="store_true",
        help="Execute one alert run immediately then exit (useful for testing)",
    )
    return parser.parse_args()


def main() -> None:
    """Entry point: configure scheduler and start the blocking daemon."""
    args = _parse_args()

    config_path = args.config
    try:
        with open(config_path, "r") as fh:
            cfg = yaml.safe_load(fh) or {}
    except FileNotFoundError:
        print(f"ERROR: Configuration file not found: {config_path}", file=sys.stderr)
        sys.exit(1)

    _configure_scheduler_logging(cfg.get("paths", {}).get("log_dir", "logs"))

    sched_cfg = cfg.get("scheduler", {})
    interval_minutes = sched_cfg.get("interval_minutes", 60)
    timezone = sched_cfg.get("timezone", "UTC")
    max_retries = sched_cfg.get("max_retries", 3)
    retry_delay = sched_cfg.get("retry_delay_seconds", 60)

    try:
        service = GovernanceService.from_config(load_config(config_path))
    except (FileNotFoundError, GovernanceError) as exc:
        logger.error("Service initialisation failed: %s", exc, exc_info=True)
        sys.exit(1)

    if args.run_now:
        logger.info("--run-now flag set — executing alert run immediately")
        ok = _run_alert_cycle(config_path, max_retries, retry_delay, service=service)
        sys.exit(0 if ok else 1)

    scheduler = BlockingScheduler(timezone=timezone)
    scheduler.add_job(
        func=_run_alert_cycle,
        trigger=IntervalTrigger(minutes=interval_minutes, timezone=timezone),
        kwargs={
            "config_path": config_path,
            "max_retries": max_retries,
            "retry_delay": retry_delay,
            "service": service,
        },
        id="alert_recompute",
        name="Periodic Financial Alert Recomputation",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )

    def _handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping scheduler gracefully")
        scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGTERM, _handle_shutdown)

    logger.info(
        "Scheduler started — alert recompute every %d minute(s) | timezone: %s",
        interval_minutes,
        timezone,
    )
    logger.info("Press Ctrl+C or send SIGTERM to stop.")

    scheduler.start()


if __name__ == "__main__":
    main()
