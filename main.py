"""
main.py — Construction Financial Governance — CLI Entry Point.

Provides a command-line interface to run any combination of pipeline stages
against the seeded demo dataset:
  1. classify          — Classify incoming expenses against the cost-code catalog
  2. approve           — Bulk-approve clean expenses, record sample payments
  3. recompute-alerts  — Evaluate project metrics into prioritized alerts
  4. export-audit      — Write the audit trail as csv / json / xlsx
  5. report            — Generate the Excel governance workbook
  6. notify            — Send webhook notification for critical alerts
  7. full-run          — Execute all stages in sequence (default for scheduler)

Usage examples:
    python main.py --full-run
    python main.py --classify --approve
    python main.py --recompute-alerts --notify
    python main.py --export-audit csv --as-of 2024-06-30

Environment:
    GOVERNANCE_WEBHOOK_URL   Incoming webhook (optional; enables live alerts)
    LOG_LEVEL                Override log verbosity (default: INFO)
"""

import argparse
import logging
import os
import sys
from datetime import date, datetime
from pathlib import Path

import yaml


def _configure_logging(log_dir: str = "logs", level: str = "INFO") -> None:
    """Set up rotating file handler and stream handler for the pipeline.

    Args:
        log_dir: Directory to write log files into.
        level: Default log level string (DEBUG, INFO, WARNING, ERROR).
    """
    import logging.handlers

    effective_level = os.environ.get("LOG_LEVEL", level).upper()
    numeric_level = getattr(logging, effective_level, logging.INFO)

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    log_filename = Path(log_dir) / f"governance_{datetime.today().strftime('%Y%m%d')}.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Rotating file handler: 10 MB max, keep 7 files
    file_handler = logging.handlers.RotatingFileHandler(
        log_filename, maxBytes=10 * 1024 * 1024, backupCount=7, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(stream_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="construction-governance",
        description=(
            "Construction Financial Governance — "
            "expense classification, approval, alerting and audit.\n\n"
            "Run --full-run to execute all pipeline stages in sequence."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --full-run
  python main.py --classify --approve
  python main.py --recompute-alerts --notify
  python main.py --full-run --config custom_config.yaml --log-level DEBUG
        """,
    )

    parser.add_argument(
        "--config",
        default="config.yaml",
        metavar="PATH",
        help="Path to configuration YAML file (default: config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity level (default: INFO)",
    )
    parser.add_argument(
        "--as-of",
        type=date.fromisoformat,
        default=None,
        metavar="YYYY-MM-DD",
        help="Evaluation date for alerts and demo data (default: today)",
    )

    stages = parser.add_argument_group("Pipeline Stages")
    stages.add_argument("--classify", action="store_true", help="Classify incoming demo expenses")
    stages.add_argument(
        "--approve",
        action="store_true",
        help="Submit and bulk-approve expenses that need no review; record sample payments",
    )
    stages.add_argument(
        "--recompute-alerts",
        action="store_true",
        help="Evaluate project metrics and reconcile active alerts",
    )
    stages.add_argument(
        "--export-audit",
        choices=["csv", "json", "xlsx"],
        default=None,
        help="Export the audit trail in the given format",
    )
    stages.add_argument("--report", action="store_true", help="Generate the Excel governance workbook")
    stages.add_argument("--notify", action="store_true", help="Send webhook alert for critical alerts")
    stages.add_argument(
        "--full-run",
        action="store_true",
        help="Execute all stages: classify → approve → alerts → export → report → notify",
    )

    return parser.parse_args(argv)


def _stage_banner(logger: logging.Logger, title: str) -> None:
    logger.info("=" * 60)
    logger.info(title)
    logger.info("=" * 60)


def run_pipeline(
    args: argparse.Namespace,
    logger: logging.Logger,
    service=None,
) -> int:
    """Execute the requested pipeline stages and return an exit code.

    All stages share one in-memory GovernanceService so expenses classified
    in stage 1 are the ones approved in stage 2 and audited in stage 4.

    Args:
        args: Parsed CLI arguments.
        logger: Configured logger.
        service: Long-lived GovernanceService to run against. The scheduler
            passes its own so alerts from earlier runs are reconciled
            rather than raised again. Built from `args.config` when omitted.

    Returns:
        0 on success, 1 on any unhandled error.
    """
    from governance.config import load_config
    from governance.demo_data import generate_demo_dataset
    from governance.service import GovernanceService

    do_all = args.full_run
    as_of = args.as_of or date.today()

    try:
        if service is None:
            service = GovernanceService.from_config(load_config(args.config))
        cfg = service.cfg
        dataset = generate_demo_dataset(cfg, service.catalog, as_of)
        for project in dataset.projects:
            service.register_project(project)
    except FileNotFoundError as exc:
        logger.error("Required file not found: %s", exc)
        return 1
    except Exception as exc:
        logger.error("Service initialisation failed: %s", exc, exc_info=True)
        return 1

    classified = []
    export_format = args.export_audit or ("xlsx" if do_all else None)

    # -------------------------------------------------------------------------
    # Stage 1: Classification (required for approve)
    # -------------------------------------------------------------------------
    if do_all or args.classify or args.approve:
        _stage_banner(logger, "STAGE 1: Expense Classification")
        try:
            classified = [service.classify(e) for e in dataset.expenses]
            flagged = sum(1 for e in classified if e.needs_review)
            logger.info(
                "Classification complete — %d expenses | %d need review",
                len(classified),
                flagged,
            )
        except Exception as exc:
            logger.error("Classification failed: %s", exc, exc_info=True)
            return 1

    # -------------------------------------------------------------------------
    # Stage 2: Approval
    # -------------------------------------------------------------------------
    if do_all or args.approve:
        _stage_banner(logger, "STAGE 2: Approval Workflow")
        try:
            clean = [e.id for e in classified if not e.needs_review]
            for expense_id in clean:
                service.submit(expense_id, "cli")
            results = service.bulk_approve(clean, "cli")
            approved = [r.expense_id for r in results if r.ok]
            # Pay the first half in full to exercise payment tracking
            for expense_id in approved[: len(approved) // 2]:
                expense = service.get_expense(expense_id)
                service.record_payment(expense_id, expense.total_amount, "cli")
            logger.info(
                "Approval complete — %d approved | %d failed | %d left for review",
                len(approved),
                len(results) - len(approved),
                len(service.pending_expenses()),
            )
        except Exception as exc:
            logger.error("Approval stage failed: %s", exc, exc_info=True)
            return 1

    # -------------------------------------------------------------------------
    # Stage 3: Alerts (required for report / notify)
    # -------------------------------------------------------------------------
    if do_all or args.recompute_alerts or args.report or args.notify:
        _stage_banner(logger, "STAGE 3: Alert Recomputation")
        try:
            totals = service.recompute_alerts(dataset.metrics, as_of)
            stats = service.alert_stats()
            logger.info(
                "Alerts complete — active: %d | críticas: %d | altas: %d | medias: %d | bajas: %d",
                stats["total"],
                stats["criticas"],
                stats["altas"],
                stats["medias"],
                stats["bajas"],
            )
            if totals["failed"]:
                logger.error("Alert recompute failed for projects: %s", ", ".join(totals["failed"]))
                return 1
        except Exception as exc:
            logger.error("Alert recomputation failed: %s", exc, exc_info=True)
            return 1

    # -------------------------------------------------------------------------
    # Stage 4: Audit export
    # -------------------------------------------------------------------------
    if export_format:
        _stage_banner(logger, "STAGE 4: Audit Export")
        try:
            output_dir = Path(cfg["paths"]["output_dir"])
            output_dir.mkdir(parents=True, exist_ok=True)
            export_path = output_dir / f"audit_{as_of.isoformat()}.{export_format}"
            content = service.audit_export(export_format)
            if isinstance(content, bytes):
                export_path.write_bytes(content)
            else:
                export_path.write_text(content, encoding="utf-8")
            logger.info("Audit trail exported: %s (%d entries)", export_path, len(service.audit_log))
        except Exception as exc:
            logger.error("Audit export failed: %s", exc, exc_info=True)
            return 1

    # -------------------------------------------------------------------------
    # Stage 5: Excel Report
    # -------------------------------------------------------------------------
    if do_all or args.report:
        _stage_banner(logger, "STAGE 5: Excel Report Generation")
        try:
            report_path = service.generate_report()
            logger.info("Report generated: %s", report_path)
        except Exception as exc:
            logger.error("Report generation failed: %s", exc, exc_info=True)
            return 1

    # -------------------------------------------------------------------------
    # Stage 6: Webhook notification
    # -------------------------------------------------------------------------
    if do_all or args.notify:
        _stage_banner(logger, "STAGE 6: Critical Alert Notification")
        try:
            if service.notify_critical():
                logger.info("Notification stage complete")
            else:
                logger.warning("Notification not delivered — check webhook configuration")
        except Exception as exc:
            logger.error("Notification stage failed: %s", exc, exc_info=True)
            # Non-fatal; pipeline continues

    # -------------------------------------------------------------------------
    # Final summary
    # -------------------------------------------------------------------------
    logger.info("=" * 60)
    logger.info("PIPELINE COMPLETE")
    expense_stats = service.expense_stats()
    audit_stats = service.audit_stats()
    logger.info("  %-35s %d", "Expenses processed:", expense_stats["total"])
    logger.info("  %-35s %d", "Expenses needing review:", expense_stats["needing_review"])
    logger.info("  %-35s %.2f", "Approved amount:", expense_stats["approved_amount"])
    logger.info("  %-35s %d", "Audit entries recorded:", audit_stats["total_entries"])
    logger.info("=" * 60)
    return 0


def main() -> None:
    """Parse arguments, configure logging, and run the pipeline."""
    args = _parse_args()

    # Load config to get log directory
    try:
        with open(args.config, "r") as fh:
            cfg = yaml.safe_load(fh) or {}
        log_dir = cfg.get("paths", {}).get("log_dir", "logs")
    except (OSError, yaml.YAMLError):
        log_dir = "logs"

    _configure_logging(log_dir=log_dir, level=args.log_level)
    logger = logging.getLogger(__name__)

    no_stage_selected = not any([
        args.full_run, args.classify, args.approve, args.recompute_alerts,
        args.export_audit, args.report, args.notify,
    ])
    if no_stage_selected:
        import subprocess
        subprocess.run([sys.executable, __file__, "--help"])
        sys.exit(0)

    logger.info(
        "Construction Financial Governance v1.0 | %s",
        datetime.today().strftime("%Y-%m-%d %H:%M:%S"),
    )
    logger.info("Config: %s | Log level: %s", args.config, args.log_level)

    sys.exit(run_pipeline(args, logger))


if __name__ == "__main__":
    main()
