"""
test_scheduler.py — Tests for the periodic alert recomputation job.

Tests cover:
    - The alert-only argument namespace
    - Repeated cycles against one service reconcile instead of re-raising
    - The audit journal gains no duplicate alert entries across cycles
"""

import sys
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent))

from governance.audit import AuditFilters
from governance.config import load_config
from governance.service import GovernanceService
from scheduler import _run_alert_cycle, build_alert_args

SEED_PATH = Path(__file__).parent.parent / "data" / "cost_codes.yaml"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_path(tmp_path, monkeypatch):
    monkeypatch.delenv("GOVERNANCE_WEBHOOK_URL", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump({
            "paths": {
                "output_dir": str(tmp_path / "output"),
                "log_dir": str(tmp_path / "logs"),
                "catalog_seed": str(SEED_PATH),
                "audit_journal": str(tmp_path / "audit.jsonl"),
            },
        }),
        encoding="utf-8",
    )
    return path


def _alert_raised(service: GovernanceService) -> int:
    return service.audit_query(AuditFilters(actions=["alert_raised"])).total


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestBuildAlertArgs:
    def test_only_alert_stages_selected(self):
        args = build_alert_args("config.yaml")
        assert args.recompute_alerts is True
        assert args.notify is True
        assert not (args.full_run or args.classify or args.approve or args.report)
        assert args.export_audit is None


class TestAlertCycle:
    """Consecutive cycles share one service and its alert store."""

    def test_second_cycle_raises_nothing_new(self, config_path):
        service = GovernanceService.from_config(load_config(str(config_path)))

        assert _run_alert_cycle(str(config_path), 1, 0, service=service) is True
        raised_first = _alert_raised(service)
        active_first = {a.id for a in service.active_alerts()}

        assert _run_alert_cycle(str(config_path), 1, 0, service=service) is True

        assert raised_first > 0
        assert _alert_raised(service) == raised_first
        assert {a.id for a in service.active_alerts()} == active_first

    def test_journal_has_no_duplicate_raises(self, config_path, tmp_path):
        service = GovernanceService.from_config(load_config(str(config_path)))
        _run_alert_cycle(str(config_path), 1, 0, service=service)
        lines_first = (tmp_path / "audit.jsonl").read_text(encoding="utf-8").splitlines()

        _run_alert_cycle(str(config_path), 1, 0, service=service)
        lines_second = (tmp_path / "audit.jsonl").read_text(encoding="utf-8").splitlines()

        assert len(lines_second) == len(lines_first)
