"""
config.py — Configuration loading.

All thresholds, sentinels and paths live in config.yaml. The file is merged
over DEFAULT_CONFIG so a deployment only needs to override the values it
cares about; every module receives the merged dict rather than re-reading
the file.
"""

import copy
import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    "project": {
        "name": "Construction Financial Governance",
        "currency": "USD",
    },
    "paths": {
        "log_dir": "logs",
        "output_dir": "output",
        "catalog_seed": "data/cost_codes.yaml",
        "audit_journal": None,
        "report_filename": "governance_report_{date}.xlsx",
    },
    "classification": {
        "needs_classification_project_id": "NEEDS_CLASSIFICATION",
        "needs_classification_project_name": "Needs Classification",
        "needs_classification_supplier_id": "NEEDS_CLASSIFICATION",
        "needs_classification_supplier_name": "Needs Classification",
    },
    "workflow": {
        # needs_review is advisory unless this is switched on
        "require_review_cleared": False,
    },
    "alerts": {
        "priority_bands": {
            "critica": 0.50,
            "alta": 0.25,
            "media": 0.10,
        },
        "sobrecosto_umbral_pct": 10.0,
        "dias_alto": 15,
        "dias_critico": 30,
        "auto_resolve_note": "Resuelta automáticamente: la condición ya no se cumple",
    },
    "store": {
        "lock_timeout_seconds": 5.0,
    },
    "notifier": {
        "webhook_env_var": "GOVERNANCE_WEBHOOK_URL",
        "timeout_seconds": 10,
    },
    "scheduler": {
        "interval_minutes": 60,
        "timezone": "UTC",
        "max_retries": 3,
        "retry_delay_seconds": 60,
    },
    "demo": {
        "seed": 42,
        "projects": 3,
        "expenses": 40,
    },
}


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge `overrides` into a copy of `base`."""
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: str | None = "config.yaml") -> dict[str, Any]:
    """Load YAML configuration and merge it over the built-in defaults.

    Args:
        config_path: Path to config.yaml relative to project root. ``None``
            returns the defaults unchanged.

    Returns:
        Merged configuration dictionary.

    Raises:
        FileNotFoundError: If config file does not exist.
        yaml.YAMLError: If config file is malformed.
    """
    if config_path is None:
        return copy.deepcopy(DEFAULT_CONFIG)

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    with open(path, "r", encoding="utf-8") as fh:
        loaded = yaml.safe_load(fh) or {}
    logger.debug("Configuration loaded from %s", path)
    return _deep_merge(DEFAULT_CONFIG, loaded)


def merge_config(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return DEFAULT_CONFIG with in-memory overrides applied (used by tests)."""
    return _deep_merge(DEFAULT_CONFIG, overrides or {})
