"""
catalog.py — Cost-Code Catalog.

Static reference data for job costing: a three-level hierarchy
(division → category → subcategory) of cost codes, exactly one of which is
the designated default used when an expense arrives without a valid code.

The default-code rule is enforced when the catalog is loaded, never at
query time, so a catalog instance that exists is always usable by the
classification engine. After load the only permitted mutation is toggling
`is_active`; every toggle bumps the catalog version.
"""

import logging
import re
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Optional

import pandas as pd
import yaml

from governance.errors import CatalogIntegrityError, NotFoundError, ValidationError
from governance.models import CostCode, CostType

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^\d{2}(\.\d{2}){0,2}$")

REQUIRED_FIELDS = {"code", "name", "division", "category", "type", "unit"}


def _build_cost_code(record: dict[str, Any], position: int) -> CostCode:
    missing = REQUIRED_FIELDS - set(k for k, v in record.items() if v not in (None, ""))
    if missing:
        raise CatalogIntegrityError(
            f"Cost code #{position} is missing required fields: {sorted(missing)}"
        )

    code = str(record["code"])
    if not CODE_PATTERN.match(code):
        raise CatalogIntegrityError(
            f"Cost code #{position} has malformed code '{code}' (expected NN.NN.NN)"
        )

    try:
        cost_type = CostType(record["type"])
    except ValueError:
        raise CatalogIntegrityError(
            f"Cost code '{code}' has unknown type '{record['type']}'"
        ) from None

    return CostCode(
        id=str(record.get("id") or f"CC-{code}"),
        code=code,
        name=record["name"],
        description=record.get("description", ""),
        division=record["division"],
        category=record["category"],
        subcategory=record.get("subcategory"),
        type=cost_type,
        unit=record["unit"],
        is_active=bool(record.get("is_active", True)),
        is_default=bool(record.get("is_default", False)),
        tags=tuple(record.get("tags") or ()),
    )


class CostCodeCatalog:
    """Validated, read-mostly cost-code catalog."""

    def __init__(self, codes: Iterable[CostCode]):
        codes = list(codes)

        defaults = [c for c in codes if c.is_default]
        if len(defaults) != 1:
            raise CatalogIntegrityError(
                f"Catalog must have exactly one default cost code, found {len(defaults)}"
                + (f": {[c.code for c in defaults]}" if defaults else "")
            )
        if not defaults[0].is_active:
            raise CatalogIntegrityError(
                f"Default cost code '{defaults[0].code}' must be active"
            )

        seen_codes: set[str] = set()
        seen_ids: set[str] = set()
        for c in codes:
            if c.code in seen_codes:
                raise CatalogIntegrityError(f"Duplicate cost code '{c.code}'")
            if c.id in seen_ids:
                raise CatalogIntegrityError(f"Duplicate cost code id '{c.id}'")
            seen_codes.add(c.code)
            seen_ids.add(c.id)

        self._codes: dict[str, CostCode] = {c.id: c for c in codes}
        self._order = [c.id for c in codes]
        self._default_id = defaults[0].id
        self._lock = threading.Lock()
        self.version = 1

        logger.info(
            "Cost-code catalog loaded: %d codes | default %s (%s)",
            len(codes),
            defaults[0].code,
            defaults[0].name,
        )

    @classmethod
    def from_records(cls, records: list[dict[str, Any]]) -> "CostCodeCatalog":
        """Build a catalog from an ordered seed list.

        Raises:
            CatalogIntegrityError: On zero/multiple defaults, duplicate or
                malformed codes, missing fields or unknown cost types.
        """
        return cls(_build_cost_code(r, i) for i, r in enumerate(records, start=1))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def default_code(self) -> CostCode:
        return self._codes[self._default_id]

    def get(self, cost_code_id: str) -> CostCode:
        try:
            return self._codes[cost_code_id]
        except KeyError:
            raise NotFoundError(f"Unknown cost code id '{cost_code_id}'", entity_id=cost_code_id) from None

    def by_code(self, code: str) -> Optional[CostCode]:
        return next((c for c in self._codes.values() if c.code == code), None)

    def is_valid(self, cost_code_id: Optional[str]) -> bool:
        """A reference is valid when it names an active code in this catalog."""
        code = self._codes.get(cost_code_id) if cost_code_id else None
        return code is not None and code.is_active

    def __len__(self) -> int:
        return len(self._codes)

    def __iter__(self):
        return (self._codes[i] for i in self._order)

    def search(
        self,
        division: Optional[str] = None,
        category: Optional[str] = None,
        cost_type: Optional[str] = None,
        is_active: Optional[bool] = None,
        text: Optional[str] = None,
    ) -> list[CostCode]:
        results = list(self)
        if division:
            results = [c for c in results if c.division == division]
        if category:
            results = [c for c in results if c.category == category]
        if cost_type:
            results = [c for c in results if c.type == cost_type]
        if is_active is not None:
            results = [c for c in results if c.is_active == is_active]
        if text:
            needle = text.lower()
            results = [
                c for c in results
                if needle in c.code.lower()
                or needle in c.name.lower()
                or needle in c.description.lower()
            ]
        return results

    def hierarchy(self) -> dict[str, dict[str, list[CostCode]]]:
        """Group codes into division → category → [codes] preserving seed order."""
        tree: dict[str, dict[str, list[CostCode]]] = {}
        for c in self:
            tree.setdefault(c.division, {}).setdefault(c.category, []).append(c)
        return tree

    def stats(self) -> dict[str, Any]:
        df = pd.DataFrame(
            [{"type": c.type.value, "division": c.division, "is_active": c.is_active} for c in self]
        )
        return {
            "total": len(df),
            "active": int(df["is_active"].sum()),
            "inactive": int((~df["is_active"]).sum()),
            "by_type": df.groupby("type").size().to_dict(),
            "by_division": df.groupby("division").size().to_dict(),
        }

    # ------------------------------------------------------------------
    # Mutation (is_active only)
    # ------------------------------------------------------------------

    def set_active(self, cost_code_id: str, is_active: bool) -> CostCode:
        """Toggle a code's active flag; the default code cannot be deactivated."""
        with self._lock:
            code = self.get(cost_code_id)
            if cost_code_id == self._default_id and not is_active:
                raise ValidationError(
                    f"Default cost code '{code.code}' cannot be deactivated",
                    entity_id=cost_code_id,
                )
            if code.is_active == is_active:
                return code
            updated = replace(code, is_active=is_active)
            self._codes[cost_code_id] = updated
            self.version += 1
            logger.info(
                "Cost code %s %s (catalog v%d)",
                code.code,
                "activated" if is_active else "deactivated",
                self.version,
            )
            return updated


def load_catalog(seed_path: str) -> CostCodeCatalog:
    """Load the catalog seed YAML (a top-level `codes:` list).

    Raises:
        FileNotFoundError: If the seed file does not exist.
        CatalogIntegrityError: If the seed violates catalog rules.
    """
    path = Path(seed_path)
    if not path.exists():
        raise FileNotFoundError(f"Cost-code seed not found at {path}")
    with open(path, "r", encoding="utf-8") as fh:
        seed = yaml.safe_load(fh) or {}
    records = seed.get("codes") if isinstance(seed, dict) else seed
    if not records:
        raise CatalogIntegrityError(f"Cost-code seed {path} contains no codes")
    return CostCodeCatalog.from_records(records)
