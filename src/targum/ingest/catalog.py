"""Witness catalog loading and validation.

The catalog is a YAML file keyed by witness id::

    witnesses:
      vatican_448:
        name: Vatican Ms. 448
        type: scan
        authority_weight: 0.9
        priority: 1
        source_link: https://digi.vatlib.it/...
      hebrewbooks_sabbioneta:
        name: Sabbioneta print
        authority_weight: 0.75
        priority: 2

Required: ``name``. Priority tiers are optional but, when given, must be
positive integers and unique across the catalog and the store.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from targum.errors import InputValidationError
from targum.store.models import Witness

if TYPE_CHECKING:
    from targum.store.repository import ManuscriptStore

logger = logging.getLogger(__name__)

WITNESS_TYPES = ("scan", "ocr", "digital")


def _invalid(message: str, witness_id: str | None = None) -> InputValidationError:
    full = f"[{witness_id}] {message}" if witness_id else message
    return InputValidationError("CATALOG_INVALID", full, {"witness_id": witness_id})


def witness_from_entry(witness_id: str, data: dict[str, Any]) -> Witness:
    """Build a witness from one catalog entry."""
    if not isinstance(data, dict):
        raise _invalid("Entry must be a mapping", witness_id)
    name = data.get("name")
    if not name:
        raise _invalid("Missing required field: name", witness_id)

    witness_type = data.get("type", "scan")
    if witness_type not in WITNESS_TYPES:
        raise _invalid(
            f"Invalid type '{witness_type}'. Must be one of: {list(WITNESS_TYPES)}",
            witness_id,
        )

    try:
        weight = float(data.get("authority_weight", 0.4))
    except (TypeError, ValueError):
        raise _invalid("authority_weight must be a number", witness_id)
    if not 0.0 <= weight <= 1.0:
        raise _invalid("authority_weight must be within [0, 1]", witness_id)

    priority = data.get("priority")
    if priority is not None:
        if isinstance(priority, bool) or not isinstance(priority, int) or priority <= 0:
            raise _invalid("priority must be a positive integer", witness_id)

    return Witness(
        id=witness_id,
        name=str(name),
        type=witness_type,
        authority_weight=weight,
        priority=priority,
        source_link=data.get("source_link"),
        metadata=dict(data.get("metadata") or {}),
    )


def parse_catalog(data: Any) -> list[Witness]:
    """Validate a parsed catalog document; witnesses in priority order."""
    if not isinstance(data, dict) or not isinstance(data.get("witnesses"), dict):
        raise _invalid("Catalog must contain a 'witnesses' mapping")

    witnesses = [witness_from_entry(str(k), v) for k, v in data["witnesses"].items()]

    seen: dict[int, str] = {}
    for witness in witnesses:
        if witness.priority is None:
            continue
        if witness.priority in seen:
            raise _invalid(
                f"Duplicate priority {witness.priority} (also used by {seen[witness.priority]})",
                witness.id,
            )
        seen[witness.priority] = witness.id

    return sorted(witnesses, key=lambda w: (w.priority is None, w.priority or 0, w.id))


def load_catalog(path: Path | str) -> list[Witness]:
    path = Path(path)
    if not path.exists():
        raise InputValidationError(
            "CATALOG_INVALID", f"Catalog not found: {path}", {"path": str(path)}
        )
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InputValidationError(
                "CATALOG_INVALID", f"Catalog is not valid YAML: {e}", {"path": str(path)}
            ) from e
    return parse_catalog(data)


def install_catalog(store: "ManuscriptStore", witnesses: list[Witness]) -> list[Witness]:
    """Upsert catalog witnesses, keeping priority tiers unique in the store.

    Raises:
        InputValidationError: ``CATALOG_INVALID`` when a tier is held by a
            stored witness that is not part of this catalog
    """
    ids = {w.id for w in witnesses}
    held = {w.priority: w.id for w in store.list_priority_witnesses() if w.id not in ids}
    for witness in witnesses:
        if witness.priority is not None and witness.priority in held:
            raise _invalid(
                f"Priority {witness.priority} already held by {held[witness.priority]}",
                witness.id,
            )

    # Clear tiers first so reordering within the catalog never collides
    for witness in witnesses:
        existing = store.get_witness(witness.id)
        if existing is not None and existing.priority is not None:
            existing.priority = None
            store.upsert_witness(existing)
    for witness in witnesses:
        store.upsert_witness(witness)

    logger.info(f"Installed {len(witnesses)} witness(es) from catalog")
    return witnesses
