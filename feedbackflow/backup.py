"""Backup document format and validation."""
import json
import logging
from typing import Any, Dict, List

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .entities import DatabaseSchema, IdMapping
from .errors import ValidationError

logger = logging.getLogger(__name__)

REQUIRED_COLLECTIONS = ("testers", "ids", "purchases", "feedbacks", "publications", "refunds")


class RestoreResult(BaseModel):
    """Outcome of a restore. ``success`` is never set on partial failure."""
    success: bool
    message: str


def serialize_backup(data: DatabaseSchema) -> str:
    """Render the whole entity graph as one JSON document."""
    return json.dumps(data.to_public(), indent=2)


def parse_backup(text: str) -> DatabaseSchema:
    """
    Parse and validate a backup document.

    Args:
        text: JSON produced by ``serialize_backup`` (or an older backup
            without the ``links`` collection)

    Returns:
        The validated entity graph

    Raises:
        ValidationError: on invalid JSON, missing collections, invalid
            entities or references to missing rows
    """
    try:
        document: Any = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid JSON format: {e}") from e

    if not isinstance(document, dict):
        raise ValidationError("Invalid backup format: expected a JSON object")

    missing = [name for name in REQUIRED_COLLECTIONS if name not in document]
    if missing:
        raise ValidationError(
            f"Invalid backup format: missing {', '.join(missing)}", fields=missing
        )

    not_lists = [
        name for name in (*REQUIRED_COLLECTIONS, "links")
        if name in document and not isinstance(document[name], list)
    ]
    if not_lists:
        raise ValidationError(
            f"Invalid backup format: {', '.join(not_lists)} must be arrays",
            fields=not_lists,
        )

    try:
        data = DatabaseSchema.model_validate(document)
    except PydanticValidationError as e:
        fields = sorted({str(error["loc"][0]) for error in e.errors() if error["loc"]})
        raise ValidationError(f"Invalid backup content: {e.error_count()} errors", fields=fields) from e
    return check_graph(data)


def restore_failed(error: Exception) -> RestoreResult:
    logger.error(f"Restore failed: {error}")
    return RestoreResult(success=False, message=f"Restore failed: {error}")


def summarize(data: DatabaseSchema) -> Dict[str, int]:
    """Entity counts per collection, for logs and restore messages."""
    return {
        "testers": len(data.testers),
        "ids": len(data.ids),
        "purchases": len(data.purchases),
        "feedbacks": len(data.feedbacks),
        "publications": len(data.publications),
        "refunds": len(data.refunds),
        "links": len(data.links),
    }


def restore_succeeded(data: DatabaseSchema) -> RestoreResult:
    counts = ", ".join(f"{count} {name}" for name, count in summarize(data).items())
    logger.info(f"Database restored: {counts}")
    return RestoreResult(success=True, message=f"Database restored successfully ({counts})")


def _duplicates(keys: List[str]) -> List[str]:
    seen, duplicated = set(), []
    for key in keys:
        if key in seen:
            duplicated.append(key)
        seen.add(key)
    return duplicated


def check_graph(data: DatabaseSchema) -> DatabaseSchema:
    """
    Check the references between collections and reconcile id mappings.

    Ids listed on a tester and ``ids`` entries are merged, so that each
    mapping appears on both sides. Duplicate ids in ``ids`` are dropped if
    they agree.

    Args:
        data: Entity graph about to be loaded into a backend

    Returns:
        A reconciled copy of ``data``

    Raises:
        ValidationError: on duplicate keys or references to missing rows
    """
    data = data.model_copy(deep=True)

    duplicated = _duplicates([t.uuid for t in data.testers])
    if duplicated:
        raise ValidationError(f"Duplicate testers: {', '.join(duplicated)}", fields=["testers"])
    testers = {tester.uuid: tester for tester in data.testers}

    mappings: Dict[str, IdMapping] = {}
    for mapping in data.ids:
        owner = mappings.setdefault(mapping.id, mapping).tester_uuid
        if owner != mapping.tester_uuid:
            raise ValidationError(f"ID {mapping.id} is mapped to several testers", fields=["ids"])
    for tester in data.testers:
        tester.ids = list(dict.fromkeys(tester.ids))
        for id in tester.ids:
            owner = mappings.setdefault(id, IdMapping(id=id, tester_uuid=tester.uuid)).tester_uuid
            if owner != tester.uuid:
                raise ValidationError(
                    f"ID {id} is listed on tester {tester.uuid} but mapped to {owner}",
                    fields=["ids"],
                )

    unknown = sorted({m.tester_uuid for m in mappings.values() if m.tester_uuid not in testers})
    if unknown:
        raise ValidationError(f"IDs mapped to unknown testers: {', '.join(unknown)}", fields=["ids"])
    for mapping in mappings.values():
        tester = testers[mapping.tester_uuid]
        if mapping.id not in tester.ids:
            tester.ids.append(mapping.id)
    data.ids = list(mappings.values())

    duplicated = _duplicates([p.id for p in data.purchases])
    if duplicated:
        raise ValidationError(f"Duplicate purchases: {', '.join(duplicated)}", fields=["purchases"])
    orphans = sorted({p.tester_uuid for p in data.purchases if p.tester_uuid not in testers})
    if orphans:
        raise ValidationError(
            f"Purchases reference unknown testers: {', '.join(orphans)}", fields=["purchases"]
        )

    purchases = {p.id for p in data.purchases}
    for name in ("feedbacks", "publications", "refunds", "links"):
        missing = sorted({r.purchase for r in getattr(data, name) if r.purchase not in purchases})
        if missing:
            raise ValidationError(
                f"{name.capitalize()} reference unknown purchases: {', '.join(missing)}",
                fields=[name],
            )

    duplicated = _duplicates([link.code for link in data.links])
    if duplicated:
        raise ValidationError(f"Duplicate links: {', '.join(duplicated)}", fields=["links"])
    return data
