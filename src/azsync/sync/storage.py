"""
Idempotent persistence of synced rows.

Every data table has a unique key of (owner id, stable record key). upsert_rows
looks each row up by that key and updates it in place, inserting only when it
is new, so re-running a chunk (or a whole sync) never duplicates data.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, Sequence, Type

from sqlmodel import Session, SQLModel, select


def upsert_rows(
    engine,
    model: Type[SQLModel],
    key_fields: Sequence[str],
    rows: Iterable[Dict[str, Any]],
    **common: Any,
) -> int:
    """
    Insert or update rows of `model` keyed by `key_fields`.

    Args:
        engine: SQLAlchemy engine.
        model: SQLModel table class.
        key_fields: Column names forming the table's unique constraint.
        rows: Field dicts (normalizer output).
        **common: Fields applied to every row, e.g. resource_id=...

    Returns:
        Number of rows written (inserted + updated).
    """
    written = 0
    touch_synced_at = "synced_at" in model.model_fields
    with Session(engine) as s:
        for row in rows:
            fields = {**row, **common}
            query = select(model)
            for key in key_fields:
                query = query.where(getattr(model, key) == fields[key])
            existing = s.exec(query).first()

            if existing:
                # Update in place (keeps same id)
                for k, v in fields.items():
                    setattr(existing, k, v)
                if touch_synced_at:
                    existing.synced_at = datetime.utcnow()
                s.add(existing)
            else:
                s.add(model(**fields))
            # Flush so a later row with the same key within this batch finds this one
            s.flush()
            written += 1
        s.commit()
    return written
