# backend/migrate_db.py
"""
Bring an older database up to the current progress-record schema.

Older deployments created student_records without a uniqueness guarantee, so
concurrent "mark" clicks could leave two rows for the same
(student_id, experiment_id). This merges such duplicates into one row and then
adds the unique index that prevents them.
"""
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from sqlalchemy import inspect, text

from config import get_settings
from database import Database
from logging_config import logger, setup_logging
from models import StudentRecord

PAIR_COLUMNS = {"student_id", "experiment_id"}
PAIR_INDEX_NAME = "ix_student_records_pair_unique"


def _earliest(records: List[StudentRecord], date_field: str) -> Optional[StudentRecord]:
    dated = [r for r in records if getattr(r, date_field) is not None]
    return min(dated, key=lambda r: getattr(r, date_field)) if dated else None


def merge_duplicate_records(records: List[StudentRecord]) -> Tuple[StudentRecord, List[StudentRecord]]:
    """Fold records for one pair into the earliest-created one.

    Flags are OR-ed; each flag keeps the earliest timestamp and its actor.
    Returns (survivor, rows to delete).
    """
    ordered = sorted(records, key=lambda r: (r.created_at is None, r.created_at, r.id))
    survivor, rest = ordered[0], ordered[1:]

    survivor.observation_corrected = any(r.observation_corrected for r in records)
    survivor.record_submitted = any(r.record_submitted for r in records)

    first_corrected = _earliest(records, "observation_corrected_date")
    if first_corrected is not None:
        survivor.observation_corrected_date = first_corrected.observation_corrected_date
        survivor.observation_corrected_by = first_corrected.observation_corrected_by

    first_submitted = _earliest(records, "record_submitted_date")
    if first_submitted is not None:
        survivor.record_submitted_date = first_submitted.record_submitted_date
        survivor.record_submitted_by = first_submitted.record_submitted_by

    # A submitted record implies a corrected observation
    if survivor.record_submitted:
        survivor.observation_corrected = True

    return survivor, rest


def _has_pair_uniqueness(database: Database) -> bool:
    inspector = inspect(database.engine)
    for constraint in inspector.get_unique_constraints("student_records"):
        if set(constraint["column_names"]) == PAIR_COLUMNS:
            return True
    for index in inspector.get_indexes("student_records"):
        if index.get("unique") and set(index["column_names"]) == PAIR_COLUMNS:
            return True
    return False


def migrate_database(database_url: str) -> Dict[str, object]:
    database = Database(database_url)
    summary: Dict[str, object] = {"merged": 0, "index_created": False}

    try:
        if not inspect(database.engine).has_table("student_records"):
            logger.info("student_records table not found; create_all will build it")
            return summary

        if _has_pair_uniqueness(database):
            logger.info("student_records already unique per (student, experiment)")
            return summary

        with database.session() as db:
            groups: Dict[Tuple[str, str], List[StudentRecord]] = defaultdict(list)
            for record in db.query(StudentRecord).all():
                groups[(record.student_id, record.experiment_id)].append(record)

            for (student_id, experiment_id), records in groups.items():
                if len(records) < 2:
                    continue
                survivor, duplicates = merge_duplicate_records(records)
                for duplicate in duplicates:
                    db.delete(duplicate)
                summary["merged"] += len(duplicates)
                logger.info(
                    f"Merged {len(duplicates)} duplicate record(s) for {student_id}/{experiment_id} "
                    f"into {survivor.id}"
                )
            db.commit()

        with database.engine.begin() as conn:
            conn.execute(text(
                f"CREATE UNIQUE INDEX {PAIR_INDEX_NAME} ON student_records (student_id, experiment_id)"
            ))
        summary["index_created"] = True
        logger.info("Migration completed")
        return summary
    finally:
        database.close()


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(settings)
    print(migrate_database(settings.DATABASE_URL))
