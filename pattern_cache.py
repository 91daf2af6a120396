"""
Pattern Cache
===============
Durable per-subject record of which reports were already analyzed, what was
extracted from them, and when. SQLite-backed, one row per (subject_id, report_id).

  - put() overwrites conditions / parameter names on re-scan
  - scanned_at never moves backwards for a key
  - no sharing across subjects
"""

import json
import logging
import os
import sqlite3
import threading
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timedelta

from config import PATTERN_CACHE_PATH
from errors import PersistenceFailure
from models import AnalysisPatternEntry, to_utc, utcnow

logger = logging.getLogger("body_impact")


def _ts(value: datetime) -> str:
    return to_utc(value).isoformat(timespec="microseconds")


def is_stale(entry: AnalysisPatternEntry, max_age_days: int, now: datetime | None = None) -> bool:
    """An entry is stale once it is max_age_days old or older."""
    now = to_utc(now) or utcnow()
    return now - to_utc(entry.scanned_at) >= timedelta(days=max_age_days)


class PatternCache:
    """SQLite store of AnalysisPatternEntry rows."""

    def __init__(self, db_path: str = PATTERN_CACHE_PATH):
        self.db_path = db_path
        self.lock = threading.Lock()
        parent = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(parent, exist_ok=True)
        self._init_database()

    def _init_database(self):
        with self.get_connection() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS analysis_patterns (
                    subject_id TEXT NOT NULL,
                    report_id TEXT NOT NULL,
                    conditions TEXT NOT NULL,
                    parameter_names TEXT NOT NULL,
                    scanned_at TEXT NOT NULL,
                    PRIMARY KEY (subject_id, report_id)
                )
            ''')
            conn.execute(
                'CREATE INDEX IF NOT EXISTS idx_patterns_subject ON analysis_patterns(subject_id)'
            )

    @contextmanager
    def get_connection(self):
        """Database connection with locking; commits on success, rolls back on error."""
        with self.lock:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    @staticmethod
    def _row_to_entry(row) -> AnalysisPatternEntry:
        return AnalysisPatternEntry(
            report_id=row["report_id"],
            subject_id=row["subject_id"],
            conditions=json.loads(row["conditions"]),
            parameter_names=json.loads(row["parameter_names"]),
            scanned_at=to_utc(row["scanned_at"]),
        )

    def get(self, subject_id: str, report_id: str) -> AnalysisPatternEntry | None:
        with self.get_connection() as conn:
            row = conn.execute(
                'SELECT * FROM analysis_patterns WHERE subject_id = ? AND report_id = ?',
                (subject_id, report_id),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def put(self, entry: AnalysisPatternEntry):
        try:
            with self.get_connection() as conn:
                conn.execute('''
                    INSERT INTO analysis_patterns
                        (subject_id, report_id, conditions, parameter_names, scanned_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(subject_id, report_id) DO UPDATE SET
                        conditions = excluded.conditions,
                        parameter_names = excluded.parameter_names,
                        scanned_at = MAX(scanned_at, excluded.scanned_at)
                ''', (
                    entry.subject_id,
                    entry.report_id,
                    json.dumps(list(entry.conditions)),
                    json.dumps(list(entry.parameter_names)),
                    _ts(entry.scanned_at),
                ))
        except sqlite3.Error as e:
            raise PersistenceFailure(
                f"Pattern cache write failed for report {entry.report_id}: {e}"
            ) from e

    def is_stale(self, entry: AnalysisPatternEntry, max_age_days: int,
                 now: datetime | None = None) -> bool:
        return is_stale(entry, max_age_days, now)

    def list_entries(self, subject_id: str) -> list[AnalysisPatternEntry]:
        with self.get_connection() as conn:
            rows = conn.execute(
                'SELECT * FROM analysis_patterns WHERE subject_id = ? ORDER BY scanned_at DESC',
                (subject_id,),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def unscanned_report_ids(self, subject_id: str, report_ids: list[str]) -> list[str]:
        scanned = {e.report_id for e in self.list_entries(subject_id)}
        return [rid for rid in report_ids if rid not in scanned]

    def clear_subject(self, subject_id: str) -> int:
        with self.get_connection() as conn:
            cursor = conn.execute(
                'DELETE FROM analysis_patterns WHERE subject_id = ?', (subject_id,)
            )
            return cursor.rowcount

    @staticmethod
    def _common(values_per_entry: list[list[str]]) -> list[str]:
        """Labels present in >= 2 entries (case-insensitive), most frequent first."""
        counts = Counter()
        spelling = {}
        for values in values_per_entry:
            seen = set()
            for v in values:
                key = v.strip().lower()
                if not key or key in seen:
                    continue
                seen.add(key)
                counts[key] += 1
                spelling.setdefault(key, v.strip())
        common = [k for k, n in counts.items() if n >= 2]
        common.sort(key=lambda k: (-counts[k], k))
        return [spelling[k] for k in common]

    def summarize(self, subject_id: str) -> dict:
        entries = self.list_entries(subject_id)
        return {
            "commonConditions": self._common([e.conditions for e in entries]),
            "commonParameters": self._common([e.parameter_names for e in entries]),
            "reportCount": len(entries),
            "lastScannedAt": entries[0].scanned_at.isoformat() if entries else None,
            "scannedReportIds": [e.report_id for e in entries],
        }
