"""
Learning Store — persistence for analyses, suggestions and validation results.

Behavioral Contract:
- Analyses and validation results are written once and read many times.
- Suggestions are persisted independently of their analysis (many-to-one)
  and are the only records whose status changes over time.
- Queryable by status and by parent analysis.
"""

import json
import sqlite3
import threading
from typing import List, Optional

from matrix_kernel.models.learning import (
    LearningAnalysis,
    Suggestion,
    SuggestionStatus,
    ValidationTestResult,
)


class LearningStore:
    """
    Learning loop store.
    Prototype: SQLite. Production: PostgreSQL.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the learning tables if they don't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS analyses (
                id TEXT PRIMARY KEY,
                triggered_by TEXT NOT NULL,
                triggered_at TEXT NOT NULL,
                total_records INTEGER NOT NULL,
                overall_agreement_rate REAL NOT NULL,
                record_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS suggestions (
                id TEXT PRIMARY KEY,
                analysis_id TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                applied_version TEXT,
                record_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS validation_tests (
                id TEXT PRIMARY KEY,
                suggestion_id TEXT,
                policy_version TEXT NOT NULL,
                improvement_rate_percent REAL NOT NULL,
                record_json TEXT NOT NULL,
                tested_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_suggestions_status ON suggestions(status)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_suggestions_analysis ON suggestions(analysis_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_validation_suggestion ON validation_tests(suggestion_id)
        """)
        self._conn.commit()

    # --- Analyses ---

    def save_analysis(self, analysis: LearningAnalysis) -> LearningAnalysis:
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO analyses (
                    id, triggered_by, triggered_at, total_records,
                    overall_agreement_rate, record_json
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    analysis.analysis_id,
                    analysis.triggered_by,
                    analysis.triggered_at.isoformat(),
                    analysis.data_range.total_records,
                    analysis.overall_agreement_rate,
                    json.dumps(analysis.to_wire()),
                ),
            )
            self._conn.commit()
        return analysis

    def get_analysis(self, analysis_id: str) -> Optional[LearningAnalysis]:
        row = self._conn.execute(
            "SELECT record_json FROM analyses WHERE id = ?", (analysis_id,)
        ).fetchone()
        return LearningAnalysis.model_validate_json(row["record_json"]) if row else None

    def list_analyses(self, limit: int = 50) -> List[LearningAnalysis]:
        """Most recent first."""
        rows = self._conn.execute(
            "SELECT record_json FROM analyses ORDER BY triggered_at DESC, rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [LearningAnalysis.model_validate_json(r["record_json"]) for r in rows]

    def latest_analysis(self) -> Optional[LearningAnalysis]:
        analyses = self.list_analyses(limit=1)
        return analyses[0] if analyses else None

    # --- Suggestions ---

    def save_suggestion(self, suggestion: Suggestion) -> Suggestion:
        """Insert or update a suggestion (status transitions rewrite the row)."""
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO suggestions (
                    id, analysis_id, type, status, applied_version,
                    record_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    suggestion.suggestion_id,
                    suggestion.analysis_id,
                    suggestion.type.value,
                    suggestion.status.value,
                    suggestion.applied_version,
                    json.dumps(suggestion.to_wire()),
                    suggestion.created_at.isoformat(),
                ),
            )
            self._conn.commit()
        return suggestion

    def get_suggestion(self, suggestion_id: str) -> Optional[Suggestion]:
        row = self._conn.execute(
            "SELECT record_json FROM suggestions WHERE id = ?", (suggestion_id,)
        ).fetchone()
        return Suggestion.model_validate_json(row["record_json"]) if row else None

    def list_suggestions(
        self,
        status: Optional[SuggestionStatus] = None,
        analysis_id: Optional[str] = None,
    ) -> List[Suggestion]:
        """Suggestions, most recent first, optionally filtered."""
        query = "SELECT record_json FROM suggestions"
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(SuggestionStatus(status).value)
        if analysis_id is not None:
            clauses.append("analysis_id = ?")
            params.append(analysis_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"
        rows = self._conn.execute(query, params).fetchall()
        return [Suggestion.model_validate_json(r["record_json"]) for r in rows]

    # --- Validation tests ---

    def save_validation_test(
        self, result: ValidationTestResult, suggestion_id: Optional[str] = None
    ) -> ValidationTestResult:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO validation_tests (
                    id, suggestion_id, policy_version, improvement_rate_percent,
                    record_json, tested_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    result.test_id,
                    suggestion_id,
                    result.policy_version,
                    result.improvement_rate_percent,
                    json.dumps(result.to_wire()),
                    result.tested_at.isoformat(),
                ),
            )
            self._conn.commit()
        return result

    def get_validation_test(self, test_id: str) -> Optional[ValidationTestResult]:
        row = self._conn.execute(
            "SELECT record_json FROM validation_tests WHERE id = ?", (test_id,)
        ).fetchone()
        return ValidationTestResult.model_validate_json(row["record_json"]) if row else None

    def list_validation_tests(self, suggestion_id: Optional[str] = None) -> List[ValidationTestResult]:
        if suggestion_id is None:
            rows = self._conn.execute(
                "SELECT record_json FROM validation_tests ORDER BY tested_at DESC, rowid DESC"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT record_json FROM validation_tests WHERE suggestion_id = ? "
                "ORDER BY tested_at DESC, rowid DESC",
                (suggestion_id,),
            ).fetchall()
        return [ValidationTestResult.model_validate_json(r["record_json"]) for r in rows]

    def count_suggestions(self, status: Optional[SuggestionStatus] = None) -> int:
        if status is None:
            row = self._conn.execute("SELECT COUNT(*) AS cnt FROM suggestions").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM suggestions WHERE status = ?",
                (SuggestionStatus(status).value,),
            ).fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
