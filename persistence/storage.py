"""SQLite storage layer for negotiation history.

This module persists negotiation rounds, member responses, final decisions,
the human escalation queue, and the negotiation examples used to bias
prompts. It handles database initialization, schema verification and
parameterized CRUD operations.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from models.schema import (ConsensusDecision, ConvergenceTrend, Exchange,
                           NegotiationExample, SimilarityResult)

logger = logging.getLogger(__name__)

REQUIRED_TABLES = {
    "negotiation_rounds",
    "negotiation_responses",
    "consensus_decisions",
    "escalation_queue",
    "negotiation_examples",
}


class CouncilStorage:
    """SQLite storage for council negotiations.

    Provides persistence for:
    - negotiation_rounds: per-round similarity statistics and trend
    - negotiation_responses: every member's content per round
    - consensus_decisions: final decision and negotiation metadata
    - escalation_queue: deadlocked requests awaiting human review
    - negotiation_examples: anonymized past resolutions

    Supports both file-based and in-memory databases for testing.
    """

    def __init__(self, db_path: str = "council.db"):
        """Initialize storage with SQLite database.

        Args:
            db_path: Path to SQLite database file. Use ":memory:" for in-memory database.

        Raises:
            RuntimeError: If database initialization or schema verification fails.
        """
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._initialize_db()
            if not self._verify_schema():
                raise RuntimeError(
                    f"Database schema verification failed for {db_path}. "
                    "Tables may not have been created properly."
                )
            logger.info(f"Initialized CouncilStorage at {db_path}")

        except Exception as e:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

            logger.error(
                f"Failed to initialize CouncilStorage at {db_path}: {e}", exc_info=True
            )
            raise RuntimeError(
                f"Database initialization failed: {e}. "
                "Check logs and file permissions."
            ) from e

    @property
    def conn(self) -> sqlite3.Connection:
        """Get database connection, creating if needed."""
        if self._conn is None:
            # Background persistence tasks may run from worker threads
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.row_factory = sqlite3.Row
        return self._conn

    @contextmanager
    def transaction(self):
        """Context manager for database transactions with automatic rollback on error."""
        conn = self.conn
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Transaction rolled back due to error: {e}")
            raise

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS negotiation_rounds (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT NOT NULL,
                    round_number INTEGER NOT NULL,
                    average_similarity REAL,
                    min_similarity REAL,
                    max_similarity REAL,
                    below_threshold_count INTEGER,
                    convergence_velocity REAL,
                    deadlock_risk TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (request_id, round_number)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS negotiation_responses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT NOT NULL,
                    round_number INTEGER NOT NULL,
                    council_member_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    agrees_with_member_id TEXT,
                    token_count INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (request_id, round_number, council_member_id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS consensus_decisions (
                    request_id TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    confidence TEXT NOT NULL,
                    agreement_level REAL NOT NULL,
                    synthesis_strategy TEXT NOT NULL,
                    contributing_members TEXT NOT NULL,
                    total_rounds INTEGER,
                    consensus_achieved INTEGER,
                    fallback_used INTEGER,
                    fallback_reason TEXT,
                    deadlock_detected INTEGER,
                    human_escalation_triggered INTEGER,
                    metadata TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS escalation_queue (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    reviewed_at TEXT,
                    reviewed_by TEXT,
                    resolution TEXT
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS negotiation_examples (
                    id TEXT PRIMARY KEY,
                    category TEXT NOT NULL,
                    query_context TEXT NOT NULL,
                    disagreement TEXT NOT NULL,
                    resolution TEXT NOT NULL,
                    rounds_to_consensus INTEGER NOT NULL,
                    final_similarity REAL NOT NULL,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_responses_round
                ON negotiation_responses(request_id, round_number)
            """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_escalation_status
                ON escalation_queue(status, created_at)
            """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_examples_category
                ON negotiation_examples(category, created_at DESC)
            """
            )

            logger.debug("Database schema and indexes initialized successfully")

    def _verify_schema(self) -> bool:
        """Verify that the database schema was properly created.

        Returns:
            True if all required tables exist, False otherwise.
        """
        cursor = self.conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        )
        tables = {row[0] for row in cursor.fetchall()}

        if not REQUIRED_TABLES.issubset(tables):
            logger.error(f"Missing required tables: {REQUIRED_TABLES - tables}")
            return False

        if self.db_path != ":memory:" and os.path.getsize(self.db_path) == 0:
            logger.error(f"Database file exists but is empty (0 bytes): {self.db_path}")
            return False

        return True

    # ------------------------------------------------------------------
    # Rounds and responses
    # ------------------------------------------------------------------

    def save_round(
        self,
        request_id: str,
        round_number: int,
        exchanges: Sequence[Exchange],
        similarity: Optional[SimilarityResult] = None,
        trend: Optional[ConvergenceTrend] = None,
    ) -> None:
        """Save one round's statistics and every member response in it.

        Raises:
            sqlite3.IntegrityError: If the round was already saved for this request
        """
        now = datetime.now().isoformat()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO negotiation_rounds (
                    request_id, round_number, average_similarity, min_similarity,
                    max_similarity, below_threshold_count, convergence_velocity,
                    deadlock_risk, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request_id,
                    round_number,
                    similarity.average_similarity if similarity else None,
                    similarity.min_similarity if similarity else None,
                    similarity.max_similarity if similarity else None,
                    len(similarity.below_threshold_pairs) if similarity else None,
                    trend.velocity if trend else None,
                    trend.deadlock_risk if trend else None,
                    now,
                ),
            )
            conn.executemany(
                """
                INSERT INTO negotiation_responses (
                    request_id, round_number, council_member_id, content,
                    agrees_with_member_id, token_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        request_id,
                        round_number,
                        e.council_member_id,
                        e.content,
                        e.references_to[0] if e.references_to else None,
                        e.token_usage.total_tokens,
                        now,
                    )
                    for e in exchanges
                ],
            )
        logger.debug(
            f"Saved round {round_number} for request {request_id} "
            f"({len(exchanges)} responses)"
        )

    def get_rounds(self, request_id: str) -> List[dict]:
        """Round statistics for a request, ordered by round number."""
        cursor = self.conn.execute(
            """
            SELECT round_number, average_similarity, min_similarity, max_similarity,
                   below_threshold_count, convergence_velocity, deadlock_risk, created_at
            FROM negotiation_rounds
            WHERE request_id = ?
            ORDER BY round_number
            """,
            (request_id,),
        )
        return [dict(row) for row in cursor.fetchall()]

    def get_responses(
        self, request_id: str, round_number: Optional[int] = None
    ) -> List[dict]:
        """Stored responses for a request, optionally limited to one round."""
        query = """
            SELECT round_number, council_member_id, content, agrees_with_member_id, token_count
            FROM negotiation_responses
            WHERE request_id = ?
        """
        params: tuple = (request_id,)
        if round_number is not None:
            query += " AND round_number = ?"
            params = (request_id, round_number)
        query += " ORDER BY round_number, id"

        cursor = self.conn.execute(query, params)
        return [dict(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def save_decision(self, request_id: str, decision: ConsensusDecision) -> None:
        """Save (or replace) the final decision for a request."""
        meta = decision.iterative_consensus_metadata
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO consensus_decisions (
                    request_id, content, confidence, agreement_level, synthesis_strategy,
                    contributing_members, total_rounds, consensus_achieved, fallback_used,
                    fallback_reason, deadlock_detected, human_escalation_triggered,
                    metadata, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request_id,
                    decision.content,
                    decision.confidence,
                    decision.agreement_level,
                    decision.synthesis_strategy,
                    json.dumps(decision.contributing_members),
                    meta.total_rounds if meta else None,
                    int(meta.consensus_achieved) if meta else None,
                    int(meta.fallback_used) if meta else None,
                    meta.fallback_reason if meta else None,
                    int(meta.deadlock_detected) if meta else None,
                    int(meta.human_escalation_triggered) if meta else None,
                    meta.model_dump_json() if meta else None,
                    decision.timestamp.isoformat(),
                ),
            )
        logger.info(f"Saved decision for request {request_id}")

    def get_decision(self, request_id: str) -> Optional[ConsensusDecision]:
        """Retrieve a decision by request id.

        Returns:
            ConsensusDecision if found, None otherwise
        """
        cursor = self.conn.execute(
            """
            SELECT content, confidence, agreement_level, synthesis_strategy,
                   contributing_members, metadata, created_at
            FROM consensus_decisions
            WHERE request_id = ?
            """,
            (request_id,),
        )
        row = cursor.fetchone()
        if row is None:
            return None

        return ConsensusDecision(
            content=row["content"],
            confidence=row["confidence"],
            agreement_level=row["agreement_level"],
            synthesis_strategy=row["synthesis_strategy"],
            contributing_members=json.loads(row["contributing_members"]),
            timestamp=datetime.fromisoformat(row["created_at"]),
            iterative_consensus_metadata=(
                json.loads(row["metadata"]) if row["metadata"] else None
            ),
        )

    # ------------------------------------------------------------------
    # Escalation queue
    # ------------------------------------------------------------------

    def insert_escalation(
        self,
        escalation_id: str,
        request_id: str,
        reason: str,
        status: str,
        created_at: datetime,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO escalation_queue (id, request_id, reason, status, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (escalation_id, request_id, reason, status, created_at.isoformat()),
            )

    def has_pending_escalation(self, request_id: str) -> bool:
        cursor = self.conn.execute(
            "SELECT 1 FROM escalation_queue WHERE request_id = ? AND status = 'pending'",
            (request_id,),
        )
        return cursor.fetchone() is not None

    def count_escalations_since(self, since: datetime) -> int:
        """Escalations actually queued (not rate limited) at or after ``since``."""
        cursor = self.conn.execute(
            """
            SELECT COUNT(*) FROM escalation_queue
            WHERE status != 'rate_limited' AND created_at >= ?
            """,
            (since.isoformat(),),
        )
        return cursor.fetchone()[0]

    def list_escalations(self, status: str = "pending") -> List[dict]:
        """Escalations with the given status, oldest first."""
        cursor = self.conn.execute(
            """
            SELECT id, request_id, reason, status, created_at,
                   reviewed_at, reviewed_by, resolution
            FROM escalation_queue
            WHERE status = ?
            ORDER BY created_at ASC
            """,
            (status,),
        )
        return [dict(row) for row in cursor.fetchall()]

    def resolve_escalation(
        self, escalation_id: str, reviewed_by: str, resolution: str, reviewed_at: datetime
    ) -> bool:
        """Mark an escalation resolved. Returns False if no such escalation exists."""
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE escalation_queue
                SET status = 'resolved', reviewed_at = ?, reviewed_by = ?, resolution = ?
                WHERE id = ?
                """,
                (reviewed_at.isoformat(), reviewed_by, resolution, escalation_id),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Negotiation examples
    # ------------------------------------------------------------------

    def save_example(self, example: NegotiationExample) -> str:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO negotiation_examples (
                    id, category, query_context, disagreement, resolution,
                    rounds_to_consensus, final_similarity, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    example.id,
                    example.category,
                    example.query_context,
                    example.disagreement,
                    example.resolution,
                    example.rounds_to_consensus,
                    example.final_similarity,
                    example.created_at.isoformat(),
                ),
            )
        return example.id

    def list_examples(
        self, category: Optional[str] = None, limit: int = 100
    ) -> List[NegotiationExample]:
        """Examples ordered newest first, optionally filtered by category."""
        query = """
            SELECT id, category, query_context, disagreement, resolution,
                   rounds_to_consensus, final_similarity, created_at
            FROM negotiation_examples
        """
        params: tuple = ()
        if category is not None:
            query += " WHERE category = ?"
            params = (category,)
        query += " ORDER BY created_at DESC LIMIT ?"
        params = params + (limit,)

        cursor = self.conn.execute(query, params)
        return [self._row_to_example(row) for row in cursor.fetchall()]

    def count_examples(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM negotiation_examples").fetchone()[0]

    def close(self) -> None:
        """Close database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Closed database connection")

    @staticmethod
    def _row_to_example(row: sqlite3.Row) -> NegotiationExample:
        return NegotiationExample(
            id=row["id"],
            category=row["category"],
            query_context=row["query_context"],
            disagreement=row["disagreement"],
            resolution=row["resolution"],
            rounds_to_consensus=row["rounds_to_consensus"],
            final_similarity=row["final_similarity"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
