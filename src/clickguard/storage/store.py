"""Click Store - sqlite-backed durable store for clicks, labels, enrichments and models."""

import asyncio
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import Callable, Iterator, List, Optional, Tuple, TypeVar

from clickguard.alerts.models import AlertEvent
from clickguard.enrichment.models import IPEnrichment
from clickguard.scoring.models import ModelStatus, ScoringModel
from clickguard.storage.models import ClickEvent, FraudDetection, ensure_utc


logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreError(Exception):
    """A durable-store operation failed."""


def _ts(value: datetime) -> str:
    # Fixed-width UTC ISO strings sort chronologically as text
    return ensure_utc(value).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class ClickStore:
    """
    Durable store behind the scoring core.
    
    Every public method is a coroutine that runs its sqlite work on a
    worker thread, so queries issued together with asyncio.gather overlap
    and the event loop stays free during I/O. Uses one persistent
    connection for in-memory databases, a connection per call otherwise.
    """
    
    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the store.
        
        Args:
            db_path: Path to SQLite database. If None, uses in-memory DB.
        """
        self.db_path = db_path or ":memory:"
        self._lock = threading.RLock()
        
        # Keep persistent connection for in-memory DBs
        self._conn: Optional[sqlite3.Connection] = None
        if self.db_path == ":memory:":
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        
        self._init_db()
        
        logger.info(f"Click Store initialized: {self.db_path}")
    
    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection."""
        if self._conn:
            return self._conn
        return sqlite3.connect(self.db_path)
    
    def _close_connection(self, conn: sqlite3.Connection) -> None:
        """Close connection if not persistent."""
        if conn != self._conn:
            conn.close()
    
    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                yield cursor
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(str(e)) from e
            finally:
                self._close_connection(conn)
    
    def _execute(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        with self._cursor() as cursor:
            return work(cursor)
    
    async def _run(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        """Run `work` inside one transaction on a worker thread."""
        return await asyncio.to_thread(self._execute, work)
    
    # ------------------------------------------------------------------
    # Clicks and labels
    # ------------------------------------------------------------------
    
    async def insert_click(self, click: ClickEvent) -> None:
        """Insert (or replace) a raw click event."""
        def work(cursor: sqlite3.Cursor) -> None:
            cursor.execute(
                """INSERT OR REPLACE INTO raw_events
                   (click_id, account_id, ip_address, event_timestamp, device_type,
                    country_code, cost_micros, campaign_id, is_vpn, is_hosting,
                    risk_score, is_fraud)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    click.click_id,
                    click.account_id,
                    click.ip_address,
                    _ts(click.timestamp),
                    click.device_type,
                    click.country_code,
                    click.cost_micros,
                    click.campaign_id,
                    1 if click.is_vpn else 0,
                    1 if click.is_hosting else 0,
                    click.risk_score,
                    None if click.is_fraud is None else int(click.is_fraud),
                )
            )
        
        await self._run(work)
    
    async def insert_detection(self, detection: FraudDetection) -> None:
        """Insert a fraud detection; this labels its click as fraud for training."""
        def work(cursor: sqlite3.Cursor) -> None:
            cursor.execute(
                """INSERT INTO fraud_detections
                   (detection_id, click_id, account_id, pattern_type, severity,
                    fraud_score, detected_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    detection.detection_id,
                    detection.click_id,
                    detection.account_id,
                    detection.pattern_type,
                    detection.severity,
                    detection.fraud_score,
                    _ts(detection.detected_at),
                )
            )
        
        await self._run(work)
    
    async def get_training_clicks(
        self,
        account_id: str,
        limit: int = 5000,
    ) -> List[Tuple[ClickEvent, bool]]:
        """Most recent clicks of an account, each paired with its fraud label."""
        def work(cursor: sqlite3.Cursor) -> list:
            cursor.execute(
                """SELECT r.*,
                          EXISTS(SELECT 1 FROM fraud_detections d
                                 WHERE d.click_id = r.click_id) AS labeled
                   FROM raw_events r
                   WHERE r.account_id = ?
                   ORDER BY r.event_timestamp DESC, r.rowid DESC
                   LIMIT ?""",
                (account_id, limit)
            )
            return cursor.fetchall()
        
        rows = await self._run(work)
        return [(self._row_to_click(row[:12]), bool(row[12])) for row in rows]
    
    async def get_previous_click_time(
        self,
        account_id: str,
        ip_address: str,
        before: datetime,
    ) -> Optional[datetime]:
        """Timestamp of the latest click from an IP strictly before `before`."""
        def work(cursor: sqlite3.Cursor) -> Optional[tuple]:
            cursor.execute(
                """SELECT MAX(event_timestamp) FROM raw_events
                   WHERE account_id = ? AND ip_address = ? AND event_timestamp < ?""",
                (account_id, ip_address, _ts(before))
            )
            return cursor.fetchone()
        
        row = await self._run(work)
        return _parse_ts(row[0]) if row else None
    
    async def _count(self, query: str, params: tuple) -> int:
        def work(cursor: sqlite3.Cursor) -> int:
            cursor.execute(query, params)
            return cursor.fetchone()[0]
        
        return await self._run(work)
    
    async def count_clicks_from_ip(
        self,
        account_id: str,
        ip_address: str,
        since: datetime,
    ) -> int:
        """Clicks from an IP at or after `since`."""
        return await self._count(
            """SELECT COUNT(*) FROM raw_events
               WHERE account_id = ? AND ip_address = ? AND event_timestamp >= ?""",
            (account_id, ip_address, _ts(since))
        )
    
    async def count_clicks(self, account_id: str, since: datetime) -> int:
        return await self._count(
            "SELECT COUNT(*) FROM raw_events WHERE account_id = ? AND event_timestamp >= ?",
            (account_id, _ts(since))
        )
    
    async def count_detections(self, account_id: str, since: datetime) -> int:
        return await self._count(
            "SELECT COUNT(*) FROM fraud_detections WHERE account_id = ? AND detected_at >= ?",
            (account_id, _ts(since))
        )
    
    async def sum_cost_micros(self, account_id: str, since: datetime) -> int:
        return await self._count(
            """SELECT COALESCE(SUM(cost_micros), 0) FROM raw_events
               WHERE account_id = ? AND event_timestamp >= ?""",
            (account_id, _ts(since))
        )
    
    async def list_clicks(
        self,
        account_id: str,
        limit: int = 100,
        offset: int = 0,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Tuple[List[ClickEvent], int]:
        """A page of clicks (newest first) and the total matching count."""
        where = "account_id = ?"
        params: list = [account_id]
        if start:
            where += " AND event_timestamp >= ?"
            params.append(_ts(start))
        if end:
            where += " AND event_timestamp <= ?"
            params.append(_ts(end))
        
        def work(cursor: sqlite3.Cursor) -> Tuple[list, int]:
            cursor.execute(f"SELECT COUNT(*) FROM raw_events WHERE {where}", params)
            total = cursor.fetchone()[0]
            
            cursor.execute(
                f"""SELECT * FROM raw_events WHERE {where}
                    ORDER BY event_timestamp DESC, rowid DESC
                    LIMIT ? OFFSET ?""",
                params + [limit, offset]
            )
            return cursor.fetchall(), total
        
        rows, total = await self._run(work)
        return [self._row_to_click(row) for row in rows], total
    
    async def list_detections(
        self,
        account_id: str,
        limit: int = 100,
        severity: Optional[str] = None,
    ) -> List[FraudDetection]:
        """Most recent detections of an account, optionally for one severity."""
        query = "SELECT * FROM fraud_detections WHERE account_id = ?"
        params: list = [account_id]
        if severity:
            query += " AND severity = ?"
            params.append(severity)
        query += " ORDER BY detected_at DESC LIMIT ?"
        params.append(limit)
        
        def work(cursor: sqlite3.Cursor) -> list:
            cursor.execute(query, params)
            return cursor.fetchall()
        
        rows = await self._run(work)
        return [self._row_to_detection(row) for row in rows]
    
    # ------------------------------------------------------------------
    # IP enrichments
    # ------------------------------------------------------------------
    
    async def upsert_enrichment(self, enrichment: IPEnrichment) -> None:
        """Insert or overwrite the enrichment for an IP."""
        data = enrichment.model_dump_json(exclude={"source"})
        
        def work(cursor: sqlite3.Cursor) -> None:
            cursor.execute(
                """INSERT INTO ip_enrichments
                   (ip_address, risk_score, risk_level, enriched_at, data)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(ip_address) DO UPDATE SET
                    risk_score = excluded.risk_score,
                    risk_level = excluded.risk_level,
                    enriched_at = excluded.enriched_at,
                    data = excluded.data""",
                (
                    enrichment.ip,
                    enrichment.risk_score,
                    enrichment.risk_level.value,
                    _ts(enrichment.enriched_at),
                    data,
                )
            )
        
        await self._run(work)
    
    async def get_enrichment(self, ip: str) -> Optional[IPEnrichment]:
        """Stored enrichment for an IP regardless of age."""
        def work(cursor: sqlite3.Cursor) -> Optional[tuple]:
            cursor.execute("SELECT data FROM ip_enrichments WHERE ip_address = ?", (ip,))
            return cursor.fetchone()
        
        row = await self._run(work)
        if row:
            return IPEnrichment.model_validate_json(row[0])
        return None
    
    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------
    
    async def save_model(self, model: ScoringModel) -> None:
        """Persist a model as the account's active one; earlier active models go stale."""
        def work(cursor: sqlite3.Cursor) -> None:
            cursor.execute(
                """UPDATE ml_models SET status = ?
                   WHERE account_id = ? AND model_type = ? AND status = ?""",
                (
                    ModelStatus.STALE.value,
                    model.account_id,
                    model.model_type,
                    ModelStatus.ACTIVE.value,
                )
            )
            cursor.execute(
                """INSERT INTO ml_models
                   (model_id, account_id, model_type, weights, feature_names,
                    threshold, trained_at, status)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    model.model_id,
                    model.account_id,
                    model.model_type,
                    json.dumps(model.weights),
                    json.dumps(model.feature_names),
                    model.threshold,
                    _ts(model.trained_at),
                    ModelStatus.ACTIVE.value,
                )
            )
        
        await self._run(work)
        logger.info(f"Model {model.model_id} saved as active for {model.account_id}")
    
    async def load_active_model(
        self,
        account_id: str,
        model_type: str = "fraud_detection",
    ) -> Optional[ScoringModel]:
        def work(cursor: sqlite3.Cursor) -> Optional[tuple]:
            cursor.execute(
                """SELECT * FROM ml_models
                   WHERE account_id = ? AND model_type = ? AND status = ?
                   ORDER BY trained_at DESC LIMIT 1""",
                (account_id, model_type, ModelStatus.ACTIVE.value)
            )
            return cursor.fetchone()
        
        row = await self._run(work)
        if row:
            return self._row_to_model(row)
        return None
    
    async def list_models(self, account_id: str) -> List[ScoringModel]:
        """All models of an account, newest first."""
        def work(cursor: sqlite3.Cursor) -> list:
            cursor.execute(
                "SELECT * FROM ml_models WHERE account_id = ? ORDER BY trained_at DESC",
                (account_id,)
            )
            return cursor.fetchall()
        
        rows = await self._run(work)
        return [self._row_to_model(row) for row in rows]
    
    # ------------------------------------------------------------------
    # Dashboard collaborators: quiet index, alerts, alert settings
    # ------------------------------------------------------------------
    
    async def record_quiet_index(
        self,
        account_id: str,
        qi_score: float,
        calculated_at: Optional[datetime] = None,
    ) -> None:
        stamp = _ts(calculated_at or datetime.now(UTC))
        
        def work(cursor: sqlite3.Cursor) -> None:
            cursor.execute(
                """INSERT INTO quiet_index_history (account_id, qi_score, calculated_at)
                   VALUES (?, ?, ?)""",
                (account_id, qi_score, stamp)
            )
        
        await self._run(work)
    
    async def get_latest_quiet_index(self, account_id: str) -> Optional[float]:
        def work(cursor: sqlite3.Cursor) -> Optional[tuple]:
            cursor.execute(
                """SELECT qi_score FROM quiet_index_history
                   WHERE account_id = ?
                   ORDER BY calculated_at DESC, id DESC LIMIT 1""",
                (account_id,)
            )
            return cursor.fetchone()
        
        row = await self._run(work)
        return row[0] if row else None
    
    async def insert_alert(self, event: AlertEvent) -> None:
        """Record a fired alert as active."""
        def work(cursor: sqlite3.Cursor) -> None:
            cursor.execute(
                """INSERT INTO alerts
                   (alert_id, account_id, click_id, ip_address, score, pattern,
                    severity, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?)""",
                (
                    event.alert_id,
                    event.account_id,
                    event.click_id,
                    event.ip,
                    event.score,
                    event.pattern.value,
                    event.severity.value,
                    _ts(event.timestamp),
                )
            )
        
        await self._run(work)
    
    async def resolve_alert(self, alert_id: str) -> None:
        def work(cursor: sqlite3.Cursor) -> None:
            cursor.execute(
                "UPDATE alerts SET status = 'resolved' WHERE alert_id = ?",
                (alert_id,)
            )
        
        await self._run(work)
    
    async def count_active_alerts(self, account_id: str) -> int:
        return await self._count(
            "SELECT COUNT(*) FROM alerts WHERE account_id = ? AND status = 'active'",
            (account_id,)
        )
    
    async def set_alert_threshold(self, account_id: str, threshold: float) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Alert threshold must be within [0, 1], got {threshold}")
        
        def work(cursor: sqlite3.Cursor) -> None:
            cursor.execute(
                """INSERT INTO alert_settings (account_id, threshold) VALUES (?, ?)
                   ON CONFLICT(account_id) DO UPDATE SET threshold = excluded.threshold""",
                (account_id, threshold)
            )
        
        await self._run(work)
    
    async def get_alert_threshold(self, account_id: str) -> Optional[float]:
        def work(cursor: sqlite3.Cursor) -> Optional[tuple]:
            cursor.execute(
                "SELECT threshold FROM alert_settings WHERE account_id = ?",
                (account_id,)
            )
            return cursor.fetchone()
        
        row = await self._run(work)
        return row[0] if row else None
    
    # ------------------------------------------------------------------
    # Schema and row mapping
    # ------------------------------------------------------------------
    
    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._cursor() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS raw_events (
                    click_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    ip_address TEXT NOT NULL,
                    event_timestamp TEXT NOT NULL,
                    device_type TEXT,
                    country_code TEXT,
                    cost_micros INTEGER DEFAULT 0,
                    campaign_id TEXT,
                    is_vpn INTEGER DEFAULT 0,
                    is_hosting INTEGER DEFAULT 0,
                    risk_score INTEGER DEFAULT 0,
                    is_fraud INTEGER
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS fraud_detections (
                    detection_id TEXT PRIMARY KEY,
                    click_id TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    pattern_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    fraud_score REAL DEFAULT 0,
                    detected_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS ip_enrichments (
                    ip_address TEXT PRIMARY KEY,
                    risk_score INTEGER NOT NULL,
                    risk_level TEXT NOT NULL,
                    enriched_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS ml_models (
                    model_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    model_type TEXT NOT NULL,
                    weights TEXT NOT NULL,
                    feature_names TEXT NOT NULL,
                    threshold REAL NOT NULL,
                    trained_at TEXT NOT NULL,
                    status TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    alert_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    click_id TEXT,
                    ip_address TEXT NOT NULL,
                    score REAL NOT NULL,
                    pattern TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS quiet_index_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    qi_score REAL NOT NULL,
                    calculated_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alert_settings (
                    account_id TEXT PRIMARY KEY,
                    threshold REAL NOT NULL
                )
            """)
            
            # Indexes
            cursor.execute(
                """CREATE INDEX IF NOT EXISTS idx_events_account_ip
                   ON raw_events(account_id, ip_address, event_timestamp)"""
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_account_time ON raw_events(account_id, event_timestamp)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_detections_click ON fraud_detections(click_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_models_account ON ml_models(account_id, status)"
            )
    
    def _row_to_click(self, row: tuple) -> ClickEvent:
        """Convert database row to ClickEvent."""
        return ClickEvent(
            click_id=row[0],
            account_id=row[1],
            ip_address=row[2],
            timestamp=datetime.fromisoformat(row[3]),
            device_type=row[4] or "UNKNOWN",
            country_code=row[5] or "XX",
            cost_micros=row[6] or 0,
            campaign_id=row[7],
            is_vpn=bool(row[8]),
            is_hosting=bool(row[9]),
            risk_score=row[10] or 0,
            is_fraud=None if row[11] is None else bool(row[11]),
        )
    
    def _row_to_detection(self, row: tuple) -> FraudDetection:
        """Convert database row to FraudDetection."""
        return FraudDetection(
            detection_id=row[0],
            click_id=row[1],
            account_id=row[2],
            pattern_type=row[3],
            severity=row[4],
            fraud_score=row[5],
            detected_at=datetime.fromisoformat(row[6]),
        )
    
    def _row_to_model(self, row: tuple) -> ScoringModel:
        """Convert database row to ScoringModel."""
        return ScoringModel(
            model_id=row[0],
            account_id=row[1],
            model_type=row[2],
            weights=json.loads(row[3]),
            feature_names=json.loads(row[4]),
            threshold=row[5],
            trained_at=datetime.fromisoformat(row[6]),
            status=ModelStatus(row[7]),
        )
    
    def close(self) -> None:
        """Close persistent connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
