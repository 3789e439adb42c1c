"""
Append-only audit log of autonomous decisions and actions.

- SQLite storage (.hive-mind/autopilot_audit.db) via aiosqlite
- PII redaction of recorded details
- Review API that never rewrites recorded content
"""

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import aiosqlite

from autopilot.config import get_audit_db_path
from autopilot.models import Actor, AuditRecord, to_iso, utc_now


logger = logging.getLogger("audit")


# ============================================================================
# PII REDACTION
# ============================================================================

class PIIRedactor:
    """Masks contact details and secrets before they reach the audit log."""

    PATTERNS = {
        "email": (re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b'), "[EMAIL_REDACTED]"),
        "phone": (re.compile(r'(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}'), "[PHONE_REDACTED]"),
    }

    SENSITIVE_FIELDS: Set[str] = {
        "password", "secret", "token", "api_key", "apikey", "authorization", "credential",
    }

    @classmethod
    def redact_string(cls, text: str) -> str:
        result = text
        for pattern, mask in cls.PATTERNS.values():
            result = pattern.sub(mask, result)
        return result

    @classmethod
    def redact(cls, value: Any, depth: int = 0, max_depth: int = 10) -> Any:
        if depth > max_depth:
            return "[TRUNCATED]"
        if isinstance(value, dict):
            result = {}
            for key, item in value.items():
                key_lower = str(key).lower().replace("-", "_")
                if any(sensitive in key_lower for sensitive in cls.SENSITIVE_FIELDS):
                    result[key] = "[SENSITIVE_REDACTED]"
                else:
                    result[key] = cls.redact(item, depth + 1, max_depth)
            return result
        if isinstance(value, (list, tuple)):
            return [cls.redact(item, depth + 1, max_depth) for item in value]
        if isinstance(value, str):
            return cls.redact_string(value)
        return value


# ============================================================================
# RECORDER
# ============================================================================

class AuditRecorder:
    """
    Append-only audit store.

    record() is the only writer of content columns. mark_reviewed() touches
    only the review columns (reviewed, reviewed_at, reviewed_by).
    """

    def __init__(self, db_path: Optional[Path] = None, redact_pii: bool = True):
        self.db_path = Path(db_path) if db_path else get_audit_db_path()
        self.redact_pii = redact_pii
        self._write_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self.db_path)) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS audit_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    action_type TEXT NOT NULL,
                    description TEXT NOT NULL,
                    details TEXT NOT NULL,
                    is_simulation INTEGER NOT NULL DEFAULT 0,
                    approved INTEGER NOT NULL DEFAULT 1,
                    reviewed INTEGER NOT NULL DEFAULT 0,
                    reviewed_at TEXT,
                    reviewed_by TEXT
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_records_owner
                ON audit_records(owner_id, timestamp)
            """)
            await db.commit()

        self._initialized = True

    async def close(self) -> None:
        return None

    async def record(
        self,
        owner_id: str,
        action_type: str,
        description: str,
        details: Optional[Dict[str, Any]] = None,
        actor: Actor = Actor.AUTONOMOUS,
        is_simulation: bool = False,
        approved: Optional[bool] = None,
    ) -> int:
        """
        Append one record and return its id.

        approved defaults to "not a simulation": simulated runs wait for a
        human to approve them.
        """
        await self.initialize()

        details = details or {}
        if self.redact_pii:
            details = PIIRedactor.redact(details)

        entry = AuditRecord(
            actor=actor.value if isinstance(actor, Actor) else str(actor),
            owner_id=owner_id,
            action_type=action_type,
            description=description,
            details=details,
            is_simulation=is_simulation,
            approved=(not is_simulation) if approved is None else approved,
        )

        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                cursor = await db.execute(
                    """
                    INSERT INTO audit_records
                    (timestamp, actor, owner_id, action_type, description, details,
                     is_simulation, approved, reviewed)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)
                    """,
                    (
                        entry.timestamp,
                        entry.actor,
                        entry.owner_id,
                        entry.action_type,
                        entry.description,
                        json.dumps(entry.details, default=str),
                        int(entry.is_simulation),
                        int(entry.approved),
                    ),
                )
                record_id = cursor.lastrowid
                await db.commit()

        logger.debug("Audit #%s %s/%s: %s", record_id, owner_id, action_type, description)
        return record_id

    async def get_records(
        self,
        owner_id: Optional[str] = None,
        action_type: Optional[str] = None,
        reviewed: Optional[bool] = None,
        is_simulation: Optional[bool] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Query records, newest first."""
        await self.initialize()

        query = "SELECT * FROM audit_records WHERE 1=1"
        params: List[Any] = []
        if owner_id:
            query += " AND owner_id = ?"
            params.append(owner_id)
        if action_type:
            query += " AND action_type = ?"
            params.append(action_type)
        if reviewed is not None:
            query += " AND reviewed = ?"
            params.append(int(reviewed))
        if is_simulation is not None:
            query += " AND is_simulation = ?"
            params.append(int(is_simulation))
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()

        results = []
        for row in rows:
            record = dict(row)
            record["details"] = json.loads(record["details"]) if record["details"] else {}
            record["is_simulation"] = bool(record["is_simulation"])
            record["approved"] = bool(record["approved"])
            record["reviewed"] = bool(record["reviewed"])
            results.append(record)
        return results

    async def mark_reviewed(self, record_id: int, reviewer: str = "user") -> bool:
        """Flag a record as reviewed. Returns False if it does not exist."""
        await self.initialize()

        async with self._write_lock:
            async with aiosqlite.connect(str(self.db_path)) as db:
                cursor = await db.execute(
                    "UPDATE audit_records SET reviewed = 1, reviewed_at = ?, reviewed_by = ? WHERE id = ?",
                    (to_iso(utc_now()), reviewer, record_id),
                )
                await db.commit()
                return cursor.rowcount > 0

    async def count(self, owner_id: Optional[str] = None) -> int:
        await self.initialize()
        query = "SELECT COUNT(*) FROM audit_records"
        params: List[Any] = []
        if owner_id:
            query += " WHERE owner_id = ?"
            params.append(owner_id)
        async with aiosqlite.connect(str(self.db_path)) as db:
            async with db.execute(query, params) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0
