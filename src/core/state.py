"""Persistent state management using SQLite."""

import asyncio
import json
import time
import uuid
from pathlib import Path
from typing import Any, Optional, Protocol
from dataclasses import dataclass, field
from enum import Enum

import aiosqlite
import structlog

logger = structlog.get_logger()


class RunStatus(Enum):
    """Automation run status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass
class AgentProfile:
    """A configured LLM agent."""
    id: str
    agent_name: str = ""
    agent_role: str = ""
    agent_goal: str = ""
    agent_rules: str = ""
    agent_memory: list[dict[str, Any]] = field(default_factory=list)
    llm_provider: str = "openai"
    model: Optional[str] = None
    api_key: Optional[str] = None


@dataclass
class RunRecord:
    """Automation run record."""
    id: str
    automation_id: Optional[str]
    user_id: Optional[str]
    status: str
    trigger_data: dict[str, Any]
    details: dict[str, Any]
    error: Optional[dict[str, Any]]
    result: Any
    duration_ms: Optional[int]
    created_at: float
    updated_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "automation_id": self.automation_id,
            "user_id": self.user_id,
            "status": self.status,
            "trigger_data": self.trigger_data,
            "details_log": self.details,
            "error": self.error,
            "result": self.result,
            "duration_ms": self.duration_ms,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class CredentialStore(Protocol):
    async def load_credentials(self, user_id: str) -> dict[str, dict[str, Any]]: ...


class AgentRegistry(Protocol):
    async def get_agent(self, agent_id: str) -> Optional[AgentProfile]: ...

    async def update_agent_memory(self, agent_id: str, memory: list[dict[str, Any]]) -> None: ...


class ProgressSink(Protocol):
    async def save_progress(self, run_id: str, details: dict[str, Any]) -> None: ...


class StateManager:
    """
    SQLite-backed store for credentials, agents and run records.

    Implements the credential store, agent registry, progress sink and run
    store used by the engine.
    """

    def __init__(self, db_path: str = "./data/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database and create tables."""
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row

        await self._db.executescript("""
            -- Per-user platform credentials, JSON encoded
            CREATE TABLE IF NOT EXISTS platform_credentials (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                platform_name TEXT NOT NULL,
                credentials_json TEXT NOT NULL,
                is_active INTEGER DEFAULT 1,
                created_at REAL NOT NULL
            );

            -- Agent profiles
            CREATE TABLE IF NOT EXISTS ai_agents (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                agent_name TEXT,
                agent_role TEXT,
                agent_goal TEXT,
                agent_rules TEXT,
                agent_memory_json TEXT DEFAULT '[]',
                llm_provider TEXT DEFAULT 'openai',
                model TEXT,
                api_key TEXT,
                updated_at REAL NOT NULL
            );

            -- Automation runs
            CREATE TABLE IF NOT EXISTS automation_runs (
                id TEXT PRIMARY KEY,
                automation_id TEXT,
                user_id TEXT,
                status TEXT NOT NULL,
                trigger_data_json TEXT,
                details_json TEXT,
                error_json TEXT,
                result_json TEXT,
                duration_ms INTEGER,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_credentials_user ON platform_credentials(user_id, is_active);
            CREATE INDEX IF NOT EXISTS idx_runs_status ON automation_runs(status);
            CREATE INDEX IF NOT EXISTS idx_runs_automation ON automation_runs(automation_id);
        """)
        await self._db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    # ==================== Credentials ====================

    async def add_credentials(
        self,
        user_id: str,
        platform_name: str,
        credentials: dict[str, Any],
        is_active: bool = True,
    ) -> str:
        """Store a credential set for a user and platform."""
        async with self._lock:
            credential_id = str(uuid.uuid4())
            await self._db.execute("""
                INSERT INTO platform_credentials
                (id, user_id, platform_name, credentials_json, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                credential_id,
                user_id,
                platform_name,
                json.dumps(credentials),
                int(is_active),
                time.time(),
            ))
            await self._db.commit()
            return credential_id

    async def load_credentials(self, user_id: str) -> dict[str, dict[str, Any]]:
        """
        Load all active credentials for a user, keyed by lower-cased platform.

        Rows whose JSON cannot be decoded are logged and skipped.
        """
        cursor = await self._db.execute(
            "SELECT * FROM platform_credentials WHERE user_id = ? AND is_active = 1 "
            "ORDER BY created_at ASC",
            (user_id,)
        )
        rows = await cursor.fetchall()

        credentials: dict[str, dict[str, Any]] = {}
        for row in rows:
            try:
                fields = json.loads(row["credentials_json"])
            except json.JSONDecodeError as e:
                logger.warning(
                    "credential_parse_failed",
                    platform=row["platform_name"],
                    credential_id=row["id"],
                    error=str(e),
                )
                continue
            if not isinstance(fields, dict):
                logger.warning(
                    "credential_parse_failed",
                    platform=row["platform_name"],
                    credential_id=row["id"],
                    error="credentials are not an object",
                )
                continue
            credentials[row["platform_name"].lower()] = fields

        return credentials

    # ==================== Agents ====================

    async def add_agent(self, profile: AgentProfile, user_id: Optional[str] = None) -> None:
        """Insert or replace an agent profile."""
        async with self._lock:
            await self._db.execute("""
                INSERT OR REPLACE INTO ai_agents
                (id, user_id, agent_name, agent_role, agent_goal, agent_rules,
                 agent_memory_json, llm_provider, model, api_key, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                profile.id,
                user_id,
                profile.agent_name,
                profile.agent_role,
                profile.agent_goal,
                profile.agent_rules,
                json.dumps(profile.agent_memory),
                profile.llm_provider,
                profile.model,
                profile.api_key,
                time.time(),
            ))
            await self._db.commit()

    async def get_agent(self, agent_id: str) -> Optional[AgentProfile]:
        """Get agent profile by ID."""
        cursor = await self._db.execute(
            "SELECT * FROM ai_agents WHERE id = ?",
            (agent_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None

        return AgentProfile(
            id=row["id"],
            agent_name=row["agent_name"] or "",
            agent_role=row["agent_role"] or "",
            agent_goal=row["agent_goal"] or "",
            agent_rules=row["agent_rules"] or "",
            agent_memory=json.loads(row["agent_memory_json"] or "[]"),
            llm_provider=row["llm_provider"] or "openai",
            model=row["model"],
            api_key=row["api_key"],
        )

    async def update_agent_memory(self, agent_id: str, memory: list[dict[str, Any]]) -> None:
        """Replace an agent's memory."""
        async with self._lock:
            await self._db.execute(
                "UPDATE ai_agents SET agent_memory_json = ?, updated_at = ? WHERE id = ?",
                (json.dumps(memory, default=str), time.time(), agent_id)
            )
            await self._db.commit()

    # ==================== Runs ====================

    async def create_run(
        self,
        automation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        trigger_data: Optional[dict] = None,
        run_id: Optional[str] = None,
    ) -> RunRecord:
        """Create a new pending run record."""
        async with self._lock:
            run_id = run_id or str(uuid.uuid4())
            now = time.time()
            await self._db.execute("""
                INSERT INTO automation_runs
                (id, automation_id, user_id, status, trigger_data_json,
                 details_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                run_id,
                automation_id,
                user_id,
                RunStatus.PENDING.value,
                json.dumps(trigger_data or {}, default=str),
                json.dumps({}),
                now,
                now,
            ))
            await self._db.commit()

            return RunRecord(
                id=run_id,
                automation_id=automation_id,
                user_id=user_id,
                status=RunStatus.PENDING.value,
                trigger_data=trigger_data or {},
                details={},
                error=None,
                result=None,
                duration_ms=None,
                created_at=now,
                updated_at=now,
            )

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        duration_ms: Optional[int] = None,
        error: Optional[dict] = None,
        result: Any = None,
    ) -> None:
        """Update run status."""
        async with self._lock:
            updates = ["status = ?", "updated_at = ?"]
            params: list[Any] = [status.value, time.time()]

            if duration_ms is not None:
                updates.append("duration_ms = ?")
                params.append(duration_ms)

            if error is not None:
                updates.append("error_json = ?")
                params.append(json.dumps(error, default=str))

            if result is not None:
                updates.append("result_json = ?")
                params.append(json.dumps(result, default=str))

            params.append(run_id)
            await self._db.execute(
                f"UPDATE automation_runs SET {', '.join(updates)} WHERE id = ?",
                params
            )
            await self._db.commit()

    async def save_progress(self, run_id: str, details: dict[str, Any]) -> None:
        """Persist the progress snapshot of a run."""
        async with self._lock:
            await self._db.execute(
                "UPDATE automation_runs SET details_json = ?, updated_at = ? WHERE id = ?",
                (json.dumps(details, default=str), time.time(), run_id)
            )
            await self._db.commit()

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        """Get run by ID."""
        cursor = await self._db.execute(
            "SELECT * FROM automation_runs WHERE id = ?",
            (run_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return self._row_to_run(row)

    async def get_runs_by_status(self, status: RunStatus, limit: int = 100) -> list[RunRecord]:
        """Get runs in a status, newest first."""
        cursor = await self._db.execute("""
            SELECT * FROM automation_runs
            WHERE status = ?
            ORDER BY created_at DESC
            LIMIT ?
        """, (status.value, limit))
        rows = await cursor.fetchall()
        return [self._row_to_run(row) for row in rows]

    def _row_to_run(self, row) -> RunRecord:
        return RunRecord(
            id=row["id"],
            automation_id=row["automation_id"],
            user_id=row["user_id"],
            status=row["status"],
            trigger_data=json.loads(row["trigger_data_json"] or "{}"),
            details=json.loads(row["details_json"] or "{}"),
            error=json.loads(row["error_json"]) if row["error_json"] else None,
            result=json.loads(row["result_json"]) if row["result_json"] else None,
            duration_ms=row["duration_ms"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
