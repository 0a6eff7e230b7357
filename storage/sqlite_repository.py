"""SQLite-backed persistence layer for strategies, executions and opportunities."""
from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from constants import (
    DEFAULT_EXECUTION_INTERVAL,
    EXECUTION_INTERVALS,
    EXECUTION_PENDING,
    RISK_RANK,
    STRATEGY_ACTIVE,
    STRATEGY_STATUSES,
    TRIGGER_TYPES,
)
from storage.models import (
    OpportunityRecord,
    StrategyExecutionRecord,
    StrategyRecord,
    TelegramSubscriberRecord,
)
from strategy.errors import InvalidStrategy, LeaseLost, RepositoryUnavailable
from strategy.models import (
    ExecutionResult,
    actions_to_list,
    conditions_to_dict,
    parse_actions,
    parse_conditions,
)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_text(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(ISO_FORMAT)


def _from_text(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise InvalidStrategy(f"invalid timestamp: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_id_list(payload: dict, *keys: str) -> list[int]:
    raw = None
    for key in keys:
        if payload.get(key) is not None:
            raw = payload[key]
            break
    if not isinstance(raw, (list, tuple)) or not raw:
        raise InvalidStrategy(f"{keys[0]} must be a non-empty list of ids")
    try:
        return sorted({int(item) for item in raw})
    except (TypeError, ValueError):
        raise InvalidStrategy(f"{keys[0]} must contain integer ids") from None


def validate_strategy_payload(payload: dict) -> dict:
    """Normalises a strategy definition into column values or raises InvalidStrategy."""
    if not isinstance(payload, dict):
        raise InvalidStrategy("strategy definition must be an object")

    name = str(payload.get('name') or '').strip()
    if not name:
        raise InvalidStrategy("name is required")

    trigger_type = payload.get('trigger_type', payload.get('triggerType'))
    if trigger_type not in TRIGGER_TYPES:
        raise InvalidStrategy(f"trigger_type must be one of {', '.join(TRIGGER_TYPES)}")

    status = payload.get('status') or STRATEGY_ACTIVE
    if status not in STRATEGY_STATUSES:
        raise InvalidStrategy(f"status must be one of {', '.join(STRATEGY_STATUSES)}")

    interval = payload.get('execution_interval', payload.get('executionInterval')) or DEFAULT_EXECUTION_INTERVAL
    if interval not in EXECUTION_INTERVALS:
        raise InvalidStrategy(f"execution_interval must be one of {', '.join(EXECUTION_INTERVALS)}")

    max_gas_fee = payload.get('max_gas_fee', payload.get('maxGasFee'))
    if max_gas_fee is not None:
        try:
            max_gas_fee = float(max_gas_fee)
        except (TypeError, ValueError):
            raise InvalidStrategy("max_gas_fee must be a number") from None
        if max_gas_fee <= 0:
            raise InvalidStrategy("max_gas_fee must be positive")

    conditions = parse_conditions(trigger_type, payload.get('conditions'))
    actions = parse_actions(payload.get('actions'))
    user_id = payload.get('user_id', payload.get('userId'))

    return {
        'name': name,
        'description': payload.get('description'),
        'status': status,
        'trigger_type': trigger_type,
        'conditions': json.dumps(conditions_to_dict(conditions)),
        'actions': json.dumps(actions_to_list(actions)),
        'target_protocols': json.dumps(_parse_id_list(payload, 'target_protocols', 'targetProtocols')),
        'target_networks': json.dumps(_parse_id_list(payload, 'target_networks', 'targetNetworks')),
        'max_gas_fee': max_gas_fee,
        'execution_interval': interval,
        'next_scheduled_execution': _to_text(
            _parse_timestamp(payload.get('next_scheduled_execution', payload.get('nextScheduledExecution')))
        ),
        'user_id': int(user_id) if user_id is not None else None,
    }


class SQLiteRepository:
    """Provides async-friendly helpers for persisting strategy activity."""

    def __init__(self, db_path: Path | str = Path("data/yield_strategies.db")) -> None:
        self.db_path = Path(db_path)
        if self.db_path != Path(":memory:"):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(
            str(self.db_path),
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

    def _configure(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                pass
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    def _create_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS protocol (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                risk_level TEXT
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS network (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS opportunity (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                protocol_id INTEGER NOT NULL,
                network_id INTEGER NOT NULL,
                asset TEXT NOT NULL,
                apy REAL NOT NULL,
                tvl REAL,
                risk_level TEXT NOT NULL,
                pool_address TEXT,
                asset_address TEXT,
                external_id TEXT UNIQUE,
                refreshed_at TEXT NOT NULL,
                FOREIGN KEY (protocol_id) REFERENCES protocol(id) ON DELETE CASCADE,
                FOREIGN KEY (network_id) REFERENCES network(id) ON DELETE CASCADE
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS yield_strategy (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                trigger_type TEXT NOT NULL,
                conditions TEXT NOT NULL,
                actions TEXT NOT NULL,
                target_protocols TEXT NOT NULL,
                target_networks TEXT NOT NULL,
                max_gas_fee REAL,
                execution_interval TEXT NOT NULL DEFAULT 'hourly',
                next_scheduled_execution TEXT,
                total_executions INTEGER NOT NULL DEFAULT 0,
                total_invested REAL NOT NULL DEFAULT 0,
                total_return REAL NOT NULL DEFAULT 0,
                current_opportunity_id INTEGER,
                user_id INTEGER,
                created_at TEXT NOT NULL
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS strategy_execution (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                strategy_id INTEGER NOT NULL,
                action_type TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                executed_at TEXT,
                transaction_hash TEXT,
                gas_used INTEGER,
                gas_fee REAL,
                amount REAL,
                error_message TEXT,
                opportunity_id INTEGER,
                needs_reconciliation INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (strategy_id) REFERENCES yield_strategy(id) ON DELETE CASCADE
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS strategy_lease (
                strategy_id INTEGER PRIMARY KEY,
                owner_token TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                FOREIGN KEY (strategy_id) REFERENCES yield_strategy(id) ON DELETE CASCADE
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS telegram_subscriber (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id INTEGER NOT NULL UNIQUE,
                username TEXT,
                user_id INTEGER,
                subscribed INTEGER NOT NULL DEFAULT 0
            );
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_yield_strategy_due
                ON yield_strategy(status, next_scheduled_execution);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_strategy_execution_strategy
                ON strategy_execution(strategy_id, created_at);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_strategy_execution_status
                ON strategy_execution(status, created_at);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_opportunity_target
                ON opportunity(protocol_id, network_id);
            """,
        ]

        with self._lock:
            cursor = self._connection.cursor()
            for statement in statements:
                cursor.execute(statement)
            self._connection.commit()
            cursor.close()

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, *args)
        except sqlite3.OperationalError as exc:
            raise RepositoryUnavailable(str(exc)) from exc

    # --- Protocols, networks & opportunities ---

    async def upsert_protocol(self, name: str, risk_level: Optional[str] = None) -> int:
        return await self._run(self._upsert_protocol_sync, name, risk_level)

    def _upsert_protocol_sync(self, name: str, risk_level: Optional[str]) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            protocol_id = self._upsert_named(cursor, 'protocol', name)
            if risk_level:
                cursor.execute("UPDATE protocol SET risk_level = ? WHERE id = ?", (risk_level, protocol_id))
            self._connection.commit()
            cursor.close()
        return protocol_id

    async def upsert_network(self, name: str) -> int:
        return await self._run(self._upsert_network_sync, name)

    def _upsert_network_sync(self, name: str) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            network_id = self._upsert_named(cursor, 'network', name)
            self._connection.commit()
            cursor.close()
        return network_id

    @staticmethod
    def _upsert_named(cursor: sqlite3.Cursor, table: str, name: str) -> int:
        cursor.execute(f"INSERT OR IGNORE INTO {table} (name) VALUES (?)", (name,))
        cursor.execute(f"SELECT id FROM {table} WHERE name = ?", (name,))
        return cursor.fetchone()["id"]

    async def list_protocols(self) -> list[dict]:
        return await self._run(self._list_named_sync, 'protocol')

    async def list_networks(self) -> list[dict]:
        return await self._run(self._list_named_sync, 'network')

    def _list_named_sync(self, table: str) -> list[dict]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT * FROM {table} ORDER BY id")
            rows = cursor.fetchall()
            cursor.close()
        return [dict(row) for row in rows]

    async def upsert_opportunity(
        self,
        *,
        protocol: str,
        network: str,
        asset: str,
        apy: float,
        tvl: Optional[float],
        risk_level: str,
        refreshed_at: Optional[datetime] = None,
        pool_address: Optional[str] = None,
        asset_address: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> int:
        return await self._run(
            self._upsert_opportunity_sync,
            protocol,
            network,
            asset,
            apy,
            tvl,
            risk_level,
            refreshed_at or _utcnow(),
            pool_address,
            asset_address,
            external_id,
        )

    def _upsert_opportunity_sync(
        self,
        protocol: str,
        network: str,
        asset: str,
        apy: float,
        tvl: Optional[float],
        risk_level: str,
        refreshed_at: datetime,
        pool_address: Optional[str],
        asset_address: Optional[str],
        external_id: Optional[str],
    ) -> int:
        if risk_level not in RISK_RANK:
            raise ValueError(f"unknown risk level: {risk_level}")
        with self._lock:
            cursor = self._connection.cursor()
            protocol_id = self._upsert_named(cursor, 'protocol', protocol)
            network_id = self._upsert_named(cursor, 'network', network)
            values = (
                protocol_id,
                network_id,
                asset,
                apy,
                tvl,
                risk_level,
                pool_address,
                asset_address,
                _to_text(refreshed_at),
            )
            existing = None
            if external_id:
                cursor.execute("SELECT id FROM opportunity WHERE external_id = ?", (external_id,))
                existing = cursor.fetchone()
            if existing:
                cursor.execute(
                    """
                    UPDATE opportunity
                    SET protocol_id = ?, network_id = ?, asset = ?, apy = ?, tvl = ?,
                        risk_level = ?, pool_address = ?, asset_address = ?, refreshed_at = ?
                    WHERE id = ?
                    """,
                    values + (existing["id"],),
                )
                opportunity_id = existing["id"]
            else:
                cursor.execute(
                    """
                    INSERT INTO opportunity (
                        protocol_id,
                        network_id,
                        asset,
                        apy,
                        tvl,
                        risk_level,
                        pool_address,
                        asset_address,
                        refreshed_at,
                        external_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values + (external_id,),
                )
                opportunity_id = cursor.lastrowid
            self._connection.commit()
            cursor.close()
        return opportunity_id

    async def get_snapshot(
        self,
        protocol_ids: Optional[Iterable[int]] = None,
        network_ids: Optional[Iterable[int]] = None,
    ) -> list[OpportunityRecord]:
        return await self._run(
            self._get_snapshot_sync,
            list(protocol_ids) if protocol_ids is not None else None,
            list(network_ids) if network_ids is not None else None,
        )

    def _get_snapshot_sync(
        self,
        protocol_ids: Optional[list[int]],
        network_ids: Optional[list[int]],
    ) -> list[OpportunityRecord]:
        query = """
            SELECT o.*, p.name AS protocol_name, n.name AS network_name
            FROM opportunity o
            JOIN protocol p ON p.id = o.protocol_id
            JOIN network n ON n.id = o.network_id
            WHERE 1 = 1
        """
        params: list[Any] = []
        if protocol_ids is not None:
            query += f" AND o.protocol_id IN ({','.join('?' * len(protocol_ids)) or 'NULL'})"
            params.extend(protocol_ids)
        if network_ids is not None:
            query += f" AND o.network_id IN ({','.join('?' * len(network_ids)) or 'NULL'})"
            params.extend(network_ids)
        query += " ORDER BY o.id"
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            rows = cursor.fetchall()
            cursor.close()
        return [self._opportunity_from_row(row) for row in rows]

    async def fetch_top_opportunities(self, limit: int = 5) -> list[OpportunityRecord]:
        records = await self.get_snapshot()
        records.sort(key=lambda opp: opp.apy, reverse=True)
        return records[:limit]

    async def get_opportunity(self, opportunity_id: int) -> Optional[OpportunityRecord]:
        return await self._run(self._get_opportunity_sync, opportunity_id)

    def _get_opportunity_sync(self, opportunity_id: int) -> Optional[OpportunityRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT o.*, p.name AS protocol_name, n.name AS network_name
                FROM opportunity o
                JOIN protocol p ON p.id = o.protocol_id
                JOIN network n ON n.id = o.network_id
                WHERE o.id = ?
                """,
                (opportunity_id,),
            )
            row = cursor.fetchone()
            cursor.close()
        return self._opportunity_from_row(row) if row else None

    @staticmethod
    def _opportunity_from_row(row: sqlite3.Row) -> OpportunityRecord:
        return OpportunityRecord(
            id=row["id"],
            protocol_id=row["protocol_id"],
            protocol=row["protocol_name"],
            network_id=row["network_id"],
            network=row["network_name"],
            asset=row["asset"],
            apy=row["apy"],
            tvl=row["tvl"],
            risk_level=row["risk_level"],
            refreshed_at=_from_text(row["refreshed_at"]),
            pool_address=row["pool_address"],
            asset_address=row["asset_address"],
            external_id=row["external_id"],
        )

    # --- Strategies ---

    async def create_strategy(self, payload: dict) -> StrategyRecord:
        values = validate_strategy_payload(payload)
        strategy_id = await self._run(self._create_strategy_sync, values)
        return await self.get_strategy(strategy_id)

    def _create_strategy_sync(self, values: dict) -> int:
        values = dict(values, created_at=_to_text(_utcnow()))
        columns = ", ".join(values)
        placeholders = ", ".join("?" * len(values))
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                f"INSERT INTO yield_strategy ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
            self._connection.commit()
            strategy_id = cursor.lastrowid
            cursor.close()
        return strategy_id

    async def get_strategy(self, strategy_id: int) -> Optional[StrategyRecord]:
        return await self._run(self._get_strategy_sync, strategy_id)

    def _get_strategy_sync(self, strategy_id: int) -> Optional[StrategyRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM yield_strategy WHERE id = ?", (strategy_id,))
            row = cursor.fetchone()
            cursor.close()
        return self._strategy_from_row(row) if row else None

    async def list_strategies(
        self,
        *,
        user_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> list[StrategyRecord]:
        return await self._run(self._list_strategies_sync, user_id, status)

    def _list_strategies_sync(self, user_id: Optional[int], status: Optional[str]) -> list[StrategyRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM yield_strategy
                WHERE (? IS NULL OR user_id = ?)
                  AND (? IS NULL OR status = ?)
                ORDER BY id
                """,
                (user_id, user_id, status, status),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [self._strategy_from_row(row) for row in rows]

    async def list_due(self, now: Optional[datetime] = None) -> list[StrategyRecord]:
        return await self._run(self._list_due_sync, now or _utcnow())

    def _list_due_sync(self, now: datetime) -> list[StrategyRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM yield_strategy
                WHERE status = ?
                  AND (next_scheduled_execution IS NULL OR next_scheduled_execution <= ?)
                ORDER BY next_scheduled_execution IS NOT NULL, next_scheduled_execution, id
                """,
                (STRATEGY_ACTIVE, _to_text(now)),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [self._strategy_from_row(row) for row in rows]

    async def set_strategy_status(self, strategy_id: int, status: str) -> bool:
        if status not in STRATEGY_STATUSES:
            raise InvalidStrategy(f"status must be one of {', '.join(STRATEGY_STATUSES)}")
        return await self._run(self._set_strategy_status_sync, strategy_id, status)

    def _set_strategy_status_sync(self, strategy_id: int, status: str) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("UPDATE yield_strategy SET status = ? WHERE id = ?", (status, strategy_id))
            self._connection.commit()
            updated = cursor.rowcount > 0
            cursor.close()
        return updated

    async def delete_strategy(self, strategy_id: int) -> bool:
        return await self._run(self._delete_strategy_sync, strategy_id)

    def _delete_strategy_sync(self, strategy_id: int) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM yield_strategy WHERE id = ?", (strategy_id,))
            self._connection.commit()
            deleted = cursor.rowcount > 0
            cursor.close()
        return deleted

    async def reschedule(self, strategy_id: int, next_execution: datetime) -> None:
        await self._run(self._reschedule_sync, strategy_id, next_execution)

    def _reschedule_sync(self, strategy_id: int, next_execution: datetime) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE yield_strategy SET next_scheduled_execution = ? WHERE id = ?",
                (_to_text(next_execution), strategy_id),
            )
            self._connection.commit()
            cursor.close()

    @staticmethod
    def _strategy_from_row(row: sqlite3.Row) -> StrategyRecord:
        return StrategyRecord(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            status=row["status"],
            trigger_type=row["trigger_type"],
            conditions=parse_conditions(row["trigger_type"], json.loads(row["conditions"])),
            actions=parse_actions(json.loads(row["actions"])),
            target_protocols=json.loads(row["target_protocols"]),
            target_networks=json.loads(row["target_networks"]),
            max_gas_fee=row["max_gas_fee"],
            execution_interval=row["execution_interval"],
            next_scheduled_execution=_from_text(row["next_scheduled_execution"]),
            total_executions=row["total_executions"],
            total_invested=row["total_invested"],
            total_return=row["total_return"],
            current_opportunity_id=row["current_opportunity_id"],
            user_id=row["user_id"],
            created_at=_from_text(row["created_at"]),
        )

    # --- Leases ---

    async def lease(
        self,
        strategy_id: int,
        owner_token: str,
        ttl: float,
        now: Optional[datetime] = None,
    ) -> bool:
        return await self._run(self._lease_sync, strategy_id, owner_token, ttl, now or _utcnow())

    def _lease_sync(self, strategy_id: int, owner_token: str, ttl: float, now: datetime) -> bool:
        now_text = _to_text(now)
        expires_text = _to_text(now + timedelta(seconds=ttl))
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "DELETE FROM strategy_lease WHERE strategy_id = ? AND expires_at <= ?",
                (strategy_id, now_text),
            )
            cursor.execute(
                "INSERT OR IGNORE INTO strategy_lease (strategy_id, owner_token, expires_at) VALUES (?, ?, ?)",
                (strategy_id, owner_token, expires_text),
            )
            acquired = cursor.rowcount > 0
            if not acquired:
                cursor.execute(
                    "UPDATE strategy_lease SET expires_at = ? WHERE strategy_id = ? AND owner_token = ?",
                    (expires_text, strategy_id, owner_token),
                )
                acquired = cursor.rowcount > 0
            self._connection.commit()
            cursor.close()
        return acquired

    async def holds_lease(self, strategy_id: int, owner_token: str, now: Optional[datetime] = None) -> bool:
        return await self._run(self._holds_lease_sync, strategy_id, owner_token, now or _utcnow())

    def _holds_lease_sync(self, strategy_id: int, owner_token: str, now: datetime) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            held = self._lease_held(cursor, strategy_id, owner_token, now)
            cursor.close()
        return held

    @staticmethod
    def _lease_held(cursor: sqlite3.Cursor, strategy_id: int, owner_token: str, now: datetime) -> bool:
        cursor.execute(
            "SELECT 1 FROM strategy_lease WHERE strategy_id = ? AND owner_token = ? AND expires_at > ?",
            (strategy_id, owner_token, _to_text(now)),
        )
        return cursor.fetchone() is not None

    async def release(self, strategy_id: int, owner_token: str) -> None:
        await self._run(self._release_sync, strategy_id, owner_token)

    def _release_sync(self, strategy_id: int, owner_token: str) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "DELETE FROM strategy_lease WHERE strategy_id = ? AND owner_token = ?",
                (strategy_id, owner_token),
            )
            self._connection.commit()
            cursor.close()

    # --- Executions ---

    async def write_execution(
        self,
        *,
        strategy_id: int,
        action_type: str,
        opportunity_id: Optional[int],
        owner_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Inserts a pending execution row.

        When ``owner_token`` is given the lease is checked under the same lock
        and ``LeaseLost`` is raised instead of writing.
        """
        return await self._run(
            self._write_execution_sync,
            strategy_id,
            action_type,
            opportunity_id,
            owner_token,
            now or _utcnow(),
        )

    def _write_execution_sync(
        self,
        strategy_id: int,
        action_type: str,
        opportunity_id: Optional[int],
        owner_token: Optional[str],
        now: datetime,
    ) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            if owner_token is not None and not self._lease_held(cursor, strategy_id, owner_token, now):
                cursor.close()
                raise LeaseLost(f"lease on strategy {strategy_id} is no longer held by {owner_token}")
            cursor.execute(
                """
                INSERT INTO strategy_execution (
                    strategy_id,
                    action_type,
                    status,
                    created_at,
                    opportunity_id
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (strategy_id, action_type, EXECUTION_PENDING, _to_text(now), opportunity_id),
            )
            self._connection.commit()
            execution_id = cursor.lastrowid
            cursor.close()
        return execution_id

    async def mark_submitted(self, execution_id: int, transaction_hash: str, amount: Optional[float] = None) -> None:
        """Persists the hash and submitted amount of a pending row."""
        await self._run(self._mark_submitted_sync, execution_id, transaction_hash, amount)

    def _mark_submitted_sync(self, execution_id: int, transaction_hash: str, amount: Optional[float]) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE strategy_execution SET transaction_hash = ?, amount = COALESCE(?, amount) WHERE id = ? AND status = ?",
                (transaction_hash, amount, execution_id, EXECUTION_PENDING),
            )
            self._connection.commit()
            cursor.close()

    async def update_execution(
        self,
        execution_id: int,
        result: ExecutionResult,
        executed_at: Optional[datetime] = None,
    ) -> bool:
        return await self._run(self._update_execution_sync, execution_id, result, executed_at or _utcnow())

    def _update_execution_sync(self, execution_id: int, result: ExecutionResult, executed_at: datetime) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            updated = self._apply_terminal_fields(cursor, execution_id, result, executed_at)
            self._connection.commit()
            cursor.close()
        return updated

    @staticmethod
    def _apply_terminal_fields(
        cursor: sqlite3.Cursor,
        execution_id: int,
        result: ExecutionResult,
        executed_at: datetime,
    ) -> bool:
        # Terminal rows are immutable; only pending rows can transition.
        cursor.execute(
            """
            UPDATE strategy_execution
            SET status = ?,
                executed_at = ?,
                transaction_hash = COALESCE(?, transaction_hash),
                gas_used = ?,
                gas_fee = ?,
                amount = ?,
                error_message = ?,
                needs_reconciliation = ?
            WHERE id = ? AND status = ?
            """,
            (
                result.status,
                _to_text(executed_at),
                result.transaction_hash,
                result.gas_used,
                result.gas_fee,
                result.amount,
                result.error_message,
                1 if result.needs_reconciliation else 0,
                execution_id,
                EXECUTION_PENDING,
            ),
        )
        return cursor.rowcount > 0

    async def update_strategy_counters(
        self,
        strategy_id: int,
        *,
        executions: int = 0,
        invested: float = 0.0,
        returned: float = 0.0,
    ) -> None:
        await self._run(self._update_strategy_counters_sync, strategy_id, executions, invested, returned)

    def _update_strategy_counters_sync(
        self,
        strategy_id: int,
        executions: int,
        invested: float,
        returned: float,
    ) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            self._apply_counters(cursor, strategy_id, executions, invested, returned)
            self._connection.commit()
            cursor.close()

    @staticmethod
    def _apply_counters(
        cursor: sqlite3.Cursor,
        strategy_id: int,
        executions: int,
        invested: float,
        returned: float,
    ) -> None:
        cursor.execute(
            """
            UPDATE yield_strategy
            SET total_executions = total_executions + ?,
                total_invested = total_invested + ?,
                total_return = total_return + ?
            WHERE id = ?
            """,
            (executions, invested, returned, strategy_id),
        )

    async def complete_execution(
        self,
        execution_id: int,
        strategy_id: int,
        result: ExecutionResult,
        *,
        invested: float = 0.0,
        returned: float = 0.0,
        update_position: bool = False,
        position_id: Optional[int] = None,
        executed_at: Optional[datetime] = None,
    ) -> bool:
        """Writes the terminal execution state and the strategy counters in one transaction."""
        return await self._run(
            self._complete_execution_sync,
            execution_id,
            strategy_id,
            result,
            invested,
            returned,
            update_position,
            position_id,
            executed_at or _utcnow(),
        )

    def _complete_execution_sync(
        self,
        execution_id: int,
        strategy_id: int,
        result: ExecutionResult,
        invested: float,
        returned: float,
        update_position: bool,
        position_id: Optional[int],
        executed_at: datetime,
    ) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                updated = self._apply_terminal_fields(cursor, execution_id, result, executed_at)
                if updated:
                    self._apply_counters(cursor, strategy_id, 1, invested, returned)
                    if update_position:
                        cursor.execute(
                            "UPDATE yield_strategy SET current_opportunity_id = ? WHERE id = ?",
                            (position_id, strategy_id),
                        )
                self._connection.commit()
            except sqlite3.Error:
                self._connection.rollback()
                raise
            finally:
                cursor.close()
        return updated

    async def list_stale_pending(self, older_than: datetime) -> list[StrategyExecutionRecord]:
        return await self._run(self._list_stale_pending_sync, older_than)

    def _list_stale_pending_sync(self, older_than: datetime) -> list[StrategyExecutionRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM strategy_execution
                WHERE status = ? AND created_at <= ?
                ORDER BY id
                """,
                (EXECUTION_PENDING, _to_text(older_than)),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [self._execution_from_row(row) for row in rows]

    async def fetch_executions(
        self,
        *,
        strategy_id: Optional[int] = None,
        limit: int = 50,
        since: Optional[datetime] = None,
    ) -> list[StrategyExecutionRecord]:
        return await self._run(self._fetch_executions_sync, strategy_id, limit, since)

    def _fetch_executions_sync(
        self,
        strategy_id: Optional[int],
        limit: int,
        since: Optional[datetime],
    ) -> list[StrategyExecutionRecord]:
        since_text = _to_text(since)
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM strategy_execution
                WHERE (? IS NULL OR strategy_id = ?)
                  AND (? IS NULL OR created_at >= ?)
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (strategy_id, strategy_id, since_text, since_text, limit),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [self._execution_from_row(row) for row in rows]

    async def get_execution(self, execution_id: int) -> Optional[StrategyExecutionRecord]:
        return await self._run(self._get_execution_sync, execution_id)

    def _get_execution_sync(self, execution_id: int) -> Optional[StrategyExecutionRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM strategy_execution WHERE id = ?", (execution_id,))
            row = cursor.fetchone()
            cursor.close()
        return self._execution_from_row(row) if row else None

    @staticmethod
    def _execution_from_row(row: sqlite3.Row) -> StrategyExecutionRecord:
        return StrategyExecutionRecord(
            id=row["id"],
            strategy_id=row["strategy_id"],
            action_type=row["action_type"],
            status=row["status"],
            created_at=_from_text(row["created_at"]),
            executed_at=_from_text(row["executed_at"]),
            transaction_hash=row["transaction_hash"],
            gas_used=row["gas_used"],
            gas_fee=row["gas_fee"],
            amount=row["amount"],
            error_message=row["error_message"],
            opportunity_id=row["opportunity_id"],
            needs_reconciliation=bool(row["needs_reconciliation"]),
        )

    # --- Telegram subscribers ---

    async def upsert_subscriber(self, telegram_id: int, username: Optional[str]) -> TelegramSubscriberRecord:
        return await self._run(self._upsert_subscriber_sync, telegram_id, username)

    def _upsert_subscriber_sync(self, telegram_id: int, username: Optional[str]) -> TelegramSubscriberRecord:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO telegram_subscriber (telegram_id, username) VALUES (?, ?)",
                (telegram_id, username),
            )
            if username:
                cursor.execute(
                    "UPDATE telegram_subscriber SET username = ? WHERE telegram_id = ?",
                    (username, telegram_id),
                )
            self._connection.commit()
            cursor.execute("SELECT * FROM telegram_subscriber WHERE telegram_id = ?", (telegram_id,))
            row = cursor.fetchone()
            cursor.close()
        return self._subscriber_from_row(row)

    async def get_subscriber(self, telegram_id: int) -> Optional[TelegramSubscriberRecord]:
        return await self._run(self._get_subscriber_sync, telegram_id)

    def _get_subscriber_sync(self, telegram_id: int) -> Optional[TelegramSubscriberRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM telegram_subscriber WHERE telegram_id = ?", (telegram_id,))
            row = cursor.fetchone()
            cursor.close()
        return self._subscriber_from_row(row) if row else None

    async def toggle_subscription(self, telegram_id: int) -> bool:
        return await self._run(self._toggle_subscription_sync, telegram_id)

    def _toggle_subscription_sync(self, telegram_id: int) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE telegram_subscriber SET subscribed = 1 - subscribed WHERE telegram_id = ?",
                (telegram_id,),
            )
            self._connection.commit()
            cursor.execute("SELECT subscribed FROM telegram_subscriber WHERE telegram_id = ?", (telegram_id,))
            row = cursor.fetchone()
            cursor.close()
        return bool(row["subscribed"]) if row else False

    async def link_subscriber(self, telegram_id: int, user_id: int) -> bool:
        return await self._run(self._link_subscriber_sync, telegram_id, user_id)

    def _link_subscriber_sync(self, telegram_id: int, user_id: int) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE telegram_subscriber SET user_id = ? WHERE telegram_id = ?",
                (user_id, telegram_id),
            )
            self._connection.commit()
            linked = cursor.rowcount > 0
            cursor.close()
        return linked

    async def list_subscribers(self, *, user_id: Optional[int] = None) -> list[TelegramSubscriberRecord]:
        return await self._run(self._list_subscribers_sync, user_id)

    def _list_subscribers_sync(self, user_id: Optional[int]) -> list[TelegramSubscriberRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM telegram_subscriber
                WHERE subscribed = 1 AND (? IS NULL OR user_id = ?)
                ORDER BY id
                """,
                (user_id, user_id),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [self._subscriber_from_row(row) for row in rows]

    @staticmethod
    def _subscriber_from_row(row: sqlite3.Row) -> TelegramSubscriberRecord:
        return TelegramSubscriberRecord(
            id=row["id"],
            telegram_id=row["telegram_id"],
            username=row["username"],
            user_id=row["user_id"],
            subscribed=bool(row["subscribed"]),
        )

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            self._connection.commit()
            self._connection.close()


__all__ = [
    "SQLiteRepository",
    "OpportunityRecord",
    "StrategyRecord",
    "StrategyExecutionRecord",
    "TelegramSubscriberRecord",
    "validate_strategy_payload",
]
