"""SQLite reference backend.

One connection, one asyncio.Lock. Generic row operations map onto the
hosted table API; RPCs run the reference procedures inside a single
transaction each and publish row changes to in-process subscribers after
commit.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import json
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from tradedesk.infrastructure.backend.base import (
    Backend,
    BackendError,
    ChangeEvent,
    ChangeHandler,
    JsonDict,
    Subscription,
)
from tradedesk.infrastructure.logging.logging import get_logger
from tradedesk.infrastructure.storage.procedures import PROCEDURES, ProcedureContext, Rejected
from tradedesk.infrastructure.utils.timeutils import Clock, SystemClock, from_epoch

log = get_logger("sqlite_backend")

_SCHEMA = {
    "profiles": """
        CREATE TABLE IF NOT EXISTS profiles (
          id TEXT PRIMARY KEY,
          email TEXT,
          full_name TEXT,
          role TEXT NOT NULL DEFAULT 'user',
          btc_balance REAL NOT NULL DEFAULT 0,
          eth_balance REAL NOT NULL DEFAULT 0,
          usdt_balance REAL NOT NULL DEFAULT 0,
          interest_earned REAL NOT NULL DEFAULT 0,
          commissions REAL NOT NULL DEFAULT 0,
          net_balance REAL NOT NULL DEFAULT 0,
          base_balance REAL NOT NULL DEFAULT 0,
          total_invested REAL NOT NULL DEFAULT 0,
          is_frozen INTEGER NOT NULL DEFAULT 0,
          interest_updated_at TEXT,
          created_at TEXT,
          updated_at TEXT
        );
    """,
    "signals": """
        CREATE TABLE IF NOT EXISTS signals (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          price REAL NOT NULL,
          profit_multiplier REAL NOT NULL DEFAULT 1,
          description TEXT,
          created_at TEXT
        );
    """,
    "purchased_signals": """
        CREATE TABLE IF NOT EXISTS purchased_signals (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL,
          signal_id TEXT NOT NULL,
          status TEXT NOT NULL DEFAULT 'active',
          price_paid REAL NOT NULL DEFAULT 0,
          purchased_at TEXT
        );
    """,
    "trades": """
        CREATE TABLE IF NOT EXISTS trades (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL,
          signal_id TEXT,
          purchased_signal_id TEXT,
          asset_id TEXT,
          trade_type TEXT NOT NULL,
          initial_amount REAL NOT NULL,
          profit_multiplier REAL NOT NULL DEFAULT 1,
          entry_price REAL,
          current_price REAL,
          current_profit REAL NOT NULL DEFAULT 0,
          price_change_percent REAL,
          trading_pair TEXT,
          market_type TEXT,
          balance_source TEXT,
          stop_loss REAL,
          take_profit REAL,
          duration_type TEXT NOT NULL DEFAULT 'unlimited',
          expires_at TEXT,
          engine_type TEXT,
          status TEXT NOT NULL DEFAULT 'active',
          started_at TEXT,
          last_updated TEXT,
          closed_at TEXT
        );
    """,
    "transactions": """
        CREATE TABLE IF NOT EXISTS transactions (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL,
          type TEXT NOT NULL,
          amount REAL NOT NULL,
          description TEXT,
          created_at TEXT
        );
    """,
    "admin_settings": """
        CREATE TABLE IF NOT EXISTS admin_settings (
          id TEXT PRIMARY KEY,
          key TEXT NOT NULL UNIQUE,
          value TEXT,
          updated_at TEXT
        );
    """,
    "tradeable_assets": """
        CREATE TABLE IF NOT EXISTS tradeable_assets (
          id TEXT PRIMARY KEY,
          symbol TEXT NOT NULL UNIQUE,
          name TEXT NOT NULL,
          asset_type TEXT NOT NULL,
          api_id TEXT,
          current_price REAL,
          created_at TEXT,
          updated_at TEXT
        );
    """,
    "user_trading_engines": """
        CREATE TABLE IF NOT EXISTS user_trading_engines (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL UNIQUE,
          engine_type TEXT NOT NULL DEFAULT 'default',
          created_at TEXT,
          updated_at TEXT
        );
    """,
}

# Columns holding JSON documents (decoded on read, encoded on write).
_JSON_COLUMNS = {("admin_settings", "value")}

_BUCKETS = ("btc_balance", "eth_balance", "usdt_balance", "interest_earned", "commissions")


def _sql_value(table: str, column: str, value: Any) -> Any:
    if (table, column) in _JSON_COLUMNS:
        return json.dumps(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


class _Listener:
    def __init__(self, table: str, event: str, filters: Optional[Dict[str, Any]], handler: ChangeHandler) -> None:
        self.table = table
        self.event = event
        self.filters = dict(filters or {})
        self.handler = handler


class SQLiteBackend(Backend):
    def __init__(self, db_path: Union[str, Path], *, clock: Optional[Clock] = None) -> None:
        self._path = Path(db_path)
        if self._path.as_posix() != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path.as_posix(), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._clock = clock or SystemClock()
        self._lock = asyncio.Lock()
        self._listeners: List[_Listener] = []
        self._columns: Dict[str, List[str]] = {}
        self._init_schema()

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        for table, ddl in _SCHEMA.items():
            cur.execute(ddl)
            self._columns[table] = [r[1] for r in cur.execute(f"PRAGMA table_info({table})").fetchall()]
        self._conn.commit()

    def _now_iso(self) -> str:
        return from_epoch(self._clock.time()).isoformat()

    # ---------- identifier checks ----------

    def _check_table(self, table: str) -> List[str]:
        columns = self._columns.get(table)
        if columns is None:
            raise BackendError(f"unknown table: {table}", status=404)
        return columns

    def _check_columns(self, table: str, names: Iterable[str]) -> List[str]:
        known = self._check_table(table)
        out = []
        for name in names:
            if name not in known:
                raise BackendError(f"unknown column {table}.{name}", status=400)
            out.append(name)
        return out

    def _decode(self, table: str, row: sqlite3.Row) -> JsonDict:
        data = dict(row)
        for tbl, col in _JSON_COLUMNS:
            if tbl == table and data.get(col) is not None:
                try:
                    data[col] = json.loads(data[col])
                except ValueError:
                    pass
        return data

    def _where(
        self,
        table: str,
        filters: Optional[Dict[str, Any]],
        in_filters: Optional[Dict[str, Iterable[Any]]] = None,
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for col, value in (filters or {}).items():
            self._check_columns(table, [col])
            if value is None:
                clauses.append(f"{col} IS NULL")
            else:
                clauses.append(f"{col} = ?")
                params.append(_sql_value(table, col, value))
        for col, values in (in_filters or {}).items():
            self._check_columns(table, [col])
            values = list(values)
            if not values:
                clauses.append("0")
                continue
            clauses.append(f"{col} IN ({', '.join('?' for _ in values)})")
            params.extend(_sql_value(table, col, v) for v in values)
        return (" WHERE " + " AND ".join(clauses)) if clauses else "", params

    # ---------- Backend API ----------

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        *,
        columns: str = "*",
        in_filters: Optional[Dict[str, Iterable[Any]]] = None,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[JsonDict]:
        self._check_table(table)
        if columns.strip() == "*":
            col_sql = "*"
        else:
            col_sql = ", ".join(self._check_columns(table, [c.strip() for c in columns.split(",") if c.strip()]))
        where, params = self._where(table, filters, in_filters)
        sql = f"SELECT {col_sql} FROM {table}{where}"
        if order:
            self._check_columns(table, [order])
            sql += f" ORDER BY {order} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        async with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._decode(table, r) for r in rows]

    async def insert(self, table: str, rows: Union[JsonDict, List[JsonDict]]) -> List[JsonDict]:
        items = [rows] if isinstance(rows, dict) else list(rows)
        inserted: List[JsonDict] = []
        async with self._lock:
            try:
                for item in items:
                    values = dict(item)
                    values.setdefault("id", str(uuid.uuid4()))
                    if "created_at" in self._check_table(table):
                        values.setdefault("created_at", self._now_iso())
                    cols = self._check_columns(table, values.keys())
                    self._conn.execute(
                        f"INSERT INTO {table}({', '.join(cols)}) VALUES({', '.join('?' for _ in cols)})",
                        [_sql_value(table, c, values[c]) for c in cols],
                    )
                    row = self._conn.execute(f"SELECT * FROM {table} WHERE id = ?", (values["id"],)).fetchone()
                    inserted.append(self._decode(table, row))
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise BackendError(f"insert into {table} failed: {e}") from e
        await self._publish([ChangeEvent(table=table, event_type="INSERT", new=r) for r in inserted])
        return inserted

    async def update(self, table: str, values: JsonDict, filters: Dict[str, Any]) -> List[JsonDict]:
        if not filters:
            raise BackendError("update without filters is not allowed", status=400)
        cols = self._check_columns(table, values.keys())
        where, params = self._where(table, filters)
        changes: List[ChangeEvent] = []
        async with self._lock:
            try:
                before = {r["id"]: self._decode(table, r) for r in self._conn.execute(f"SELECT * FROM {table}{where}", params)}
                if before:
                    assignments = ", ".join(f"{c} = ?" for c in cols)
                    self._conn.execute(
                        f"UPDATE {table} SET {assignments}{where}",
                        [_sql_value(table, c, values[c]) for c in cols] + params,
                    )
                    if table == "profiles" and any(c in _BUCKETS for c in cols):
                        self._conn.execute(
                            f"UPDATE profiles SET net_balance = {' + '.join(_BUCKETS)}{where}", params
                        )
                placeholders = ", ".join("?" for _ in before)
                after = [
                    self._decode(table, r)
                    for r in self._conn.execute(f"SELECT * FROM {table} WHERE id IN ({placeholders})", list(before))
                ] if before else []
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise BackendError(f"update of {table} failed: {e}") from e
        for row in after:
            changes.append(ChangeEvent(table=table, event_type="UPDATE", new=row, old=before.get(row["id"], {})))
        await self._publish(changes)
        return after

    async def rpc(self, name: str, params: JsonDict) -> Any:
        procedure = PROCEDURES.get(name)
        if procedure is None:
            raise BackendError(f"unknown function: {name}", status=404)
        async with self._lock:
            ctx = ProcedureContext(conn=self._conn, now=from_epoch(self._clock.time()))
            try:
                result = procedure(ctx, dict(params or {}))
                self._conn.commit()
            except Rejected as e:
                self._conn.rollback()
                log.info("rpc_rejected", function=name, error=str(e))
                return {"success": False, "error": str(e)}
            except sqlite3.Error as e:
                self._conn.rollback()
                log.error("rpc_failed", function=name, error=str(e))
                raise BackendError(f"{name} failed: {e}") from e
            except Exception:
                self._conn.rollback()
                raise
        log.debug("rpc_ok", function=name, changes=len(ctx.changes))
        await self._publish(ctx.changes)
        return result

    async def subscribe(
        self,
        table: str,
        event: str,
        filters: Optional[Dict[str, Any]],
        on_change: ChangeHandler,
    ) -> Subscription:
        self._check_table(table)
        listener = _Listener(table, event.upper() if event != "*" else "*", filters, on_change)
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription(_remove)

    async def _publish(self, changes: List[ChangeEvent]) -> None:
        for change in changes:
            for listener in list(self._listeners):
                if listener.table != change.table or not change.matches(listener.event, listener.filters):
                    continue
                try:
                    result = listener.handler(change)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    log.exception("change_handler_failed", table=change.table, event_type=change.event_type)

    async def close(self) -> None:
        self._listeners.clear()
        self._conn.close()

    # ---------- seeding (sync, no change events) ----------

    def _seed_insert(self, table: str, values: JsonDict) -> str:
        values = dict(values)
        values.setdefault("id", str(uuid.uuid4()))
        if "created_at" in self._columns[table]:
            values.setdefault("created_at", self._now_iso())
        cols = self._check_columns(table, values.keys())
        self._conn.execute(
            f"INSERT INTO {table}({', '.join(cols)}) VALUES({', '.join('?' for _ in cols)})",
            [_sql_value(table, c, values[c]) for c in cols],
        )
        self._conn.commit()
        return values["id"]

    def create_profile(self, user_id: Optional[str] = None, *, role: str = "user", email: str = "", **balances: float) -> str:
        values: JsonDict = {"role": role, "email": email, "interest_updated_at": self._now_iso()}
        if user_id:
            values["id"] = user_id
        for key, amount in balances.items():
            values[key] = float(amount)
        values["net_balance"] = sum(float(values.get(b, 0.0)) for b in _BUCKETS)
        return self._seed_insert("profiles", values)

    def create_signal(self, name: str, price: float, *, profit_multiplier: float = 1.0, description: str = "", signal_id: Optional[str] = None) -> str:
        values: JsonDict = {"name": name, "price": price, "profit_multiplier": profit_multiplier, "description": description}
        if signal_id:
            values["id"] = signal_id
        return self._seed_insert("signals", values)

    def create_purchased_signal(self, user_id: str, signal_id: str, *, status: str = "active", price_paid: float = 0.0) -> str:
        return self._seed_insert(
            "purchased_signals",
            {"user_id": user_id, "signal_id": signal_id, "status": status, "price_paid": price_paid, "purchased_at": self._now_iso()},
        )

    def set_asset_price(self, symbol: str, price: Optional[float], *, asset_type: str = "crypto", name: Optional[str] = None, api_id: Optional[str] = None) -> None:
        now = self._now_iso()
        self._conn.execute(
            """
            INSERT INTO tradeable_assets(id, symbol, name, asset_type, api_id, current_price, created_at, updated_at)
            VALUES(?,?,?,?,?,?,?,?)
            ON CONFLICT(symbol) DO UPDATE SET current_price = excluded.current_price, updated_at = excluded.updated_at
            """,
            (str(uuid.uuid4()), symbol, name or symbol, asset_type, api_id, price, now, now),
        )
        self._conn.commit()

    def set_setting(self, key: str, value: Any) -> None:
        self._conn.execute(
            """
            INSERT INTO admin_settings(id, key, value, updated_at) VALUES(?,?,?,?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (str(uuid.uuid4()), key, json.dumps(value), self._now_iso()),
        )
        self._conn.commit()

    def set_user_engine(self, user_id: str, engine_type: str) -> None:
        now = self._now_iso()
        self._conn.execute(
            """
            INSERT INTO user_trading_engines(id, user_id, engine_type, created_at, updated_at) VALUES(?,?,?,?,?)
            ON CONFLICT(user_id) DO UPDATE SET engine_type = excluded.engine_type, updated_at = excluded.updated_at
            """,
            (str(uuid.uuid4()), user_id, engine_type, now, now),
        )
        self._conn.commit()

    def fetch_profile(self, user_id: str) -> Optional[JsonDict]:
        row = self._conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None
