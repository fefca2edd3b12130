"""Lap history: one record per trading lap, updated when the lap is finalized."""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Protocol

import rotator.constants as C
from rotator.accounts import utcnow

log = logging.getLogger("rotator.lap_store")


@dataclass
class TradingLap:
    number: int
    session: str
    workers: int
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    native_collected: Decimal = Decimal(0)
    token_collected: Decimal = Decimal(0)
    status: C.LapStatus = C.LapStatus.RUNNING
    reason: str | None = None

    def finish(self, status: C.LapStatus, reason: str | None = None) -> None:
        self.status = status
        self.reason = reason
        self.ended_at = utcnow()

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "session": self.session,
            "workers": self.workers,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "native_collected": str(self.native_collected),
            "token_collected": str(self.token_collected),
            "status": self.status.value,
            "reason": self.reason,
        }


class LapStore(Protocol):
    async def record(self, lap: TradingLap) -> None: ...
    async def get(self, session: str, number: int) -> TradingLap | None: ...
    async def all(self, session: str | None = None) -> list[TradingLap]: ...


class InMemoryLapStore:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._laps: dict[tuple[str, int], TradingLap] = {}

    async def record(self, lap: TradingLap) -> None:
        async with self._lock:
            self._laps[(lap.session, lap.number)] = lap

    async def get(self, session: str, number: int) -> TradingLap | None:
        async with self._lock:
            return self._laps.get((session, number))

    async def all(self, session: str | None = None) -> list[TradingLap]:
        async with self._lock:
            laps = [lap for (s, _), lap in self._laps.items() if session is None or s == session]
        return sorted(laps, key=lambda lap: (lap.session, lap.number))


class SQLiteLapStore:
    """Persistent lap history backed by SQLite."""

    def __init__(self, db_path: str | Path = "rotator_state.db") -> None:
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._init_db()

    def _init_db(self) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS laps (
                    session TEXT NOT NULL,
                    number INTEGER NOT NULL,
                    workers INTEGER NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    native_collected TEXT NOT NULL,  -- Decimal as text, no float rounding
                    token_collected TEXT NOT NULL,
                    status TEXT NOT NULL,
                    reason TEXT,
                    PRIMARY KEY (session, number)
                );
                CREATE INDEX IF NOT EXISTS idx_laps_status ON laps(status);
                """
            )
            conn.commit()
            log.debug(f"SQLite lap store initialized at {self.db_path}")
        finally:
            conn.close()

    @staticmethod
    def _from_row(row) -> TradingLap:
        session, number, workers, started_at, ended_at, native, token, status, reason = row
        return TradingLap(
            number=number,
            session=session,
            workers=workers,
            started_at=datetime.fromisoformat(started_at),
            ended_at=datetime.fromisoformat(ended_at) if ended_at else None,
            native_collected=Decimal(native),
            token_collected=Decimal(token),
            status=C.LapStatus(status),
            reason=reason,
        )

    async def record(self, lap: TradingLap) -> None:
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                conn.execute(
                    """
                    INSERT INTO laps (session, number, workers, started_at, ended_at,
                                      native_collected, token_collected, status, reason)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(session, number) DO UPDATE SET
                        workers = excluded.workers,
                        ended_at = excluded.ended_at,
                        native_collected = excluded.native_collected,
                        token_collected = excluded.token_collected,
                        status = excluded.status,
                        reason = excluded.reason
                    """,
                    (
                        lap.session,
                        lap.number,
                        lap.workers,
                        lap.started_at.isoformat(),
                        lap.ended_at.isoformat() if lap.ended_at else None,
                        str(lap.native_collected),
                        str(lap.token_collected),
                        lap.status.value,
                        lap.reason,
                    ),
                )
                conn.commit()
            finally:
                conn.close()

    async def get(self, session: str, number: int) -> TradingLap | None:
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                row = conn.execute(
                    "SELECT session, number, workers, started_at, ended_at, native_collected, "
                    "token_collected, status, reason FROM laps WHERE session = ? AND number = ?",
                    (session, number),
                ).fetchone()
            finally:
                conn.close()
        return self._from_row(row) if row else None

    async def all(self, session: str | None = None) -> list[TradingLap]:
        query = (
            "SELECT session, number, workers, started_at, ended_at, native_collected, "
            "token_collected, status, reason FROM laps"
        )
        params: tuple = ()
        if session is not None:
            query += " WHERE session = ?"
            params = (session,)
        query += " ORDER BY session, number"
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                rows = conn.execute(query, params).fetchall()
            finally:
                conn.close()
        return [self._from_row(r) for r in rows]
