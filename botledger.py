#!/usr/bin/env python3
from dataclasses import dataclass
import sqlite3
import time
import botutils as utils
from boterrors import ConflictError

_schema = """
CREATE TABLE IF NOT EXISTS zapped_events (
    event_id TEXT PRIMARY KEY,
    author_pubkey TEXT NOT NULL,
    zapped_at INTEGER NOT NULL,
    amount INTEGER NOT NULL,
    event_created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_author ON zapped_events(author_pubkey);
CREATE INDEX IF NOT EXISTS idx_zapped_at ON zapped_events(zapped_at);
CREATE INDEX IF NOT EXISTS idx_event_created_at ON zapped_events(event_created_at);
"""

@dataclass(frozen=True)
class LedgerEntry:
    eventId: str
    authorId: str
    amountSats: int
    settledAt: int
    eventCreatedAt: int

@dataclass(frozen=True)
class LedgerStats:
    totalZapped: int
    totalSats: int
    todayTotal: int
    uniqueAuthors: int

class Ledger:
    """Durable record of settled zaps, keyed by event id.

    Every call opens its own connection, so a Ledger can be shared by the
    worker threads. Totals are always summed from disk.
    """

    def __init__(self, path, clock=time.time):
        self.path = path
        self.clock = clock
        with self._connect() as conn:
            conn.executescript(_schema)

    def _connect(self):
        return _Connection(self.path)

    def isSettled(self, eventId):
        with self._connect() as conn:
            row = conn.execute("SELECT EXISTS(SELECT 1 FROM zapped_events WHERE event_id = ?)", (eventId,)).fetchone()
        return bool(row[0])

    def recordSettlement(self, eventId, authorId, amountSats, eventCreatedAt):
        settledAt = int(self.clock())
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO zapped_events (event_id, author_pubkey, zapped_at, amount, event_created_at) VALUES (?, ?, ?, ?, ?)",
                    (eventId, authorId, settledAt, int(amountSats), int(eventCreatedAt)))
        except sqlite3.IntegrityError as err:
            raise ConflictError(eventId) from err
        return LedgerEntry(eventId, authorId, int(amountSats), settledAt, int(eventCreatedAt))

    def totalToday(self):
        today = utils.startOfUtcDay(self.clock())
        with self._connect() as conn:
            row = conn.execute("SELECT SUM(amount) FROM zapped_events WHERE zapped_at >= ?", (today,)).fetchone()
        return int(row[0] or 0)

    def totalTodayForAuthor(self, authorId):
        today = utils.startOfUtcDay(self.clock())
        with self._connect() as conn:
            row = conn.execute("SELECT SUM(amount) FROM zapped_events WHERE author_pubkey = ? AND zapped_at >= ?", (authorId, today)).fetchone()
        return int(row[0] or 0)

    def getStats(self):
        with self._connect() as conn:
            totalZapped = conn.execute("SELECT COUNT(*) FROM zapped_events").fetchone()[0]
            totalSats = conn.execute("SELECT SUM(amount) FROM zapped_events").fetchone()[0]
            uniqueAuthors = conn.execute("SELECT COUNT(DISTINCT author_pubkey) FROM zapped_events").fetchone()[0]
        return LedgerStats(int(totalZapped), int(totalSats or 0), self.totalToday(), int(uniqueAuthors))

    def getRecentSettlements(self, limit=10):
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT event_id, author_pubkey, amount, zapped_at, event_created_at FROM zapped_events ORDER BY zapped_at DESC, rowid DESC LIMIT ?",
                (limit,)).fetchall()
        return [LedgerEntry(*row) for row in rows]

class _Connection:
    # commit on success, rollback on error, always close
    def __init__(self, path):
        self.path = path
        self.conn = None

    def __enter__(self):
        self.conn = sqlite3.connect(self.path, timeout=30)
        return self.conn

    def __exit__(self, excType, exc, tb):
        try:
            if excType is None:
                self.conn.commit()
            else:
                self.conn.rollback()
        finally:
            self.conn.close()
        return False
