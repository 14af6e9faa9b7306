import threading
import pytest
from botledger import Ledger
from boterrors import ConflictError

DAY = 86400
NOON = 20000 * DAY + DAY // 2

class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

@pytest.fixture
def clock():
    return Clock(NOON)

@pytest.fixture
def ledger(tmp_path, clock):
    return Ledger(str(tmp_path / "zaps.db"), clock=clock)

def test_record_then_settled(ledger):
    assert not ledger.isSettled("evt-1")
    entry = ledger.recordSettlement("evt-1", "auth-1", 3, 1700000000)
    assert ledger.isSettled("evt-1")
    assert entry.eventId == "evt-1"
    assert entry.authorId == "auth-1"
    assert entry.amountSats == 3
    assert entry.settledAt == NOON
    assert entry.eventCreatedAt == 1700000000

def test_duplicate_record_is_conflict(ledger):
    ledger.recordSettlement("evt-1", "auth-1", 3, 1)
    with pytest.raises(ConflictError) as excinfo:
        ledger.recordSettlement("evt-1", "auth-2", 5, 2)
    assert excinfo.value.eventId == "evt-1"
    assert ledger.totalToday() == 3

def test_totals_only_count_current_utc_day(ledger, clock):
    clock.now = NOON - DAY
    ledger.recordSettlement("yesterday", "auth-1", 50, 1)
    clock.now = NOON
    ledger.recordSettlement("today-1", "auth-1", 3, 1)
    ledger.recordSettlement("today-2", "auth-2", 7, 1)
    assert ledger.totalToday() == 10
    assert ledger.totalTodayForAuthor("auth-1") == 3
    assert ledger.totalTodayForAuthor("auth-2") == 7
    assert ledger.totalTodayForAuthor("nobody") == 0

def test_totals_roll_over_at_midnight(ledger, clock):
    ledger.recordSettlement("evt-1", "auth-1", 21, 1)
    clock.now = NOON + DAY // 2
    assert ledger.totalToday() == 0

def test_totals_survive_reopen(tmp_path, clock):
    path = str(tmp_path / "zaps.db")
    Ledger(path, clock=clock).recordSettlement("evt-1", "auth-1", 21, 1)
    reopened = Ledger(path, clock=clock)
    assert reopened.isSettled("evt-1")
    assert reopened.totalToday() == 21

def test_stats_and_recent(ledger, clock):
    ledger.recordSettlement("evt-1", "auth-1", 3, 1)
    clock.now += 10
    ledger.recordSettlement("evt-2", "auth-1", 3, 2)
    clock.now += 10
    ledger.recordSettlement("evt-3", "auth-2", 4, 3)
    stats = ledger.getStats()
    assert stats.totalZapped == 3
    assert stats.totalSats == 10
    assert stats.todayTotal == 10
    assert stats.uniqueAuthors == 2
    recent = ledger.getRecentSettlements(2)
    assert [e.eventId for e in recent] == ["evt-3", "evt-2"]

def test_empty_stats(ledger):
    stats = ledger.getStats()
    assert stats.totalZapped == 0
    assert stats.totalSats == 0
    assert ledger.getRecentSettlements() == []

def test_concurrent_duplicate_records_leave_one_entry(ledger):
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def record():
        barrier.wait()
        try:
            ledger.recordSettlement("evt-1", "auth-1", 3, 1)
            outcome = "ok"
        except ConflictError:
            outcome = "conflict"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=record) for _ in range(8)]
    for t in threads: t.start()
    for t in threads: t.join()
    assert results.count("ok") == 1
    assert results.count("conflict") == 7
    assert ledger.getStats().totalZapped == 1
