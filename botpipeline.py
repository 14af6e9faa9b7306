#!/usr/bin/env python3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from nostr.event import EventKind
import sqlite3
import threading
import botutils as utils
from boterrors import ConflictError, PaymentUnknown, SessionCanceled, ZapBotError

SETTLED = "settled"
SKIPPED_DUPLICATE = "skipped-duplicate"
SKIPPED_BUDGET = "skipped-budget"
FAILED = "failed"
IGNORED = "ignored"

_attempts = 2
_settleTimeout = 30
_settleBackoff = 2
_reactTimeout = 10
_reactBackoff = 1

@dataclass
class PostReport:
    eventId: str
    authorId: str
    outcome: str
    amountSats: int = 0
    reacted: bool = None        # None when reactions are disabled
    recorded: bool = False
    error: str = None

    def describe(self):
        message = f"Event {self.eventId} from {self.authorId[:16]}...: {self.outcome}"
        if self.outcome == SETTLED: message = f"{message} ({self.amountSats} sats)"
        if self.error: message = f"{message} - {self.error}"
        if self.reacted is not None: message = f"{message}, reaction {'published' if self.reacted else 'failed'}"
        return message

class Orchestrator:
    """Decides what happens to each incoming post.

    Every post runs on the worker pool. Within a post the settlement and the
    reaction run side by side and are joined before the report is returned.
    The budget check and the ledger write are not one transaction, so posts
    racing through the check together can overshoot a limit by one zap each.
    """

    def __init__(self, ctx, ledger, zapper, reactor=None, settleBackoff=_settleBackoff, reactBackoff=_reactBackoff):
        self.ctx = ctx
        self.logger = ctx.logger
        self.ledger = ledger
        self.zapper = zapper
        self.reactor = reactor
        self.amount = ctx.config["zap"]["amount"]
        self.comment = ctx.config["zap"].get("comment", "")
        self.dailyLimit = ctx.config["budget"]["dailyLimit"]
        self.perNpubLimit = ctx.config["budget"]["perNpubLimit"]
        self.reactionEnabled = reactor is not None and reactor.enabled
        self.settleBackoff = settleBackoff
        self.reactBackoff = reactBackoff
        maxWorkers = int(ctx.config.get("maxWorkers", 8))
        self.executor = ThreadPoolExecutor(max_workers=maxWorkers, thread_name_prefix="post")
        self.attemptExecutor = ThreadPoolExecutor(max_workers=maxWorkers * 2, thread_name_prefix="attempt")
        self._inFlight = set()
        self._inFlightLock = threading.Lock()

    def checkBudget(self, post):
        todayTotal = self.ledger.totalToday()
        if todayTotal + self.amount > self.dailyLimit:
            return f"daily budget exceeded ({todayTotal}/{self.dailyLimit} sats)"
        authorTotal = self.ledger.totalTodayForAuthor(post.authorId)
        if authorTotal + self.amount > self.perNpubLimit:
            return f"per-author budget exceeded ({authorTotal}/{self.perNpubLimit} sats)"
        return None

    def processPost(self, post):
        if post.kind != int(EventKind.TEXT_NOTE):
            return PostReport(post.id, post.authorId, IGNORED)
        self.logger.info(f"New note {post.id} from {post.authorId[:16]}...: {utils.truncate(post.content)}")
        try:
            if self.ledger.isSettled(post.id):
                return PostReport(post.id, post.authorId, SKIPPED_DUPLICATE)
            budgetProblem = self.checkBudget(post)
        except sqlite3.Error as err:
            self.logger.error(f"Failed to read ledger for event {post.id}: {str(err)}")
            return PostReport(post.id, post.authorId, FAILED, error=f"ledger read failed: {str(err)}")
        if budgetProblem is not None:
            return PostReport(post.id, post.authorId, SKIPPED_BUDGET, error=budgetProblem)

        settleFuture = self.attemptExecutor.submit(self.trySettle, post)
        reactFuture = self.attemptExecutor.submit(self.tryReact, post) if self.reactionEnabled else None
        settleError = settleFuture.result()
        reacted = None
        if reactFuture is not None: reacted = reactFuture.result() is None

        if settleError is not None:
            return PostReport(post.id, post.authorId, FAILED, reacted=reacted, error=str(settleError))
        report = PostReport(post.id, post.authorId, SETTLED, self.amount, reacted)
        try:
            self.ledger.recordSettlement(post.id, post.authorId, self.amount, post.createdAt)
            report.recorded = True
        except (ConflictError, sqlite3.Error) as err:
            # the payment went through and cannot be undone
            self.logger.error(f"RECONCILIATION REQUIRED: paid {self.amount} sats for event {post.id} by {post.authorId} but the ledger write failed: {str(err)}")
            report.error = f"ledger write failed: {str(err)}"
        return report

    def _withRetry(self, name, post, fn, timeout, backoff):
        lastErr = None
        for attempt in range(1, _attempts + 1):
            self.logger.debug(f"Attempting {name} for event {post.id} (attempt {attempt})")
            try:
                fn(self.ctx.deadline(timeout))
                return None
            except SessionCanceled as err:
                self.logger.info(f"{name} for event {post.id} canceled by shutdown")
                return err
            except PaymentUnknown as err:
                self.logger.error(f"RECONCILIATION REQUIRED: {name} for event {post.id} by {post.authorId} may have been paid: {str(err)}")
                return err
            except (ZapBotError, OSError) as err:
                lastErr = err
                self.logger.error(f"{name} failed for event {post.id} on attempt {attempt}: {str(err)}")
            except Exception as err:
                # not retried, the state of the remote side is unknown
                self.logger.exception(f"{name} for event {post.id} failed unexpectedly")
                return err
            if attempt < _attempts and self.ctx.shutdown.wait(backoff): break
        self.logger.error(f"{name} failed for event {post.id} after {_attempts} attempts")
        return lastErr

    def trySettle(self, post):
        # returns None on success, otherwise the last error
        return self._withRetry("Zap", post,
            lambda deadline: self.zapper.zapNote(post.id, post.authorId, self.amount, self.comment, deadline),
            _settleTimeout, self.settleBackoff)

    def tryReact(self, post):
        return self._withRetry("Reaction", post,
            lambda deadline: self.reactor.react(post.id, post.authorId, deadline),
            _reactTimeout, self.reactBackoff)

    def _run(self, post):
        try:
            report = self.processPost(post)
        except Exception as err:
            self.logger.exception(f"Processing event {post.id} failed unexpectedly")
            report = PostReport(post.id, post.authorId, FAILED, error=f"unexpected error: {err!r}")
        finally:
            with self._inFlightLock:
                self._inFlight.discard(post.id)
        if report.outcome != IGNORED: self.logger.info(report.describe())
        return report

    def submit(self, post):
        with self._inFlightLock:
            if post.id in self._inFlight:
                self.logger.debug(f"Event {post.id} is already being processed")
                return None
            self._inFlight.add(post.id)
        return self.executor.submit(self._run, post)

    def drain(self):
        self.executor.shutdown(wait=True)
        self.attemptExecutor.shutdown(wait=True)
