"""
Conversational order flow: collect links, confirm twice, then place one
external order per configured service for every link.

Balance handling during execution:
  * the whole batch is reserved up front with a conditional debit, so a
    concurrent session can never spend the same units;
  * links that were never attempted are always given back;
  * links that were attempted but failed are given back unless
    ``charge_failed_links`` is set.
With the default policy the net charge equals the number of placed links.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

import ledger
import orders
from catalog import validate_catalog
from config import ServiceConfig
from errors import (BatchInProgress, ExternalApiError, InsufficientBalance,
                    LimitChanged, NoValidLinks, SessionExpired)
from orders import OrderStatus, ServicePlacement

logger = logging.getLogger(__name__)


def parse_links(text: str) -> List[str]:
    """Non-empty lines starting with http, in input order."""
    links = []
    for line in (text or '').splitlines():
        line = line.strip()
        if line and line.startswith('http'):
            links.append(line)
    return links


class Stage(str, Enum):
    AWAITING_LINKS = 'awaiting_links'
    AWAITING_CONFIRMATION = 'awaiting_confirmation'
    AWAITING_FINAL_CONFIRMATION = 'awaiting_final_confirmation'
    EXECUTING = 'executing'


@dataclass
class OrderSession:
    account_id: str
    stage: Stage = Stage.AWAITING_LINKS
    links: List[str] = field(default_factory=list)
    reserved: int = 0
    touched_at: float = 0.0


class SessionStore:
    """Per-account pending order sessions with idle expiry."""

    def __init__(self, ttl: float = 900, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._sessions: Dict[str, OrderSession] = {}

    def _expired(self, session: OrderSession) -> bool:
        # A running batch is never expired from under the executor
        if session.stage is Stage.EXECUTING:
            return False
        return self._clock() - session.touched_at > self.ttl

    def get(self, account_id: str) -> Optional[OrderSession]:
        session = self._sessions.get(account_id)
        if session is None:
            return None
        if self._expired(session):
            self._sessions.pop(account_id, None)
            logger.info(f"Order session of {account_id} expired")
            return None
        return session

    def open(self, account_id: str) -> OrderSession:
        session = OrderSession(account_id=account_id, touched_at=self._clock())
        self._sessions[account_id] = session
        return session

    def touch(self, session: OrderSession) -> None:
        session.touched_at = self._clock()

    def close(self, account_id: str, session: Optional[OrderSession] = None) -> None:
        """Drop the account's session; with ``session`` given, only if it is still the current one."""
        current = self._sessions.get(account_id)
        if current is not None and (session is None or current is session):
            del self._sessions[account_id]

    def purge_expired(self) -> int:
        stale = [aid for aid, s in self._sessions.items() if self._expired(s)]
        for aid in stale:
            del self._sessions[aid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)


ProgressCallback = Callable[[int, int, int, int], Awaitable[None]]


class ProgressReporter:
    """Forwards progress to ``callback`` every ``every`` links for batches larger than ``every``."""

    def __init__(self, callback: ProgressCallback, every: int = 3):
        self.callback = callback
        self.every = max(1, every)

    def should_report(self, done: int, total: int) -> bool:
        return total > self.every and done > 0 and done < total and done % self.every == 0

    async def __call__(self, done: int, total: int, succeeded: int, failed: int) -> None:
        if not self.should_report(done, total):
            return
        try:
            await self.callback(done, total, succeeded, failed)
        except Exception as e:
            logger.warning(f"Progress update failed: {e}")


@dataclass
class BatchResult:
    total: int
    succeeded: int
    failed: int
    refunded: int
    balance: int
    order_ids: List[int] = field(default_factory=list)


class OrderBatchProcessor:
    def __init__(
        self,
        api,
        services: List[ServiceConfig],
        sessions: Optional[SessionStore] = None,
        charge_failed_links: bool = False,
        call_timeout: Optional[float] = 30,
    ):
        if not services:
            raise ValueError("at least one service must be configured")
        self.api = api
        self.services = list(services)
        self.sessions = sessions or SessionStore()
        self.charge_failed_links = charge_failed_links
        self.call_timeout = call_timeout
        # Per-account locks serialise stage transitions of one account
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def _session_at(self, account_id: str, stage: Stage) -> OrderSession:
        session = self.sessions.get(account_id)
        if session is None or session.stage is not stage:
            raise SessionExpired()
        return session

    def current_stage(self, account_id: str) -> Optional[Stage]:
        session = self.sessions.get(str(account_id))
        return session.stage if session else None

    async def start(self, account_id: str) -> int:
        """Open a new order session; returns the current balance."""
        account_id = str(account_id)
        async with self._lock(account_id):
            existing = self.sessions.get(account_id)
            if existing is not None and existing.stage is Stage.EXECUTING:
                raise BatchInProgress()
            balance = await ledger.get_balance(account_id)
            if balance <= 0:
                raise InsufficientBalance(required=1, available=balance)
            await validate_catalog(self.api, self.services)
            self.sessions.open(account_id)
        logger.info(f"Order session started for {account_id} (balance {balance})")
        return balance

    async def submit_links(self, account_id: str, text: str) -> OrderSession:
        account_id = str(account_id)
        async with self._lock(account_id):
            session = self._session_at(account_id, Stage.AWAITING_LINKS)
            self.sessions.touch(session)
            links = parse_links(text)
            if not links:
                raise NoValidLinks()
            balance = await ledger.get_balance(account_id)
            if len(links) > balance:
                raise InsufficientBalance(required=len(links), available=balance)
            session.links = links
            session.stage = Stage.AWAITING_CONFIRMATION
            return session

    async def confirm(self, account_id: str) -> OrderSession:
        account_id = str(account_id)
        async with self._lock(account_id):
            session = self._session_at(account_id, Stage.AWAITING_CONFIRMATION)
            balance = await ledger.get_balance(account_id)
            if len(session.links) > balance:
                self.sessions.close(account_id, session)
                raise LimitChanged(required=len(session.links), available=balance)
            session.stage = Stage.AWAITING_FINAL_CONFIRMATION
            self.sessions.touch(session)
            return session

    async def cancel(self, account_id: str) -> bool:
        account_id = str(account_id)
        async with self._lock(account_id):
            session = self.sessions.get(account_id)
            if session is None:
                return False
            if session.stage is Stage.EXECUTING:
                raise BatchInProgress()
            self.sessions.close(account_id, session)
        logger.info(f"Order session of {account_id} cancelled at {session.stage.value}")
        return True

    async def execute(self, account_id: str, progress: Optional[ProgressCallback] = None) -> BatchResult:
        account_id = str(account_id)
        async with self._lock(account_id):
            session = self._session_at(account_id, Stage.AWAITING_FINAL_CONFIRMATION)
            session.stage = Stage.EXECUTING
        links = list(session.links)
        total = len(links)
        succeeded = 0
        failed_attempted = 0
        attempted = 0
        refund = 0
        order_ids: List[int] = []
        try:
            await validate_catalog(self.api, self.services)
            await ledger.try_debit(account_id, total)
            session.reserved = total
            try:
                for index, link in enumerate(links):
                    if progress:
                        await progress(index, total, succeeded, failed_attempted)
                    ok, record = await self._place_link(account_id, link)
                    attempted += 1
                    order_ids.append(record.id)
                    if ok:
                        succeeded += 1
                    else:
                        failed_attempted += 1
            except Exception:
                logger.exception(f"Batch of {account_id} aborted after {attempted}/{total} links")
        finally:
            # Runs on errors and cancellation alike once the reservation has landed
            try:
                if session.reserved:
                    refund = (total - attempted) + (0 if self.charge_failed_links else failed_attempted)
                    await self._refund(account_id, refund)
            finally:
                self.sessions.close(account_id, session)

        balance = await ledger.get_balance(account_id)
        result = BatchResult(
            total=total,
            succeeded=succeeded,
            failed=total - succeeded,
            refunded=refund,
            balance=balance,
            order_ids=order_ids,
        )
        logger.info(
            f"Batch of {account_id} done: {succeeded}/{total} placed, "
            f"{result.failed} failed, {refund} refunded, balance {balance}"
        )
        return result

    async def _refund(self, account_id: str, amount: int) -> None:
        if amount <= 0:
            return
        try:
            # The credit completes even if the caller is cancelled again
            await asyncio.shield(ledger.credit(account_id, amount))
        except Exception:
            logger.exception(f"Refund of {amount} link(s) to {account_id} failed, balance needs manual correction")
            raise

    async def _place_link(self, account_id: str, link: str):
        """Place every configured service for one link and record the outcome."""
        placements: List[ServicePlacement] = []
        for svc in self.services:
            placement = ServicePlacement(service_key=svc.key, service_id=svc.service_id, quantity=svc.quantity)
            try:
                placement.external_id = await asyncio.wait_for(
                    self.api.place_order(svc.service_id, link, svc.quantity),
                    self.call_timeout,
                )
            except ExternalApiError as e:
                logger.warning(f"Link {link}: service {svc.service_id} failed: {e}")
            except asyncio.TimeoutError:
                logger.warning(f"Link {link}: service {svc.service_id} timed out after {self.call_timeout}s")
            except Exception:
                logger.exception(f"Link {link}: service {svc.service_id} raised unexpectedly")
            placements.append(placement)
        ok = all(p.external_id for p in placements)
        status = OrderStatus.PROCESSING if ok else OrderStatus.ERROR
        try:
            record = await orders.create_order(account_id, link, placements, status)
        except Exception:
            placed = [p.external_id for p in placements if p.external_id]
            logger.exception(f"Link {link}: could not record placed orders {placed} for {account_id}")
            raise
        return ok, record

    def purge_idle_locks(self) -> int:
        """Drop locks of accounts that have no session and are not held."""
        stale = [
            aid for aid, lock in self._locks.items()
            if not lock.locked() and self.sessions.get(aid) is None
        ]
        for aid in stale:
            self._locks.pop(aid, None)
        if stale:
            logger.debug(f"Dropped {len(stale)} idle account lock(s), {len(self._locks)} left")
        return len(stale)
