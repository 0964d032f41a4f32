"""
Reservation reaper: releases credit holds of abandoned combined payments.

A combined transaction still ``created`` after the staleness window never
reached the gateway's success callback; its hold is released and it becomes
``abandoned``. Each transaction is handled in its own unit of work guarded on
its current state, so overlapping sweeps are harmless.

Holds left on ``failed`` transactions past the same window are released too;
their status stays ``failed``.

``sweep()`` can be triggered externally (admin endpoint); ``start()`` runs it
on an interval in the background.
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from dotenv import load_dotenv
from sqlalchemy import and_, select
from sqlalchemy.orm.exc import StaleDataError

from courtbook.database import db
from courtbook.database.models import PaymentMethod, Transaction, TransactionStatus
from courtbook.services import credit_service, transaction_state
from courtbook.services.exceptions import ConflictError
from courtbook.utils.datetime_utils import utcnow

load_dotenv()

logger = logging.getLogger(__name__)

# Created transactions older than this are abandoned
STALE_MINUTES = int(os.getenv("RESERVATION_STALE_MINUTES", "60"))

# How often the worker sweeps (seconds)
POLL_INTERVAL_SECONDS = int(os.getenv("RESERVATION_REAPER_INTERVAL_SECONDS", "300"))


class ReservationReaper:
    """Sweeps stale credit reservations, optionally on a background loop."""

    def __init__(
        self,
        stale_minutes: int = STALE_MINUTES,
        poll_interval_seconds: int = POLL_INTERVAL_SECONDS,
    ):
        self.stale_minutes = stale_minutes
        self.poll_interval_seconds = poll_interval_seconds
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        """Start the background sweep worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info("Reservation reaper started")

    def stop(self) -> None:
        """Stop the background sweep worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Reservation reaper stopped")

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error in reservation reaper: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - timedelta(minutes=self.stale_minutes)

    async def _stale_ids(self, status: str, cutoff: datetime) -> List[int]:
        conditions = [
            Transaction.status == status,
            Transaction.created_at < cutoff,
        ]
        if status == TransactionStatus.CREATED.value:
            conditions.append(Transaction.method == PaymentMethod.COMBINED.value)
        else:
            conditions.append(Transaction.credit_reserved == True)  # noqa: E712
            conditions.append(Transaction.credit_deducted == False)  # noqa: E712

        session_factory = db.get_session_factory()
        async with session_factory() as session:
            result = await session.execute(
                select(Transaction.id).where(and_(*conditions)).order_by(Transaction.id)
            )
            return list(result.scalars().all())

    async def _abandon(self, transaction_id: int) -> bool:
        session_factory = db.get_session_factory()
        async with session_factory() as session:
            try:
                txn = await session.get(Transaction, transaction_id)
                if txn is None or txn.status != TransactionStatus.CREATED.value:
                    return False
                credit_service.release(txn)
                transaction_state.transition(txn, TransactionStatus.ABANDONED.value)
                await session.commit()
            except (StaleDataError, ConflictError) as e:
                await session.rollback()
                logger.warning(f"Skipped abandoning transaction {transaction_id}: {e}")
                return False
        logger.info(f"Abandoned stale transaction {transaction_id}")
        return True

    async def _release_failed_hold(self, transaction_id: int) -> bool:
        session_factory = db.get_session_factory()
        async with session_factory() as session:
            try:
                txn = await session.get(Transaction, transaction_id)
                if txn is None or txn.status != TransactionStatus.FAILED.value:
                    return False
                if not credit_service.release(txn):
                    return False
                await session.commit()
            except (StaleDataError, ConflictError) as e:
                await session.rollback()
                logger.warning(f"Skipped releasing hold of transaction {transaction_id}: {e}")
                return False
        return True

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Run one pass.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            Dict with ``abandoned`` and ``released`` counts
        """
        cutoff = self.cutoff(now)
        abandoned = 0
        for transaction_id in await self._stale_ids(TransactionStatus.CREATED.value, cutoff):
            try:
                if await self._abandon(transaction_id):
                    abandoned += 1
            except Exception as e:
                logger.error(f"Error abandoning transaction {transaction_id}: {e}", exc_info=True)

        released = 0
        for transaction_id in await self._stale_ids(TransactionStatus.FAILED.value, cutoff):
            try:
                if await self._release_failed_hold(transaction_id):
                    released += 1
            except Exception as e:
                logger.error(f"Error releasing hold of transaction {transaction_id}: {e}", exc_info=True)

        if abandoned or released:
            logger.info(f"Reaper sweep: {abandoned} abandoned, {released} failed hold(s) released")
        return {"abandoned": abandoned, "released": released}
