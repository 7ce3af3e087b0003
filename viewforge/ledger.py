# ledger.py
"""
Credit ledger.

A reservation is an immediate deduction: `reserve` takes the credits off the
balance right away and `refund` is the only way to give them back.
"""

import logging
import uuid
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from viewforge.models import CreditAccount, CreditReservation

log = logging.getLogger(__name__)


class ReservationResult(BaseModel):
    success: bool
    reservation_id: Optional[uuid.UUID] = None
    message: Optional[str] = None


class RefundResult(BaseModel):
    success: bool
    message: Optional[str] = None


class CreditLedger:
    """Per-user view of the credit tables. Every mutation commits on its own."""

    def __init__(self, db: AsyncSession, owner_id: uuid.UUID):
        self.db = db
        self.owner_id = owner_id

    async def balance(self) -> int:
        account = await self.db.get(CreditAccount, self.owner_id, populate_existing=True)
        return account.balance if account else 0

    async def grant(self, amount: int) -> int:
        """Adds credits to the account, creating it if needed. Returns the new balance."""
        if amount <= 0:
            raise ValueError("Grant amount must be positive")
        account = await self.db.get(CreditAccount, self.owner_id, populate_existing=True)
        if account is None:
            account = CreditAccount(user_id=self.owner_id, balance=0)
            self.db.add(account)
        account.balance = (account.balance or 0) + amount
        await self.db.commit()
        log.info(f"Granted {amount} credits to {self.owner_id}. Balance: {account.balance}")
        return account.balance

    async def reserve(self, amount: int, reason: Optional[str] = None) -> ReservationResult:
        if amount <= 0:
            return ReservationResult(success=False, message="Reservation amount must be positive")

        # Conditional decrement: the balance check and the deduction are one statement.
        stmt = (
            update(CreditAccount)
            .where(CreditAccount.user_id == self.owner_id, CreditAccount.balance >= amount)
            .values(balance=CreditAccount.balance - amount)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            if result.rowcount != 1:
                log.info(f"Reservation of {amount} credits refused for {self.owner_id}: insufficient balance")
                return ReservationResult(
                    success=False,
                    message=f"Insufficient credits. Need {amount} credits.",
                )

            reservation = CreditReservation(owner_id=self.owner_id, amount=amount, reason=reason)
            self.db.add(reservation)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            log.error(f"Failed to reserve {amount} credits for {self.owner_id}: {e}", exc_info=True)
            return ReservationResult(success=False, message="Failed to reserve credits")

        log.info(f"Reserved {amount} credits for {self.owner_id} (reservation {reservation.id})")
        return ReservationResult(success=True, reservation_id=reservation.id)

    async def refund(self, amount: int, reservation_id: Optional[uuid.UUID]) -> RefundResult:
        """
        Returns `amount` credits taken by `reservation_id`.

        Refunds are checked against the reservation record: it must exist,
        belong to this owner, and the total refunded may not exceed what
        was reserved.
        """
        if amount <= 0:
            return RefundResult(success=False, message="Refund amount must be positive")
        if reservation_id is None:
            return RefundResult(success=False, message="Missing reservation id")

        q = select(CreditReservation).where(CreditReservation.id == reservation_id)
        reservation = (await self.db.execute(q.execution_options(populate_existing=True))).scalar_one_or_none()
        if reservation is None or reservation.owner_id != self.owner_id:
            log.error(f"Refund rejected: reservation {reservation_id} not found for {self.owner_id}")
            return RefundResult(success=False, message="Reservation not found")

        remaining = reservation.amount - (reservation.refunded_amount or 0)
        if amount > remaining:
            log.error(
                f"Refund rejected: {amount} credits requested but only {remaining} "
                f"left on reservation {reservation_id}"
            )
            return RefundResult(success=False, message="Refund exceeds reserved amount")

        try:
            reservation.refunded_amount = (reservation.refunded_amount or 0) + amount
            await self.db.execute(
                update(CreditAccount)
                .where(CreditAccount.user_id == self.owner_id)
                .values(balance=CreditAccount.balance + amount)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            log.error(f"Failed to refund {amount} credits on {reservation_id}: {e}", exc_info=True)
            return RefundResult(success=False, message="Failed to refund credits")

        log.info(f"Refunded {amount} credits to {self.owner_id} (reservation {reservation_id})")
        return RefundResult(success=True)
