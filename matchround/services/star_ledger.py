"""
Star Ledger Service

Debits and credits the star balance and keeps the provenance log.

Design:
- Debits are a single conditional UPDATE (balance >= amount), so the balance
  can never go negative even when two debits for one user race
- Credits are idempotent per reason key: a repeated reason is a no-op
- Nothing here commits; callers own the transaction so a balance change
  lands atomically with the state change that caused it
"""
import logging
from dataclasses import dataclass
from typing import Optional, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from matchround.config.settings import settings
from matchround.errors import InsufficientFundsError
from matchround.orm.star import StarWallet, StarTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceChange:
    """Balance-change notification handed back to the caller."""
    user_id: int
    delta: int
    new_balance: int
    reason: str
    applied: bool = True
    transaction_id: Optional[int] = None


class StarLedger:
    """Star currency ledger."""

    @staticmethod
    async def _read_balance(db: AsyncSession, user_id: int) -> Optional[int]:
        result = await db.execute(
            select(StarWallet.balance).where(StarWallet.user_id == user_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _ensure_wallet(db: AsyncSession, user_id: int) -> int:
        """Return the wallet balance, creating the wallet on first touch."""
        balance = await StarLedger._read_balance(db, user_id)
        if balance is not None:
            return balance

        wallet = StarWallet(user_id=user_id, balance=settings.STAR_INITIAL_BALANCE)
        db.add(wallet)
        await db.flush()
        return wallet.balance

    @staticmethod
    async def get_balance(db: AsyncSession, user_id: int) -> int:
        """Current balance; users without a wallet hold the initial balance."""
        balance = await StarLedger._read_balance(db, user_id)
        if balance is None:
            return settings.STAR_INITIAL_BALANCE
        return balance

    @staticmethod
    async def debit(
        db: AsyncSession,
        user_id: int,
        amount: int,
        reason: str,
        application_id: Optional[int] = None
    ) -> BalanceChange:
        """
        Atomically take `amount` stars from the user.

        Raises:
            InsufficientFundsError: balance < amount; nothing is written
        """
        if amount < 0:
            raise ValueError("debit amount must be >= 0")

        await StarLedger._ensure_wallet(db, user_id)

        result = await db.execute(
            update(StarWallet)
            .where(StarWallet.user_id == user_id, StarWallet.balance >= amount)
            .values(balance=StarWallet.balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            balance = await StarLedger.get_balance(db, user_id)
            logger.info(f"Debit refused for user {user_id}: balance {balance}, required {amount}")
            raise InsufficientFundsError(balance=balance, required=amount)

        new_balance = await StarLedger._read_balance(db, user_id)
        tx = StarTransaction(
            user_id=user_id,
            amount=-amount,
            reason=reason,
            application_id=application_id,
            balance_after=new_balance
        )
        db.add(tx)
        await db.flush()

        logger.info(f"Debited {amount} stars from user {user_id} ({reason}), balance {new_balance}")
        return BalanceChange(
            user_id=user_id,
            delta=-amount,
            new_balance=new_balance,
            reason=reason,
            transaction_id=tx.id
        )

    @staticmethod
    async def credit(
        db: AsyncSession,
        user_id: int,
        amount: int,
        reason: str,
        application_id: Optional[int] = None
    ) -> BalanceChange:
        """
        Give `amount` stars to the user, at most once per `reason`.

        A second credit with the same reason returns the current balance
        with `applied=False` and writes nothing.
        """
        if amount < 0:
            raise ValueError("credit amount must be >= 0")

        existing = await db.execute(
            select(StarTransaction.id).where(StarTransaction.idempotency_key == reason)
        )
        if existing.scalar_one_or_none() is not None:
            balance = await StarLedger.get_balance(db, user_id)
            logger.info(f"Credit {reason} for user {user_id} already applied, skipping")
            return BalanceChange(
                user_id=user_id,
                delta=0,
                new_balance=balance,
                reason=reason,
                applied=False
            )

        await StarLedger._ensure_wallet(db, user_id)
        await db.execute(
            update(StarWallet)
            .where(StarWallet.user_id == user_id)
            .values(balance=StarWallet.balance + amount)
            .execution_options(synchronize_session=False)
        )

        new_balance = await StarLedger._read_balance(db, user_id)
        tx = StarTransaction(
            user_id=user_id,
            amount=amount,
            reason=reason,
            idempotency_key=reason,
            application_id=application_id,
            balance_after=new_balance
        )
        db.add(tx)
        await db.flush()

        logger.info(f"Credited {amount} stars to user {user_id} ({reason}), balance {new_balance}")
        return BalanceChange(
            user_id=user_id,
            delta=amount,
            new_balance=new_balance,
            reason=reason,
            transaction_id=tx.id
        )

    @staticmethod
    async def attach_provenance(db: AsyncSession, transaction_id: int, application_id: int) -> None:
        """Link a ledger entry to the application that caused it."""
        await db.execute(
            update(StarTransaction)
            .where(StarTransaction.id == transaction_id)
            .values(application_id=application_id)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def find_debit(db: AsyncSession, application_id: int) -> Optional[StarTransaction]:
        """The debit recorded for an application, if any."""
        result = await db.execute(
            select(StarTransaction)
            .where(
                StarTransaction.application_id == application_id,
                StarTransaction.amount <= 0,
                StarTransaction.idempotency_key.is_(None)
            )
            .order_by(StarTransaction.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_transactions(
        db: AsyncSession,
        user_id: int,
        limit: Optional[int] = None
    ) -> List[StarTransaction]:
        """Most recent ledger entries, newest first."""
        result = await db.execute(
            select(StarTransaction)
            .where(StarTransaction.user_id == user_id)
            .order_by(StarTransaction.id.desc())
            .limit(limit or settings.STAR_HISTORY_LIMIT)
        )
        return list(result.scalars().all())
