"""
Credit Ledger
Account balances and the append-only credit transaction log.

Every balance change is a single conditional UPDATE on the account row, and
its ledger entry is written in the same transaction, so ``balance_after`` is
always the balance that UPDATE produced.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comicstudio.core.config import settings
from comicstudio.core.database import AsyncSessionLocal, transaction
from comicstudio.core.errors import InsufficientCreditsError, NotFoundError
from comicstudio.models.db import Account, CreditTransaction, new_id, utcnow

logger = structlog.get_logger()


# Ledger reason codes
REASON_SIGNUP_BONUS = "signup_bonus"
REASON_PURCHASE = "purchase"
REASON_JOB_CANCELLED = "job_cancelled"


@dataclass
class LedgerAudit:
    """Result of replaying an account's history."""

    account_id: str
    balance: int
    replayed_balance: int
    entries: int
    mismatched_tx_ids: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.balance == self.replayed_balance and not self.mismatched_tx_ids


class CreditLedger:
    """Credit balance and transaction history per account"""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    async def open_account(
        self,
        account_id: Optional[str] = None,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        initial_credits: Optional[int] = None,
    ) -> Account:
        """
        Create an account and record its signup grant.

        The grant is a regular ledger entry, so replaying the history from
        zero always reproduces the balance.
        """
        grant = settings.signup_bonus_credits if initial_credits is None else initial_credits
        if grant < 0:
            raise ValueError("initial_credits must not be negative")

        async with transaction(self._session_factory) as session:
            account = Account(
                account_id=account_id or new_id(),
                email=email,
                display_name=display_name,
                credits_balance=grant,
            )
            session.add(account)
            await session.flush()

            if grant > 0:
                session.add(
                    CreditTransaction(
                        account_id=account.account_id,
                        amount=grant,
                        balance_after=grant,
                        reason=REASON_SIGNUP_BONUS,
                        created_at=utcnow(),
                    )
                )

        logger.info("Account opened", account_id=account.account_id, credits=grant)
        return account

    async def debit(
        self,
        account_id: str,
        amount: int,
        reason: str,
        metadata: Optional[dict[str, Any]] = None,
        session: Optional[AsyncSession] = None,
    ) -> int:
        """
        Take ``amount`` credits from the account.

        Returns:
            New balance

        Raises:
            InsufficientCreditsError: balance < amount (nothing is written)
            NotFoundError: unknown account
        """
        _check_amount(amount)
        async with transaction(self._session_factory, session) as db:
            balance = await self._apply(db, account_id, -amount, reason, metadata)

        logger.info(
            "Credits deducted",
            account_id=account_id,
            amount=amount,
            reason=reason,
            balance=balance,
        )
        return balance

    async def credit(
        self,
        account_id: str,
        amount: int,
        reason: str,
        metadata: Optional[dict[str, Any]] = None,
        session: Optional[AsyncSession] = None,
    ) -> int:
        """Add ``amount`` credits (purchases and refunds). Returns the new balance."""
        _check_amount(amount)
        async with transaction(self._session_factory, session) as db:
            balance = await self._apply(db, account_id, amount, reason, metadata)

        logger.info(
            "Credits added",
            account_id=account_id,
            amount=amount,
            reason=reason,
            balance=balance,
        )
        return balance

    async def purchase(self, account_id: str, amount: int) -> int:
        """Mock purchase: no payment gateway, the credits are simply granted."""
        if amount > settings.max_purchase_credits:
            raise ValueError(
                f"amount must not exceed {settings.max_purchase_credits} credits"
            )
        return await self.credit(account_id, amount, REASON_PURCHASE)

    async def get_balance(self, account_id: str) -> int:
        async with self._session_factory() as session:
            balance = await session.scalar(
                select(Account.credits_balance).where(Account.account_id == account_id)
            )
        if balance is None:
            raise NotFoundError("Account", account_id)
        return balance

    async def list_history(
        self, account_id: str, limit: int = 10
    ) -> list[CreditTransaction]:
        """
        Most recent entries first.

        Ordered by insert id: entries are inserted while the account row is
        locked, so ids follow commit order even when writers' clocks differ.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(CreditTransaction)
                .where(CreditTransaction.account_id == account_id)
                .order_by(CreditTransaction.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def verify_history(self, account_id: str) -> LedgerAudit:
        """Replay the full history oldest-first and compare with the stored balance."""
        balance = await self.get_balance(account_id)

        async with self._session_factory() as session:
            result = await session.execute(
                select(CreditTransaction)
                .where(CreditTransaction.account_id == account_id)
                .order_by(CreditTransaction.id.asc())
            )
            entries = result.scalars().all()

        running = 0
        mismatched = []
        for entry in entries:
            running += entry.amount
            if entry.balance_after != running:
                mismatched.append(entry.tx_id)

        audit = LedgerAudit(
            account_id=account_id,
            balance=balance,
            replayed_balance=running,
            entries=len(entries),
            mismatched_tx_ids=mismatched,
        )
        if not audit.ok:
            logger.error(
                "Ledger replay mismatch",
                account_id=account_id,
                balance=balance,
                replayed_balance=running,
                mismatched=len(mismatched),
            )
        return audit

    async def _apply(
        self,
        session: AsyncSession,
        account_id: str,
        delta: int,
        reason: str,
        metadata: Optional[dict[str, Any]],
    ) -> int:
        """Conditionally move the balance by ``delta`` and append the entry."""
        stmt = update(Account).where(Account.account_id == account_id)
        if delta < 0:
            stmt = stmt.where(Account.credits_balance >= -delta)
        stmt = stmt.values(
            credits_balance=Account.credits_balance + delta,
            updated_at=utcnow(),
        ).execution_options(synchronize_session=False)

        result = await session.execute(stmt)
        if result.rowcount != 1:
            available = await session.scalar(
                select(Account.credits_balance).where(Account.account_id == account_id)
            )
            if available is None:
                raise NotFoundError("Account", account_id)
            logger.info(
                "Insufficient credits",
                account_id=account_id,
                required=-delta,
                available=available,
            )
            raise InsufficientCreditsError(required=-delta, available=available)

        # The row is locked by our UPDATE until commit
        balance = await session.scalar(
            select(Account.credits_balance).where(Account.account_id == account_id)
        )

        session.add(
            CreditTransaction(
                account_id=account_id,
                amount=delta,
                balance_after=balance,
                reason=reason,
                meta=metadata,
                created_at=utcnow(),
            )
        )
        await session.flush()
        return balance


def _check_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValueError("amount must be a positive integer")


# Singleton instance
credit_ledger = CreditLedger()
