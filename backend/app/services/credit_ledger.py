"""Per-user credit balances and the append-only transaction log."""

import asyncio
import logging
import math
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import Database, utcnow
from app.errors import ErrorContext, InsufficientCreditsError, ValidationError
from app.models.credit import CreditAccount, CreditTransaction, TransactionType

logger = logging.getLogger(__name__)

LONG_VIDEO_SECONDS = 600


@dataclass(frozen=True)
class CreditBalance:
    total: int
    used: int
    remaining: int


def calculate_credit_cost(duration_seconds: float, clip_count: int) -> int:
    """
    Credits needed to cut ``clip_count`` clips out of a video.

    1 credit per clip, plus 0.1 credit per started minute of video, plus
    0.5 credit per clip for videos longer than 10 minutes. The sum is
    rounded up once, so ``calculate_credit_cost(650, 3) == ceil(3 + 1.1 + 1.5) == 6``.
    """
    if duration_seconds < 0 or clip_count < 0:
        raise ValidationError(
            f"Invalid cost inputs: duration={duration_seconds}, clips={clip_count}"
        )

    base_cost = clip_count * 1
    duration_minutes = math.ceil(duration_seconds / 60)
    duration_cost = duration_minutes * 0.1
    complexity_bonus = clip_count * 0.5 if duration_seconds > LONG_VIDEO_SECONDS else 0

    # round() strips float noise such as 3 + 0.30000000000000004
    return math.ceil(round(base_cost + duration_cost + complexity_bonus, 6))


def _balance(account: CreditAccount) -> CreditBalance:
    return CreditBalance(
        total=account.total_credits,
        used=account.used_credits,
        remaining=account.remaining_credits,
    )


class CreditLedger:
    """Reads and mutates credit accounts.

    Every mutation updates the account and appends its transaction in a
    single database transaction. Callers that already hold a session (the
    job service debits while moving a job to processing) pass it in and the
    ledger joins their transaction instead of committing on its own.

    Lock order is always ``user_lock(user_id)`` first, then the database
    write. A caller passing ``session`` must already hold the user lock
    and must have taken it before opening that session's transaction.
    """

    def __init__(self, database: Database, default_credits: int = 10):
        self.database = database
        self.default_credits = default_credits
        # Entries disappear once no coroutine holds or waits on the lock
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def user_lock(self, user_id: str) -> asyncio.Lock:
        """Lock serialising balance changes of one user."""
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def _locked_unit_of_work(
        self, user_id: str, session: Optional[AsyncSession]
    ) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self.user_lock(user_id):
            async with self.database.session() as db:
                async with db.begin():
                    yield db

    async def _ensure_account(self, db: AsyncSession, user_id: str) -> CreditAccount:
        account = await db.get(CreditAccount, user_id)
        if account is not None:
            return account

        account = CreditAccount(
            user_id=user_id,
            total_credits=self.default_credits,
            used_credits=0,
            remaining_credits=self.default_credits,
            updated_at=utcnow(),
        )
        db.add(account)
        db.add(
            CreditTransaction(
                user_id=user_id,
                type=TransactionType.BONUS.value,
                amount=self.default_credits,
                description="Welcome credits",
                created_at=utcnow(),
            )
        )
        await db.flush()
        logger.info(f"Created credit account for user {user_id} with {self.default_credits} credits")
        return account

    async def get_balance(self, user_id: str) -> CreditBalance:
        """Current balance, creating the default account on first access."""
        try:
            async with self.database.session() as db:
                async with db.begin():
                    account = await self._ensure_account(db, user_id)
                    return _balance(account)
        except IntegrityError:
            # A concurrent first access created the account
            async with self.database.session() as db:
                account = await db.get(CreditAccount, user_id)
                return _balance(account)

    async def debit(
        self,
        user_id: str,
        amount: int,
        description: str = "Video processing",
        job_id: Optional[str] = None,
        clip_id: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> CreditBalance:
        """
        Spend ``amount`` credits.

        Raises:
            InsufficientCreditsError: if ``amount`` exceeds the remaining
                balance. Nothing is written in that case.
        """
        if amount <= 0:
            raise ValidationError(f"Invalid debit amount: {amount}")

        if session is None:
            # Make sure the account exists before taking the write lock
            await self.get_balance(user_id)

        async with self._locked_unit_of_work(user_id, session) as db:
            if session is not None:
                await self._ensure_account(db, user_id)

            result = await db.execute(
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id)
                .where(CreditAccount.remaining_credits >= amount)
                .values(
                    used_credits=CreditAccount.used_credits + amount,
                    remaining_credits=CreditAccount.remaining_credits - amount,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                account = await db.get(CreditAccount, user_id, populate_existing=True)
                available = account.remaining_credits if account else 0
                logger.warning(
                    f"Insufficient credits for user {user_id}: required {amount}, available {available}"
                )
                raise InsufficientCreditsError(
                    amount,
                    available,
                    context=ErrorContext(user_id=user_id, job_id=job_id, operation="debit"),
                )

            db.add(
                CreditTransaction(
                    user_id=user_id,
                    type=TransactionType.SPENT.value,
                    amount=amount,
                    description=description,
                    job_id=job_id,
                    clip_id=clip_id,
                    created_at=utcnow(),
                )
            )
            await db.flush()
            account = await db.get(CreditAccount, user_id, populate_existing=True)
            balance = _balance(account)

        logger.info(f"Debited {amount} credits from user {user_id} (remaining {balance.remaining})")
        return balance

    async def credit(
        self,
        user_id: str,
        amount: int,
        description: str = "Credit purchase",
        transaction_type: TransactionType = TransactionType.PURCHASED,
        job_id: Optional[str] = None,
        clip_id: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> CreditBalance:
        """Add ``amount`` credits and log the transaction."""
        if amount <= 0:
            raise ValidationError(f"Invalid credit amount: {amount}")
        if transaction_type == TransactionType.SPENT:
            raise ValidationError("Credits cannot be added with a 'spent' transaction")

        if session is None:
            await self.get_balance(user_id)

        async with self._locked_unit_of_work(user_id, session) as db:
            if session is not None:
                await self._ensure_account(db, user_id)

            await db.execute(
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id)
                .values(
                    total_credits=CreditAccount.total_credits + amount,
                    remaining_credits=CreditAccount.remaining_credits + amount,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            db.add(
                CreditTransaction(
                    user_id=user_id,
                    type=TransactionType(transaction_type).value,
                    amount=amount,
                    description=description,
                    job_id=job_id,
                    clip_id=clip_id,
                    created_at=utcnow(),
                )
            )
            await db.flush()
            account = await db.get(CreditAccount, user_id, populate_existing=True)
            balance = _balance(account)

        logger.info(f"Credited {amount} credits to user {user_id} (remaining {balance.remaining})")
        return balance

    async def refund(
        self,
        user_id: str,
        amount: int,
        job_id: str,
        reason: str,
        session: Optional[AsyncSession] = None,
    ) -> CreditBalance:
        """Give back credits charged for a job that did not complete."""
        return await self.credit(
            user_id,
            amount,
            description=f"Refund for job {job_id}: {reason}",
            transaction_type=TransactionType.EARNED,
            job_id=job_id,
            session=session,
        )

    async def history(self, user_id: str, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        """Transactions for a user, newest first."""
        async with self.database.session() as db:
            result = await db.execute(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())
