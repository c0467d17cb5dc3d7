"""Credit ledger, balance cache and credit operations."""

from __future__ import annotations

import hashlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import CreditLedgerEntry, CreditsSource
from models.credits_account import CreditsAccount
from services.subscription import is_unlimited


logger = logging.getLogger(__name__)


class CreditsError(Exception):
    """Base class for credit operation failures."""


class InvalidAmountError(CreditsError):
    """Raised when a credit amount is not a positive integer."""

    def __init__(self, amount: Any):
        super().__init__(f"Credit amount must be a positive integer, got {amount!r}")
        self.amount = amount


class InsufficientCreditsError(CreditsError):
    """Raised when a deduction exceeds the available balance."""

    def __init__(self, balance: int, requested: int):
        super().__init__(f"Insufficient credits: current={balance}, requested={requested}")
        self.balance = balance
        self.requested = requested


class StoreUnavailableError(CreditsError):
    """Raised when the ledger or balance cache could not be read or written."""


@dataclass
class CreditOperationOptions:
    source: Union[CreditsSource, str]
    ref_type: str
    ref_id: str
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.source = CreditsSource(self.source)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_idempotency_key(user_id: str, operation: str, ref_type: str, ref_id: str) -> str:
    """Stable key for one logical operation; retries of it map to the same key."""
    material = f"{user_id}:{operation}:{ref_type}:{ref_id}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount)
    return amount


@asynccontextmanager
async def _store_guard(db: AsyncSession, action: str):
    try:
        yield
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Credits store failure during %s: %s", action, exc)
        raise StoreUnavailableError(f"Credits store unavailable during {action}") from exc


def _dialect_insert(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    return None


async def _find_entry_id(idempotency_key: str, db: AsyncSession) -> Optional[str]:
    result = await db.execute(
        select(CreditLedgerEntry.id).where(CreditLedgerEntry.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Ledger entry store
# ---------------------------------------------------------------------------


async def append_entry(
    user_id: str,
    db: AsyncSession,
    *,
    delta: int,
    source: Union[CreditsSource, str],
    ref_type: str,
    ref_id: str,
    idempotency_key: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[CreditLedgerEntry]:
    """Append and commit one ledger row.

    Returns None when a row with the same idempotency key already exists,
    whether found up front or reported by the unique constraint after a
    concurrent insert won the race.
    """
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise InvalidAmountError(delta)
    if not idempotency_key:
        operation = "add" if delta > 0 else "deduct"
        idempotency_key = derive_idempotency_key(user_id, operation, ref_type, ref_id)

    async with _store_guard(db, "ledger append"):
        if await _find_entry_id(idempotency_key, db) is not None:
            return None

        entry = CreditLedgerEntry(
            user_id=user_id,
            delta=delta,
            source=CreditsSource(source),
            ref_type=ref_type,
            ref_id=ref_id,
            idempotency_key=idempotency_key,
            entry_metadata=dict(metadata or {}),
            created_at=_utcnow(),
        )
        db.add(entry)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            if await _find_entry_id(idempotency_key, db) is not None:
                return None
            raise
    return entry


async def list_recent_entries(user_id: str, db: AsyncSession, limit: int = 20) -> List[CreditLedgerEntry]:
    async with _store_guard(db, "ledger listing"):
        result = await db.execute(
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.user_id == user_id)
            .order_by(CreditLedgerEntry.created_at.desc())
            .limit(max(int(limit), 0))
        )
        return list(result.scalars().all())


async def sum_entries(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedgerEntry.delta), 0)).where(CreditLedgerEntry.user_id == user_id)
    )
    return int(result.scalar() or 0)


# ---------------------------------------------------------------------------
# Balance cache
# ---------------------------------------------------------------------------


async def _lock_account(user_id: str, db: AsyncSession) -> None:
    """Create the cache row if missing and hold its row lock until commit."""
    insert = _dialect_insert(db)
    if insert is not None:
        ledger_sum = (
            select(func.coalesce(func.sum(CreditLedgerEntry.delta), 0))
            .where(CreditLedgerEntry.user_id == user_id)
            .scalar_subquery()
        )
        await db.execute(
            insert(CreditsAccount)
            .values(user_id=user_id, balance_cache=ledger_sum, updated_at=_utcnow())
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
    else:
        existing = await db.execute(select(CreditsAccount.user_id).where(CreditsAccount.user_id == user_id))
        if existing.scalar_one_or_none() is None:
            db.add(CreditsAccount(user_id=user_id, balance_cache=await sum_entries(user_id, db)))
            await db.flush()

    await db.execute(
        select(CreditsAccount.user_id).where(CreditsAccount.user_id == user_id).with_for_update()
    )


async def recompute_balance(user_id: str, db: AsyncSession) -> int:
    """Re-sum the ledger and upsert the cache row under its row lock."""
    async with _store_guard(db, "balance recompute"):
        await _lock_account(user_id, db)
        total = await sum_entries(user_id, db)
        await db.execute(
            update(CreditsAccount)
            .where(CreditsAccount.user_id == user_id)
            .values(balance_cache=total, updated_at=_utcnow())
        )
        await db.commit()
    return total


async def get_balance(user_id: str, db: AsyncSession) -> int:
    async with _store_guard(db, "balance lookup"):
        result = await db.execute(
            select(CreditsAccount.balance_cache).where(CreditsAccount.user_id == user_id)
        )
        cached = result.scalar_one_or_none()
    if cached is not None:
        return int(cached)
    return await recompute_balance(user_id, db)


# ---------------------------------------------------------------------------
# Credit operations
# ---------------------------------------------------------------------------


def _resolve_idempotency_key(user_id: str, operation: str, options: CreditOperationOptions) -> str:
    if options.idempotency_key:
        return options.idempotency_key
    return derive_idempotency_key(user_id, operation, options.ref_type, options.ref_id)


async def add_credits(
    user_id: str,
    amount: int,
    options: CreditOperationOptions,
    db: AsyncSession,
) -> int:
    """Grant credits; returns the balance after the grant (or replay)."""
    amount = _validate_amount(amount)
    idempotency_key = _resolve_idempotency_key(user_id, "add", options)

    entry = await append_entry(
        user_id,
        db,
        delta=amount,
        source=options.source,
        ref_type=options.ref_type,
        ref_id=options.ref_id,
        idempotency_key=idempotency_key,
        metadata=options.metadata,
    )
    if entry is None:
        logger.info("credits_add_replay user=%s ref=%s:%s", user_id, options.ref_type, options.ref_id)
        return await get_balance(user_id, db)

    balance = await recompute_balance(user_id, db)
    logger.info(
        "credits_add user=%s delta=%s source=%s balance=%s",
        user_id,
        amount,
        options.source.value,
        balance,
    )
    return balance


async def deduct_credits(
    user_id: str,
    amount: int,
    options: CreditOperationOptions,
    db: AsyncSession,
) -> int:
    """Consume credits; only admin adjustments may take the balance negative."""
    amount = _validate_amount(amount)
    idempotency_key = _resolve_idempotency_key(user_id, "deduct", options)

    async with _store_guard(db, "deduction check"):
        if await _find_entry_id(idempotency_key, db) is not None:
            replayed = True
        else:
            replayed = False
            # Lock held until the append commits so concurrent deductions
            # check against each other's results.
            await _lock_account(user_id, db)
            current = await sum_entries(user_id, db)

    if replayed:
        logger.info("credits_deduct_replay user=%s ref=%s:%s", user_id, options.ref_type, options.ref_id)
        return await get_balance(user_id, db)

    if current < amount and options.source != CreditsSource.ADMIN_ADJUST:
        await db.rollback()
        logger.info("credits_deduct_refused user=%s balance=%s requested=%s", user_id, current, amount)
        raise InsufficientCreditsError(current, amount)

    entry = await append_entry(
        user_id,
        db,
        delta=-amount,
        source=options.source,
        ref_type=options.ref_type,
        ref_id=options.ref_id,
        idempotency_key=idempotency_key,
        metadata=options.metadata,
    )
    if entry is None:
        logger.info("credits_deduct_replay user=%s ref=%s:%s", user_id, options.ref_type, options.ref_id)
        return await get_balance(user_id, db)

    balance = await recompute_balance(user_id, db)
    logger.info(
        "credits_deduct user=%s delta=%s source=%s balance=%s",
        user_id,
        -amount,
        options.source.value,
        balance,
    )
    return balance


async def initialize_user_credits(
    user_id: str,
    db: AsyncSession,
    initial_credits: Optional[int] = None,
) -> int:
    """Grant the starter allowance once per identity."""
    grant = settings.ANON_INITIAL_CREDITS if initial_credits is None else initial_credits
    options = CreditOperationOptions(
        source=CreditsSource.MIGRATION,
        ref_type="user_initialization",
        ref_id=user_id,
        idempotency_key=f"init_{user_id}",
        metadata={"note": "Initial credits for new user"},
    )
    return await add_credits(user_id, grant, options, db)


async def get_credits_status(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_balance(user_id, db)
    return {
        "balance": balance,
        "is_subscriber": await is_unlimited(user_id, db),
    }
