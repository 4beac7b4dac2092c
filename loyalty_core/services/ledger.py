"""Points ledger: compare-and-swap balance updates with an append-only transaction log.

Every delta is applied to the account document in one atomic update that also
pushes the entry into `pending_transactions`. The entry is then copied into
`ledger_transactions` (keyed by its tx id) and pulled from the account. A crash
between the two steps leaves the entry pending; `flush_pending` finishes it.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from beanie import PydanticObjectId
from beanie.odm.enums import SortDirection
from beanie.odm.queries.update import UpdateResponse
from pymongo.errors import DuplicateKeyError

from loyalty_core.core.config import get_settings
from loyalty_core.core.exceptions import BadRequestError, InsufficientBalanceError, NotFoundError, StorageTransientError
from loyalty_core.core.logging import get_logger
from loyalty_core.core.retry import with_storage_retry
from loyalty_core.models.ledger_transaction import TRANSACTION_TYPES, LedgerTransaction
from loyalty_core.models.membership_account import MembershipAccount, PendingEntry

log = get_logger(__name__)

ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "CLP", "ISK", "UGX", "XAF", "XOF"}


@dataclass
class LedgerResult:
    transaction_id: PydanticObjectId
    amount: int
    balance_after: int
    duplicate: bool = False


def currency_exponent(currency: str) -> int:
    return 0 if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor_units(amount: Decimal | float | str | int, currency: str = "USD") -> int:
    """Major-unit amount (e.g. "19.99") to integer minor units, half-up."""
    scale = Decimal(10) ** currency_exponent(currency)
    return int((Decimal(str(amount)) * scale).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def points_for_amount(amount_minor: int, rate: float, currency: str = "USD") -> int:
    """Points earned for a purchase: amount x rate, rounded half-up to the nearest point."""
    if amount_minor <= 0 or rate <= 0:
        return 0
    major = Decimal(amount_minor) / (Decimal(10) ** currency_exponent(currency))
    return int((major * Decimal(str(rate))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


async def get_account(account_id: PydanticObjectId) -> MembershipAccount:
    settings = get_settings()
    account = await with_storage_retry(
        lambda: MembershipAccount.get(account_id),
        "account_get",
        attempts=settings.storage_retry_attempts,
        base_delay=settings.storage_retry_base_delay,
    )
    if not account:
        raise NotFoundError("Membership account not found")
    return account


async def _find_existing(account: MembershipAccount, idempotency_key: str) -> LedgerResult | None:
    """A pending entry or logged transaction already carrying this key."""
    for entry in account.pending_transactions:
        if entry.idempotency_key == idempotency_key:
            return LedgerResult(entry.tx_id, entry.amount, entry.balance_after, duplicate=True)
    existing = await LedgerTransaction.find_one(LedgerTransaction.idempotency_key == idempotency_key)
    if existing:
        return LedgerResult(existing.id, existing.amount, existing.balance_after, duplicate=True)
    return None


async def find_by_key(account_id: PydanticObjectId, idempotency_key: str) -> LedgerResult | None:
    return await _find_existing(await get_account(account_id), idempotency_key)


async def _write_transaction(account: MembershipAccount, entry: PendingEntry) -> None:
    tx = LedgerTransaction(
        id=entry.tx_id,
        account_id=account.id,
        merchant_id=account.merchant_id,
        member_id=account.member_id,
        type=entry.type,
        amount=entry.amount,
        balance_after=entry.balance_after,
        reason=entry.reason,
        status="SUCCESS",
        linked_external_ref=entry.linked_external_ref,
        idempotency_key=entry.idempotency_key,
        created_at=entry.created_at,
    )
    try:
        await tx.insert()
    except DuplicateKeyError:
        pass  # already copied by a previous flush
    await MembershipAccount.find_one({"_id": account.id}).update(
        {"$pull": {"pending_transactions": {"tx_id": entry.tx_id}}}
    )


async def flush_pending(account: MembershipAccount) -> int:
    """Copy pending entries of this account into the transaction log. Returns count flushed."""
    entries = list(account.pending_transactions)
    for entry in entries:
        await _write_transaction(account, entry)
    return len(entries)


async def _cas_apply(
    account_id: PydanticObjectId,
    amount: int | None,
    type: str,
    reason: str,
    idempotency_key: str,
    linked_external_ref: str | None,
    clamp_debit: int | None = None,
) -> tuple[MembershipAccount, PendingEntry | None, LedgerResult | None]:
    """One read + conditional update attempt loop. Returns (account, new entry, duplicate result)."""
    settings = get_settings()
    for attempt in range(settings.ledger_cas_retries):
        account = await get_account(account_id)
        existing = await _find_existing(account, idempotency_key)
        if existing:
            return account, None, existing
        if clamp_debit is not None:
            delta = -min(account.points, clamp_debit)
        else:
            delta = amount
        new_balance = account.points + delta
        if delta < 0 and new_balance < 0:
            raise InsufficientBalanceError(account.points, -delta)
        entry = PendingEntry(
            tx_id=PydanticObjectId(),
            type=type,
            amount=delta,
            balance_after=new_balance,
            reason=reason,
            idempotency_key=idempotency_key,
            linked_external_ref=linked_external_ref,
        )
        updated = await with_storage_retry(
            lambda: MembershipAccount.find_one(
                {"_id": account.id, "version": account.version}
            ).update(
                {
                    "$inc": {"points": delta, "version": 1},
                    "$push": {"pending_transactions": entry.model_dump()},
                    "$set": {"updated_at": datetime.utcnow()},
                },
                response_type=UpdateResponse.NEW_DOCUMENT,
            ),
            "ledger_cas",
            attempts=settings.storage_retry_attempts,
            base_delay=settings.storage_retry_base_delay,
        )
        if updated is not None:
            return updated, entry, None
        log.debug("ledger_cas_conflict", account_id=str(account_id), attempt=attempt + 1)
    log.error("ledger_cas_exhausted", account_id=str(account_id), attempts=settings.ledger_cas_retries)
    raise StorageTransientError("Account is busy, retry later")


async def apply_delta(
    account_id: PydanticObjectId,
    amount: int,
    type: str,
    reason: str,
    idempotency_key: str | None = None,
    linked_external_ref: str | None = None,
) -> LedgerResult:
    """
    Apply a signed points delta atomically. Debits that would make the balance
    negative raise InsufficientBalanceError. With an idempotency_key, repeating
    the call returns the original result without applying again.
    """
    if type not in TRANSACTION_TYPES:
        raise BadRequestError(f"Invalid transaction type: {type}")
    if amount == 0:
        raise BadRequestError("Amount must be non-zero")
    key = idempotency_key or f"tx:{PydanticObjectId()}"
    account, entry, duplicate = await _cas_apply(account_id, amount, type, reason, key, linked_external_ref)
    if duplicate:
        log.info("ledger_delta_duplicate", account_id=str(account_id), idempotency_key=key)
        return duplicate
    await _write_transaction(account, entry)
    log.info(
        "ledger_delta_applied",
        account_id=str(account_id),
        type=type,
        amount=entry.amount,
        balance_after=entry.balance_after,
    )
    return LedgerResult(entry.tx_id, entry.amount, entry.balance_after)


async def apply_clamped_debit(
    account_id: PydanticObjectId,
    wanted: int,
    type: str,
    reason: str,
    idempotency_key: str,
    linked_external_ref: str | None = None,
) -> tuple[LedgerResult | None, int]:
    """
    Deduct up to `wanted` points without going below zero.
    Returns (result or None when nothing could be deducted, shortfall).
    """
    if wanted <= 0:
        return None, 0
    account, entry, duplicate = await _cas_apply(
        account_id, None, type, reason, idempotency_key, linked_external_ref, clamp_debit=wanted
    )
    if duplicate:
        return duplicate, wanted + duplicate.amount
    await _write_transaction(account, entry)  # a zero entry still records the key
    shortfall = wanted + entry.amount
    log.info(
        "ledger_clamped_debit",
        account_id=str(account_id),
        wanted=wanted,
        deducted=-entry.amount,
        shortfall=shortfall,
    )
    return LedgerResult(entry.tx_id, entry.amount, entry.balance_after), shortfall


async def get_balance(account_id: PydanticObjectId) -> int:
    return (await get_account(account_id)).points


async def list_transactions(account_id: PydanticObjectId, limit: int = 50, offset: int = 0) -> list[LedgerTransaction]:
    """Logged transactions for an account, newest first."""
    return (
        await LedgerTransaction.find(LedgerTransaction.account_id == account_id)
        .sort([("created_at", SortDirection.DESCENDING)])
        .skip(offset)
        .limit(limit)
        .to_list()
    )


async def account_balance_drift(account_id: PydanticObjectId) -> int:
    """points minus (logged + pending) amounts; zero for a consistent account."""
    account = await get_account(account_id)
    logged = await LedgerTransaction.find(LedgerTransaction.account_id == account_id).to_list()
    pending = {e.tx_id for e in account.pending_transactions}
    total = sum(t.amount for t in logged if t.id not in pending)
    total += sum(e.amount for e in account.pending_transactions)
    return account.points - total
