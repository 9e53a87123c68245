import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from models.account import Account
from models.credit_transaction import CreditTransaction
from services.credits import (
    SIGNUP_BONUS_KEY,
    add_credits,
    as_utc,
    consume_credits,
    debit_credits,
    get_balance,
    get_credit_summary,
    get_history,
    serialize_transaction,
    set_account_active,
    verify_ledger_integrity,
)
from services.errors import (
    AccountInactive,
    InsufficientCredits,
    InvalidAmount,
    InvalidCreditKind,
    InvalidIdempotencyKey,
    StoreUnavailable,
)


ACCOUNT_ID = "ledger-user"


async def _transactions(db, account_id=ACCOUNT_ID):
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.account_id == account_id)
        .order_by(CreditTransaction.id.asc())
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_add_credits_creates_account_with_matching_ledger_row(db_session):
    entry = await add_credits(ACCOUNT_ID, db_session, amount=10, kind="purchase", description="Starter pack")

    assert entry.amount == 10
    assert entry.kind == "purchase"
    assert entry.balance_after == 10
    assert await get_balance(ACCOUNT_ID, db_session) == 10

    account = (await db_session.execute(select(Account).where(Account.id == ACCOUNT_ID))).scalar_one()
    assert account.is_active is True
    assert account.total_consumed == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -3, 1.5, True])
async def test_add_credits_rejects_invalid_amounts(db_session, amount):
    with pytest.raises(InvalidAmount):
        await add_credits(ACCOUNT_ID, db_session, amount=amount, kind="bonus", description="bad")

    assert await _transactions(db_session) == []


@pytest.mark.asyncio
async def test_add_credits_rejects_consumption_kind(db_session):
    with pytest.raises(InvalidCreditKind):
        await add_credits(ACCOUNT_ID, db_session, amount=5, kind="consumption", description="sneaky")


@pytest.mark.asyncio
async def test_consume_more_than_balance_fails_without_writing(db_session):
    await add_credits(ACCOUNT_ID, db_session, amount=3, kind="purchase", description="Top up")

    with pytest.raises(InsufficientCredits) as excinfo:
        await consume_credits(ACCOUNT_ID, db_session, amount=5, description="Schema", idempotency_key="job-big")

    assert excinfo.value.required == 5
    assert excinfo.value.available == 3
    assert await get_balance(ACCOUNT_ID, db_session) == 3
    kinds = [entry.kind for entry in await _transactions(db_session)]
    assert kinds == ["purchase"]


@pytest.mark.asyncio
async def test_consume_retry_with_same_key_charges_once(db_session):
    await add_credits(ACCOUNT_ID, db_session, amount=10, kind="purchase", description="Top up")

    first, first_replayed = await debit_credits(
        ACCOUNT_ID, db_session, amount=4, description="Schema", idempotency_key="job-1"
    )
    second, second_replayed = await debit_credits(
        ACCOUNT_ID, db_session, amount=4, description="Schema", idempotency_key="job-1"
    )

    assert first.id == second.id
    assert (first_replayed, second_replayed) == (False, True)
    assert await get_balance(ACCOUNT_ID, db_session) == 6
    consumptions = [entry for entry in await _transactions(db_session) if entry.kind == "consumption"]
    assert len(consumptions) == 1
    assert consumptions[0].amount == -4

    account = (
        await db_session.execute(
            select(Account).where(Account.id == ACCOUNT_ID).execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert account.total_consumed == 4


@pytest.mark.asyncio
async def test_consume_requires_idempotency_key(db_session):
    await add_credits(ACCOUNT_ID, db_session, amount=2, kind="bonus", description="Bonus")
    with pytest.raises(InvalidIdempotencyKey):
        await consume_credits(ACCOUNT_ID, db_session, amount=1, description="Schema", idempotency_key="  ")


@pytest.mark.asyncio
async def test_concurrent_consumes_never_overdraw(session_maker):
    async with session_maker() as db:
        await add_credits(ACCOUNT_ID, db, amount=5, kind="purchase", description="Top up")

    async def attempt(index):
        async with session_maker() as db:
            try:
                await consume_credits(ACCOUNT_ID, db, amount=1, description="Schema", idempotency_key=f"job-{index}")
                return "ok"
            except InsufficientCredits:
                return "insufficient"

    outcomes = await asyncio.gather(*(attempt(index) for index in range(10)))

    assert outcomes.count("ok") == 5
    assert outcomes.count("insufficient") == 5
    async with session_maker() as db:
        assert await get_balance(ACCOUNT_ID, db) == 0
        report = await verify_ledger_integrity(ACCOUNT_ID, db)
    assert report.consistent
    assert report.transaction_count == 6


@pytest.mark.asyncio
async def test_concurrent_retries_with_same_key_charge_once(session_maker):
    async with session_maker() as db:
        await add_credits(ACCOUNT_ID, db, amount=10, kind="purchase", description="Top up")

    async def attempt():
        async with session_maker() as db:
            entry = await consume_credits(ACCOUNT_ID, db, amount=4, description="Schema", idempotency_key="job-1")
            return entry.id

    ids = await asyncio.gather(*(attempt() for _ in range(4)))

    assert len(set(ids)) == 1
    async with session_maker() as db:
        assert await get_balance(ACCOUNT_ID, db) == 6
        consumptions = [entry for entry in await _transactions(db) if entry.kind == "consumption"]
    assert len(consumptions) == 1


@pytest.mark.asyncio
async def test_deactivated_account_rejects_mutations_until_reactivated(db_session):
    await add_credits(ACCOUNT_ID, db_session, amount=5, kind="purchase", description="Top up")
    account = await set_account_active(ACCOUNT_ID, db_session, active=False)
    assert account.is_active is False

    with pytest.raises(AccountInactive):
        await consume_credits(ACCOUNT_ID, db_session, amount=1, description="Schema", idempotency_key="job-1")
    with pytest.raises(AccountInactive):
        await add_credits(ACCOUNT_ID, db_session, amount=1, kind="bonus", description="Bonus")
    assert await get_balance(ACCOUNT_ID, db_session) == 5

    await set_account_active(ACCOUNT_ID, db_session, active=True)
    entry = await consume_credits(ACCOUNT_ID, db_session, amount=1, description="Schema", idempotency_key="job-1")
    assert entry.balance_after == 4


@pytest.mark.asyncio
async def test_history_is_newest_first_and_resumable(db_session):
    for index in range(5):
        await add_credits(ACCOUNT_ID, db_session, amount=index + 1, kind="purchase", description=f"Pack {index}")

    first_page = await get_history(ACCOUNT_ID, db_session, limit=2)
    assert [entry.amount for entry in first_page.items] == [5, 4]
    assert first_page.next_cursor == first_page.items[-1].id

    second_page = await get_history(ACCOUNT_ID, db_session, limit=2, cursor=first_page.next_cursor)
    assert [entry.amount for entry in second_page.items] == [3, 2]

    last_page = await get_history(ACCOUNT_ID, db_session, limit=2, cursor=second_page.next_cursor)
    assert [entry.amount for entry in last_page.items] == [1]
    assert last_page.next_cursor is None


@pytest.mark.asyncio
async def test_history_filters_by_kind_and_clamps_limit(db_session):
    await add_credits(ACCOUNT_ID, db_session, amount=5, kind="purchase", description="Top up")
    await consume_credits(ACCOUNT_ID, db_session, amount=2, description="Schema", idempotency_key="job-1")

    page = await get_history(ACCOUNT_ID, db_session, limit=0, kind="consumption")
    assert [entry.amount for entry in page.items] == [-2]

    with pytest.raises(InvalidCreditKind):
        await get_history(ACCOUNT_ID, db_session, kind="gift")


@pytest.mark.asyncio
async def test_balance_equals_ledger_sum_after_mixed_operations(db_session):
    await add_credits(ACCOUNT_ID, db_session, amount=8, kind="purchase", description="Top up")
    await consume_credits(ACCOUNT_ID, db_session, amount=3, description="Schema", idempotency_key="job-1")
    await add_credits(ACCOUNT_ID, db_session, amount=3, kind="refund", description="Refund job-1")
    with pytest.raises(InsufficientCredits):
        await consume_credits(ACCOUNT_ID, db_session, amount=20, description="Schema", idempotency_key="job-2")
    await consume_credits(ACCOUNT_ID, db_session, amount=8, description="Schema", idempotency_key="job-3")

    report = await verify_ledger_integrity(ACCOUNT_ID, db_session)
    assert report.balance == 0
    assert report.ledger_sum == 0
    assert report.min_running_balance == 0
    assert report.consistent
    assert [entry.balance_after for entry in await _transactions(db_session)] == [8, 5, 8, 0]


@pytest.mark.asyncio
async def test_payment_reference_key_credits_once(db_session):
    for _ in range(3):
        await add_credits(
            ACCOUNT_ID,
            db_session,
            amount=25,
            kind="purchase",
            description="Purchased 25 credits",
            idempotency_key="payment:pi_123",
            reference="pi_123",
        )

    assert await get_balance(ACCOUNT_ID, db_session) == 25


@pytest.mark.asyncio
async def test_signup_bonus_is_granted_once(db_session):
    first = await get_credit_summary(ACCOUNT_ID, db_session)
    second = await get_credit_summary(ACCOUNT_ID, db_session)

    assert first["balance"] == 2
    assert second["balance"] == 2
    bonuses = [entry for entry in await _transactions(db_session) if entry.idempotency_key == SIGNUP_BONUS_KEY]
    assert len(bonuses) == 1
    assert second["recent_entries"][0]["kind"] == "bonus"


@pytest.mark.asyncio
async def test_offset_clock_timestamps_are_stored_as_utc(session_maker):
    instant = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    eastern = timezone(timedelta(hours=-5))

    async with session_maker() as db:
        await add_credits(
            ACCOUNT_ID, db, amount=3, kind="purchase", description="Top up", now=instant.astimezone(eastern)
        )
        await consume_credits(
            ACCOUNT_ID,
            db,
            amount=1,
            description="Schema",
            idempotency_key="job-eastern",
            now=(instant + timedelta(minutes=1)).astimezone(eastern),
        )

    async with session_maker() as db:
        stored = await _transactions(db)

    assert [as_utc(entry.created_at) for entry in stored] == [instant, instant + timedelta(minutes=1)]
    assert serialize_transaction(stored[0])["created_at"] == "2026-03-01T12:00:00+00:00"


@pytest.mark.asyncio
async def test_store_outage_surfaces_as_store_unavailable(unreachable_session_maker):
    async with unreachable_session_maker() as db:
        with pytest.raises(StoreUnavailable) as excinfo:
            await consume_credits(ACCOUNT_ID, db, amount=1, description="Schema", idempotency_key="job-outage")
        with pytest.raises(StoreUnavailable):
            await add_credits(ACCOUNT_ID, db, amount=1, kind="bonus", description="Bonus")

    assert excinfo.value.status_code == 503
    assert excinfo.value.to_detail()["code"] == "store_unavailable"
    assert "consume_credits" in excinfo.value.message
