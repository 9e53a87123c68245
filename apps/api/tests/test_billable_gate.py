import pytest
from sqlalchemy.future import select

from models.credit_transaction import CreditTransaction
from services.billable import CreditGate, run_billable
from services.credits import add_credits, get_balance
from services.errors import InsufficientCredits, InvalidAmount


ACCOUNT_ID = "gate-user"


class GenerationFailed(RuntimeError):
    pass


class CountingWork:
    def __init__(self, result="schema-json", error=None):
        self.calls = 0
        self.result = result
        self.error = error

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


async def _consumptions(db):
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.account_id == ACCOUNT_ID,
            CreditTransaction.kind == "consumption",
        )
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_successful_work_is_charged_once(db_session):
    await add_credits(ACCOUNT_ID, db_session, amount=5, kind="purchase", description="Top up")
    work = CountingWork()

    outcome = await CreditGate(db_session).execute(ACCOUNT_ID, 2, "gen-1", work, description="Schema generation")

    assert outcome.value == "schema-json"
    assert outcome.replayed is False
    assert outcome.transaction.amount == -2
    assert outcome.transaction.description == "Schema generation"
    assert await get_balance(ACCOUNT_ID, db_session) == 3


@pytest.mark.asyncio
async def test_failed_work_is_never_charged(db_session):
    await add_credits(ACCOUNT_ID, db_session, amount=5, kind="purchase", description="Top up")
    work = CountingWork(error=GenerationFailed("model timeout"))

    with pytest.raises(GenerationFailed):
        await CreditGate(db_session).execute(ACCOUNT_ID, 2, "gen-1", work)

    assert work.calls == 1
    assert await get_balance(ACCOUNT_ID, db_session) == 5
    assert await _consumptions(db_session) == []


@pytest.mark.asyncio
async def test_retried_attempt_is_replayed_not_recharged(db_session):
    await add_credits(ACCOUNT_ID, db_session, amount=5, kind="purchase", description="Top up")
    gate = CreditGate(db_session)

    first = await gate.execute(ACCOUNT_ID, 2, "gen-1", CountingWork())
    second = await gate.execute(ACCOUNT_ID, 2, "gen-1", CountingWork())

    assert first.transaction.id == second.transaction.id
    assert second.replayed is True
    assert await get_balance(ACCOUNT_ID, db_session) == 3
    assert len(await _consumptions(db_session)) == 1


@pytest.mark.asyncio
async def test_insufficient_balance_after_work_fails_the_call(db_session):
    await add_credits(ACCOUNT_ID, db_session, amount=1, kind="bonus", description="Bonus")
    work = CountingWork()

    with pytest.raises(InsufficientCredits):
        await CreditGate(db_session).execute(ACCOUNT_ID, 3, "gen-1", work)

    assert work.calls == 1
    assert await get_balance(ACCOUNT_ID, db_session) == 1
    assert await _consumptions(db_session) == []


@pytest.mark.asyncio
async def test_precheck_skips_expensive_work_when_balance_is_short(db_session):
    await add_credits(ACCOUNT_ID, db_session, amount=1, kind="bonus", description="Bonus")
    work = CountingWork()

    with pytest.raises(InsufficientCredits):
        await CreditGate(db_session).execute(ACCOUNT_ID, 3, "gen-1", work, precheck=True)

    assert work.calls == 0


@pytest.mark.asyncio
async def test_precheck_allows_retry_of_already_charged_attempt(db_session):
    await add_credits(ACCOUNT_ID, db_session, amount=2, kind="bonus", description="Bonus")
    gate = CreditGate(db_session)
    await gate.execute(ACCOUNT_ID, 2, "gen-1", CountingWork(), precheck=True)

    retry = await gate.execute(ACCOUNT_ID, 2, "gen-1", CountingWork(), precheck=True)

    assert retry.replayed is True
    assert await get_balance(ACCOUNT_ID, db_session) == 0


@pytest.mark.asyncio
async def test_zero_cost_work_records_nothing(db_session):
    outcome = await run_billable(db_session, ACCOUNT_ID, 0, "free-1", CountingWork(result={"ok": True}))

    assert outcome.value == {"ok": True}
    assert outcome.transaction is None
    assert await _consumptions(db_session) == []


@pytest.mark.asyncio
async def test_negative_cost_is_rejected_before_work_runs(db_session):
    work = CountingWork()
    with pytest.raises(InvalidAmount):
        await CreditGate(db_session).execute(ACCOUNT_ID, -1, "gen-1", work)
    assert work.calls == 0
