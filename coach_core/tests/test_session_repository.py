from datetime import date

import pytest

from coach_core.domain.exceptions import BusinessError
from coach_core.domain.models import Message, SavedCoachingSession, Session, SessionState
from coach_core.infrastructure.storage.record_store import (
    ACTIVE_SESSION_KEY,
    COACHING_SESSIONS_KEY,
    JsonRecordStore,
)
from coach_core.infrastructure.storage.session_repository import CoachingSessionRepository
from coach_core.infrastructure.storage.usage_ledger import UsageLedger


def sample_session():
    session = Session.new(goal="build_plan", strategy_ref="smc")
    session.state = SessionState.awaiting_chart(2)
    session.plan_timeframes = ["Daily", "4-Hour"]
    session.append(Message.create("assistant", "Send the 4-Hour chart."))
    return session


@pytest.mark.asyncio
async def test_saved_sessions_newest_first(tmp_path):
    repo = CoachingSessionRepository(JsonRecordStore(root=tmp_path))
    first = SavedCoachingSession.from_session(sample_session(), "First")
    second = SavedCoachingSession.from_session(sample_session(), "Second")
    await repo.add_saved(first)
    await repo.add_saved(second)

    assert [s.title for s in await repo.list_saved()] == ["Second", "First"]

    await repo.update_notes(first.id, "revisit")
    assert (await repo.get_saved(first.id)).user_notes == "revisit"

    await repo.delete_saved(second.id)
    assert [s.id for s in await repo.list_saved()] == [first.id]
    with pytest.raises(BusinessError) as exc:
        await repo.get_saved(second.id)
    assert exc.value.code == "SESSION_NOT_FOUND"


@pytest.mark.asyncio
async def test_active_checkpoint_round_trip(tmp_path):
    records = JsonRecordStore(root=tmp_path)
    repo = CoachingSessionRepository(records)
    assert await repo.load_active() is None

    session = sample_session()
    await repo.save_active(session)
    restored = await repo.load_active()
    assert restored.id == session.id
    assert restored.state == SessionState.awaiting_chart(2)
    assert restored.transcript == session.transcript

    await repo.clear_active()
    assert await repo.load_active() is None


@pytest.mark.asyncio
async def test_unreadable_records_are_tolerated(tmp_path):
    records = JsonRecordStore(root=tmp_path)
    repo = CoachingSessionRepository(records)
    await records.put([{"title": "no id"}, 7, SavedCoachingSession.from_session(sample_session(), "ok").to_dict()],
                      COACHING_SESSIONS_KEY)
    await records.put(["not", "a", "session"], ACTIVE_SESSION_KEY)

    assert [s.title for s in await repo.list_saved()] == ["ok"]
    assert await repo.load_active() is None


@pytest.mark.asyncio
async def test_usage_ledger_accumulates_per_day(tmp_path):
    days = iter([date(2024, 5, 30), date(2024, 5, 30), date(2024, 6, 2)])
    ledger = UsageLedger(JsonRecordStore(root=tmp_path), today=lambda: next(days))

    await ledger.record(100)
    await ledger.record(50)
    await ledger.record(0)
    await ledger.record(25)

    history = await ledger.history()
    assert [(h.date, h.tokens) for h in history] == [("2024-05-30", 150), ("2024-06-02", 25)]
    assert await ledger.totals(today=date(2024, 6, 3)) == {"weekly": 175, "monthly": 25}
    assert await ledger.totals(today=date(2024, 7, 1)) == {"weekly": 0, "monthly": 0}
