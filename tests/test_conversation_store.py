import asyncio
import logging
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from app.conversation_store import (
    ANONYMOUS_DEVICE,
    ConversationStore,
    SupabasePersistence,
    business_day,
    is_valid_device_id,
    resolve_device_id,
)
from app.models import Message

from conftest import FakePersistence, FakeSupabase


MADRID = ZoneInfo("Europe/Madrid")
DEVICE = "dev_0f8fad5b-d9cb-469f-a165-70867728950e"


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def msg(role: str, content: str) -> Message:
    return Message(role=role, content=content, timestamp="2026-05-01T10:00:00+00:00")


def test_business_day_boundary_at_six():
    assert business_day(datetime(2026, 5, 2, 5, 59, tzinfo=MADRID), MADRID) == date(2026, 5, 1)
    assert business_day(datetime(2026, 5, 2, 6, 1, tzinfo=MADRID), MADRID) == date(2026, 5, 2)


def test_business_day_converts_from_utc():
    # 04:30 UTC is 06:30 in Madrid during summer time
    assert business_day(datetime(2026, 7, 10, 4, 30), MADRID) == date(2026, 7, 10)
    assert business_day(datetime(2026, 7, 10, 3, 30), MADRID) == date(2026, 7, 9)


def test_device_id_validation():
    assert is_valid_device_id(DEVICE)
    assert is_valid_device_id(DEVICE.upper().replace("DEV_", "dev_"))
    assert not is_valid_device_id("abc")
    assert not is_valid_device_id("")
    assert not is_valid_device_id(None)
    assert not is_valid_device_id("dev_not-a-uuid")
    assert resolve_device_id(DEVICE) == DEVICE
    assert resolve_device_id("abc") == ANONYMOUS_DEVICE


def test_append_then_load_in_order():
    store = ConversationStore(clock=Clock(datetime(2026, 5, 2, 12, 0, tzinfo=MADRID)))

    async def scenario():
        await store.append(DEVICE, msg("user", "hola"))
        await store.append(DEVICE, msg("assistant", "¡Hola!"))
        return await store.load(DEVICE)

    history = asyncio.run(scenario())
    assert [(m.role, m.content) for m in history] == [("user", "hola"), ("assistant", "¡Hola!")]


def test_load_returns_a_copy():
    store = ConversationStore(clock=Clock(datetime(2026, 5, 2, 12, 0, tzinfo=MADRID)))

    async def scenario():
        await store.append(DEVICE, msg("user", "hola"))
        history = await store.load(DEVICE)
        history.append(msg("user", "ignored"))
        return await store.load(DEVICE)

    assert len(asyncio.run(scenario())) == 1


def test_new_business_day_starts_empty():
    clock = Clock(datetime(2026, 5, 2, 23, 0, tzinfo=MADRID))
    store = ConversationStore(clock=clock, idle_seconds=86400)

    async def scenario():
        await store.append(DEVICE, msg("user", "de noche"))
        clock.now = datetime(2026, 5, 3, 5, 30, tzinfo=MADRID)
        still_same_day = await store.load(DEVICE)
        clock.now = datetime(2026, 5, 3, 6, 30, tzinfo=MADRID)
        next_day = await store.load(DEVICE)
        return still_same_day, next_day

    still_same_day, next_day = asyncio.run(scenario())
    assert len(still_same_day) == 1
    assert next_day == []
    assert store.snapshot(DEVICE)[0] == date(2026, 5, 3)


def test_clear_removes_memory_only():
    persistence = FakePersistence()
    store = ConversationStore(persistence=persistence, clock=Clock(datetime(2026, 5, 2, 12, 0, tzinfo=MADRID)))

    async def scenario():
        await store.append(DEVICE, msg("user", "hola"))
        assert store.clear(DEVICE) is True
        assert store.clear(DEVICE) is False
        return await store.load(DEVICE)

    assert asyncio.run(scenario()) == []
    assert persistence.saves == []


def test_idle_sessions_are_evicted():
    clock = Clock(datetime(2026, 5, 2, 9, 0, tzinfo=MADRID))
    store = ConversationStore(clock=clock, idle_seconds=3600)

    async def scenario():
        await store.append(DEVICE, msg("user", "hola"))
        clock.now += timedelta(hours=2)
        return store.evict_idle()

    assert asyncio.run(scenario()) == 1
    assert len(store) == 0


def test_cache_miss_reloads_from_persistence():
    today = date(2026, 5, 2)
    stored = {(DEVICE, today): [msg("user", "ayer hablé contigo"), msg("assistant", "Sí")]}
    store = ConversationStore(persistence=FakePersistence(stored), clock=Clock(datetime(2026, 5, 2, 12, 0, tzinfo=MADRID)))

    history = asyncio.run(store.load(DEVICE))
    assert [m.content for m in history] == ["ayer hablé contigo", "Sí"]


def test_snapshot_dumps_camel_case():
    store = ConversationStore(clock=Clock(datetime(2026, 5, 2, 12, 0, tzinfo=MADRID)))
    message = Message(role="user", content="mira", timestamp="t", image_url="https://img.test/a.jpg")
    asyncio.run(store.append(DEVICE, message))
    session_date, payload = store.snapshot(DEVICE)
    assert session_date == date(2026, 5, 2)
    assert payload[0]["imageUrl"] == "https://img.test/a.jpg"
    assert store.snapshot("dev_missing") is None


def test_supabase_save_upserts_one_row_per_device_day():
    client = FakeSupabase()
    persistence = SupabasePersistence(client, table="chat_sessions")
    messages = [{"role": "user", "content": "hola", "timestamp": "t"}]

    assert persistence.save(DEVICE, date(2026, 5, 2), messages) is True
    row = client.upserts[0]
    assert client.table_name == "chat_sessions"
    assert row["id"] == f"{DEVICE}_2026-05-02"
    assert row["session_date"] == "2026-05-02"
    assert row["message_count"] == 1
    assert row["messages"] == messages


def test_supabase_failure_is_logged_not_raised(caplog):
    persistence = SupabasePersistence(FakeSupabase(fail=True))
    with caplog.at_level(logging.ERROR, logger="app.conversation_store"):
        assert persistence.save(DEVICE, date(2026, 5, 2), []) is False
        assert persistence.load(DEVICE, date(2026, 5, 2)) == []
    assert "Failed to persist conversation" in caplog.text
    assert "Failed to load conversation" in caplog.text


def test_supabase_load_skips_invalid_messages():
    rows = [{"messages": [{"role": "user", "content": "hola", "timestamp": "t"}, {"role": "robot"}]}]
    client = FakeSupabase(rows=rows)
    loaded = SupabasePersistence(client).load(DEVICE, date(2026, 5, 2))
    assert [m.content for m in loaded] == ["hola"]
    assert client.filters == [("id", f"{DEVICE}_2026-05-02")]
