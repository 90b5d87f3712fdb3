import pytest

from conftest import ScriptedGateway, next_event
from dal.session_dal import SessionDAL
from services.chat import events as ev
from services.chat.session_controller import SessionClosed
from services.chat.session_registry import SessionRegistry
from utils.database_init import AsyncDatabaseInitializer


@pytest.fixture
def registry(db_dir):
    return SessionRegistry(SessionDAL(AsyncDatabaseInitializer(db_dir)), ScriptedGateway(["reply"]))


@pytest.mark.asyncio
async def test_unknown_session_starts_empty(registry):
    controller = await registry.get("fresh")

    assert controller.session_id == "fresh"
    assert controller.messages == []
    assert await registry.get("fresh") is controller


@pytest.mark.asyncio
async def test_sessions_reload_from_store(registry, db_dir):
    controller = registry.create()
    controller.send("remember me")
    await controller.wait()
    await registry.shutdown()

    reopened = SessionRegistry(SessionDAL(AsyncDatabaseInitializer(db_dir)), ScriptedGateway())
    restored = await reopened.get(controller.session_id)

    assert [m.text for m in restored.messages] == ["remember me", "reply"]
    summaries = await reopened.dal.list_sessions()
    assert [s.title for s in summaries] == ["remember me"]


@pytest.mark.asyncio
async def test_discard_stops_and_deletes(registry):
    controller = registry.create()
    controller.send("bye")
    await controller.wait()
    await registry.writer.flush()

    assert await registry.discard(controller.session_id) is True
    assert registry.peek(controller.session_id) is None
    assert await registry.dal.load_session(controller.session_id) is None
    assert await registry.discard("never-existed") is False


@pytest.mark.asyncio
async def test_discard_all_clears_store(registry):
    for text in ("one", "two"):
        controller = registry.create()
        controller.send(text)
        await controller.wait()
    await registry.writer.flush()

    assert await registry.discard_all() == 2
    assert await registry.dal.list_sessions() == []


@pytest.mark.asyncio
async def test_discarded_controller_stays_deleted(registry):
    controller = await registry.get("s1")
    queue = controller.events.subscribe()
    controller.send("first")
    await controller.wait()
    await registry.writer.flush()

    assert await registry.discard("s1") is True

    with pytest.raises(SessionClosed):
        controller.send("after delete")
    await registry.writer.flush()
    assert await registry.dal.load_session("s1") is None
    assert (await next_event(queue, ev.SESSION_DELETED)).session_id == "s1"


@pytest.mark.asyncio
async def test_lookups_of_unknown_sessions_keep_nothing(registry):
    for n in range(50):
        assert await registry.get_existing(f"unknown-{n}") is None

    assert all(registry.peek(f"unknown-{n}") is None for n in range(50))


@pytest.mark.asyncio
async def test_idle_controllers_are_evicted(registry):
    first = await registry.get("a")
    await registry.get("b")

    assert registry.peek("a") is None
    assert registry.peek("b") is not None
    assert first.closed is False

    for n in range(50):
        (await registry.get(f"unknown-{n}")).stop()
    assert sum(registry.peek(f"unknown-{n}") is not None for n in range(50)) == 1


@pytest.mark.asyncio
async def test_release_keeps_observed_controllers(registry):
    controller = registry.create()
    controller.send("hello")
    await controller.wait()
    queue = controller.events.subscribe()

    assert registry.release(controller.session_id) is False
    controller.events.unsubscribe(queue)
    assert registry.release(controller.session_id) is True
    assert registry.peek(controller.session_id) is None

    restored = await registry.get_existing(controller.session_id)
    assert [m.text for m in restored.messages] == ["hello", "reply"]
