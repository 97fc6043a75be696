import pytest

from session_runtime.domain.commands import SendMessage, new_command
from session_runtime.domain.events import SessionCreated, SessionRenamed, new_event
from session_runtime.domain.exceptions import BusinessError
from session_runtime.runtime.command_bus import CommandBus
from session_runtime.runtime.event_bus import EventBus


@pytest.mark.asyncio
async def test_command_bus_dispatch_forwards_to_handler():
    bus = CommandBus()
    seen = []

    async def handler(cmd):
        seen.append(cmd.id)

    assert bus.register(handler) is True
    cmd = new_command(SendMessage, "S1", text="hi")
    await bus.dispatch(cmd)
    assert seen == [cmd.id]


@pytest.mark.asyncio
async def test_command_bus_second_register_is_noop():
    bus = CommandBus()
    seen = []

    async def first(cmd):
        seen.append("first")

    async def second(cmd):
        seen.append("second")

    assert bus.register(first) is True
    assert bus.register(second) is False
    await bus.dispatch(new_command(SendMessage, "S1", text="hi"))
    assert seen == ["first"]


@pytest.mark.asyncio
async def test_command_bus_without_handler_raises():
    bus = CommandBus()
    with pytest.raises(BusinessError) as ei:
        await bus.dispatch(new_command(SendMessage, "S1", text="hi"))
    assert ei.value.code == "NO_COMMAND_HANDLER"


@pytest.mark.asyncio
async def test_command_bus_propagates_handler_error():
    bus = CommandBus()

    async def handler(cmd):
        raise RuntimeError("boom")

    bus.register(handler)
    with pytest.raises(RuntimeError):
        await bus.dispatch(new_command(SendMessage, "S1", text="hi"))


@pytest.mark.asyncio
async def test_event_bus_publish_order_and_log():
    bus = EventBus()
    seen = []

    def sync_handler(e):
        seen.append(("sync", e.type))

    async def async_handler(e):
        seen.append(("async", e.type))

    bus.subscribe(sync_handler)
    bus.subscribe(async_handler)
    created = new_event(SessionCreated, "S1", title="T")
    renamed = new_event(SessionRenamed, "S1", title="T2")
    await bus.publish(created)
    await bus.publish(renamed)

    assert seen == [
        ("sync", "SessionCreated"),
        ("async", "SessionCreated"),
        ("sync", "SessionRenamed"),
        ("async", "SessionRenamed"),
    ]
    assert bus.events() == [created, renamed]
    assert bus.events("S2") == []


@pytest.mark.asyncio
async def test_event_bus_subscriber_error_does_not_stop_others():
    bus = EventBus()
    seen = []

    def bad(e):
        raise ValueError("bad subscriber")

    bus.subscribe(bad)
    unsubscribe = bus.subscribe(lambda e: seen.append(e.id))
    e = new_event(SessionCreated, "S1")
    await bus.publish(e)
    assert seen == [e.id]

    unsubscribe()
    await bus.publish(new_event(SessionCreated, "S2"))
    assert seen == [e.id]
