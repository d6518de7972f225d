from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from core.errors import FetchError, SourcePermissionError, SourceUnavailableError
from core.models import DeliveryResult, Message, MonitorState
from core.monitor import MonitorController
from core.rules_engine import PatternRuleSet
from core.sources import PollSource, PushSource

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _message(body: str, minutes: int = 0, message_id: Optional[str] = None) -> Message:
    return Message(body=body, received_at=BASE_TIME + timedelta(minutes=minutes), message_id=message_id)


class FakePermissions:
    def __init__(self, granted: bool = True, grant_on_request: bool = False, error: Optional[Exception] = None) -> None:
        self.granted = granted
        self.grant_on_request = grant_on_request
        self.error = error
        self.requests = 0

    async def check(self) -> bool:
        if self.error is not None:
            raise self.error
        return self.granted

    async def request(self) -> bool:
        self.requests += 1
        self.granted = self.grant_on_request
        return self.granted


class FakeInbox:
    """Returns scripted batches; an Exception entry makes that fetch fail."""

    def __init__(self, batches: list) -> None:
        self._batches = list(batches)
        self.calls: list[tuple[str, int]] = []

    async def list(self, box: str, max_count: int) -> list[Message]:
        self.calls.append((box, max_count))
        batch = self._batches.pop(0) if len(self._batches) > 1 else self._batches[0]
        if isinstance(batch, Exception):
            raise batch
        return list(batch)


class FakeHandle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeSubscriber:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.callbacks: list = []
        self.handles: list[FakeHandle] = []

    def subscribe(self, on_event) -> FakeHandle:
        if self.error is not None:
            raise self.error
        self.callbacks.append(on_event)
        handle = FakeHandle()
        self.handles.append(handle)
        return handle


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send(self, phone_number: str, otp: str) -> DeliveryResult:
        self.sent.append(otp)
        return DeliveryResult(otp=otp, success=True)


async def _wait_for(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition never became true")


def test_poll_tick_dispatches_newest_first() -> None:
    received: list[str] = []

    async def on_message(message: Message) -> None:
        received.append(message.body)

    inbox = FakeInbox([[_message("old", 0), _message("newest", 2), _message("middle", 1)]])
    source = PollSource(inbox, FakePermissions(), max_count=3)

    handled = asyncio.run(source.tick(on_message))

    assert handled == 3
    assert received == ["newest", "middle", "old"]
    assert inbox.calls == [("inbox", 3)]


def test_poll_tick_respects_max_count() -> None:
    received: list[str] = []

    async def on_message(message: Message) -> None:
        received.append(message.body)

    inbox = FakeInbox([[_message("a", 0), _message("b", 1), _message("c", 2)]])
    source = PollSource(inbox, FakePermissions(), max_count=1)

    asyncio.run(source.tick(on_message))

    assert received == ["c"]


def test_poll_tick_swallows_fetch_failures() -> None:
    async def on_message(message: Message) -> None:
        raise AssertionError("nothing should be dispatched")

    source = PollSource(FakeInbox([RuntimeError("content provider gone")]), FakePermissions())

    assert asyncio.run(source.tick(on_message)) == 0


def test_poll_tick_keeps_going_when_handler_fails() -> None:
    received: list[str] = []

    async def on_message(message: Message) -> None:
        received.append(message.body)
        if message.body == "b":
            raise RuntimeError("boom")

    source = PollSource(FakeInbox([[_message("a", 0), _message("b", 1)]]), FakePermissions(), max_count=2)

    assert asyncio.run(source.tick(on_message)) == 2
    assert received == ["b", "a"]


def test_poll_start_requires_permission() -> None:
    permissions = FakePermissions(granted=False, grant_on_request=False)
    source = PollSource(FakeInbox([[]]), permissions)

    async def on_message(message: Message) -> None:
        pass

    with pytest.raises(SourcePermissionError):
        asyncio.run(source.start(on_message))

    assert permissions.requests == 1
    assert not source.running


def test_permission_granted_on_request_starts_polling() -> None:
    async def scenario() -> None:
        async def on_message(message: Message) -> None:
            pass

        permissions = FakePermissions(granted=False, grant_on_request=True)
        source = PollSource(FakeInbox([[]]), permissions, interval=60)
        await source.start(on_message)
        assert source.running
        await source.stop()
        assert not source.running

    asyncio.run(scenario())


def test_failing_permission_check_is_reported_as_unavailable() -> None:
    source = PushSource(FakeSubscriber(), FakePermissions(error=OSError("binder died")))

    async def on_message(message: Message) -> None:
        pass

    with pytest.raises(SourceUnavailableError):
        asyncio.run(source.start(on_message))


def test_poll_start_and_stop_are_idempotent() -> None:
    async def scenario() -> None:
        async def on_message(message: Message) -> None:
            pass

        inbox = FakeInbox([[]])
        source = PollSource(inbox, FakePermissions(), interval=0.01)
        await source.stop()
        await source.start(on_message)
        await source.start(on_message)
        await _wait_for(lambda: len(inbox.calls) >= 2)
        await source.stop()
        await source.stop()

        calls_after_stop = len(inbox.calls)
        await asyncio.sleep(0.05)
        assert len(inbox.calls) == calls_after_stop

    asyncio.run(scenario())


def test_push_source_forwards_events() -> None:
    async def scenario() -> None:
        received: list[str] = []

        async def on_message(message: Message) -> None:
            received.append(message.body)

        subscriber = FakeSubscriber()
        source = PushSource(subscriber, FakePermissions())
        await source.start(on_message)
        await source.start(on_message)
        assert len(subscriber.callbacks) == 1

        await subscriber.callbacks[0](_message("first"))
        await subscriber.callbacks[0](_message("second"))
        assert received == ["first", "second"]

        await source.stop()
        assert subscriber.handles[0].cancelled
        await subscriber.callbacks[0](_message("late"))
        assert received == ["first", "second"]

    asyncio.run(scenario())


def test_push_source_contains_handler_errors() -> None:
    async def scenario() -> None:
        async def on_message(message: Message) -> None:
            raise RuntimeError("boom")

        subscriber = FakeSubscriber()
        source = PushSource(subscriber, FakePermissions())
        await source.start(on_message)
        await subscriber.callbacks[0](_message("x"))
        assert source.running

    asyncio.run(scenario())


def test_push_registration_failure_is_unavailable() -> None:
    source = PushSource(FakeSubscriber(error=RuntimeError("no receiver")), FakePermissions())

    async def on_message(message: Message) -> None:
        pass

    with pytest.raises(SourceUnavailableError):
        asyncio.run(source.start(on_message))
    assert not source.running


def test_fetch_error_keeps_session_listening_and_next_tick_delivers() -> None:
    async def scenario() -> None:
        inbox = FakeInbox([FetchError("inbox locked"), [_message("SSMMS A1B2C3 TSMDCL", message_id="7")]])
        sink = RecordingSink()
        source = PollSource(inbox, FakePermissions(), interval=0.01)
        controller = MonitorController(PatternRuleSet.default(), source, sink, phone_number="9876543210")
        await controller.start()

        await _wait_for(lambda: len(inbox.calls) >= 1)
        assert controller.state is MonitorState.LISTENING

        await _wait_for(lambda: sink.sent)
        assert controller.state is MonitorState.LISTENING
        assert sink.sent == ["A1B2C3"]

        # Later ticks keep seeing the same message; the dedup marker holds.
        await _wait_for(lambda: len(inbox.calls) >= 4)
        assert sink.sent == ["A1B2C3"]
        await controller.stop()

    asyncio.run(scenario())


def test_auto_stop_from_inside_a_poll_tick() -> None:
    async def scenario() -> None:
        inbox = FakeInbox([[_message("SSMMS A1B2C3 TSMDCL")]])
        sink = RecordingSink()
        source = PollSource(inbox, FakePermissions(), interval=0.01)
        controller = MonitorController(
            PatternRuleSet.default(), source, sink, phone_number="1", auto_stop_on_success=True
        )
        await controller.start()

        await _wait_for(lambda: controller.state is MonitorState.STOPPED)
        assert not source.running

        calls = len(inbox.calls)
        await asyncio.sleep(0.05)
        assert len(inbox.calls) == calls
        assert sink.sent == ["A1B2C3"]

    asyncio.run(scenario())


class SlowPermissions(FakePermissions):
    """Permission check that yields to the loop, like an interactive prompt."""

    async def check(self) -> bool:
        await asyncio.sleep(0.01)
        return await super().check()


def test_overlapping_controller_starts_leave_no_poll_loop_behind() -> None:
    async def scenario() -> None:
        inbox = FakeInbox([[]])
        source = PollSource(inbox, SlowPermissions(), interval=0.01)
        controller = MonitorController(PatternRuleSet.default(), source, RecordingSink(), phone_number="1")

        await asyncio.gather(controller.start(), controller.start())
        assert controller.state is MonitorState.LISTENING
        await _wait_for(lambda: len(inbox.calls) >= 1)

        await controller.stop()
        assert controller.state is MonitorState.IDLE
        assert not source.running

        calls_after_stop = len(inbox.calls)
        await asyncio.sleep(0.1)
        assert len(inbox.calls) == calls_after_stop

    asyncio.run(scenario())


def test_overlapping_poll_starts_launch_one_loop() -> None:
    async def scenario() -> None:
        async def on_message(message: Message) -> None:
            pass

        inbox = FakeInbox([[]])
        source = PollSource(inbox, SlowPermissions(), interval=0.01)

        await asyncio.gather(source.start(on_message), source.start(on_message))
        await _wait_for(lambda: len(inbox.calls) >= 1)
        await source.stop()

        calls_after_stop = len(inbox.calls)
        await asyncio.sleep(0.1)
        assert len(inbox.calls) == calls_after_stop

    asyncio.run(scenario())


def test_overlapping_push_starts_subscribe_once() -> None:
    async def scenario() -> None:
        async def on_message(message: Message) -> None:
            pass

        subscriber = FakeSubscriber()
        source = PushSource(subscriber, SlowPermissions())

        await asyncio.gather(source.start(on_message), source.start(on_message))
        assert len(subscriber.handles) == 1

        await source.stop()
        assert subscriber.handles[0].cancelled

    asyncio.run(scenario())


def test_poll_tick_survives_unorderable_timestamps() -> None:
    async def on_message(message: Message) -> None:
        raise AssertionError("nothing should be dispatched")

    batch = [
        Message(body="naive", received_at=datetime(2024, 1, 1)),
        Message(body="aware", received_at=BASE_TIME),
    ]
    source = PollSource(FakeInbox([batch]), FakePermissions(), max_count=2)

    assert asyncio.run(source.tick(on_message)) == 0


def test_crashed_poll_loop_is_logged_and_not_running(caplog) -> None:
    async def scenario() -> None:
        async def on_message(message: Message) -> None:
            pass

        async def broken_tick(callback) -> int:
            raise RuntimeError("tick exploded")

        source = PollSource(FakeInbox([[]]), FakePermissions(), interval=0.01)
        source.tick = broken_tick
        await source.start(on_message)

        await _wait_for(lambda: not source.running)
        await asyncio.sleep(0)
        await source.stop()

    with caplog.at_level("ERROR", logger="core.sources"):
        asyncio.run(scenario())

    assert "Poll loop stopped unexpectedly" in caplog.text
