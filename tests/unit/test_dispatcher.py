"""Unit tests for the Dispatcher with an in-memory transport.

Tests id assignment, response correlation, event fan-out, malformed frame
isolation, cancellation, and connection termination.
"""

import asyncio
import logging

import pytest

from chrome_devtools.dispatcher import Dispatcher, EventSubscription
from chrome_devtools.exceptions import (
    CDPTimeoutError,
    ConnectionClosedError,
    ConnectionLostError,
    InvalidCommandError,
    MalformedMessageError,
    ProtocolError,
    SessionClosedError,
)
from fakes import settle


def open_child(dispatcher: Dispatcher, session_id: str, target_id: str = "target"):
    registry = dispatcher.registry
    entry = registry.begin_attach(registry.root, target_id)
    return registry.complete_attach(entry, session_id, target_type="page")


@pytest.mark.unit
@pytest.mark.asyncio
class TestCommandCorrelation:
    """Responses resolve the call whose id they carry."""

    async def test_ids_start_at_one_and_increase(self, transport):
        async with Dispatcher(transport) as dispatcher:
            tasks = [
                asyncio.create_task(dispatcher.send_command("Browser.getVersion"))
                for _ in range(3)
            ]
            await settle()
            assert [message["id"] for message in transport.sent] == [1, 2, 3]
            for message in transport.sent:
                transport.feed({"id": message["id"], "result": {}})
            await asyncio.gather(*tasks)

    async def test_concurrent_calls_resolve_by_id(self, transport):
        async with Dispatcher(transport) as dispatcher:
            tasks = [
                asyncio.create_task(
                    dispatcher.send_command("Runtime.evaluate", {"expression": str(i)})
                )
                for i in range(5)
            ]
            await settle()

            # answer in reverse order
            for message in reversed(transport.sent):
                transport.feed(
                    {"id": message["id"], "result": {"value": message["params"]["expression"]}}
                )

            results = await asyncio.gather(*tasks)
            assert [result["value"] for result in results] == ["0", "1", "2", "3", "4"]
            assert dispatcher.pending_count == 0

    async def test_result_payload(self, transport):
        async with Dispatcher(transport) as dispatcher:
            task = asyncio.create_task(dispatcher.send_command("Test.method"))
            await settle()
            transport.feed('{"id":1,"result":{"x":1}}')
            assert await task == {"x": 1}

    async def test_error_response_raises_protocol_error(self, transport):
        async with Dispatcher(transport) as dispatcher:
            task = asyncio.create_task(dispatcher.send_command("Test.method"))
            await settle()
            transport.feed('{"id":1,"error":{"code":-1,"message":"boom"}}')

            with pytest.raises(ProtocolError) as exc_info:
                await task
            assert exc_info.value.code == -1
            assert exc_info.value.message == "boom"
            assert exc_info.value.method == "Test.method"

    async def test_protocol_error_only_fails_its_caller(self, transport):
        async with Dispatcher(transport) as dispatcher:
            failing = asyncio.create_task(dispatcher.send_command("Test.fail"))
            passing = asyncio.create_task(dispatcher.send_command("Test.pass"))
            await settle()
            transport.feed({"id": 1, "error": {"code": -32000, "message": "nope"}})
            transport.feed({"id": 2, "result": {"ok": True}})

            with pytest.raises(ProtocolError):
                await failing
            assert await passing == {"ok": True}

    async def test_session_id_is_sent(self, transport):
        async with Dispatcher(transport) as dispatcher:
            task = asyncio.create_task(
                dispatcher.send_command("Page.enable", session_id="S1")
            )
            await settle()
            assert transport.sent[0] == {"id": 1, "sessionId": "S1", "method": "Page.enable"}
            transport.feed({"id": 1, "sessionId": "S1", "result": {}})
            await task

    async def test_session_mismatch_is_logged_but_resolves(self, transport, caplog):
        async with Dispatcher(transport) as dispatcher:
            task = asyncio.create_task(
                dispatcher.send_command("Page.enable", session_id="S1")
            )
            await settle()
            with caplog.at_level(logging.WARNING, logger="chrome_devtools.dispatcher"):
                transport.feed({"id": 1, "sessionId": "OTHER", "result": {"ok": 1}})
                assert await task == {"ok": 1}
            assert "mismatched session id" in caplog.text

    async def test_unknown_response_id_is_dropped(self, transport, caplog):
        async with Dispatcher(transport) as dispatcher:
            with caplog.at_level(logging.WARNING, logger="chrome_devtools.dispatcher"):
                transport.feed({"id": 42, "result": {}})
                await settle()
            assert "unknown or completed command id 42" in caplog.text

            # the read loop is still alive
            task = asyncio.create_task(dispatcher.send_command("Test.method"))
            await settle()
            transport.feed({"id": 1, "result": {"alive": True}})
            assert await task == {"alive": True}

    async def test_duplicate_response_is_dropped(self, transport, caplog):
        async with Dispatcher(transport) as dispatcher:
            task = asyncio.create_task(dispatcher.send_command("Test.method"))
            await settle()
            with caplog.at_level(logging.WARNING, logger="chrome_devtools.dispatcher"):
                transport.feed({"id": 1, "result": {"first": True}})
                transport.feed({"id": 1, "result": {"second": True}})
                assert await task == {"first": True}
                await settle()
            assert "command id 1" in caplog.text

    async def test_invalid_commands_are_rejected_before_sending(self, transport):
        async with Dispatcher(transport) as dispatcher:
            with pytest.raises(InvalidCommandError):
                await dispatcher.send_command("")
            with pytest.raises(InvalidCommandError):
                await dispatcher.send_command("Runtime.evaluate", ["not", "a", "mapping"])
            assert transport.sent == []


@pytest.mark.unit
@pytest.mark.asyncio
class TestMalformedFrames:
    """Bad frames are logged and skipped."""

    async def test_malformed_frame_between_valid_frames(self, transport, caplog):
        async with Dispatcher(transport) as dispatcher:
            first = asyncio.create_task(dispatcher.send_command("Test.first"))
            second = asyncio.create_task(dispatcher.send_command("Test.second"))
            await settle()

            with caplog.at_level(logging.WARNING, logger="chrome_devtools.dispatcher"):
                transport.feed({"id": 1, "result": {"n": 1}})
                transport.feed("not json")
                transport.feed({"id": 2, "result": {"n": 2}})
                assert await first == {"n": 1}
                assert await second == {"n": 2}

            assert "malformed" in caplog.text.lower()
            assert not dispatcher.is_closed

    async def test_malformed_response_fails_only_its_call(self, transport):
        async with Dispatcher(transport) as dispatcher:
            broken = asyncio.create_task(dispatcher.send_command("Test.broken"))
            intact = asyncio.create_task(dispatcher.send_command("Test.intact"))
            await settle()

            transport.feed('{"id":1,"result":[1,2]}')
            transport.feed({"id": 2, "result": {"ok": True}})

            with pytest.raises(MalformedMessageError) as exc_info:
                await asyncio.wait_for(broken, timeout=1)
            assert exc_info.value.message_id == 1
            assert await intact == {"ok": True}
            assert dispatcher.pending_count == 0
            assert not dispatcher.is_closed

    async def test_frame_without_id_or_method_is_skipped(self, transport):
        async with Dispatcher(transport) as dispatcher:
            subscription = dispatcher.subscribe("Page.loadEventFired")
            transport.feed({"params": {}})
            transport.feed({"method": "Page.loadEventFired", "params": {"n": 1}})
            event = await subscription.next(timeout=1)
            assert event.params == {"n": 1}


@pytest.mark.unit
@pytest.mark.asyncio
class TestCancellationAndTimeout:
    """Abandoned calls release their pending slot."""

    async def test_cancelled_call_removes_pending_entry(self, transport, caplog):
        async with Dispatcher(transport) as dispatcher:
            task = asyncio.create_task(dispatcher.send_command("Test.slow"))
            await settle()
            assert dispatcher.pending_count == 1

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            assert dispatcher.pending_count == 0
            # the request was sent and is not "unsent"
            assert transport.sent_methods() == ["Test.slow"]

            with caplog.at_level(logging.WARNING, logger="chrome_devtools.dispatcher"):
                transport.feed({"id": 1, "result": {}})
                await settle()
            assert "command id 1" in caplog.text

    async def test_cancelling_does_not_affect_other_calls(self, transport):
        async with Dispatcher(transport) as dispatcher:
            cancelled = asyncio.create_task(dispatcher.send_command("Test.a"))
            kept = asyncio.create_task(dispatcher.send_command("Test.b"))
            await settle()
            cancelled.cancel()
            transport.feed({"id": 2, "result": {"b": True}})
            assert await kept == {"b": True}

    async def test_timeout(self, transport):
        async with Dispatcher(transport) as dispatcher:
            with pytest.raises(CDPTimeoutError, match="timed out"):
                await dispatcher.send_command("Test.slow", timeout=0.05)
            assert dispatcher.pending_count == 0

    async def test_default_timeout(self, transport):
        async with Dispatcher(transport, command_timeout=0.05) as dispatcher:
            with pytest.raises(CDPTimeoutError) as exc_info:
                await dispatcher.send_command("Test.slow")
            assert exc_info.value.timeout == 0.05
            assert exc_info.value.command_method == "Test.slow"


@pytest.mark.unit
@pytest.mark.asyncio
class TestConnectionTermination:
    """Connection end fails pending calls and ends subscriptions."""

    async def test_send_after_close_fails(self, transport):
        dispatcher = Dispatcher(transport)
        dispatcher.start()
        await dispatcher.close()

        with pytest.raises(ConnectionClosedError):
            await asyncio.wait_for(dispatcher.send_command("Test.method"), timeout=1)

    async def test_close_fails_pending_calls(self, transport):
        dispatcher = Dispatcher(transport)
        dispatcher.start()
        tasks = [
            asyncio.create_task(dispatcher.send_command("Test.method")) for _ in range(3)
        ]
        await settle()

        await dispatcher.close()

        for task in tasks:
            with pytest.raises(ConnectionClosedError):
                await task
        assert dispatcher.pending_count == 0

    async def test_close_is_idempotent(self, transport):
        dispatcher = Dispatcher(transport)
        dispatcher.start()
        await dispatcher.close()
        await dispatcher.close()
        assert dispatcher.is_closed
        assert transport.close_calls == 1

    async def test_close_ends_subscriptions(self, transport):
        dispatcher = Dispatcher(transport)
        dispatcher.start()
        subscription = dispatcher.subscribe("*")
        await dispatcher.close()

        received = [event async for event in subscription]
        assert received == []
        assert subscription.ended

    async def test_browser_hang_up_closes_connection(self, transport):
        dispatcher = Dispatcher(transport)
        dispatcher.start()
        task = asyncio.create_task(dispatcher.send_command("Test.method"))
        await settle()

        transport.hang_up()

        with pytest.raises(ConnectionClosedError):
            await task
        assert dispatcher.is_closed
        assert dispatcher.close_error is None

    async def test_connection_loss_fails_pending_with_cause(self, transport):
        dispatcher = Dispatcher(transport)
        dispatcher.start()
        task = asyncio.create_task(dispatcher.send_command("Test.method"))
        subscription = dispatcher.subscribe("Page.*")
        await settle()

        transport.drop("connection reset")

        with pytest.raises(ConnectionLostError) as exc_info:
            await task
        assert isinstance(exc_info.value.cause, OSError)

        with pytest.raises(ConnectionLostError):
            await subscription.next(timeout=1)

        with pytest.raises(ConnectionLostError):
            await dispatcher.send_command("Test.after")

    async def test_close_callbacks(self, transport):
        dispatcher = Dispatcher(transport)
        dispatcher.start()
        calls = []
        dispatcher.add_close_callback(calls.append)
        await dispatcher.close()
        assert calls == [None]

        # registered after termination: called immediately
        dispatcher.add_close_callback(calls.append)
        assert calls == [None, None]

    async def test_close_marks_sessions_closed(self, transport):
        dispatcher = Dispatcher(transport)
        dispatcher.start()
        entry = open_child(dispatcher, "S1")
        await dispatcher.close()
        assert not entry.is_open
        assert not dispatcher.registry.root.is_open


@pytest.mark.unit
@pytest.mark.asyncio
class TestEventDispatch:
    """Events reach the subscribers of their session, in order."""

    async def test_events_in_arrival_order(self, transport):
        async with Dispatcher(transport) as dispatcher:
            subscription = dispatcher.subscribe("Network.requestWillBeSent")
            for n in range(5):
                transport.feed(
                    {"method": "Network.requestWillBeSent", "params": {"n": n}}
                )
            received = [(await subscription.next(timeout=1)).params["n"] for _ in range(5)]
            assert received == [0, 1, 2, 3, 4]

    async def test_all_subscribers_receive_every_event(self, transport):
        async with Dispatcher(transport) as dispatcher:
            first = dispatcher.subscribe("Page.loadEventFired")
            second = dispatcher.subscribe("Page.loadEventFired")
            transport.feed({"method": "Page.loadEventFired", "params": {"t": 1}})

            assert (await first.next(timeout=1)).params == {"t": 1}
            assert (await second.next(timeout=1)).params == {"t": 1}

    async def test_events_are_not_cross_delivered(self, transport):
        async with Dispatcher(transport) as dispatcher:
            open_child(dispatcher, "A", "target-a")
            open_child(dispatcher, "B", "target-b")
            root_events = dispatcher.subscribe("Page.loadEventFired")
            a_events = dispatcher.subscribe("Page.loadEventFired", session_id="A")
            b_events = dispatcher.subscribe("Page.loadEventFired", session_id="B")

            transport.feed({"method": "Page.loadEventFired", "sessionId": "A", "params": {"from": "A"}})
            transport.feed({"method": "Page.loadEventFired", "sessionId": "B", "params": {"from": "B"}})
            transport.feed({"method": "Page.loadEventFired", "params": {"from": "root"}})

            assert (await a_events.next(timeout=1)).params == {"from": "A"}
            assert (await b_events.next(timeout=1)).params == {"from": "B"}
            assert (await root_events.next(timeout=1)).params == {"from": "root"}

    async def test_patterns(self, transport):
        async with Dispatcher(transport) as dispatcher:
            network = dispatcher.subscribe("Network.*")
            everything = dispatcher.subscribe("*")
            several = dispatcher.subscribe(["Page.loadEventFired", "Page.domContentEventFired"])

            transport.feed({"method": "Page.frameNavigated", "params": {}})
            transport.feed({"method": "Network.responseReceived", "params": {}})
            transport.feed({"method": "Page.loadEventFired", "params": {}})

            assert (await network.next(timeout=1)).method == "Network.responseReceived"
            assert [(await everything.next(timeout=1)).method for _ in range(3)] == [
                "Page.frameNavigated",
                "Network.responseReceived",
                "Page.loadEventFired",
            ]
            assert (await several.next(timeout=1)).method == "Page.loadEventFired"

    async def test_full_buffer_drops_oldest(self, transport, caplog):
        async with Dispatcher(transport) as dispatcher:
            subscription = dispatcher.subscribe("Log.entryAdded", maxsize=2)
            with caplog.at_level(logging.WARNING, logger="chrome_devtools.dispatcher"):
                for n in range(4):
                    transport.feed({"method": "Log.entryAdded", "params": {"n": n}})
                await settle()

            assert subscription.dropped == 2
            assert (await subscription.next(timeout=1)).params == {"n": 2}
            assert (await subscription.next(timeout=1)).params == {"n": 3}
            assert "dropping oldest" in caplog.text

    async def test_unsubscribe_does_not_affect_commands(self, transport):
        async with Dispatcher(transport) as dispatcher:
            task = asyncio.create_task(dispatcher.send_command("Test.method"))
            subscription = dispatcher.subscribe("Page.*")
            await settle()

            subscription.close()
            assert subscription not in dispatcher.registry.root.subscriptions

            transport.feed({"method": "Page.loadEventFired", "params": {}})
            transport.feed({"id": 1, "result": {"done": True}})
            assert await task == {"done": True}
            assert [event async for event in subscription] == []

    async def test_subscription_context_manager_unregisters(self, transport):
        async with Dispatcher(transport) as dispatcher:
            async with dispatcher.subscribe("Page.*") as subscription:
                assert subscription in dispatcher.registry.root.subscriptions
            assert subscription not in dispatcher.registry.root.subscriptions

    async def test_subscribe_with_zero_maxsize_fails(self, transport):
        async with Dispatcher(transport, event_buffer_size=5) as dispatcher:
            with pytest.raises(ValueError, match="maxsize"):
                dispatcher.subscribe("Page.*", maxsize=0)
            assert dispatcher.registry.root.subscriptions == []

    async def test_subscribe_on_unknown_session_fails(self, transport):
        async with Dispatcher(transport) as dispatcher:
            with pytest.raises(SessionClosedError):
                dispatcher.subscribe("Page.*", session_id="missing")

    async def test_subscribe_after_close_fails(self, transport):
        dispatcher = Dispatcher(transport)
        dispatcher.start()
        await dispatcher.close()
        with pytest.raises(ConnectionClosedError):
            dispatcher.subscribe("Page.*")

    async def test_browser_detach_event_closes_session(self, transport):
        async with Dispatcher(transport) as dispatcher:
            entry = open_child(dispatcher, "A", "target-a")
            events = dispatcher.subscribe("*", session_id="A")

            transport.feed(
                {
                    "method": "Target.detachedFromTarget",
                    "params": {"sessionId": "A", "targetId": "target-a"},
                }
            )

            with pytest.raises(StopAsyncIteration):
                await events.next(timeout=1)
            assert not entry.is_open
            assert "A" not in dispatcher.registry

    async def test_events_for_unknown_session_are_ignored(self, transport):
        async with Dispatcher(transport) as dispatcher:
            root_events = dispatcher.subscribe("*")
            transport.feed({"method": "Page.loadEventFired", "sessionId": "gone", "params": {}})
            transport.feed({"method": "Target.targetCreated", "params": {}})
            assert (await root_events.next(timeout=1)).method == "Target.targetCreated"


@pytest.mark.unit
class TestEventSubscription:
    """EventSubscription buffering without a dispatcher."""

    def test_requires_positive_maxsize(self):
        with pytest.raises(ValueError):
            EventSubscription(("*",), None, maxsize=0)

    def test_matches(self):
        subscription = EventSubscription(("Network.*", "Page.loadEventFired"), None)
        assert subscription.matches("Network.requestWillBeSent")
        assert subscription.matches("Page.loadEventFired")
        assert not subscription.matches("Page.frameNavigated")

    def test_close_calls_unregister_once(self):
        calls = []
        subscription = EventSubscription(("*",), None, on_close=calls.append)
        subscription.close()
        subscription.close()
        assert calls == [subscription]
        assert subscription.ended
