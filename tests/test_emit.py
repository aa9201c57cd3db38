"""Tests for fire-and-forget emit dispatch."""

from __future__ import annotations

import asyncio
import unittest

from twowaybus.bus import EventBus
from twowaybus.events import DispatchMode, Event


class EmitTests(unittest.IsolatedAsyncioTestCase):
    """Validate notification order, deferral and failure containment."""

    async def test_handler_receives_event_fields(self) -> None:
        bus = EventBus()
        seen: list[Event] = []
        bus.on("test", seen.append)

        await bus.emit("test", "TEST_DATA")

        self.assertEqual(len(seen), 1)
        self.assertEqual(seen[0].type, "test")
        self.assertEqual(seen[0].mode, DispatchMode.EMIT)
        self.assertEqual(seen[0].data, "TEST_DATA")

    async def test_handlers_run_in_registration_order(self) -> None:
        bus = EventBus()
        calls: list[str] = []
        bus.on("test", lambda event: calls.append("a"))
        bus.on("test", lambda event: calls.append("b"))
        bus.on("test", lambda event: calls.append("c"))

        await bus.emit("test")

        self.assertEqual(calls, ["a", "b", "c"])

    async def test_subscribers_never_run_inside_caller(self) -> None:
        bus = EventBus()
        calls: list[str] = []
        bus.on("test", lambda event: calls.append("handler"))

        task = bus.emit("test")
        calls.append("caller")
        await task

        self.assertEqual(calls, ["caller", "handler"])

    async def test_removed_handler_is_not_notified(self) -> None:
        bus = EventBus()
        calls: list[str] = []

        def error(event: Event) -> None:
            calls.append("error")

        bus.on("test", error)
        bus.on("test", lambda event: calls.append("ok"))
        bus.off("test", error)

        await bus.emit("test")

        self.assertEqual(calls, ["ok"])

    async def test_duplicate_registration_runs_twice(self) -> None:
        bus = EventBus()
        calls: list[str] = []

        def handler(event: Event) -> None:
            calls.append(event.type)

        bus.on("test", handler)
        bus.on("test", handler)

        await bus.emit("test")

        self.assertEqual(calls, ["test", "test"])

    async def test_raising_handler_does_not_stop_others(self) -> None:
        bus = EventBus()
        calls: list[str] = []

        def broken(event: Event) -> None:
            raise ValueError("broken handler")

        bus.on("test", broken)
        bus.on("test", lambda event: calls.append("after"))

        with self.assertLogs("twowaybus.bus", level="WARNING") as logs:
            await bus.emit("test")

        self.assertEqual(calls, ["after"])
        self.assertTrue(any("bus.subscriber.error" in line for line in logs.output))

    async def test_returned_awaitables_are_not_awaited(self) -> None:
        bus = EventBus()
        release = asyncio.Event()
        finished: list[bool] = []

        async def slow(event: Event) -> None:
            await release.wait()
            finished.append(True)

        bus.on("test", slow)

        await bus.emit("test")
        self.assertEqual(finished, [])

        release.set()
        await bus.drain()
        self.assertEqual(finished, [True])

    async def test_async_failure_is_logged(self) -> None:
        bus = EventBus()

        async def failing(event: Event) -> None:
            raise RuntimeError("async failure")

        bus.on("test", failing)

        with self.assertLogs("twowaybus.task_manager", level="WARNING") as logs:
            await bus.emit("test")
            await bus.drain()
            await asyncio.sleep(0)

        self.assertTrue(
            any("task.background.exception" in line for line in logs.output)
        )

    async def test_subscription_during_dispatch_misses_inflight_event(self) -> None:
        bus = EventBus()
        calls: list[str] = []

        def late(event: Event) -> None:
            calls.append("late")

        def first(event: Event) -> None:
            calls.append("first")
            bus.on("test", late)

        bus.on("test", first)
        await bus.emit("test")

        self.assertEqual(calls, ["first"])
        self.assertEqual(bus.listener_count("test"), 2)

    async def test_snapshot_is_taken_when_emit_is_called(self) -> None:
        bus = EventBus()
        calls: list[str] = []

        def late(event: Event) -> None:
            calls.append("late")

        bus.on("test", lambda event: calls.append("early"))
        task = bus.emit("test")
        bus.on("test", late)
        await task

        self.assertEqual(calls, ["early"])

    async def test_emit_without_subscribers_completes(self) -> None:
        bus = EventBus()
        self.assertIsNone(await bus.emit("nobody-listens", {"x": 1}))

    async def test_subscriber_errors_can_be_silenced(self) -> None:
        bus = EventBus(log_subscriber_errors=False)

        def broken(event: Event) -> None:
            raise ValueError("broken handler")

        bus.on("test", broken)

        with self.assertNoLogs("twowaybus.bus", level="WARNING"):
            await bus.emit("test")


if __name__ == "__main__":
    unittest.main()
