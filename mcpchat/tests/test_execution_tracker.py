"""Tests for ExecutionTracker: stages, permits, cancellation and history."""

import asyncio
import json
import random

import pytest

from conftest import make_server_config, make_settings, wait_until
from mcpchat.domain.errors import (
    ExecutionCapacityError,
    ExecutionNotFoundError,
    ProtocolError,
    ToolExecutionError,
    TransportError,
    ValidationError,
)
from mcpchat.domain.executions import ExecutionStage
from mcpchat.domain.executions.events import ExecutionFinished, ProgressReported, StageChanged
from mcpchat.domain.tools.models import ConnectionState, ToolCall
from mcpchat.modules.execution import ExecutionHistoryStore, ExecutionTracker


def _call(call_id, name="filesystem.read_file", arguments=None):
    return ToolCall(id=call_id, function_name=name, arguments_json=json.dumps(arguments or {"path": "/tmp/a"}))


class TestSuccessfulExecution:
    @pytest.mark.asyncio
    async def test_completed_outcome_and_history(self, tracker, config_manager, channel_factory):
        channel_factory.server("filesystem").call_result = "hello"

        outcome = await tracker.execute_tool_with_feedback(
            _call("c1"), "s1", config_manager.get_server_config("filesystem")
        )

        assert outcome.stage == ExecutionStage.COMPLETED
        assert outcome.result == "hello"
        assert outcome.error is None
        assert not outcome.rejected
        entry = outcome.history_entry
        assert entry.progress == 100.0
        assert entry.parameters == {"path": "/tmp/a"}
        assert entry.server_id == "filesystem"
        assert entry.tool_name == "read_file"
        assert tracker.get_execution_history("s1") == [entry]
        assert tracker.get_active_executions() == []
        assert tracker.permits.in_use("filesystem") == 0

        data = outcome.to_dict()
        assert data["result"] == "hello"
        assert data["status"]["stage"] == "completed"
        assert "error" not in data

    @pytest.mark.asyncio
    async def test_accepts_wire_shaped_tool_call(self, tracker, config_manager):
        outcome = await tracker.execute_tool_with_feedback(
            {"id": "c1", "function": {"name": "filesystem.read_file", "arguments": "{}"}},
            "s1",
            config_manager.get_server_config("filesystem"),
        )
        assert outcome.stage == ExecutionStage.COMPLETED

    @pytest.mark.asyncio
    async def test_stage_and_progress_callbacks_arrive_in_order(self, tracker, config_manager, channel_factory):
        channel_factory.server("filesystem").progress = [(1, 4, "quarter"), (2, 4, "half")]
        events = []

        outcome = await tracker.execute_tool_with_feedback(
            _call("c1"),
            "s1",
            config_manager.get_server_config("filesystem"),
            on_progress=lambda e: events.append(e),
            on_status=lambda e: events.append(e),
        )

        assert outcome.stage == ExecutionStage.COMPLETED
        stages = [e.stage for e in events if not isinstance(e, ProgressReported)]
        assert stages == [
            ExecutionStage.PENDING,
            ExecutionStage.VALIDATING,
            ExecutionStage.EXECUTING,
            ExecutionStage.PROCESSING,
            ExecutionStage.COMPLETED,
        ]
        progress = [e for e in events if isinstance(e, ProgressReported)]
        assert [p.progress for p in progress] == [25.0, 50.0]
        assert [p.message for p in progress] == ["quarter", "half"]
        assert isinstance(events[-1], ExecutionFinished)
        executing_at = next(
            i for i, e in enumerate(events)
            if isinstance(e, StageChanged) and e.stage == ExecutionStage.EXECUTING
        )
        first_progress_at = next(i for i, e in enumerate(events) if isinstance(e, ProgressReported))
        assert executing_at < first_progress_at

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_execution(self, tracker, config_manager):
        def broken(event):
            raise RuntimeError("ui went away")

        outcome = await tracker.execute_tool_with_feedback(
            _call("c1"), "s1", config_manager.get_server_config("filesystem"), on_status=broken
        )
        assert outcome.stage == ExecutionStage.COMPLETED

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self, tracker, config_manager):
        seen = []

        async def on_status(event):
            await asyncio.sleep(0)
            seen.append(event.stage)

        await tracker.execute_tool_with_feedback(
            _call("c1"), "s1", config_manager.get_server_config("filesystem"), on_status=on_status
        )
        assert seen[-1] == ExecutionStage.COMPLETED

    @pytest.mark.asyncio
    async def test_slow_tool_reports_warning_once(self, connection_manager, config_manager, channel_factory):
        tracker = ExecutionTracker(connection_manager, settings=make_settings(TOOL_WARNING_THRESHOLD=0.02))
        channel_factory.server("filesystem").call_delay = 0.1
        messages = []

        outcome = await tracker.execute_tool_with_feedback(
            _call("c1"),
            "s1",
            config_manager.get_server_config("filesystem"),
            on_status=lambda e: messages.append(e.message),
        )

        assert outcome.stage == ExecutionStage.COMPLETED
        assert messages.count("Tool is taking longer than expected (0.02s)") == 1

    @pytest.mark.asyncio
    async def test_waits_for_connecting_server(self, tracker, connection_manager, config_manager, channel_factory):
        channel_factory.server("filesystem").open_delay = 0.05
        reconnect = asyncio.create_task(connection_manager.reconnect_server("filesystem"))
        await wait_until(lambda: connection_manager.get_connection_state("filesystem") == ConnectionState.CONNECTING)
        stages = []

        outcome = await tracker.execute_tool_with_feedback(
            _call("c1"),
            "s1",
            config_manager.get_server_config("filesystem"),
            on_status=lambda e: stages.append(e.stage),
        )

        assert await reconnect is True
        assert outcome.stage == ExecutionStage.COMPLETED
        assert ExecutionStage.CONNECTING in stages


class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_server_fails_without_permit(self, tracker):
        outcome = await tracker.execute_tool_with_feedback(_call("c1", "unknownserver.read_file"), "s1", None)

        assert outcome.stage == ExecutionStage.FAILED
        assert outcome.rejected
        assert outcome.error == "MCP server 'unknownserver' is not configured"
        assert tracker.permits.limit("unknownserver") is None
        history = tracker.get_execution_history()
        assert len(history) == 1
        assert history[0].stage == ExecutionStage.FAILED

    @pytest.mark.asyncio
    async def test_malformed_tool_name_is_rejected(self, tracker, config_manager):
        outcome = await tracker.execute_tool_with_feedback(
            _call("c1", "read_file"), "s1", config_manager.get_server_config("filesystem")
        )
        assert outcome.stage == ExecutionStage.FAILED
        assert outcome.rejected
        assert "Expected format: serverId.toolName" in outcome.error

    @pytest.mark.asyncio
    async def test_disabled_server_is_rejected(self, tracker, config_manager):
        outcome = await tracker.execute_tool_with_feedback(
            _call("c1", "legacy.read_file"), "s1", config_manager.get_server_config("legacy")
        )
        assert outcome.rejected
        assert outcome.error == "MCP server 'legacy' is disabled"

    @pytest.mark.asyncio
    async def test_invalid_argument_json_is_rejected(self, tracker, config_manager, channel_factory):
        call = ToolCall(id="c1", function_name="filesystem.read_file", arguments_json="{not json")
        outcome = await tracker.execute_tool_with_feedback(call, "s1", config_manager.get_server_config("filesystem"))

        assert outcome.rejected
        assert outcome.error.startswith("Invalid tool arguments JSON")
        assert channel_factory.server("filesystem").calls == []

    @pytest.mark.asyncio
    async def test_non_object_arguments_are_rejected(self, tracker, config_manager):
        call = ToolCall(id="c1", function_name="filesystem.read_file", arguments_json="[1, 2]")
        outcome = await tracker.execute_tool_with_feedback(call, "s1", config_manager.get_server_config("filesystem"))
        assert outcome.error == "Tool arguments must be a JSON object"

    @pytest.mark.asyncio
    async def test_name_checked_before_arguments(self, tracker):
        call = ToolCall(id="c1", function_name="noseparator", arguments_json="{not json")
        outcome = await tracker.execute_tool_with_feedback(call, "s1", None)
        assert "Invalid tool name format" in outcome.error

    @pytest.mark.asyncio
    async def test_duplicate_in_flight_id_raises(self, tracker, config_manager, channel_factory):
        channel_factory.server("filesystem").call_delay = 1.0
        cfg = config_manager.get_server_config("filesystem")
        first = asyncio.create_task(tracker.execute_tool_with_feedback(_call("c1"), "s1", cfg))
        await wait_until(lambda: tracker.get_execution("c1") is not None)

        with pytest.raises(ValidationError) as exc_info:
            await tracker.execute_tool_with_feedback(_call("c1"), "s1", cfg)
        assert exc_info.value.code == "duplicate_tool_call"

        tracker.cancel_execution("c1")
        assert (await first).stage == ExecutionStage.CANCELLED

    @pytest.mark.asyncio
    async def test_capacity_bound(self, connection_manager, config_manager, channel_factory):
        tracker = ExecutionTracker(connection_manager, settings=make_settings(EXECUTION_MAX_ACTIVE=1))
        channel_factory.server("filesystem").call_delay = 1.0
        cfg = config_manager.get_server_config("filesystem")
        first = asyncio.create_task(tracker.execute_tool_with_feedback(_call("c1"), "s1", cfg))
        await wait_until(lambda: tracker.get_execution("c1") is not None)

        with pytest.raises(ExecutionCapacityError):
            await tracker.execute_tool_with_feedback(_call("c2"), "s1", cfg)

        await tracker.shutdown()
        assert (await first).stage == ExecutionStage.CANCELLED


class TestRuntimeFailures:
    @pytest.mark.asyncio
    async def test_tool_error_fails_execution(self, tracker, config_manager, channel_factory):
        channel_factory.server("filesystem").call_error = ToolExecutionError("file not found", code="tool_error")

        outcome = await tracker.execute_tool_with_feedback(
            _call("c1"), "s1", config_manager.get_server_config("filesystem")
        )

        assert outcome.stage == ExecutionStage.FAILED
        assert outcome.error == "file not found"
        assert not outcome.rejected
        assert outcome.to_dict()["error"] == "file not found"

    @pytest.mark.asyncio
    async def test_transport_failure_names_the_server(self, tracker, config_manager, channel_factory):
        channel_factory.server("filesystem").call_error = TransportError("broken pipe")

        outcome = await tracker.execute_tool_with_feedback(
            _call("c1"), "s1", config_manager.get_server_config("filesystem")
        )

        assert outcome.stage == ExecutionStage.FAILED
        assert outcome.error == "Server 'filesystem' unavailable: broken pipe"
        assert tracker.permits.in_use("filesystem") == 0

    @pytest.mark.asyncio
    async def test_timeout_interrupts_and_releases_permit(self, tracker, channel_factory):
        server = channel_factory.server("weather")
        server.call_delay = 1.0
        cfg = make_server_config(timeout=0.05)

        outcome = await tracker.execute_tool_with_feedback(_call("c1", "weather.forecast"), "s1", cfg)

        assert outcome.stage == ExecutionStage.TIMEOUT
        assert outcome.error == "Tool execution timed out after 0.05s"
        assert server.interrupts == ["c1"]
        assert tracker.permits.in_use("weather") == 0
        assert tracker.get_execution_history()[0].stage == ExecutionStage.TIMEOUT

    @pytest.mark.asyncio
    async def test_timeout_lands_just_after_deadline(self, tracker, channel_factory):
        channel_factory.server("weather").call_delay = 5.0
        cfg = make_server_config(timeout=0.1)

        outcome = await tracker.execute_tool_with_feedback(_call("c1", "weather.forecast"), "s1", cfg)

        assert outcome.stage == ExecutionStage.TIMEOUT
        assert 100 <= outcome.execution_time_ms < 350

    @pytest.mark.asyncio
    async def test_failed_call_does_not_block_next_call(
        self, tracker, connection_manager, config_manager, channel_factory
    ):
        def respond(tool_name, arguments):
            if tool_name == "bogus_tool":
                raise ToolExecutionError("Unknown tool: bogus_tool", code="tool_call_rejected")
            return "contents"

        channel_factory.server("filesystem").call_result = respond
        fs = config_manager.get_server_config("filesystem")

        first = await tracker.execute_tool_with_feedback(_call("c1", "filesystem.bogus_tool"), "s1", fs)
        second = await asyncio.wait_for(
            tracker.execute_tool_with_feedback(_call("c2"), "s1", fs), timeout=1
        )

        assert first.stage == ExecutionStage.FAILED
        assert first.error == "Unknown tool: bogus_tool"
        assert second.stage == ExecutionStage.COMPLETED
        assert second.result == "contents"
        assert connection_manager.get_connection_state("filesystem") == ConnectionState.HEALTHY

    @pytest.mark.asyncio
    async def test_malformed_response_does_not_block_next_call(self, tracker, config_manager, channel_factory):
        def respond(tool_name, arguments):
            if tool_name == "bogus_tool":
                raise ProtocolError("Malformed response", code="malformed_response")
            return "contents"

        channel_factory.server("filesystem").call_result = respond
        fs = config_manager.get_server_config("filesystem")

        first = await tracker.execute_tool_with_feedback(_call("c1", "filesystem.bogus_tool"), "s1", fs)
        second = await asyncio.wait_for(
            tracker.execute_tool_with_feedback(_call("c2"), "s1", fs), timeout=1
        )

        assert first.stage == ExecutionStage.FAILED
        assert second.stage == ExecutionStage.COMPLETED
        assert [e.stage for e in tracker.get_execution_history()] == [
            ExecutionStage.COMPLETED,
            ExecutionStage.FAILED,
        ]

    @pytest.mark.asyncio
    async def test_resolve_timeout(self, tracker, config_manager):
        weather = config_manager.get_server_config("weather")
        assert tracker.resolve_timeout(weather, "forecast") == 1
        assert tracker.resolve_timeout(weather, "alerts") == 5
        assert tracker.resolve_timeout(None, "anything") == 30
        assert tracker.resolve_timeout(make_server_config(timeout=1000), "slow") == 300


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_second_call_waits_for_single_permit(self, tracker, channel_factory):
        server = channel_factory.server("filesystem")
        server.call_delay = 0.05
        cfg = make_server_config(max_concurrency=1)
        second_messages = []

        first, second = await asyncio.gather(
            tracker.execute_tool_with_feedback(_call("c1"), "s1", cfg),
            tracker.execute_tool_with_feedback(
                _call("c2"), "s1", cfg, on_status=lambda e: second_messages.append(e.message)
            ),
        )

        assert first.stage == ExecutionStage.COMPLETED
        assert second.stage == ExecutionStage.COMPLETED
        assert server.max_active_calls == 1
        assert "Waiting for an available slot on server 'filesystem'" in second_messages
        assert len(tracker.get_execution_history()) == 2

    @pytest.mark.asyncio
    async def test_permit_bound_holds_under_load(self, tracker, config_manager, channel_factory):
        server = channel_factory.server("filesystem")
        server.call_delay = 0.01
        cfg = config_manager.get_server_config("filesystem")

        outcomes = await asyncio.gather(*(
            tracker.execute_tool_with_feedback(_call(f"c{i}"), "s1", cfg) for i in range(10)
        ))

        assert all(o.stage == ExecutionStage.COMPLETED for o in outcomes)
        assert server.max_active_calls <= cfg.max_concurrency
        assert tracker.permits.in_use("filesystem") == 0

    @pytest.mark.asyncio
    async def test_random_cancellations_leave_consistent_state(self, tracker, config_manager, channel_factory):
        rng = random.Random(1234)
        server = channel_factory.server("filesystem")
        server.call_delay = 0.02
        cfg = config_manager.get_server_config("filesystem")

        async def run(i):
            return await tracker.execute_tool_with_feedback(_call(f"c{i}"), f"s{i % 3}", cfg)

        async def maybe_cancel(i):
            await asyncio.sleep(rng.uniform(0, 0.06))
            if rng.random() < 0.5:
                tracker.cancel_execution(f"c{i}")

        results = await asyncio.gather(
            *(run(i) for i in range(20)),
            *(maybe_cancel(i) for i in range(20)),
        )
        outcomes = results[:20]

        assert {o.stage for o in outcomes} <= {ExecutionStage.COMPLETED, ExecutionStage.CANCELLED}
        history_ids = [e.tool_call_id for e in tracker.get_execution_history()]
        assert sorted(history_ids) == sorted(f"c{i}" for i in range(20))
        assert tracker.get_active_executions() == []
        assert tracker.permits.in_use("filesystem") == 0
        await wait_until(lambda: server.active_calls == 0)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_in_flight_execution(self, tracker, config_manager, channel_factory):
        server = channel_factory.server("filesystem")
        server.call_delay = 1.0
        task = asyncio.create_task(
            tracker.execute_tool_with_feedback(_call("c1"), "s1", config_manager.get_server_config("filesystem"))
        )
        await wait_until(lambda: len(server.calls) == 1)

        assert tracker.cancel_execution("c1") is True
        assert tracker.cancel_execution("c1") is False

        outcome = await task
        assert outcome.stage == ExecutionStage.CANCELLED
        assert outcome.error == "Execution cancelled by user"
        assert server.interrupts == ["c1"]
        assert len(tracker.get_execution_history()) == 1
        assert tracker.permits.in_use("filesystem") == 0

    @pytest.mark.asyncio
    async def test_cancel_unknown_execution(self, tracker):
        assert tracker.cancel_execution("nope") is False

    @pytest.mark.asyncio
    async def test_caller_cancellation_records_history(self, tracker, config_manager, channel_factory):
        server = channel_factory.server("filesystem")
        server.call_delay = 1.0
        task = asyncio.create_task(
            tracker.execute_tool_with_feedback(_call("c1"), "s1", config_manager.get_server_config("filesystem"))
        )
        await wait_until(lambda: len(server.calls) == 1)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        entry = tracker.get_execution_history()[0]
        assert entry.stage == ExecutionStage.CANCELLED
        assert entry.error == "Execution cancelled by caller"
        assert tracker.get_active_executions() == []

    @pytest.mark.asyncio
    async def test_reconnect_cancels_in_flight_execution(self, tracker, connection_manager, config_manager, channel_factory):
        server = channel_factory.server("weather")
        server.call_delay = 1.0
        task = asyncio.create_task(
            tracker.execute_tool_with_feedback(
                _call("c1", "weather.alerts"), "s1", config_manager.get_server_config("weather")
            )
        )
        await wait_until(lambda: len(server.calls) == 1)

        assert await connection_manager.reconnect_server("weather") is True

        outcome = await task
        assert outcome.stage == ExecutionStage.CANCELLED
        assert outcome.error == "Server reconnecting"
        assert connection_manager.get_connection_state("weather") == ConnectionState.HEALTHY
        assert len(channel_factory.channels["weather"]) == 2

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self, tracker, config_manager, channel_factory):
        channel_factory.server("filesystem").call_delay = 1.0
        cfg = config_manager.get_server_config("filesystem")
        tasks = [
            asyncio.create_task(tracker.execute_tool_with_feedback(_call(f"c{i}"), "s1", cfg))
            for i in range(2)
        ]
        await wait_until(lambda: len(tracker.get_active_executions()) == 2)

        await tracker.shutdown()

        outcomes = await asyncio.gather(*tasks)
        assert [o.stage for o in outcomes] == [ExecutionStage.CANCELLED] * 2
        assert [o.error for o in outcomes] == ["Shutting down"] * 2


class TestHistoryAndViews:
    @pytest.mark.asyncio
    async def test_clear_history_only_touches_one_session(self, tracker, config_manager, channel_factory):
        fs = config_manager.get_server_config("filesystem")
        await tracker.execute_tool_with_feedback(_call("a1"), "s1", fs)
        await tracker.execute_tool_with_feedback(_call("a2"), "s1", fs)
        await tracker.execute_tool_with_feedback(_call("b1"), "s2", fs)

        channel_factory.server("weather").call_delay = 1.0
        in_flight = asyncio.create_task(
            tracker.execute_tool_with_feedback(
                _call("live", "weather.alerts"), "s1", config_manager.get_server_config("weather")
            )
        )
        await wait_until(lambda: tracker.get_execution("live") is not None)

        assert tracker.clear_history("s1") == 2
        assert [e.tool_call_id for e in tracker.get_execution_history()] == ["b1"]
        assert [r.tool_call_id for r in tracker.get_active_executions("s1")] == ["live"]

        tracker.cancel_execution("live")
        await in_flight

    @pytest.mark.asyncio
    async def test_active_views_are_copies(self, tracker, config_manager, channel_factory):
        channel_factory.server("filesystem").call_delay = 1.0
        task = asyncio.create_task(
            tracker.execute_tool_with_feedback(_call("c1"), "s1", config_manager.get_server_config("filesystem"))
        )
        await wait_until(lambda: len(channel_factory.server("filesystem").calls) == 1)

        record = tracker.get_execution("c1")
        assert record.stage == ExecutionStage.EXECUTING
        record.parameters["path"] = "/etc/passwd"
        record.stage = ExecutionStage.FAILED
        assert tracker.get_execution("c1").parameters == {"path": "/tmp/a"}
        assert tracker.get_execution("c1").stage == ExecutionStage.EXECUTING
        assert tracker.get_active_executions("other") == []

        tracker.cancel_execution("c1")
        await task

    @pytest.mark.asyncio
    async def test_event_subscription_ends_with_finished(self, tracker, config_manager, channel_factory):
        channel_factory.server("filesystem").call_delay = 0.05
        task = asyncio.create_task(
            tracker.execute_tool_with_feedback(_call("c1"), "s1", config_manager.get_server_config("filesystem"))
        )
        await wait_until(lambda: tracker.get_execution("c1") is not None)

        events = [event async for event in tracker.events("c1")]
        await task

        assert isinstance(events[0], StageChanged)
        assert events[0].stage == ExecutionStage.PENDING
        assert isinstance(events[-1], ExecutionFinished)
        assert events[-1].result == "ok"

        with pytest.raises(ExecutionNotFoundError):
            tracker.events("c1")

    @pytest.mark.asyncio
    async def test_stats_cover_terminal_stages(self, tracker, config_manager, channel_factory):
        fs = config_manager.get_server_config("filesystem")
        await tracker.execute_tool_with_feedback(_call("ok1"), "s1", fs)
        await tracker.execute_tool_with_feedback(_call("bad", "nowhere.read_file"), "s1", None)
        channel_factory.server("filesystem").call_error = ToolExecutionError("nope")
        await tracker.execute_tool_with_feedback(_call("err", "filesystem.delete_file"), "s2", fs)

        stats = tracker.get_execution_stats()
        assert stats["total"] == 3
        assert stats["completed"] == 1
        assert stats["failed"] == 2
        assert stats["active"] == 0
        assert stats["toolBreakdown"] == {"read_file": 2, "delete_file": 1}
        assert tracker.get_execution_stats("s2")["total"] == 1

    @pytest.mark.asyncio
    async def test_uses_the_history_store_it_is_given(self, connection_manager, config_manager):
        store = ExecutionHistoryStore(10)
        tracker = ExecutionTracker(connection_manager, history=store)
        assert tracker.history is store

        await tracker.execute_tool_with_feedback(
            _call("c1"), "s1", config_manager.get_server_config("filesystem")
        )

        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, connection_manager, config_manager):
        tracker = ExecutionTracker(connection_manager, history=ExecutionHistoryStore(3))
        fs = config_manager.get_server_config("filesystem")
        for i in range(5):
            await tracker.execute_tool_with_feedback(_call(f"c{i}"), "s1", fs)

        assert [e.tool_call_id for e in tracker.get_execution_history()] == ["c4", "c3", "c2"]
