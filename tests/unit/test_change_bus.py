"""Tests for the change bus and channel naming."""

from __future__ import annotations

import logging

import pytest

from relstore.runtime.event_bus import (
    BULK_CHANNEL,
    ChangeBus,
    ChangeEvent,
    DbOperation,
    channel_name,
    get_change_bus,
    parse_channel,
    reset_change_bus,
    set_change_bus,
)


class TestChannelNames:
    """Test channel naming."""

    def test_model_channels_are_upper_cased(self) -> None:
        assert channel_name(DbOperation.INSERT, "task") == "EVT_DB_INSERT:TASK"
        assert channel_name("DELETE_MANY", "taskList") == "EVT_DB_DELETE_MANY:TASKLIST"

    def test_bulk_channel_has_no_model(self) -> None:
        assert channel_name(DbOperation.UPDATE_BULK) == BULK_CHANNEL == "EVT_DB_UPDATE_BULK"

    def test_model_is_required_elsewhere(self) -> None:
        with pytest.raises(ValueError):
            channel_name(DbOperation.UPDATE)

    def test_parse_channel(self) -> None:
        assert parse_channel("EVT_DB_UPDATE_MANY:TASK") == (DbOperation.UPDATE_MANY, "TASK")
        assert parse_channel(BULK_CHANNEL) == (DbOperation.UPDATE_BULK, None)


class TestChangeEvent:
    """Test the event wire format."""

    def test_round_trip(self) -> None:
        event = ChangeEvent(
            channel="EVT_DB_UPDATE:TASK",
            model_id="task",
            id="t1",
            data={"done": True},
            db_mode="memory",
            account_id="acme",
            user_id="alice",
        )

        payload = event.to_dict()
        restored = ChangeEvent.from_dict(payload)

        assert payload["dbMode"] == "memory"
        assert payload["modelId"] == "task"
        assert restored.operation == DbOperation.UPDATE
        assert (restored.id, restored.data, restored.user_id) == ("t1", {"done": True}, "alice")

    def test_id_is_omitted_when_absent(self) -> None:
        assert "id" not in ChangeEvent(channel=BULK_CHANNEL).to_dict()


class TestChangeBus:
    """Test subscription and delivery."""

    @pytest.mark.asyncio
    async def test_delivery_by_channel_and_wildcard(self) -> None:
        bus = ChangeBus()
        task_events: list[ChangeEvent] = []
        everything: list[ChangeEvent] = []
        bus.subscribe("EVT_DB_INSERT:TASK", task_events.append)
        bus.subscribe("*", everything.append)

        await bus.emit(DbOperation.INSERT, "task", record_id="t1", data={"id": "t1"})
        await bus.emit(DbOperation.INSERT, "note", record_id="n1")

        assert [e.id for e in task_events] == ["t1"]
        assert [e.id for e in everything] == ["t1", "n1"]
        assert bus.published_count == 2

    @pytest.mark.asyncio
    async def test_async_handlers_are_awaited(self) -> None:
        bus = ChangeBus()
        seen: list[str] = []

        async def handler(event: ChangeEvent) -> None:
            seen.append(event.channel)

        bus.subscribe(BULK_CHANNEL, handler)
        await bus.emit(DbOperation.UPDATE_BULK, None, data=[])

        assert seen == [BULK_CHANNEL]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        bus = ChangeBus()
        seen: list[str] = []

        def broken(event: ChangeEvent) -> None:
            raise RuntimeError("boom")

        bus.subscribe("*", broken)
        bus.subscribe("*", lambda event: seen.append(event.channel))

        with caplog.at_level(logging.ERROR, logger="relstore.runtime.event_bus"):
            await bus.emit(DbOperation.DELETE, "task", record_id="t1")

        assert seen == ["EVT_DB_DELETE:TASK"]
        assert "Change handler broken failed" in caplog.text

    @pytest.mark.asyncio
    async def test_unsubscribe_and_disable(self) -> None:
        bus = ChangeBus()
        seen: list[ChangeEvent] = []
        subscription_id = bus.subscribe("*", seen.append)

        bus.disable()
        await bus.emit(DbOperation.INSERT, "task")
        bus.enable()
        assert bus.unsubscribe(subscription_id) is True
        await bus.emit(DbOperation.INSERT, "task")

        assert seen == []
        assert bus.unsubscribe(subscription_id) is False
        assert bus.published_count == 1


class TestGlobalBus:
    """Test the process-wide bus accessors."""

    def test_get_set_reset(self) -> None:
        bus = ChangeBus()
        set_change_bus(bus)
        assert get_change_bus() is bus

        reset_change_bus()

        assert get_change_bus() is not bus
