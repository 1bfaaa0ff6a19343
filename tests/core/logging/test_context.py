"""Tests for core.logging.context module."""

import asyncio

from core.logging.context import clear_log_context, get_log_context, set_log_context


class TestLogContext:
    def setup_method(self):
        clear_log_context()

    def teardown_method(self):
        clear_log_context()

    def test_defaults_are_empty(self):
        assert get_log_context() == {
            "cycle_id": "",
            "stage": "",
            "job": "",
            "partition_id": "",
            "file_id": "",
        }

    def test_set_all_fields(self):
        set_log_context(
            cycle_id="c-1",
            stage="publish",
            job="ingest",
            partition_id="default",
            file_id="abc",
        )
        ctx = get_log_context()
        assert ctx["cycle_id"] == "c-1"
        assert ctx["stage"] == "publish"
        assert ctx["job"] == "ingest"
        assert ctx["partition_id"] == "default"
        assert ctx["file_id"] == "abc"

    def test_partial_set_preserves_others(self):
        set_log_context(cycle_id="c-1", stage="read_events")
        set_log_context(stage="publish")

        ctx = get_log_context()
        assert ctx["cycle_id"] == "c-1"
        assert ctx["stage"] == "publish"

    def test_clear(self):
        set_log_context(cycle_id="c-1", job="sweep")
        clear_log_context()
        assert get_log_context()["cycle_id"] == ""
        assert get_log_context()["job"] == ""

    async def test_tasks_do_not_leak_context(self):
        set_log_context(cycle_id="outer")

        async def inner():
            set_log_context(cycle_id="inner")
            return get_log_context()["cycle_id"]

        assert await asyncio.create_task(inner()) == "inner"
        assert get_log_context()["cycle_id"] == "outer"
