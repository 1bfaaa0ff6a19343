"""Tests for the Prometheus metric helpers."""

import errno
from unittest.mock import patch

import pytest
from prometheus_client import REGISTRY

from blobfeed import metrics


def _sample(name: str, labels: dict | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestRecorders:
    def test_record_event(self):
        before = _sample("blobfeed_events_total", {"outcome": "forwarded"})
        metrics.record_event("forwarded", 3)
        assert _sample("blobfeed_events_total", {"outcome": "forwarded"}) == before + 3

    def test_record_event_ignores_zero(self):
        before = _sample("blobfeed_events_total", {"outcome": "filtered"})
        metrics.record_event("filtered", 0)
        assert _sample("blobfeed_events_total", {"outcome": "filtered"}) == before

    def test_record_cycle(self):
        before = _sample("blobfeed_cycles_total", {"status": "committed"})
        count_before = _sample("blobfeed_cycle_duration_seconds_count")

        metrics.record_cycle("committed", 0.3)

        assert _sample("blobfeed_cycles_total", {"status": "committed"}) == before + 1
        assert _sample("blobfeed_cycle_duration_seconds_count") == count_before + 1

    def test_record_swept(self):
        before = _sample("blobfeed_records_swept_total")
        metrics.record_swept(2)
        metrics.record_swept(0)
        assert _sample("blobfeed_records_swept_total") == before + 2

    def test_connection_status(self):
        metrics.update_connection_status("servicebus", connected=True)
        assert _sample("blobfeed_connection_status", {"component": "servicebus"}) == 1
        metrics.update_connection_status("servicebus", connected=False)
        assert _sample("blobfeed_connection_status", {"component": "servicebus"}) == 0


class TestStartMetricsServer:
    def test_uses_preferred_port(self):
        with patch("blobfeed.metrics.start_http_server") as mock_start:
            assert metrics.start_metrics_server(9464) == 9464
        mock_start.assert_called_once_with(9464, registry=REGISTRY)

    def test_falls_back_when_port_taken(self):
        calls = []

        def fake_start(port, registry):
            calls.append(port)
            if len(calls) == 1:
                raise OSError(errno.EADDRINUSE, "in use")

        with patch("blobfeed.metrics.start_http_server", side_effect=fake_start):
            port = metrics.start_metrics_server(9464)

        assert port != 9464
        assert calls == [9464, port]

    def test_other_errors_propagate(self):
        with patch("blobfeed.metrics.start_http_server", side_effect=OSError(errno.EACCES, "denied")):
            with pytest.raises(OSError):
                metrics.start_metrics_server(80)
