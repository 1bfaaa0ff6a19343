"""
Tests for exception hierarchy and error classification.
"""

import asyncio
import errno

import pytest
from azure.core.exceptions import HttpResponseError

from core.errors.exceptions import (
    CheckpointError,
    ConfigurationError,
    IngestionCycleError,
    MalformedEventError,
    PermanentError,
    PipelineError,
    PublishError,
    RepositoryError,
    SourceReadError,
    SweepError,
    TransientError,
    classify_exception,
    classify_http_status,
    classify_os_error,
    wrap_exception,
)
from core.types import ErrorCategory


class TestPipelineError:
    """Test base PipelineError class."""

    def test_basic_error(self):
        err = PipelineError("Something went wrong")
        assert err.message == "Something went wrong"
        assert err.cause is None
        assert err.context == {}
        assert err.category == ErrorCategory.UNKNOWN

    def test_error_with_cause(self):
        cause = ValueError("Invalid value")
        err = PipelineError("Wrapper message", cause=cause)
        assert err.cause == cause
        assert "Caused by" in str(err)

    def test_silent_cause_is_named_by_type(self):
        err = PipelineError("list_expired timed out after 30s", cause=asyncio.TimeoutError())
        assert str(err) == "list_expired timed out after 30s | Caused by: TimeoutError"

    def test_error_with_context(self):
        err = PipelineError("Error", context={"file_id": "abc"})
        assert err.context["file_id"] == "abc"


class TestHierarchy:
    @pytest.mark.parametrize(
        "cls", [SourceReadError, RepositoryError, CheckpointError, PublishError]
    )
    def test_stage_errors_are_transient(self, cls):
        err = cls("boom")
        assert isinstance(err, TransientError)
        assert err.category == ErrorCategory.TRANSIENT

    def test_checkpoint_error_is_repository_error(self):
        assert issubclass(CheckpointError, RepositoryError)

    def test_malformed_event_is_permanent(self):
        err = MalformedEventError("no url")
        assert isinstance(err, PermanentError)
        assert err.category == ErrorCategory.PERMANENT

    def test_configuration_error_keeps_problems(self):
        err = ConfigurationError("bad config", problems=["a", "b"])
        assert err.problems == ["a", "b"]
        assert err.context["problems"] == ["a", "b"]
        assert err.category == ErrorCategory.PERMANENT


class TestIngestionCycleError:
    def test_carries_stage_and_report(self):
        report = object()
        cause = PublishError("queue rejected")

        err = IngestionCycleError("publish", report, cause)

        assert err.stage == "publish"
        assert err.report is report
        assert err.cause is cause
        assert err.context == {"stage": "publish"}
        assert "publish" in str(err)

    def test_category_follows_cause(self):
        assert IngestionCycleError("x", None, PublishError("t")).category == ErrorCategory.TRANSIENT
        assert (
            IngestionCycleError("x", None, MalformedEventError("p")).category
            == ErrorCategory.PERMANENT
        )

    def test_no_cause_is_unknown(self):
        assert IngestionCycleError("x", None).category == ErrorCategory.UNKNOWN


class TestSweepError:
    def test_is_repository_error_with_report(self):
        err = SweepError("aborted", report={"deleted": 2})
        assert isinstance(err, RepositoryError)
        assert err.report == {"deleted": 2}


class TestClassifyHttpStatus:
    @pytest.mark.parametrize(
        "status,expected",
        [
            (401, ErrorCategory.AUTH),
            (403, ErrorCategory.AUTH),
            (408, ErrorCategory.TRANSIENT),
            (429, ErrorCategory.TRANSIENT),
            (404, ErrorCategory.PERMANENT),
            (409, ErrorCategory.PERMANENT),
            (500, ErrorCategory.TRANSIENT),
            (503, ErrorCategory.TRANSIENT),
            (200, ErrorCategory.UNKNOWN),
        ],
    )
    def test_status_codes(self, status, expected):
        assert classify_http_status(status) == expected


class TestClassifyOsError:
    def test_disk_full_is_permanent(self):
        assert classify_os_error(OSError(errno.ENOSPC, "full")) == ErrorCategory.PERMANENT

    def test_other_errno_is_transient(self):
        assert classify_os_error(OSError(errno.ECONNRESET, "reset")) == ErrorCategory.TRANSIENT


class TestClassifyException:
    def test_pipeline_error_uses_own_category(self):
        assert classify_exception(MalformedEventError("x")) == ErrorCategory.PERMANENT

    def test_timeout(self):
        assert classify_exception(asyncio.TimeoutError()) == ErrorCategory.TRANSIENT

    def test_azure_http_error_uses_status(self):
        err = HttpResponseError("throttled")
        err.status_code = 429
        assert classify_exception(err) == ErrorCategory.TRANSIENT

    def test_auth_marker_in_message(self):
        assert classify_exception(Exception("AuthenticationFailed: signature mismatch")) == ErrorCategory.AUTH

    def test_transient_marker_in_message(self):
        assert classify_exception(Exception("Server busy, throttled")) == ErrorCategory.TRANSIENT

    def test_unrecognized(self):
        assert classify_exception(Exception("weird")) == ErrorCategory.UNKNOWN


class TestWrapException:
    def test_wraps_with_default_class(self):
        cause = ConnectionError("reset by peer")

        err = wrap_exception(cause, SourceReadError, message="fetch failed")

        assert isinstance(err, SourceReadError)
        assert err.cause is cause
        assert err.message == "fetch failed"
        assert err.context["error_type"] == "ConnectionError"
        assert err.context["error_category"] == "transient"

    def test_returns_same_instance_when_already_wrapped(self):
        original = SourceReadError("fetch failed")

        err = wrap_exception(original, SourceReadError, context={"page": 2})

        assert err is original
        assert err.context["page"] == 2
