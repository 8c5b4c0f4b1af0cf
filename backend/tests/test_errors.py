"""
Tests for the error taxonomy and bounded retry helper.
"""

import pytest

from errors import (
    ConflictError,
    ErrorCode,
    ExternalServiceError,
    NotFoundError,
    RateLimitError,
    ValidationError,
    call_with_retry,
    get_retry_delay,
    should_retry,
)


class Flaky:
    """Callable failing ``failures`` times before returning ``value``"""

    def __init__(self, failures, error, value="ok"):
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


class TestErrorShape:

    def test_status_codes(self):
        assert ValidationError("bad").status_code == 400
        assert NotFoundError("Project", "p1").status_code == 404
        assert ConflictError("nope", "completed").status_code == 409
        assert RateLimitError("render", 5).status_code == 429
        assert ExternalServiceError("renderer", "down").status_code == 502
        assert ExternalServiceError("renderer", "slow", timeout=True).status_code == 504

    def test_to_dict(self):
        error = NotFoundError("Project", "p1")
        assert error.to_dict() == {
            "error": "Project not found",
            "code": "NOT_FOUND",
            "details": {"resource": "Project", "id": "p1"},
        }

    def test_validation_error_lists_fields(self):
        error = ValidationError("bad", {"scenes.0.duration": ["must be greater than 0"]})
        assert error.code == ErrorCode.VALIDATION_FAILED
        assert error.to_dict()["details"] == {"fields": {"scenes.0.duration": ["must be greater than 0"]}}


class TestShouldRetry:

    def test_external_errors_are_retryable(self):
        assert should_retry(ExternalServiceError("renderer", "503"))
        assert should_retry(TimeoutError())
        assert should_retry(ConnectionError())

    def test_domain_errors_are_not(self):
        assert not should_retry(ValidationError("bad"))
        assert not should_retry(ConflictError("nope"))
        assert not should_retry(ValueError("boom"))

    def test_retry_delay_is_bounded(self):
        assert get_retry_delay(0) == 1.0
        assert get_retry_delay(3) == 8.0
        assert get_retry_delay(10) == 30.0


class TestCallWithRetry:

    def test_recovers_within_budget(self):
        sleeps = []
        fn = Flaky(2, ExternalServiceError("renderer", "503"))

        assert call_with_retry(fn, "renderer", max_retries=2, base_delay=1.0, sleep=sleeps.append) == "ok"
        assert fn.calls == 3
        assert len(sleeps) == 2
        assert sleeps[0] <= sleeps[1]

    def test_gives_up_after_budget(self):
        fn = Flaky(10, ExternalServiceError("renderer", "503"))

        with pytest.raises(ExternalServiceError):
            call_with_retry(fn, "renderer", max_retries=2, sleep=lambda s: None)
        assert fn.calls == 3

    def test_transport_error_is_wrapped(self):
        fn = Flaky(10, TimeoutError("read timed out"))

        with pytest.raises(ExternalServiceError) as exc_info:
            call_with_retry(fn, "content_generator", max_retries=1, sleep=lambda s: None)
        assert exc_info.value.code == ErrorCode.EXTERNAL_TIMEOUT
        assert exc_info.value.details == {"service": "content_generator"}

    def test_domain_error_is_not_retried(self):
        fn = Flaky(10, ValidationError("bad"))

        with pytest.raises(ValidationError):
            call_with_retry(fn, "renderer", max_retries=3, sleep=lambda s: None)
        assert fn.calls == 1
