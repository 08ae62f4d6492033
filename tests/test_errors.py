"""
Error Classifier Tests
======================

Fixture table of real-world executor error output.
"""

import pytest

from nightshift.core.executors.errors import (
    ErrorClass,
    RunOutcome,
    classify_error,
    outcome_from_error_class,
)


QUOTA_SAMPLES = [
    "Error: You have exhausted your daily quota for gemini-2.5-pro.",
    "Quota exceeded for quota metric 'Generate Content API requests per minute'",
    "RESOURCE_EXHAUSTED: Resource has been exhausted (e.g. check quota).",
    "HTTP 429 Too Many Requests",
    "Rate limit reached for requests",
    "rate-limit hit, retry later",
    "Claude AI usage limit reached|1718000000",
    "Your quota will reset at 5pm",
    "Model capacity exhausted, please try again",
]

AUTH_SAMPLES = [
    "Request failed with status code 401",
    "403 Forbidden",
    "Error: Unauthorized",
    "Invalid API credentials supplied",
    "Authentication failed for account",
    "You are not logged in. Please run /login",
    "Please login to continue",
]

GENERIC_SAMPLES = [
    "TypeError: cannot read property 'foo' of undefined",
    "Segmentation fault",
    "ENOENT: no such file or directory",
]


class TestClassifyError:
    """classify_error against sample outputs."""

    @pytest.mark.parametrize("text", QUOTA_SAMPLES)
    def test_quota(self, text):
        assert classify_error(text) == ErrorClass.QUOTA

    @pytest.mark.parametrize("text", AUTH_SAMPLES)
    def test_auth(self, text):
        assert classify_error(text) == ErrorClass.AUTH

    @pytest.mark.parametrize("text", GENERIC_SAMPLES)
    def test_generic(self, text):
        assert classify_error(text) == ErrorClass.GENERIC

    @pytest.mark.parametrize("text", [None, "", "   \n"])
    def test_empty(self, text):
        assert classify_error(text) == ErrorClass.NONE

    def test_quota_wins_over_auth(self):
        assert classify_error("429 rate limit: unauthorized burst") == ErrorClass.QUOTA


class TestOutcomes:
    """Error class to outcome mapping."""

    def test_mapping(self):
        assert outcome_from_error_class(ErrorClass.QUOTA) == RunOutcome.QUOTA_EXHAUSTED
        assert outcome_from_error_class(ErrorClass.AUTH) == RunOutcome.AUTH_ERROR
        assert outcome_from_error_class(ErrorClass.TIMEOUT) == RunOutcome.TIMEOUT
        assert outcome_from_error_class(ErrorClass.GENERIC) == RunOutcome.FAILED

    def test_only_quota_and_auth_rotate(self):
        rotating = {o for o in RunOutcome if o.rotates_account}
        assert rotating == {RunOutcome.QUOTA_EXHAUSTED, RunOutcome.AUTH_ERROR}
