from __future__ import annotations

import allure

from agent_supervisor.orchestrator.failure_classifier import (
    WORKER_FAILURE_CLASSIFIER_VERSION,
    classify_worker_failure,
)
from agent_supervisor.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert WORKER_FAILURE_CLASSIFIER_VERSION == 1


def test_timeout_wins_over_output() -> None:
    classified = classify_worker_failure(
        exit_code=124,
        timed_out=True,
        stderr="quota exceeded",
    )
    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.reason_code == "worker_timeout"


def test_classifier_prefers_billing_over_transient_exit_code() -> None:
    classified = classify_worker_failure(
        exit_code=137,
        timed_out=False,
        stderr="Quota exceeded for this project",
    )
    assert classified.failure_class == FailureClass.BILLING_OR_QUOTA
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"


def test_classifier_maps_auth_errors() -> None:
    classified = classify_worker_failure(
        exit_code=1,
        timed_out=False,
        stderr="Error: Invalid API key provided",
    )
    assert classified.failure_class == FailureClass.ACCESS_OR_AUTH
    assert classified.reason_code == "worker_access_or_auth"


def test_classifier_maps_rate_limit_to_transient() -> None:
    classified = classify_worker_failure(
        exit_code=1,
        timed_out=False,
        stderr="",
        stdout="HTTP 429 too many requests, please retry",
    )
    assert classified.failure_class == FailureClass.WORKER_TRANSIENT
    assert classified.matched_rule == "rate_limit_transient"


def test_classifier_treats_signal_exit_codes_as_transient() -> None:
    classified = classify_worker_failure(exit_code=143, timed_out=False, stderr="")
    assert classified.failure_class == FailureClass.WORKER_TRANSIENT
    assert classified.matched_rule == "transient_exit_code"
    assert classified.matched_pattern is None


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_worker_failure(
        exit_code=2,
        timed_out=False,
        stderr="SyntaxError: unexpected token",
    )
    assert classified.failure_class == FailureClass.WORKER_NON_RETRYABLE
    assert classified.to_event_details() == {
        "classifier_version": 1,
        "failure_class": "worker_non_retryable",
        "reason_code": "worker_exit_nonzero",
        "matched_rule": "fallback_non_retryable",
        "matched_pattern": None,
    }
