"""Deterministic classification of failed worker invocations."""

from __future__ import annotations

from dataclasses import dataclass

from agent_supervisor.orchestrator.models import FailureClass

WORKER_FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
)


@dataclass(slots=True)
class WorkerFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for ledger events."""

        return {
            "classifier_version": WORKER_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_worker_failure(
    *,
    exit_code: int | None,
    timed_out: bool,
    stderr: str,
    stdout: str = "",
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> WorkerFailureClassification:
    """Classify a worker process that exited without an acceptable result."""

    if timed_out:
        return WorkerFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="worker_timeout",
            matched_rule="timeout",
            matched_pattern=None,
        )

    haystack = f"{stderr}\n{stdout}".lower()

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return WorkerFailureClassification(
            failure_class=FailureClass.BILLING_OR_QUOTA,
            reason_code="worker_billing_or_quota",
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return WorkerFailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            reason_code="worker_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return WorkerFailureClassification(
            failure_class=FailureClass.WORKER_TRANSIENT,
            reason_code="worker_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or (exit_code is not None and exit_code in transient_exit_codes):
        return WorkerFailureClassification(
            failure_class=FailureClass.WORKER_TRANSIENT,
            reason_code="worker_transient",
            matched_rule="generic_transient" if pattern is not None else "transient_exit_code",
            matched_pattern=pattern,
        )

    return WorkerFailureClassification(
        failure_class=FailureClass.WORKER_NON_RETRYABLE,
        reason_code="worker_exit_nonzero",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
