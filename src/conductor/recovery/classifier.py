"""Error classification for recovery decisions.

Maps a raw failure signal (message, error code, exception or agent result)
to an ``ErrorClassification``:
- transient: timeouts, rate limits, dropped connections; retried with backoff
- retriable: contention, missing dependencies, validation, corrupt state
- fatal: permission, configuration, syntax, not found, out of memory
- conflict: security, business rule, data integrity; needs a human

Rules are scanned top to bottom and the first match wins, so the order of
``CLASSIFICATION_RULES`` is significant. Conflict rules come first so that,
for example, a security scan reporting "CVE found: resource not found" is
paused for review instead of being dropped as a plain not-found failure.
Anything that matches no rule is treated as fatal and unknown.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from enum import Enum
from typing import Any, NamedTuple

from ..agent.models import AgentTaskResult

logger = logging.getLogger(__name__)


class ErrorType(str, Enum):
    """Top-level error taxonomy."""

    TRANSIENT = "transient"
    RETRIABLE = "retriable"
    FATAL = "fatal"
    CONFLICT = "conflict"


class ErrorCategory(str, Enum):
    """Fine-grained error tags."""

    # transient
    NETWORK_TIMEOUT = "network_timeout"
    RATE_LIMIT = "rate_limit"
    CONNECTION_RESET = "connection_reset"
    SERVICE_UNAVAILABLE = "service_unavailable"
    # retriable
    RESOURCE_LOCKED = "resource_locked"
    DEPENDENCY_MISSING = "dependency_missing"
    VALIDATION_ERROR = "validation_error"
    TEMPORARY_FAILURE = "temporary_failure"
    STATE_CORRUPTION = "state_corruption"
    # fatal
    PERMISSION_DENIED = "permission_denied"
    INVALID_CONFIGURATION = "invalid_configuration"
    RESOURCE_NOT_FOUND = "resource_not_found"
    SYNTAX_ERROR = "syntax_error"
    OUT_OF_MEMORY = "out_of_memory"
    # conflict
    SECURITY_VULNERABILITY = "security_vulnerability"
    BUSINESS_RULE_VIOLATION = "business_rule_violation"
    POLICY_VIOLATION = "policy_violation"
    DATA_INTEGRITY_ISSUE = "data_integrity_issue"
    # synthetic
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: Any, default: Severity | None = None) -> Severity | None:
        """Parse a severity name leniently, returning ``default`` if unknown."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class RecoveryAction(str, Enum):
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    SKIP = "skip"
    ROLLBACK = "rollback"
    ALTERNATIVE_PATH = "alternative_path"
    PAUSE_WORKFLOW = "pause_workflow"
    FAIL_IMMEDIATELY = "fail_immediately"
    CIRCUIT_BREAK = "circuit_break"


class ClassificationRule(NamedTuple):
    """One row of the classification table."""

    pattern: str
    error_type: ErrorType
    category: ErrorCategory
    severity: Severity
    action: RecoveryAction
    description: str


class ErrorClassification(NamedTuple):
    """Result of classifying a failure."""

    type: ErrorType
    category: ErrorCategory
    severity: Severity
    recovery_action: RecoveryAction
    retryable: bool
    requires_human_intervention: bool
    message: str
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "recovery_action": self.recovery_action.value,
            "retryable": self.retryable,
            "requires_human_intervention": self.requires_human_intervention,
            "message": self.message,
            "description": self.description,
        }


_T, _R, _F, _C = ErrorType.TRANSIENT, ErrorType.RETRIABLE, ErrorType.FATAL, ErrorType.CONFLICT
_A = RecoveryAction

CLASSIFICATION_RULES: list[ClassificationRule] = [
    # Conflicts: must precede every fatal/not-found rule
    ClassificationRule(
        r"security|vulnerab|\bcve-\d{4}|exploit|injection|\bxss\b",
        _C, ErrorCategory.SECURITY_VULNERABILITY, Severity.CRITICAL, _A.PAUSE_WORKFLOW,
        "Security issue requires review",
    ),
    ClassificationRule(
        r"business[\s_-]*rule",
        _C, ErrorCategory.BUSINESS_RULE_VIOLATION, Severity.HIGH, _A.PAUSE_WORKFLOW,
        "Business rule violated",
    ),
    ClassificationRule(
        r"polic(y|ies)[\s_-]*(violation|breach)|compliance",
        _C, ErrorCategory.POLICY_VIOLATION, Severity.HIGH, _A.PAUSE_WORKFLOW,
        "Policy or compliance violation",
    ),
    ClassificationRule(
        r"integrity|constraint[\s_-]*violation|merge[\s_-]*conflict|\bconflict\b",
        _C, ErrorCategory.DATA_INTEGRITY_ISSUE, Severity.HIGH, _A.PAUSE_WORKFLOW,
        "Data integrity conflict",
    ),
    # Fatal resource failures
    ClassificationRule(
        r"out[\s_-]*of[\s_-]*memory|\boom\b|memoryerror|heap[\s_-]*(exhausted|out)",
        _F, ErrorCategory.OUT_OF_MEMORY, Severity.CRITICAL, _A.CIRCUIT_BREAK,
        "Agent ran out of memory",
    ),
    ClassificationRule(
        r"permission[\s_-]*denied|access[\s_-]*denied|forbidden|unauthori[sz]ed"
        r"|\beacces\b|\beperm\b|\b40[13]\b",
        _F, ErrorCategory.PERMISSION_DENIED, Severity.HIGH, _A.FAIL_IMMEDIATELY,
        "Permission denied",
    ),
    ClassificationRule(
        r"invalid[\s_-]*config|misconfigur|configuration[\s_-]*error"
        r"|missing[\s_-]*(api[\s_-]*key|credential)",
        _F, ErrorCategory.INVALID_CONFIGURATION, Severity.HIGH, _A.FAIL_IMMEDIATELY,
        "Invalid configuration",
    ),
    ClassificationRule(
        r"syntax[\s_-]*error|parse[\s_-]*error|unexpected[\s_-]*token",
        _F, ErrorCategory.SYNTAX_ERROR, Severity.HIGH, _A.FAIL_IMMEDIATELY,
        "Syntax error",
    ),
    # Transient
    ClassificationRule(
        r"timeout|timed[\s_-]*out|deadline[\s_-]*exceeded|\betimedout\b",
        _T, ErrorCategory.NETWORK_TIMEOUT, Severity.MEDIUM, _A.RETRY_WITH_BACKOFF,
        "Operation timed out",
    ),
    ClassificationRule(
        r"rate[\s_-]*limit|too[\s_-]*many[\s_-]*requests|throttl|\b429\b",
        _T, ErrorCategory.RATE_LIMIT, Severity.LOW, _A.RETRY_WITH_BACKOFF,
        "Rate limited",
    ),
    ClassificationRule(
        r"connection[\s_-]*(reset|refused|closed|aborted)|\beconnreset\b|\beconnrefused\b"
        r"|\benotfound\b|network[\s_-]*(error|unreachable)|socket[\s_-]*hang[\s_-]*up",
        _T, ErrorCategory.CONNECTION_RESET, Severity.MEDIUM, _A.RETRY_WITH_BACKOFF,
        "Connection failed",
    ),
    ClassificationRule(
        r"service[\s_-]*(temporarily[\s_-]*)?unavailable|bad[\s_-]*gateway|\b50[234]\b",
        _T, ErrorCategory.SERVICE_UNAVAILABLE, Severity.MEDIUM, _A.RETRY_WITH_BACKOFF,
        "Service unavailable",
    ),
    # Retriable
    ClassificationRule(
        r"\blocked\b|\bebusy\b|resource[\s_-]*busy|lock[\s_-]*(held|contention)",
        _R, ErrorCategory.RESOURCE_LOCKED, Severity.MEDIUM, _A.RETRY_WITH_BACKOFF,
        "Resource is locked",
    ),
    ClassificationRule(
        r"dependenc(y|ies)|prerequisite|not[\s_-]*yet[\s_-]*available",
        _R, ErrorCategory.DEPENDENCY_MISSING, Severity.MEDIUM, _A.RETRY_WITH_BACKOFF,
        "Dependency not ready",
    ),
    ClassificationRule(
        r"validation[\s_-]*(failed|error)|invalid[\s_-]*(input|argument|payload)"
        r"|schema[\s_-]*mismatch",
        _R, ErrorCategory.VALIDATION_ERROR, Severity.MEDIUM, _A.ALTERNATIVE_PATH,
        "Validation failed",
    ),
    ClassificationRule(
        r"state[\s_-]*corrupt|corrupt(ed|ion)|inconsistent[\s_-]*state|checksum[\s_-]*mismatch",
        _R, ErrorCategory.STATE_CORRUPTION, Severity.HIGH, _A.ROLLBACK,
        "Corrupted state",
    ),
    ClassificationRule(
        r"temporar(y|ily)|transient|try[\s_-]*again|\beagain\b",
        _R, ErrorCategory.TEMPORARY_FAILURE, Severity.LOW, _A.RETRY,
        "Temporary failure",
    ),
    # Generic not-found goes last
    ClassificationRule(
        r"not[\s_-]*found|no[\s_-]*such|does[\s_-]*not[\s_-]*exist|\benoent\b|\b404\b",
        _F, ErrorCategory.RESOURCE_NOT_FOUND, Severity.HIGH, _A.FAIL_IMMEDIATELY,
        "Resource not found",
    ),
]

UNKNOWN_RULE = ClassificationRule(
    "",
    ErrorType.FATAL,
    ErrorCategory.UNKNOWN,
    Severity.HIGH,
    RecoveryAction.FAIL_IMMEDIATELY,
    "Unclassified error",
)


def error_signal(raw: Any) -> str:
    """Reduce a raw failure to the string the rules are matched against."""
    if raw is None:
        return ""
    if isinstance(raw, AgentTaskResult):
        return raw.error_signal
    if isinstance(raw, BaseException):
        text = str(raw)
        return f"{type(raw).__name__}: {text}" if text else type(raw).__name__
    return str(raw)


def _build(rule: ClassificationRule, message: str) -> ErrorClassification:
    return ErrorClassification(
        type=rule.error_type,
        category=rule.category,
        severity=rule.severity,
        recovery_action=rule.action,
        retryable=rule.error_type in (ErrorType.TRANSIENT, ErrorType.RETRIABLE),
        requires_human_intervention=rule.error_type == ErrorType.CONFLICT,
        message=message,
        description=rule.description,
    )


class ErrorClassifier:
    """Ordered rule-table matcher.

    The matcher knows nothing about individual categories; extending the
    taxonomy means passing a different rule list.
    """

    def __init__(self, rules: Sequence[ClassificationRule] | None = None):
        source = CLASSIFICATION_RULES if rules is None else rules
        self._rules = [(re.compile(rule.pattern, re.IGNORECASE), rule) for rule in source]

    @property
    def rules(self) -> list[ClassificationRule]:
        return [rule for _, rule in self._rules]

    def with_rules(
        self, extra: Iterable[ClassificationRule], prepend: bool = True
    ) -> ErrorClassifier:
        """Return a classifier with ``extra`` rules ahead of (or after) these."""
        extra = list(extra)
        return ErrorClassifier(extra + self.rules if prepend else self.rules + extra)

    def classify(self, raw: Any) -> ErrorClassification:
        """Classify a failure signal. Never raises."""
        try:
            signal = error_signal(raw).strip()
        except Exception:
            logger.warning("Could not read error signal from %r", type(raw).__name__)
            return _build(UNKNOWN_RULE, "")

        if not signal:
            return _build(UNKNOWN_RULE, signal)

        for pattern, rule in self._rules:
            if pattern.search(signal):
                return _build(rule, signal)

        logger.debug("No classification rule matched: %s", signal[:200])
        return _build(UNKNOWN_RULE, signal)


_default_classifier = ErrorClassifier()


def classify_error(raw: Any) -> ErrorClassification:
    """Classify with the default rule table."""
    return _default_classifier.classify(raw)


def is_retryable(raw: Any) -> bool:
    return classify_error(raw).retryable


def requires_human(raw: Any) -> bool:
    return classify_error(raw).requires_human_intervention
