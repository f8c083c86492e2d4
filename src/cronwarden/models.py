from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class IssueType(str, Enum):
    MISSING_IMAGE = "missing_image"
    PLACEHOLDER_IMAGE = "placeholder_image"
    JOB_FAILURE = "job_failure"
    MISSING_BRIEF = "missing_brief"
    THIN_CONTENT = "thin_content"
    MISSED_EMAIL = "missed_email"
    HTML_ARTIFACT = "html_artifact"


class IssueStatus(str, Enum):
    OPEN = "open"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    NEEDS_MANUAL = "needs_manual"


# Statuses that block intake from creating another issue with the same key.
ACTIVE_STATUSES = (IssueStatus.OPEN, IssueStatus.RETRYING, IssueStatus.NEEDS_MANUAL)
RETRYABLE_STATUSES = (IssueStatus.OPEN, IssueStatus.RETRYING)


@dataclass(frozen=True)
class Scope:
    id: str
    name: str
    city: str | None
    timezone: str | None
    is_active: bool


@dataclass(frozen=True)
class Article:
    id: str
    scope_id: str | None
    headline: str
    body_text: str | None
    image_url: str | None
    status: str
    published_at: str | None
    created_at: str


@dataclass(frozen=True)
class Recipient:
    id: str
    email: str | None
    source: str
    timezone: str | None
    daily_email_enabled: bool
    scope_ids: list[str]


@dataclass(frozen=True)
class TextDescription:
    text: str


@dataclass(frozen=True)
class DeliveryDiagnosis:
    recipient_id: str
    email: str
    source: str
    cause: str
    details: str
    auto_fixable: bool


IssueDescription = TextDescription | DeliveryDiagnosis


@dataclass(frozen=True)
class IssueCandidate:
    issue_type: IssueType
    description: IssueDescription
    auto_fixable: bool
    max_retries: int
    subject_ref: str | None = None
    scope_ref: str | None = None


@dataclass(frozen=True)
class Issue:
    id: str
    issue_type: IssueType
    subject_ref: str | None
    scope_ref: str | None
    description: IssueDescription
    dedup_key: str
    status: IssueStatus
    retry_count: int
    max_retries: int
    next_retry_at: datetime | None
    auto_fixable: bool
    fix_attempted_at: datetime | None
    fix_result: str | None
    created_at: datetime
    resolved_at: datetime | None


@dataclass(frozen=True)
class FixOutcome:
    success: bool
    message: str


@dataclass(frozen=True)
class ExecutionRecord:
    id: str
    job_name: str
    started_at: datetime
    completed_at: datetime | None
    success: bool
    errors: list[str]
    response_data: dict[str, Any] | None
    triggered_by: str


@dataclass(frozen=True)
class FixAttempt:
    issue_id: str
    issue_type: IssueType
    success: bool
    message: str
    status: IssueStatus


@dataclass
class DispatchSummary:
    fixed: int = 0
    failed: int = 0
    skipped: int = 0
    deadline_reached: bool = False
    attempts: list[FixAttempt] = field(default_factory=list)
