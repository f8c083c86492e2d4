from datetime import timedelta

from cronwarden.clock import Deadline
from cronwarden.config import config_from_dict
from cronwarden.dispatcher import Dispatcher
from cronwarden.fixers import BatchFixer, Fixer, FixerRegistry
from cronwarden.intake import create_issues
from cronwarden.ledger import get_issue, get_retryable_issues, list_issues
from cronwarden.models import (
    FixOutcome,
    IssueCandidate,
    IssueStatus,
    IssueType,
    TextDescription,
)


class RecordingFixer(Fixer):
    def __init__(self, clock=None, succeed: bool = True, step_seconds: float = 0.0) -> None:
        self.clock = clock
        self.succeed = succeed
        self.step_seconds = step_seconds
        self.seen: list[str] = []

    def attempt(self, issue):
        self.seen.append(issue.id)
        if self.clock is not None and self.step_seconds:
            self.clock.advance(seconds=self.step_seconds)
        return FixOutcome(self.succeed, "ok" if self.succeed else "nope")


class RaisingFixer(Fixer):
    def attempt(self, issue):
        raise RuntimeError("generator exploded")


class ShortBatchFixer(BatchFixer):
    def attempt_batch(self, issues, started_at, remaining_budget_ms):
        return [FixOutcome(True, "ok")]


def _config(max_per_run: int = 10, delay_seconds: float = 0.0):
    return config_from_dict(
        {
            "fixers": {
                "missing_image": {"max_per_run": max_per_run, "delay_seconds": delay_seconds},
                "missing_brief": {"max_per_run": max_per_run, "delay_seconds": delay_seconds},
            }
        }
    )


def _seed(conn, clock, count: int, issue_type=IssueType.MISSING_IMAGE, auto_fixable=True):
    candidates = [
        IssueCandidate(
            issue_type=issue_type,
            description=TextDescription(text=f"issue {index}"),
            auto_fixable=auto_fixable,
            max_retries=3,
            subject_ref=f"{issue_type.value}-{index}",
            scope_ref=f"scope-{index}",
        )
        for index in range(count)
    ]
    create_issues(conn, candidates, clock.now())
    return get_retryable_issues(conn, clock.now())


def test_per_type_cap_limits_attempts(conn, clock):
    issues = _seed(conn, clock, 5)
    fixer = RecordingFixer()
    registry = FixerRegistry()
    registry.register(IssueType.MISSING_IMAGE, fixer)

    summary = Dispatcher(conn, _config(max_per_run=2), registry, clock).dispatch(
        issues, Deadline.after(100, clock)
    )

    assert len(fixer.seen) == 2
    assert summary.fixed == 2
    assert summary.skipped == 3
    untouched = [get_issue(conn, issue.id) for issue in issues if issue.id not in fixer.seen]
    assert all(item.status == IssueStatus.OPEN and item.retry_count == 0 for item in untouched)


def test_deadline_stops_dispatch_and_leaves_rest_untouched(conn, clock):
    issues = _seed(conn, clock, 5)
    before = {issue.id: issue for issue in issues}
    fixer = RecordingFixer(clock=clock, step_seconds=10)
    registry = FixerRegistry()
    registry.register(IssueType.MISSING_IMAGE, fixer)

    summary = Dispatcher(conn, _config(), registry, clock).dispatch(
        issues, Deadline.after(25, clock)
    )

    assert len(fixer.seen) == 3
    assert summary.deadline_reached is True
    assert summary.skipped == 2
    for issue in issues[3:]:
        stored = get_issue(conn, issue.id)
        original = before[issue.id]
        assert stored.status == original.status
        assert stored.retry_count == original.retry_count
        assert stored.next_retry_at == original.next_retry_at


def test_expired_deadline_skips_later_types(conn, clock):
    _seed(conn, clock, 2)
    issues = _seed(conn, clock, 2, issue_type=IssueType.MISSING_BRIEF)
    assert len(issues) == 4

    image_fixer = RecordingFixer(clock=clock, step_seconds=30)
    brief_fixer = RecordingFixer()
    registry = FixerRegistry()
    registry.register(IssueType.MISSING_IMAGE, image_fixer)
    registry.register(IssueType.MISSING_BRIEF, brief_fixer)

    summary = Dispatcher(conn, _config(), registry, clock).dispatch(
        issues, Deadline.after(20, clock)
    )

    assert len(image_fixer.seen) == 1
    assert brief_fixer.seen == []
    assert summary.deadline_reached is True
    assert summary.skipped == 3


def test_delay_between_attempts_of_same_type(conn, clock):
    issues = _seed(conn, clock, 3)
    registry = FixerRegistry()
    registry.register(IssueType.MISSING_IMAGE, RecordingFixer())

    Dispatcher(conn, _config(delay_seconds=2.5), registry, clock).dispatch(
        issues, Deadline.after(100, clock)
    )

    assert clock.sleeps == [2.5, 2.5]


def test_unregistered_and_manual_issues_are_skipped(conn, clock):
    _seed(conn, clock, 2, issue_type=IssueType.THIN_CONTENT)
    issues = get_retryable_issues(conn, clock.now())
    registry = FixerRegistry()
    registry.register(IssueType.MISSING_IMAGE, RecordingFixer())

    summary = Dispatcher(conn, _config(), registry, clock).dispatch(
        issues, Deadline.after(100, clock)
    )

    assert summary.skipped == 2
    assert summary.attempts == []
    assert all(get_issue(conn, issue.id).retry_count == 0 for issue in issues)


def test_non_auto_fixable_issue_is_never_attempted(conn, clock):
    _seed(conn, clock, 1, auto_fixable=False)
    [issue] = list_issues(conn)
    fixer = RecordingFixer()
    registry = FixerRegistry()
    registry.register(IssueType.MISSING_IMAGE, fixer)

    summary = Dispatcher(conn, _config(), registry, clock).dispatch(
        [issue], Deadline.after(100, clock)
    )

    assert fixer.seen == []
    assert summary.skipped == 1


def test_raising_fixer_becomes_failed_attempt(conn, clock):
    [issue] = _seed(conn, clock, 1)
    registry = FixerRegistry()
    registry.register(IssueType.MISSING_IMAGE, RaisingFixer())

    summary = Dispatcher(conn, _config(), registry, clock).dispatch(
        [issue], Deadline.after(100, clock)
    )

    assert summary.failed == 1
    stored = get_issue(conn, issue.id)
    assert stored.status == IssueStatus.OPEN
    assert stored.retry_count == 1
    assert "generator exploded" in stored.fix_result
    assert stored.next_retry_at == clock.now() + timedelta(minutes=15)


def test_batch_outcome_count_mismatch_fails_every_issue(conn, clock):
    issues = _seed(conn, clock, 3, issue_type=IssueType.MISSING_BRIEF)
    registry = FixerRegistry()
    registry.register(IssueType.MISSING_BRIEF, ShortBatchFixer())

    summary = Dispatcher(conn, _config(), registry, clock).dispatch(
        issues, Deadline.after(100, clock)
    )

    assert summary.failed == 3
    assert all(get_issue(conn, issue.id).status == IssueStatus.OPEN for issue in issues)


def test_cap_takes_the_oldest_issues_first(conn, clock):
    issues = _seed(conn, clock, 5)
    fixer = RecordingFixer()
    registry = FixerRegistry()
    registry.register(IssueType.MISSING_IMAGE, fixer)

    Dispatcher(conn, _config(max_per_run=2), registry, clock).dispatch(
        issues, Deadline.after(100, clock)
    )

    attempted = [get_issue(conn, issue_id).subject_ref for issue_id in fixer.seen]
    assert attempted == ["missing_image-0", "missing_image-1"]
