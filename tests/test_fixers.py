import pytest

from cronwarden.batch import BriefBatchFixer
from cronwarden.fixers import (
    BatchFixer,
    DeliveryFixer,
    Fixer,
    ImageFixer,
    ThinContentFixer,
    build_registry,
)
from cronwarden.intake import create_issues
from cronwarden.ledger import list_issues
from cronwarden.models import (
    DeliveryDiagnosis,
    IssueCandidate,
    IssueType,
    TextDescription,
)
from cronwarden.services import Services
from cronwarden.services.delivery import DeliveryResult
from cronwarden.services.generation import GenerationResult
from cronwarden.storage import (
    get_recipient,
    list_published_articles_since,
    upsert_recipient,
    upsert_scope,
)


class FakeGeneration:
    def __init__(self, results=None, fail_images: bool = False) -> None:
        self.results = results or {}
        self.fail_images = fail_images
        self.requests = []

    def generate(self, request):
        self.requests.append(request)
        if request.kind == "image" and self.fail_images:
            raise ConnectionError("image service down")
        return self.results.get(request.kind, GenerationResult(False, "nothing generated"))

    def generate_batch(self, scope_refs, remaining_budget_ms):
        raise AssertionError("not expected")


class FakeDelivery:
    def __init__(self, success: bool = True) -> None:
        self.success = success
        self.refs = []

    def redeliver(self, ref):
        self.refs.append(ref)
        return DeliveryResult(self.success, "Email resent" if self.success else "provider rejected")

    def send_report(self, to, subject, body):
        return DeliveryResult(True, "sent")


def _issue(conn, clock, issue_type, description, subject_ref=None, scope_ref=None):
    create_issues(
        conn,
        [
            IssueCandidate(
                issue_type=issue_type,
                description=description,
                auto_fixable=True,
                max_retries=3,
                subject_ref=subject_ref,
                scope_ref=scope_ref,
            )
        ],
        clock.now(),
    )
    return list_issues(conn, issue_type=issue_type.value)[0]


def _diagnosis(cause: str, auto_fixable: bool = True) -> DeliveryDiagnosis:
    return DeliveryDiagnosis(
        recipient_id="r-1",
        email="reader@example.com",
        source="profile",
        cause=cause,
        details="details",
        auto_fixable=auto_fixable,
    )


def test_image_fixer_requests_image_for_article(conn, clock):
    generation = FakeGeneration({"image": GenerationResult(True, "Image regenerated")})
    issue = _issue(conn, clock, IssueType.MISSING_IMAGE, TextDescription("missing"), subject_ref="art-1")

    outcome = ImageFixer(generation).attempt(issue)

    assert outcome.success is True
    assert generation.requests[0].subject_ref == "art-1"


def test_image_fixer_reports_generation_failure(conn, clock):
    issue = _issue(conn, clock, IssueType.PLACEHOLDER_IMAGE, TextDescription("svg"), subject_ref="art-2")

    outcome = ImageFixer(FakeGeneration()).attempt(issue)

    assert outcome.success is False
    assert outcome.message == "nothing generated"


def test_thin_content_fixer_inserts_generated_stories(conn, clock):
    upsert_scope(conn, "scope-1", "Downtown", city="Springfield", timezone="UTC")
    stories = [
        {"headline": "Library extends hours", "body": "The library...", "category": "community"},
        {"headline": "", "body": "dropped"},
        {"headline": "Road work on Main St", "body": "Crews..."},
    ]
    generation = FakeGeneration({"news": GenerationResult(True, "ok", items=stories)}, fail_images=True)
    issue = _issue(conn, clock, IssueType.THIN_CONTENT, TextDescription("thin"), scope_ref="scope-1")

    outcome = ThinContentFixer(conn, generation, stories_per_fix=3).attempt(issue)

    assert outcome.success is True
    assert "Generated 2 articles" in outcome.message
    articles = list_published_articles_since(conn, "2000-01-01T00:00:00.000000+00:00", 10)
    assert sorted(article.headline for article in articles) == [
        "Library extends hours",
        "Road work on Main St",
    ]
    assert all(article.image_url == "" for article in articles)
    news_request = generation.requests[0]
    assert news_request.count == 3
    assert news_request.context["city"] == "Springfield"


def test_thin_content_fixer_unknown_scope(conn, clock):
    issue = _issue(conn, clock, IssueType.THIN_CONTENT, TextDescription("thin"), scope_ref="nowhere")

    outcome = ThinContentFixer(conn, FakeGeneration(), stories_per_fix=3).attempt(issue)

    assert outcome.success is False


def test_delivery_fixer_assigns_timezone_then_resends(conn, clock):
    upsert_scope(conn, "scope-1", "Downtown", timezone="America/Chicago")
    upsert_recipient(conn, "r-1", "reader@example.com", timezone=None, scope_ids=["scope-1"])
    delivery = FakeDelivery()
    issue = _issue(conn, clock, IssueType.MISSED_EMAIL, _diagnosis("missing_timezone"), subject_ref="r-1")

    outcome = DeliveryFixer(conn, delivery).attempt(issue)

    assert outcome.success is True
    assert get_recipient(conn, "r-1").timezone == "America/Chicago"
    assert delivery.refs[0].email == "reader@example.com"


def test_delivery_fixer_resend_only_cause(conn, clock):
    delivery = FakeDelivery(success=False)
    issue = _issue(conn, clock, IssueType.MISSED_EMAIL, _diagnosis("cron_not_run"), subject_ref="r-1")

    outcome = DeliveryFixer(conn, delivery).attempt(issue)

    assert outcome.success is False
    assert outcome.message == "provider rejected"
    assert len(delivery.refs) == 1


def test_delivery_fixer_refuses_unfixable_cause(conn, clock):
    delivery = FakeDelivery()
    issue = _issue(
        conn, clock, IssueType.MISSED_EMAIL, _diagnosis("no_scopes", auto_fixable=False), subject_ref="r-1"
    )

    outcome = DeliveryFixer(conn, delivery).attempt(issue)

    assert outcome.success is False
    assert delivery.refs == []


def test_build_registry_order(conn, config):
    registry = build_registry(conn, config, Services(generation=FakeGeneration(), delivery=FakeDelivery()))

    assert registry.types() == [
        IssueType.MISSING_IMAGE,
        IssueType.PLACEHOLDER_IMAGE,
        IssueType.MISSING_BRIEF,
        IssueType.THIN_CONTENT,
        IssueType.MISSED_EMAIL,
    ]
    assert isinstance(registry.get(IssueType.MISSING_BRIEF), BriefBatchFixer)
    assert IssueType.JOB_FAILURE not in registry
    assert IssueType.HTML_ARTIFACT not in registry


def test_fixer_bases_require_an_implementation():
    class Incomplete(Fixer):
        pass

    class IncompleteBatch(BatchFixer):
        pass

    with pytest.raises(TypeError):
        Incomplete()
    with pytest.raises(TypeError):
        IncompleteBatch()
