from datetime import timedelta

from cronwarden.health import check_daily_health, overall_status, render_report, run_health_checks
from cronwarden.ledger import list_issues
from cronwarden.recorder import list_executions
from cronwarden.services.delivery import DeliveryResult
from cronwarden.storage import insert_article, upsert_scope
from cronwarden.utils import to_iso


class FakeDelivery:
    def __init__(self, success: bool = True) -> None:
        self.success = success
        self.reports = []

    def redeliver(self, ref):
        raise AssertionError("not expected")

    def send_report(self, to, subject, body):
        self.reports.append((to, subject, body))
        return DeliveryResult(self.success, "sent" if self.success else "mailbox full")


def _seed_content(conn, clock, with_images: int = 20, without_images: int = 1):
    upsert_scope(conn, "scope-1", "Downtown", timezone="UTC")
    stamp = to_iso(clock.now() - timedelta(hours=1))
    for index in range(with_images):
        insert_article(
            conn,
            "scope-1",
            f"Story {index}",
            body_text="Plain text.",
            image_url=f"https://cdn.example.com/{index}.jpg",
            published_at=stamp,
            created_at=stamp,
        )
    for index in range(without_images):
        insert_article(
            conn, "scope-1", f"Imageless {index}", image_url="", published_at=stamp, created_at=stamp
        )


def _by_name(results):
    return {result.name: result for result in results}


def test_run_health_checks_statuses(conn, clock, config):
    _seed_content(conn, clock)

    results = _by_name(run_health_checks(conn, config, clock.now()))

    assert results["Brief Coverage"].status == "fail"
    assert results["Story Images"].status == "warn"
    assert results["Story Images"].failing == 1
    assert results["Story Images"].total == 21
    assert results["Thin Content"].status == "pass"
    assert results["Daily Delivery"].status == "pass"
    assert results["HTML Artifacts"].status == "pass"
    assert results["Failed Jobs"].status == "pass"
    assert overall_status(list(results.values())) == "fail"


def test_details_are_capped(conn, clock, config):
    _seed_content(conn, clock, with_images=0, without_images=14)

    results = _by_name(run_health_checks(conn, config, clock.now()))

    details = results["Story Images"].details
    assert len(details) == 11
    assert details[-1] == "...and 4 more"


def test_raising_check_is_reported_as_failure(conn, clock, config, monkeypatch):
    def broken(conn, now, config):
        raise RuntimeError("briefs table missing")

    monkeypatch.setattr(
        "cronwarden.health.HEALTH_CHECKS",
        [("Brief Coverage", broken, lambda conn, now, config: 0)],
    )

    [result] = run_health_checks(conn, config, clock.now())

    assert result.status == "fail"
    assert "briefs table missing" in result.details[0]


def test_render_report(conn, clock, config):
    _seed_content(conn, clock)

    subject, body = render_report(run_health_checks(conn, config, clock.now()), clock.now())

    assert subject == "[FAIL] Daily content health 2026-03-10"
    assert "[WARN] Story Images: 20/21 passing" in body
    assert "[PASS] Daily Delivery: No data" in body


def test_check_daily_health_files_issues_and_sends_report(conn, clock, config):
    _seed_content(conn, clock)
    delivery = FakeDelivery()

    report = check_daily_health(
        conn, config, delivery=delivery, clock=clock, admin_email="ops@example.com"
    )

    assert report.success is True
    assert report.report_sent is True
    assert report.issues_created == 2
    assert {issue.issue_type.value for issue in list_issues(conn)} == {"missing_brief", "missing_image"}
    [(to, subject, _)] = delivery.reports
    assert to == "ops@example.com"
    assert subject.startswith("[FAIL]")
    [record] = list_executions(conn, job_name=config.monitor.health_job_name)
    assert record.success is True
    assert record.response_data["overall"] == "fail"


def test_report_delivery_failure_is_not_fatal(conn, clock, config):
    report = check_daily_health(
        conn, config, delivery=FakeDelivery(success=False), clock=clock, admin_email="ops@example.com"
    )

    assert report.success is True
    assert report.report_sent is False
    [record] = list_executions(conn, job_name=config.monitor.health_job_name)
    assert record.errors == ["report delivery failed: mailbox full"]


def test_report_not_sent_without_admin_email(conn, clock, config):
    delivery = FakeDelivery()

    report = check_daily_health(conn, config, delivery=delivery, clock=clock)

    assert report.report_sent is False
    assert delivery.reports == []
