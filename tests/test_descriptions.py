import pytest

from cronwarden.descriptions import (
    DescriptionError,
    decode_description,
    dedup_key,
    describe,
    encode_description,
)
from cronwarden.models import DeliveryDiagnosis, IssueType, TextDescription


def _diagnosis(**overrides):
    values = {
        "recipient_id": "rcp-1",
        "email": "reader@example.com",
        "source": "profile",
        "cause": "missing_timezone",
        "details": "no timezone on profile",
        "auto_fixable": True,
    }
    values.update(overrides)
    return DeliveryDiagnosis(**values)


def test_delivery_diagnosis_survives_storage():
    diagnosis = _diagnosis()
    raw = encode_description(IssueType.MISSED_EMAIL, diagnosis)
    assert decode_description(IssueType.MISSED_EMAIL, raw) == diagnosis


def test_text_types_reject_structured_payload():
    with pytest.raises(DescriptionError):
        encode_description(IssueType.MISSING_IMAGE, _diagnosis())
    with pytest.raises(DescriptionError):
        encode_description(IssueType.MISSED_EMAIL, TextDescription(text="missed"))


def test_unknown_cause_fails_validation():
    raw = '{"recipient_id": "rcp-1", "email": "a@b.c", "source": "profile", ' \
        '"cause": "gremlins", "details": "", "auto_fixable": false}'
    with pytest.raises(DescriptionError):
        decode_description(IssueType.MISSED_EMAIL, raw)


def test_non_json_diagnosis_fails():
    with pytest.raises(DescriptionError):
        decode_description(IssueType.MISSED_EMAIL, "Reader missed the email")


def test_describe_diagnosis():
    assert describe(_diagnosis()) == "reader@example.com: missing_timezone (no timezone on profile)"


def test_dedup_key_prefers_subject_then_scope():
    text = TextDescription(text="Thin content")
    assert dedup_key(IssueType.MISSING_IMAGE, "art-1", "scope-1", text) == "missing_image:art-1"
    assert dedup_key(IssueType.THIN_CONTENT, None, "scope-1", text) == "thin_content:scope-1"


def test_dedup_key_falls_back_to_normalized_text():
    first = dedup_key(IssueType.JOB_FAILURE, None, None, TextDescription(text="Job  FAILED"))
    second = dedup_key(IssueType.JOB_FAILURE, None, None, TextDescription(text="job failed"))
    assert first == second
