import pytest
from dataclasses import asdict

from onboarding.core import state_machine as sm
from onboarding.core.error_classifier import ErrorClassifier, FAILURE_MESSAGE, RETRY_GUIDANCE_MESSAGE
from onboarding.core.errors import StageConflict
from onboarding.store.models import OnboardingRecord

CLASSIFIER = ErrorClassifier(["CMONB1"], ["CMTMP"])

ALL_OUTCOMES = [
    sm.KycRelease(),
    sm.Dispatch(typeDiscriminator="SUB_AGENT"),
    sm.ExternalSuccess(status="S", partyId="BP1"),
    sm.ExternalSuccess(status="P", partyId="BP1"),
    sm.ExternalBusinessFailure(code="CMONB1"),
    sm.ExternalBusinessFailure(code="XX1"),
    sm.ExternalConnectivityFailure(kind="timeout"),
    sm.InternalCompletion(),
    sm.Requeue(),
]


def test_happy_path_through_kyc():
    t = sm.apply(sm.CAPTURED, sm.KycRelease())
    assert (t.stage, t.status) == (sm.RELEASE_TO_KYC, sm.STATUS_PENDING)
    t = sm.apply(t.stage, sm.Dispatch())
    assert (t.stage, t.status) == (sm.RELEASE_TO_CM, sm.STATUS_PENDING)
    t = sm.apply(t.stage, sm.ExternalSuccess(status="S", partyId="BP1"))
    assert (t.stage, t.status) == (sm.COMPLETED, sm.STATUS_SUCCESS)


def test_in_progress_stays_in_release_to_cm():
    t = sm.apply(sm.RELEASE_TO_CM, sm.ExternalSuccess(status="P", partyId="BP1"))
    assert (t.stage, t.status) == (sm.RELEASE_TO_CM, sm.STATUS_SUCCESS)


def test_business_failure_split_by_classifier():
    t = sm.apply(sm.RELEASE_TO_CM, sm.ExternalBusinessFailure(code="CMONB1"), CLASSIFIER)
    assert (t.stage, t.message) == (sm.RETRY, RETRY_GUIDANCE_MESSAGE)

    t = sm.apply(sm.RELEASE_TO_CM, sm.ExternalBusinessFailure(code="CMTMP42"), CLASSIFIER)
    assert t.stage == sm.RETRY

    t = sm.apply(sm.RELEASE_TO_CM, sm.ExternalBusinessFailure(code="CMONB9"), CLASSIFIER)
    assert (t.stage, t.status, t.message) == (sm.FAILED, sm.STATUS_FAILED, FAILURE_MESSAGE)


def test_connectivity_failure_is_retry_with_its_own_message():
    t = sm.apply(sm.RELEASE_TO_CM, sm.ExternalConnectivityFailure(kind="unreachable"))
    assert t.stage == sm.RETRY
    assert t.message == sm.CONNECTIVITY_MESSAGE
    assert t.message != RETRY_GUIDANCE_MESSAGE


def test_dispatch_from_retry_is_allowed():
    assert sm.apply(sm.RETRY, sm.Dispatch()).stage == sm.RELEASE_TO_CM


def test_parent_dispatch_is_rejected():
    with pytest.raises(StageConflict):
        sm.apply(sm.CAPTURED, sm.Dispatch(typeDiscriminator="parent"))


def test_parent_completion_and_requeue():
    assert sm.apply(sm.CAPTURED, sm.InternalCompletion()).stage == sm.COMPLETED
    assert sm.apply(sm.RELEASE_TO_KYC, sm.InternalCompletion()).stage == sm.COMPLETED
    assert sm.apply(sm.FAILED, sm.Requeue()).stage == sm.RETRY


@pytest.mark.parametrize("stage,outcome", [
    (sm.COMPLETED, sm.Dispatch()),
    (sm.COMPLETED, sm.KycRelease()),
    (sm.RELEASE_TO_KYC, sm.KycRelease()),
    (sm.CAPTURED, sm.ExternalSuccess(status="S", partyId="BP1")),
    (sm.RETRY, sm.ExternalConnectivityFailure(kind="timeout")),
    (sm.RELEASE_TO_CM, sm.Dispatch()),
    (sm.FAILED, sm.Dispatch()),
    (sm.RETRY, sm.Requeue()),
    ("", sm.KycRelease()),
])
def test_illegal_transitions_raise(stage, outcome):
    assert not sm.can_apply(stage, outcome)
    with pytest.raises(StageConflict):
        sm.apply(stage, outcome, CLASSIFIER)


def test_terminal_stages_accept_only_requeue():
    for outcome in ALL_OUTCOMES:
        assert not sm.can_apply(sm.COMPLETED, outcome)
        assert sm.can_apply(sm.FAILED, outcome) == isinstance(outcome, sm.Requeue)


def test_apply_is_deterministic():
    for stage in sm.STAGES:
        for outcome in ALL_OUTCOMES:
            if not sm.can_apply(stage, outcome):
                continue
            assert sm.apply(stage, outcome, CLASSIFIER) == sm.apply(stage, outcome, CLASSIFIER)


def test_unknown_success_status_is_not_a_transition():
    with pytest.raises(ValueError):
        sm.apply(sm.RELEASE_TO_CM, sm.ExternalSuccess(status="X"))


def test_partial_update_only_touches_transition_fields():
    record = OnboardingRecord(id="r1", name="Acme", stage=sm.RELEASE_TO_CM)
    for outcome in ALL_OUTCOMES:
        if not sm.can_apply(record.stage, outcome):
            continue
        changes = sm.partial_update(record, sm.apply(record.stage, outcome, CLASSIFIER), outcome)
        assert set(changes) <= sm.TRANSITION_FIELDS
        assert "name" not in changes


def test_partial_update_sets_party_id_once():
    outcome = sm.ExternalSuccess(status="S", partyId="BP123")
    t = sm.apply(sm.RELEASE_TO_CM, outcome)

    fresh = OnboardingRecord(id="r1", stage=sm.RELEASE_TO_CM)
    assert sm.partial_update(fresh, t, outcome)["externalPartyId"] == "BP123"

    known = OnboardingRecord(id="r1", stage=sm.RELEASE_TO_CM, externalPartyId="BP001")
    assert "externalPartyId" not in sm.partial_update(known, t, outcome)


def test_mirror_fields_per_outcome():
    ok = sm.mirror_fields(sm.ExternalSuccess(status="P", partyId="BP1"), "accepted")
    assert ok == {"externalStatus": "P", "externalStatusCode": "", "externalErrorReason": "",
                  "externalStatusMsg": "accepted"}

    biz = sm.mirror_fields(sm.ExternalBusinessFailure(code="CMONB1", reason="duplicate"), "m")
    assert biz["externalStatus"] == "F"
    assert biz["externalStatusCode"] == "CMONB1"
    assert biz["externalErrorReason"] == "duplicate"

    conn = sm.mirror_fields(sm.ExternalConnectivityFailure(kind="timeout"), "m")
    assert conn["externalStatusCode"] == sm.CONNECTIVITY_STATUS_CODE
    assert "timeout" in conn["externalErrorReason"]

    assert sm.mirror_fields(sm.KycRelease(), "m") == {}


def test_transition_is_plain_data():
    t = sm.apply(sm.CAPTURED, sm.KycRelease())
    assert asdict(t) == {"stage": sm.RELEASE_TO_KYC, "status": sm.STATUS_PENDING, "message": "Released to KYC"}


def test_party_absent_from_cm_goes_to_retry():
    t = sm.apply(sm.RELEASE_TO_CM, sm.ExternalAbsent())
    assert (t.stage, t.status, t.message) == (sm.RETRY, sm.STATUS_RETRY, sm.ABSENT_MESSAGE)

    for stage in (sm.CAPTURED, sm.RELEASE_TO_KYC, sm.RETRY, sm.COMPLETED, sm.FAILED):
        assert not sm.can_apply(stage, sm.ExternalAbsent())

    changes = sm.partial_update(OnboardingRecord(id="r1", stage=sm.RELEASE_TO_CM), t, sm.ExternalAbsent())
    assert changes["externalStatusCode"] == sm.ABSENT_STATUS_CODE
    assert "externalPartyId" not in changes
    assert set(changes) <= sm.TRANSITION_FIELDS
