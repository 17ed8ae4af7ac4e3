import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from examprep.core.errors import ErrorKind
from examprep.models.orm import Question, QuestionOption, QuestionTag, QuestionVersion
from examprep.services import question_lifecycle as lc

STATES = ["draft", "reviewed", "approved", "live", "archived"]
ALLOWED = {("draft", "reviewed"), ("draft", "archived"), ("reviewed", "draft"), ("reviewed", "approved"),
           ("reviewed", "archived"), ("approved", "live"), ("approved", "reviewed"), ("live", "archived"),
           ("archived", "draft")}

def _versions(db, qid):
    return db.scalar(select(func.count(QuestionVersion.id)).where(QuestionVersion.question_id == qid))

@pytest.fixture
def draft(seed):
    body = seed.body()
    subject = seed.subject(body)
    return seed.question(body, subject, status="draft", options=4)

@pytest.mark.parametrize("current", STATES)
@pytest.mark.parametrize("target", STATES)
def test_transition_table(current, target):
    assert lc.is_valid_transition(current, target) is ((current, target) in ALLOWED)

def test_valid_transitions_listing():
    assert lc.get_valid_transitions("reviewed") == ["draft", "approved", "archived"]
    assert lc.get_valid_transitions("live") == ["archived"]
    assert lc.get_valid_transitions("bogus") == []

def test_full_path_to_live_snapshots_sensitive_steps(db, draft, audit):
    for target, expected_versions in (("reviewed", 0), ("approved", 1), ("live", 2), ("archived", 3)):
        result = lc.transition_status(db, draft.id, target, "editor-1", reason="checked", audit=audit)
        assert result.success, result.message
        assert _versions(db, draft.id) == expected_versions
    q = db.get(Question, draft.id)
    assert q.status == "archived"
    assert q.reviewed_by == "editor-1" and q.approved_by == "editor-1" and q.archived_by == "editor-1"
    assert q.archive_reason == "checked"
    assert audit.actions() == ["status_changed"] * 4

def test_snapshot_holds_pre_transition_state(db, seed, draft):
    lc.transition_status(db, draft.id, "reviewed", "ed")
    lc.transition_status(db, draft.id, "approved", "ed", reason="looks good")
    version = lc.get_question_versions(db, draft.id)[0]
    assert version.version == 1
    assert version.status == "reviewed"
    assert version.change_reason == "Status changed to approved: looks good"
    assert [o["id"] for o in version.options] == ["A", "B", "C", "D"]

def test_invalid_transition_is_reported_not_raised(db, draft):
    result = lc.transition_status(db, draft.id, "live", "ed")
    assert result.success is False
    assert result.kind == ErrorKind.INVALID_TRANSITION
    assert result.message == "Invalid status transition from draft to live"
    assert db.get(Question, draft.id).status == "draft"
    assert _versions(db, draft.id) == 0

def test_missing_question_and_unknown_status(db, draft):
    assert lc.transition_status(db, "nope", "reviewed", "ed").kind == ErrorKind.NOT_FOUND
    assert lc.transition_status(db, draft.id, "published", "ed").success is False

@pytest.mark.parametrize("options,correct", [(1, 1), (3, 0), (3, 2)])
def test_multiple_choice_must_be_well_formed_to_go_live(db, seed, options, correct):
    body = seed.body()
    subject = seed.subject(body)
    q = seed.question(body, subject, status="approved", options=options, correct=correct)
    result = lc.transition_status(db, q.id, "live", "ed")
    assert result.success is False
    assert db.get(Question, q.id).status == "approved"

def test_essay_goes_live_without_options(db, seed):
    body = seed.body()
    q = seed.question(body, seed.subject(body), status="approved", type="essay", options=0)
    assert lc.transition_status(db, q.id, "live", "ed").success

def test_bulk_transition_reports_each_item(db, seed):
    body = seed.body()
    subject = seed.subject(body)
    a = seed.question(body, subject, status="draft")
    b = seed.question(body, subject, status="live")
    result = lc.bulk_transition(db, [a.id, b.id, "ghost"], "reviewed", "ed")
    assert result.succeeded == [a.id]
    assert result.success_count == 1
    assert {f["id"] for f in result.failed} == {b.id, "ghost"}
    assert db.get(Question, a.id).status == "reviewed"

def test_bulk_transition_keeps_earlier_successes_on_storage_error(db, seed, monkeypatch):
    body = seed.body()
    subject = seed.subject(body)
    a = seed.question(body, subject, status="draft")
    b = seed.question(body, subject, status="draft")
    real = lc.transition_status
    def flaky(db_, qid, *args, **kwargs):
        if qid == b.id:
            raise SQLAlchemyError("deadlock")
        return real(db_, qid, *args, **kwargs)
    monkeypatch.setattr(lc, "transition_status", flaky)
    result = lc.bulk_transition(db, [a.id, b.id], "reviewed", "ed")
    assert result.succeeded == [a.id]
    assert result.failed == [{"id": b.id, "reason": "Failed to update question status"}]
    assert db.get(Question, a.id).status == "reviewed"

def test_restore_round_trip(db, seed, draft, audit):
    original_text = draft.text
    lc.create_question_version(db, draft.id, "ed", "baseline")
    q = db.get(Question, draft.id)
    q.text = "Edited text"
    q.difficulty = "hard"
    q.options.clear()
    db.flush()
    q.options.append(QuestionOption(option_id="Z", text="Only", is_correct=True, order=0))
    db.commit()

    result = lc.restore_version(db, draft.id, 1, "ed", audit=audit)
    assert result.success, result.message
    db.expire_all()
    q = db.get(Question, draft.id)
    assert q.text == original_text and q.difficulty == "medium"
    assert [o.option_id for o in q.options] == ["A", "B", "C", "D"]
    assert [o.order for o in q.options] == [0, 1, 2, 3]
    versions = lc.get_question_versions(db, draft.id)
    assert [v.version for v in versions] == [2, 1]
    assert versions[0].text == "Edited text"
    assert versions[0].change_reason == "Restored to version 1"
    assert audit.actions() == ["version_restored"]

def test_restore_leaves_marking_guides(db, seed, draft):
    seed.guide(draft, "Original criteria")
    lc.create_question_version(db, draft.id, "ed")
    seed.guide(draft, "Added later")
    assert lc.restore_version(db, draft.id, 1, "ed").success
    db.expire_all()
    guides = {g.criteria for g in db.get(Question, draft.id).marking_guides}
    assert guides == {"Original criteria", "Added later"}

def test_restore_missing_version(db, draft):
    result = lc.restore_version(db, draft.id, 7, "ed")
    assert result.success is False and result.message == "Version not found"

def test_restore_refuses_to_break_a_live_question(db, seed, audit):
    body = seed.body()
    subject = seed.subject(body)
    qid = seed.question(body, subject, status="draft", options=1).id
    lc.create_question_version(db, qid, "ed", "single option draft")
    q = db.get(Question, qid)
    q.options.append(QuestionOption(option_id="B", text="Second", is_correct=False, order=1))
    q.status = "live"
    db.commit()

    result = lc.restore_version(db, qid, 1, "ed", audit=audit)
    assert result.success is False and result.kind == ErrorKind.INVALID_TRANSITION
    assert "at least 2 options" in result.message
    db.expire_all()
    assert [o.option_id for o in db.get(Question, qid).options] == ["A", "B"]
    assert [v.version for v in lc.get_question_versions(db, qid)] == [1]
    assert audit.actions() == []

    q = db.get(Question, qid)
    q.status = "approved"
    db.commit()
    assert lc.restore_version(db, qid, 1, "ed").success

def test_pending_review_queue(db, seed):
    waec, jamb = seed.body("WAEC"), seed.body("JAMB")
    s1, s2 = seed.subject(waec), seed.subject(jamb)
    r1 = seed.question(waec, s1, status="reviewed")
    seed.question(jamb, s2, status="reviewed")
    seed.question(waec, s1, status="draft")
    assert len(lc.get_questions_pending_review(db)) == 2
    assert [q.id for q in lc.get_questions_pending_review(db, waec.id)] == [r1.id]

def test_delete_by_subject_skips_questions_frozen_in_exams(db, seed, audit):
    body = seed.body()
    subject = seed.subject(body)
    keep_id = seed.question(body, subject).id
    drop_id = seed.question(body, subject, tags=["algebra"]).id
    seed.exam(body, "student-1", [keep_id])
    result = lc.delete_questions_by_subject(db, subject.id, "admin-1", audit)
    assert result.deleted == 1 and result.skipped == [keep_id]
    db.expire_all()
    assert db.get(Question, drop_id) is None
    assert db.get(Question, keep_id) is not None
    assert db.scalar(select(func.count(QuestionOption.id)).where(QuestionOption.question_id == drop_id)) == 0
    assert db.scalar(select(func.count(QuestionTag.id)).where(QuestionTag.question_id == drop_id)) == 0
    assert audit.entries[0]["details"] == {"deleted": 1, "skipped": [keep_id]}

def test_live_invariant_checks_only_multiple_choice(db, seed):
    body = seed.body()
    subject = seed.subject(body)
    assert lc.check_live_invariant(seed.question(body, subject, status="approved")) is None
    assert "at least 2" in lc.check_live_invariant(seed.question(body, subject, options=1))
    assert "exactly one" in lc.check_live_invariant(seed.question(body, subject, options=3, correct=2))
    assert lc.check_live_invariant(seed.question(body, subject, type="essay", options=0)) is None
