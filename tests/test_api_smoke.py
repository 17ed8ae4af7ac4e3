from conftest import login
from examprep.models.orm import Question

def _bank(seed, n=12):
    body = seed.body("WAEC")
    track = seed.track(body, "Science")
    subjects = [seed.subject(body, track) for _ in range(3)]
    for s in subjects:
        seed.questions(body, s, n)
    return body, track, subjects

def test_health(client):
    r = client.get("/health"); assert r.status_code == 200 and r.json()["status"] == "ok"

def test_requires_token(client):
    assert client.post("/v1/exams/generate", json={"exam_body_id": "x"}).status_code in (401, 403)

def test_track_resolution(client, seed):
    body, track, subjects = _bank(seed, n=1)
    hdr = login(client, "s1", ["student"])
    r = client.get(f"/v1/tracks/{track.id}", headers=hdr)
    assert r.status_code == 200 and r.json()["total_subjects"] == 3
    assert client.get("/v1/tracks/missing", headers=hdr).status_code == 404

def test_student_search_sees_only_live(client, seed):
    body, track, subjects = _bank(seed, n=2)
    seed.question(body, subjects[0], status="draft")
    hdr = login(client, "s1", ["student"])
    r = client.post("/v1/questions/search", headers=hdr, json={"track_id": track.id, "limit": 100})
    assert r.status_code == 200 and r.json()["total_count"] == 6
    assert "is_correct" not in r.json()["questions"][0]["options"][0]
    r = client.post("/v1/questions/search", headers=hdr, json={"status": ["draft"]})
    assert r.status_code == 403
    r = client.post("/v1/questions/search", headers=hdr, json={"track_id": track.id, "subject_ids": ["a"]})
    assert r.status_code == 422

def test_author_and_publish_flow(client, seed, audit):
    body = seed.body()
    subject = seed.subject(body)
    hdr = login(client, "ed1", ["editor"])
    payload = {"text": "2 + 2 = ?", "exam_body_id": body.id, "subject_id": subject.id,
               "options": [{"text": "4", "is_correct": True}, {"text": "5"}]}
    r = client.post("/v1/questions", headers=hdr, json=payload); assert r.status_code == 201
    qid = r.json()["id"]; assert r.json()["status"] == "draft"
    bad = client.post(f"/v1/questions/{qid}/transition", headers=hdr, json={"new_status": "live"})
    assert bad.status_code == 409
    for status in ("reviewed", "approved", "live"):
        r = client.post(f"/v1/questions/{qid}/transition", headers=hdr, json={"new_status": status})
        assert r.status_code == 200, r.text
    versions = client.get(f"/v1/questions/{qid}/versions", headers=hdr).json()
    assert [v["version"] for v in versions] == [2, 1]
    assert len(audit.entries) == 3

def test_admin_allowlist_grants_admin_role(client, seed):
    body = seed.body()
    subject = seed.subject(body)
    seed.question(body, subject)
    outsider = login(client, "u9", ["student"], email="someone@example.com")
    boss = login(client, "u10", ["student"], email="boss@example.com")
    assert client.delete(f"/v1/questions/by-subject/{subject.id}", headers=outsider).status_code == 403
    r = client.delete(f"/v1/questions/by-subject/{subject.id}", headers=boss)
    assert r.status_code == 200 and r.json()["deleted"] == 1

def test_generate_exam_and_quota(client, seed, db):
    body, track, subjects = _bank(seed)
    hdr = login(client, "s1", ["student"])
    r = client.post("/v1/exams/generate", headers=hdr, json={"exam_body_id": body.id, "track_id": track.id, "question_count": 25})
    assert r.status_code == 403 and r.json()["detail"]["limit"] == 20
    r = client.post("/v1/exams/generate", headers=hdr, json={"exam_body_id": body.id, "track_id": track.id, "question_count": 15})
    assert r.status_code == 201, r.text
    exam = r.json()
    assert exam["total_questions"] == 15 and len(set(exam["question_ids"])) == 15
    assert sorted(exam["question_distribution"].values()) == [5, 5, 5]
    usage = client.get("/v1/exams/quota/usage", headers=hdr).json()
    assert usage["daily"]["count"] == 1
    r = client.post("/v1/exams/generate", headers=hdr, json={"exam_body_id": body.id, "track_id": track.id, "question_count": 5})
    assert r.status_code == 403 and r.json()["detail"]["type"] == "quota_exceeded"
    assert client.post(f"/v1/exams/{exam['id']}/download", headers=hdr).status_code == 403

def test_rules_resolution_endpoint(client, seed):
    body = seed.body()
    exam_type = seed.exam_type(body)
    seed.rule(exam_type, {"duration": 180})
    hdr = login(client, "s1", ["student"])
    r = client.post("/v1/rules/resolve", headers=hdr, json={"exam_type_id": exam_type.id, "overrides": {"duration": 45}})
    assert r.status_code == 200
    assert r.json()["duration"] == 45
    assert r.json()["applied_rules"][-1]["id"] == "custom"
