from nmc_prep.core.cache import RedisLatch, submit_key
from nmc_prep.core.config import settings
from nmc_prep.models.orm import CorrectionRun
from nmc_prep.services.explainer import SingleCorrection
from nmc_prep.services.question_store import QuestionStore

from conftest import login, make_questions


def start(client, hdr, **payload):
    body = {"count": 15, "category": "Medicine Only", **payload}
    r = client.post("/v1/sessions", json=body, headers=hdr)
    assert r.status_code == 201, r.text
    return r.json()


def test_health(client):
    r = client.get("/health"); assert r.status_code == 200 and r.json()["status"] == "ok"

def test_login_and_current_session(client):
    hdr = login(client, "tester")
    r = client.get("/v1/auth/session", headers=hdr)
    assert r.status_code == 200 and r.json()["user_id"] == "tester" and r.json()["signed_in"]

def test_logout_revokes_token(client):
    hdr = login(client)
    assert client.post("/v1/auth/logout", headers=hdr).status_code == 200
    assert client.get("/v1/auth/session", headers=hdr).status_code == 401

def test_refresh_issues_new_token_and_retires_old(client):
    hdr = login(client)
    r = client.post("/v1/auth/refresh", headers=hdr)
    assert r.status_code == 200
    new = {"Authorization": f"Bearer {r.json()['access_token']}"}
    assert client.get("/v1/auth/session", headers=hdr).status_code == 401
    assert client.get("/v1/auth/session", headers=new).status_code == 200

def test_google_sign_in_round_trip(client):
    r = client.get("/v1/auth/login")
    assert r.status_code == 200
    state = r.json()["state"]
    assert client.get("/v1/auth/callback", params={"code": "ada", "state": "forged"}).status_code == 400
    r = client.get("/v1/auth/callback", params={"code": "ada", "state": state})
    assert r.status_code == 200 and r.json()["user_id"] == "google:ada"
    assert r.json()["profile"]["email"] == "ada@example.com"

def test_options(client):
    r = client.get("/v1/sessions/options")
    body = r.json()
    assert body["counts"] == [15, 20, 30, 50] and len(body["topics"]) == 22
    assert body["time_limits_minutes"]["50"] == 60 and body["poll_seconds"] == 1


def test_full_session_flow(client, store, fake_jobs):
    make_questions(store, 20, category="medicine")
    make_questions(store, 5, category="surgery")
    hdr = login(client)
    body = start(client, hdr)
    sid = body["id"]
    assert body["total_questions"] == 15 and body["remaining_seconds"] == 18 * 60
    assert "correct_answer_letter" not in body["questions"][0]
    assert fake_jobs.enqueued == [sid] and fake_jobs.scheduled[0][0] == sid

    q = [item["id"] for item in body["questions"]]
    r = client.post(f"/v1/sessions/{sid}/answers", json={"question_id": q[0], "letter": "b"}, headers=hdr)
    assert r.status_code == 200 and r.json()["answers"] == {q[0]: "B"}
    r = client.post(f"/v1/sessions/{sid}/answers", json={"question_id": q[1], "letter": "Z"}, headers=hdr)
    assert r.status_code == 400
    r = client.post(f"/v1/sessions/{sid}/navigate", json={"direction": "next"}, headers=hdr)
    assert r.json()["current_index"] == 1

    r = client.get(f"/v1/sessions/{sid}", headers=hdr)
    assert r.json()["answers"] == {q[0]: "B"} and r.json()["current_index"] == 1 and r.json()["in_progress"]

    r = client.post(f"/v1/sessions/{sid}/submit", json={"answers": {q[1]: "A"}}, headers=hdr)
    assert r.status_code == 200, r.text
    result = r.json()
    assert result["score"] == 1 and result["total_questions"] == 15 and not result["in_progress"]
    assert [i["is_correct"] for i in result["items"][:2]] == [True, False]

    again = client.post(f"/v1/sessions/{sid}/submit", headers=hdr)
    assert again.status_code == 200 and again.json()["score"] == 1
    r = client.post(f"/v1/sessions/{sid}/answers", json={"question_id": q[2], "letter": "A"}, headers=hdr)
    assert r.status_code == 409

    r = client.get(f"/v1/review/{sid}", headers=hdr)
    assert r.status_code == 200
    items = r.json()["items"]
    assert items[0]["user_answer"] == "B" and items[0]["is_correct"] and items[2]["user_answer"] is None

    listing = client.get("/v1/sessions", headers=hdr).json()
    assert [s["id"] for s in listing] == [sid] and listing[0]["percentage"] == 7

def test_timeout_ends_session_on_next_poll(client, store, clock):
    make_questions(store, 15)
    hdr = login(client)
    body = start(client, hdr)
    sid, q0 = body["id"], body["questions"][0]["id"]
    client.post(f"/v1/sessions/{sid}/answers", json={"question_id": q0, "letter": "B"}, headers=hdr)
    clock.advance(18 * 60 + 5)
    r = client.get(f"/v1/sessions/{sid}", headers=hdr)
    assert r.json()["in_progress"] is False and r.json()["score"] == 1 and r.json()["remaining_seconds"] == 0
    r = client.post(f"/v1/sessions/{sid}/answers", json={"question_id": q0, "letter": "A"}, headers=hdr)
    assert r.status_code == 409

def test_failed_submission_is_retryable(client, store, monkeypatch):
    make_questions(store, 15)
    hdr = login(client)
    body = start(client, hdr)
    sid, q0 = body["id"], body["questions"][0]["id"]
    client.post(f"/v1/sessions/{sid}/answers", json={"question_id": q0, "letter": "B"}, headers=hdr)
    original = QuestionStore.record_submission
    def fail(self, *args, **kwargs):
        raise RuntimeError("database unavailable")
    monkeypatch.setattr(QuestionStore, "record_submission", fail)
    r = client.post(f"/v1/sessions/{sid}/submit", headers=hdr)
    assert r.status_code == 503
    assert r.json()["detail"]["retryable"] is True and r.json()["detail"]["score"] == 1
    assert client.get(f"/v1/sessions/{sid}", headers=hdr).json()["in_progress"]
    monkeypatch.setattr(QuestionStore, "record_submission", original)
    r = client.post(f"/v1/sessions/{sid}/submit", headers=hdr)
    assert r.status_code == 200 and r.json()["score"] == 1

def test_progress_round_trip(client, store):
    make_questions(store, 15)
    hdr = login(client)
    body = start(client, hdr)
    sid, q = body["id"], [i["id"] for i in body["questions"]]
    hdr_phone = {**hdr, "X-Device-Id": "phone"}
    r = client.put(f"/v1/sessions/{sid}/progress", json={"current_index": 4, "answers": {q[3]: "C"}}, headers=hdr_phone)
    assert r.status_code == 200 and r.json()["saved"]
    saved = client.get(f"/v1/sessions/{sid}/progress", headers=hdr_phone).json()
    assert saved["progress"]["current_index"] == 4 and saved["progress"]["answers"] == {q[3]: "C"}
    assert saved["view"]["session_id"] == sid
    assert client.get(f"/v1/sessions/{sid}/progress", headers=hdr).json()["view"]["current_index"] == 0

def test_sessions_are_owner_scoped(client, store):
    make_questions(store, 15)
    sid = start(client, login(client, "alice"))["id"]
    other = login(client, "bob")
    assert client.get(f"/v1/sessions/{sid}", headers=other).status_code == 404
    assert client.get(f"/v1/review/{sid}", headers=other).status_code == 404

def test_bad_configuration_and_empty_pool(client, store):
    hdr = login(client)
    assert client.post("/v1/sessions", json={"count": 16}, headers=hdr).status_code == 400
    assert client.post("/v1/sessions", json={"category": "Topics", "topics": []}, headers=hdr).status_code == 400
    r = client.post("/v1/sessions", json={"category": "Topics", "topics": ["Respiratory"]}, headers=hdr)
    assert r.status_code == 404

def test_topic_session_uses_topic_filter(client, store):
    make_questions(store, 3, category="medicine", topic="Respiratory")
    make_questions(store, 10, category="medicine", topic="Cardiovascular")
    body = start(client, login(client), category="Topics", topics=["Respiratory"])
    assert body["total_questions"] == 3 and body["topics"] == ["Respiratory"]

def test_cancel_correction(client, store, fake_jobs):
    make_questions(store, 15)
    hdr = login(client)
    sid = start(client, hdr)["id"]
    r = client.delete(f"/v1/sessions/{sid}/correction", headers=hdr)
    assert r.status_code == 200 and fake_jobs.cancelled == [sid]

def test_regenerate_explanation_flips_letter_and_guards_version(client, store, generator):
    [q] = make_questions(store, 1)
    qid = q.id
    generator.verdict = SingleCorrection(is_answer_correct=False, correct_answer_letter="D",
                                         explanation="Delta is right because the stem describes it.")
    hdr = login(client)
    r = client.post(f"/v1/review/questions/{qid}/explanation", json={"expected_version": 1}, headers=hdr)
    assert r.status_code == 200, r.text
    assert r.json()["correct_answer_letter"] == "D" and r.json()["is_edited"] and r.json()["version"] == 2
    r = client.post(f"/v1/review/questions/{qid}/explanation", json={"expected_version": 1}, headers=hdr)
    assert r.status_code == 409
    assert client.post("/v1/review/questions/missing/explanation", headers=hdr).status_code == 404

def test_review_requires_finished_session(client, store):
    make_questions(store, 15)
    hdr = login(client)
    sid = start(client, hdr)["id"]
    assert client.get(f"/v1/review/{sid}", headers=hdr).status_code == 409

def test_import_validates_records(client):
    payload = [
        {"question_text": "Q1?", "options": ["a", "b", "c"], "correct_answer_letter": "c", "category": "medicine"},
        {"question_text": "Q2?", "options": ["a", "b"], "correct_answer_letter": "A", "category": "surgery", "topic": "Fundamentals"},
        {"question_text": "Q3?", "options": ["a", "b"], "correct_answer_letter": "E", "category": "surgery"},
        {"question_text": "Q4?", "options": ["only one"], "correct_answer_letter": "A", "category": "surgery"},
    ]
    assert client.post("/v1/questions/import", json=payload, headers=login(client)).status_code == 403
    r = client.post("/v1/questions/import", json=payload, headers=login(client, "admin", ["admin"]))
    assert r.status_code == 200
    assert r.json()["inserted"] == 2 and [x["index"] for x in r.json()["rejected"]] == [2, 3]

def test_admin_correction_runs(client, store):
    store.db.add(CorrectionRun(session_id="s1", status="partial", total_processed=10, total_failed=10, errors=["batch 1: down"]))
    store.db.commit()
    hdr = login(client, "admin", ["admin"])
    rows = client.get("/v1/admin/corrections/runs", params={"status": "partial"}, headers=hdr).json()
    assert len(rows) == 1 and rows[0]["total_failed"] == 10
    detail = client.get(f"/v1/admin/corrections/runs/{rows[0]['id']}", headers=hdr).json()
    assert detail["errors"] == ["batch 1: down"]
    assert client.get("/v1/admin/corrections/runs/nope", headers=hdr).status_code == 404
    assert client.get("/v1/admin/corrections/runs", headers=login(client)).status_code == 403

def test_expired_session_is_listed_as_over_and_reviewable(client, store, clock):
    make_questions(store, 15)
    hdr = login(client)
    body = start(client, hdr)
    sid, q0 = body["id"], body["questions"][0]["id"]
    client.post(f"/v1/sessions/{sid}/answers", json={"question_id": q0, "letter": "B"}, headers=hdr)
    assert client.get("/v1/sessions", headers=hdr).json()[0]["in_progress"] is True
    clock.advance(18 * 60 + 30)
    listing = client.get("/v1/sessions", headers=hdr).json()
    assert listing[0]["in_progress"] is False
    r = client.get(f"/v1/review/{sid}", headers=hdr)
    assert r.status_code == 200, r.text
    assert r.json()["score"] == 1 and r.json()["ended_at"] is not None
    assert r.json()["items"][0]["user_answer"] == "B"

def test_stale_submit_latch_expires_and_session_ends(client, store, clock, fake_redis):
    make_questions(store, 15)
    hdr = login(client)
    sid = start(client, hdr)["id"]
    key = submit_key(sid)
    # a submitter that died after taking the latch
    assert RedisLatch(key, client=fake_redis).acquire()
    assert fake_redis.ttl[key] == settings.SUBMIT_LATCH_TTL_SECONDS
    clock.advance(60 * 60)
    r = client.get(f"/v1/sessions/{sid}", headers=hdr)
    assert r.json()["ended_at"] is None and r.json()["in_progress"] is False
    assert client.post(f"/v1/sessions/{sid}/submit", headers=hdr).status_code == 409
    fake_redis.lapse(key)
    r = client.get(f"/v1/sessions/{sid}", headers=hdr)
    assert r.json()["ended_at"] is not None and r.json()["score"] == 0
    assert client.post(f"/v1/sessions/{sid}/submit", headers=hdr).status_code == 200
