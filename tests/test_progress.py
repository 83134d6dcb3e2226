"""
Tests for the progress ledger: session appends, the overallStats rollup,
attempt history and the sync side effects.
"""
from datetime import datetime, timedelta

import pytest

from progress import ProgressLedger, clamp_limit, compute_overall_stats
from schemas import Session


def attempts(target_key, target, successes, failures, score=80):
    ok = [{target_key: target, "success": True, "score": score} for _ in range(successes)]
    bad = [{target_key: target, "success": False, "score": score / 2} for _ in range(failures)]
    return ok + bad


@pytest.fixture
def linked_child(make_user, make_child):
    parent = make_user("parent")
    specialist = make_user("specialist")
    child = make_child(parent, assigned_specialist=specialist["_id"])
    return parent, specialist, child


def test_success_rate_over_all_sessions(client, db, linked_child, headers):
    parent, _, child = linked_child
    first = {"duration": 10, "totalAttempts": 4, "successfulAttempts": 3, "failedAttempts": 1, "averageScore": 70}
    second = {"duration": 15, "totalAttempts": 6, "successfulAttempts": 4, "failedAttempts": 2, "averageScore": 90}

    for session in (first, second):
        res = client.post("/api/progress/session", headers=headers(parent),
                          json={"childId": str(child["_id"]), "sessionData": session})
        assert res.status_code == 200

    stats = client.get(f"/api/progress/stats/{child['_id']}", headers=headers(parent)).json()["stats"]
    assert stats["totalSessions"] == 2
    assert stats["totalAttempts"] == 10
    assert stats["successRate"] == pytest.approx(70)
    assert stats["averageScore"] == pytest.approx(80)
    assert stats["totalPlayTime"] == 25

    doc = db["progress"].find_one({"child": child["_id"]})
    assert len(doc["sessions"]) == 2
    assert doc["version"] == 2


def test_counters_derived_from_raw_attempts():
    session = Session(attempts=attempts("letter", "ب", 2, 1, score=90))
    assert (session.total_attempts, session.successful_attempts, session.failed_attempts) == (3, 2, 1)
    assert session.average_score == pytest.approx(75)


def test_mastered_and_challenging_targets():
    sessions = [
        Session(attempts=attempts("letter", "ب", 4, 0) + attempts("letter", "ر", 1, 3)
                + attempts("word", "بابا", 2, 0)).model_dump(by_alias=True),
    ]
    stats = compute_overall_stats(sessions)
    assert stats["masteredLetters"] == ["ب"]
    assert stats["challengingLetters"] == ["ر"]
    # fewer than three attempts never qualifies
    assert stats["masteredWords"] == []


def test_empty_ledger_stats():
    stats = compute_overall_stats([])
    assert stats["totalSessions"] == 0
    assert stats["successRate"] == 0
    assert stats["averageScore"] == 0


def test_get_or_create_is_idempotent(db, linked_child):
    _, _, child = linked_child
    db["progress"].delete_many({})
    ledger = ProgressLedger(db)
    assert ledger.get_or_create(child["_id"])["_id"] == ledger.get_or_create(child["_id"])["_id"]
    assert db["progress"].count_documents({"child": child["_id"]}) == 1


@pytest.mark.parametrize("raw,expected", [
    (None, 50), ("abc", 50), ("0", 50), ("-3", 50), ("10", 10), ("500", 200), (200, 200),
])
def test_clamp_limit(raw, expected):
    assert clamp_limit(raw) == expected


def test_attempt_history_limit_and_order(client, db, linked_child, headers):
    parent, _, child = linked_child
    start = datetime(2024, 1, 1)
    raw = [{"letter": "س", "success": i % 2 == 0, "score": 60, "timestamp": (start + timedelta(minutes=i)).isoformat()}
           for i in range(250)]
    ProgressLedger(db).append_session(child["_id"], Session(attempts=raw))

    res = client.get(f"/api/progress/attempts/{child['_id']}?limit=500", headers=headers(parent))
    history = res.json()["attempts"]
    assert len(history) == 200
    assert history[0]["timestamp"] > history[-1]["timestamp"]

    for limit in ("0", "abc"):
        res = client.get(f"/api/progress/attempts/{child['_id']}?limit={limit}", headers=headers(parent))
        assert len(res.json()["attempts"]) == 50


def test_sync_appends_batch_and_notifies(client, db, linked_child, headers, broadcaster):
    parent, specialist, child = linked_child
    body = {
        "childId": str(child["_id"]),
        "sessions": [
            {"duration": 5, "attempts": attempts("word", "ماما", 1, 1)},
            {"duration": 7, "attempts": attempts("word", "بابا", 2, 0)},
        ],
    }
    res = client.post("/api/progress/sync", headers=headers(parent), json=body)
    assert res.status_code == 200
    assert res.json()["message"] == "Progress synced successfully"
    assert res.json()["progress"]["overallStats"]["totalSessions"] == 2

    assert db["notification"].count_documents({"recipient": parent["_id"], "type": "success"}) == 1
    assert broadcaster.events_for(parent["_id"], "progress_updated")
    assert broadcaster.events_for(specialist["_id"], "progress_updated")


def test_sessions_summary_and_report(client, db, linked_child, headers):
    parent, specialist, child = linked_child
    ProgressLedger(db).append_session(child["_id"], Session(duration=12, attempts=attempts("letter", "ت", 3, 1)))

    sessions = client.get(f"/api/progress/sessions/{child['_id']}", headers=headers(specialist)).json()["sessions"]
    assert sessions[0]["successRate"] == pytest.approx(75)

    res = client.get(f"/api/progress/report/{child['_id']}.pdf", headers=headers(parent))
    assert res.status_code == 200
    assert res.headers["content-type"] == "application/pdf"
    assert res.content.startswith(b"%PDF")


def test_progress_requires_child_access(client, make_user, linked_child, headers):
    _, _, child = linked_child
    outsider = make_user("specialist")
    res = client.get(f"/api/progress/child/{child['_id']}", headers=headers(outsider))
    assert res.status_code == 403
    assert res.json()["message"] == "Not authorized to access this child"


def test_unknown_child_is_404(client, make_user, headers):
    parent = make_user("parent")
    res = client.get("/api/progress/stats/65a000000000000000000000", headers=headers(parent))
    assert res.status_code == 404
    res = client.get("/api/progress/stats/not-an-id", headers=headers(parent))
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid id format"
