"""
Tests for specialist exercise plans and the specialist portal views.
"""
import pytest


@pytest.fixture
def assigned(make_user, make_child):
    parent = make_user("parent")
    specialist = make_user("specialist")
    child = make_child(parent, assigned_specialist=specialist["_id"])
    return parent, specialist, child


def test_default_catalogues():
    from exercises import DEFAULT_LETTERS, DEFAULT_WORDS

    assert len(DEFAULT_LETTERS) == 27
    ba = DEFAULT_LETTERS[0]
    assert ba["letter"] == "ب"
    assert ba["vowels"] == ["بَ", "بِ", "بُ", "بْ"]
    assert {w["category"] for w in DEFAULT_WORDS} == {"emotions", "needs", "actions", "family"}


def test_plan_lifecycle(client, db, assigned, headers):
    parent, specialist, child = assigned
    res = client.post("/api/exercises", headers=headers(specialist), json={
        "childId": str(child["_id"]),
        "letters": [{"letter": "ر", "vowels": ["رَ"]}],
        "words": [{"word": "بابا", "category": "family"}],
        "targetDuration": 15,
    })
    assert res.status_code == 201
    plan_id = res.json()["exercise"]["_id"]

    stored = db["child"].find_one({"_id": child["_id"]})
    assert stored["targetLetters"] == ["ر"]
    assert stored["targetWords"] == ["بابا"]

    plans = client.get(f"/api/exercises/child/{child['_id']}", headers=headers(parent)).json()["exercises"]
    assert len(plans) == 1
    assert plans[0]["specialist"]["name"] == specialist["name"]

    res = client.put(f"/api/exercises/{plan_id}", headers=headers(specialist), json={"targetDuration": 20})
    assert res.json()["exercise"]["targetDuration"] == 20

    assert client.delete(f"/api/exercises/{plan_id}", headers=headers(specialist)).status_code == 200
    assert client.get(f"/api/exercises/child/{child['_id']}", headers=headers(parent)).json()["count"] == 0


def test_plan_requires_assignment(client, make_user, assigned, headers):
    _, _, child = assigned
    other = make_user("specialist")
    res = client.post("/api/exercises", headers=headers(other), json={"childId": str(child["_id"])})
    assert res.status_code == 403


def test_dashboard_counts(client, db, assigned, make_user, make_child, headers):
    parent, specialist, child = assigned
    client.post("/api/progress/session", headers=headers(parent),
                json={"childId": str(child["_id"]), "sessionData": {"duration": 4}})
    requester = make_user("parent")
    other_child = make_child(requester, name="Sara")
    res = client.post("/api/parents/send-link-request", headers=headers(requester),
                      json={"specialistId": str(specialist["_id"]), "childId": str(other_child["_id"])})
    assert res.status_code == 201

    res = client.get("/api/specialist/dashboard", headers=headers(specialist))
    stats = res.json()["stats"]
    assert stats == {"children": 1, "pendingRequests": 1, "parents": 1, "sessions": 1}
    assert res.json()["recentChildren"][0]["parent"]["name"] == parent["name"]


def test_words_management_modes(client, assigned, headers):
    _, specialist, child = assigned
    res = client.get("/api/specialist/words", headers=headers(specialist))
    assert res.json()["mode"] == "select_child"
    assert len(res.json()["children"]) == 1

    res = client.post("/api/specialist/content/add", headers=headers(specialist), json={
        "text": "قطة", "contentType": "word", "childId": str(child["_id"]),
    })
    assert res.status_code == 201
    assert res.json()["message"] == "Word added successfully"
    content_id = res.json()["content"]["_id"]

    res = client.get(f"/api/specialist/words?childId={child['_id']}", headers=headers(specialist))
    body = res.json()
    assert body["mode"] == "manage_child"
    assert [w["text"] for w in body["words"]] == ["قطة"]
    assert body["letters"] == []

    res = client.post(f"/api/specialist/content/delete/{content_id}", headers=headers(specialist))
    assert res.json()["message"] == "Content deleted successfully"


def test_portal_add_requires_fields(client, assigned, headers):
    _, specialist, _ = assigned
    res = client.post("/api/specialist/content/add", headers=headers(specialist), json={"text": "x"})
    assert res.status_code == 400
    assert res.json()["message"] == "Text, content type, and child ID are required"
