"""
Tests for direct messages, in-app notifications, device tokens and the
per-request outbox that delivers side effects after the response.
"""
from bson.objectid import ObjectId
from fastapi.testclient import TestClient

from main import create_app
from notifications import Dispatcher, Outbox


def test_send_thread_and_read_receipts(client, db, make_user, headers, broadcaster, push_sender):
    parent = make_user("parent")
    specialist = make_user("specialist")
    client.post("/api/notifications/device-token", headers=headers(specialist),
                json={"token": "fcm-token-1", "platform": "android"})

    res = client.post("/api/messages", headers=headers(parent),
                      json={"receiverId": str(specialist["_id"]), "content": "  مرحبا  "})
    assert res.status_code == 201
    message = res.json()["message"]
    assert message["content"] == "مرحبا"
    assert message["sender"]["name"] == parent["name"]

    assert broadcaster.events_for(specialist["_id"], "new_message")
    assert broadcaster.events_for(parent["_id"], "new_message")
    assert push_sender.sent[0]["tokens"] == ["fcm-token-1"]
    assert push_sender.sent[0]["data"]["type"] == "chat"

    res = client.get("/api/messages/unread/count", headers=headers(specialist))
    assert res.json()["unreadCount"] == 1

    res = client.get(f"/api/messages/{parent['_id']}", headers=headers(specialist))
    assert res.json()["count"] == 1
    assert client.get("/api/messages/unread/count", headers=headers(specialist)).json()["unreadCount"] == 0
    assert db["message"].find_one()["readAt"] is not None


def test_conversations_newest_first(client, make_user, headers):
    me = make_user("specialist")
    first = make_user("parent")
    second = make_user("parent")
    client.post("/api/messages", headers=headers(first), json={"receiverId": str(me["_id"]), "content": "one"})
    client.post("/api/messages", headers=headers(me), json={"receiverId": str(second["_id"]), "content": "two"})

    res = client.get("/api/messages/conversations", headers=headers(me))
    conversations = res.json()["conversations"]
    assert res.json()["count"] == 2
    by_user = {c["user"]["_id"]: c for c in conversations}
    assert by_user[str(first["_id"])]["unreadCount"] == 1
    assert by_user[str(first["_id"])]["lastMessage"]["isFromMe"] is False
    assert by_user[str(second["_id"])]["lastMessage"]["isFromMe"] is True


def test_only_sender_edits_and_deletes(client, db, make_user, headers, broadcaster):
    sender = make_user("parent")
    receiver = make_user("specialist")
    res = client.post("/api/messages", headers=headers(sender), json={"receiverId": str(receiver["_id"]), "content": "hi"})
    message_id = res.json()["message"]["_id"]

    assert client.put(f"/api/messages/{message_id}", headers=headers(receiver), json={"content": "x"}).status_code == 403
    res = client.put(f"/api/messages/{message_id}", headers=headers(sender), json={"content": "hello"})
    assert res.json()["message"]["isEdited"] is True
    assert broadcaster.events_for(receiver["_id"], "message_edited")

    assert client.put(f"/api/messages/{message_id}/read", headers=headers(sender)).status_code == 403
    assert client.put(f"/api/messages/{message_id}/read", headers=headers(receiver)).json()["message"]["isRead"] is True

    assert client.delete(f"/api/messages/{message_id}", headers=headers(receiver)).status_code == 403
    res = client.delete(f"/api/messages/{message_id}", headers=headers(sender))
    assert res.json()["message"] == "Message deleted"
    assert db["message"].count_documents({}) == 0
    assert broadcaster.events_for(receiver["_id"], "message_deleted")


def test_send_validation(client, make_user, headers):
    sender = make_user("parent")
    res = client.post("/api/messages", headers=headers(sender), json={"content": "hi"})
    assert res.status_code == 400
    assert res.json()["message"] == "Receiver ID and content are required"
    res = client.post("/api/messages", headers=headers(sender),
                      json={"receiverId": str(ObjectId()), "content": "hi"})
    assert res.status_code == 404


def test_delete_conversation(client, db, make_user, headers):
    a = make_user("parent")
    b = make_user("specialist")
    client.post("/api/messages", headers=headers(a), json={"receiverId": str(b["_id"]), "content": "1"})
    client.post("/api/messages", headers=headers(b), json={"receiverId": str(a["_id"]), "content": "2"})
    res = client.delete(f"/api/messages/conversations/{b['_id']}", headers=headers(a))
    assert res.json()["deletedCount"] == 2
    assert db["message"].count_documents({}) == 0


def test_notifications_list_and_mark_read(client, db, make_user, make_child, headers):
    parent = make_user("parent")
    specialist = make_user("specialist")
    child = make_child(parent, assigned_specialist=specialist["_id"])
    client.post(f"/api/specialists/set-duration/{child['_id']}", headers=headers(specialist),
                json={"dailyPlayDuration": 30})

    res = client.get("/api/parents/notifications/unread/count", headers=headers(parent))
    assert res.json()["count"] == 1
    notification_id = client.get("/api/notifications", headers=headers(parent)).json()["notifications"][0]["_id"]

    res = client.put(f"/api/notifications/{notification_id}/read", headers=headers(specialist))
    assert res.status_code == 403
    res = client.put(f"/api/parents/notifications/{notification_id}/read", headers=headers(parent))
    assert res.json()["notification"]["read"] is True
    assert client.get("/api/notifications/unread/count", headers=headers(parent)).json()["count"] == 0


def test_device_token_upsert_and_unregister(client, db, make_user, headers):
    user = make_user("parent")
    for platform in ("ios", "symbian"):
        res = client.post("/api/notifications/device-token", headers=headers(user),
                          json={"token": "tok", "platform": platform})
        assert res.status_code == 200
    tokens = list(db["devicetoken"].find({"user": user["_id"]}))
    assert len(tokens) == 1
    assert tokens[0]["platform"] == "unknown"

    res = client.request("DELETE", "/api/notifications/device-token", headers=headers(user), json={"token": "tok"})
    assert res.status_code == 200
    assert db["devicetoken"].count_documents({}) == 0

    res = client.post("/api/notifications/device-token", headers=headers(user), json={"platform": "ios"})
    assert res.status_code == 400


class ExplodingBroadcaster:
    def publish_many(self, user_ids, event, data):
        raise RuntimeError("socket layer down")


def test_outbox_failure_does_not_fail_request(db, make_user, make_child, push_sender, email_sender, headers):
    app = create_app(database=db, broadcaster=ExplodingBroadcaster(), push_sender=push_sender,
                     email_sender=email_sender)
    client = TestClient(app)
    parent = make_user("parent")
    specialist = make_user("specialist")
    child = make_child(parent, assigned_specialist=specialist["_id"])

    res = client.post("/api/progress/sync", headers=headers(parent),
                      json={"childId": str(child["_id"]), "sessions": [{"duration": 3}]})
    assert res.status_code == 200
    # the notification queued before the failing publish is still delivered
    assert db["notification"].count_documents({"recipient": parent["_id"]}) == 1
    assert len(db["progress"].find_one({"child": child["_id"]})["sessions"]) == 1


def test_outbox_drains_each_entry_once(db, make_user):
    calls = []

    class FlakyDispatcher(Dispatcher):
        def publish(self, user_ids, event, data):
            calls.append(event)
            raise RuntimeError("boom")

    user = make_user("parent")
    outbox = Outbox(FlakyDispatcher(db, broadcaster=None))
    outbox.publish([user["_id"]], "first", {})
    outbox.notify(user["_id"], "title", "body")
    outbox.publish([user["_id"]], "second", {})

    assert len(outbox) == 3
    assert outbox.drain() == 1
    assert calls == ["first", "second"]
    assert outbox.drain() == 0
    assert db["notification"].count_documents({"recipient": user["_id"]}) == 1
