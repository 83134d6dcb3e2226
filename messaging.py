# messaging.py
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, serialize, to_obj_id, utc_now
from errors import AuthorizationError, NotFoundError, ValidationError
from notifications import Outbox, get_outbox
from schemas import Message, MessageCreate, MessageEdit
from security import get_current_user, get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messages", tags=["messages"])

PARTY_FIELDS = {"name": 1, "email": 1, "role": 1}


def _between(a, b) -> Dict[str, Any]:
    return {"$or": [{"sender": a, "receiver": b}, {"sender": b, "receiver": a}]}


class MessageService:
    def __init__(self, db: Database, outbox: Outbox = None):
        self.db = db
        self.messages = db["message"]
        self.users = db["user"]
        self.outbox = outbox

    def _populate(self, message: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(message)
        result["sender"] = self.users.find_one({"_id": message["sender"]}, PARTY_FIELDS) or message["sender"]
        result["receiver"] = self.users.find_one({"_id": message["receiver"]}, PARTY_FIELDS) or message["receiver"]
        return result

    def _load(self, message_id: Any) -> Dict[str, Any]:
        message = self.messages.find_one({"_id": to_obj_id(message_id)})
        if not message:
            raise NotFoundError("Message not found")
        return message

    def send(self, sender: Dict[str, Any], receiver_id: Any, content: Any) -> Dict[str, Any]:
        if not receiver_id or not isinstance(content, str) or not content.strip():
            raise ValidationError("Receiver ID and content are required")
        receiver = self.users.find_one({"_id": to_obj_id(receiver_id)})
        if not receiver:
            raise NotFoundError("Receiver not found")

        doc = create_document(self.db, "message", Message(
            sender=sender["_id"], receiver=receiver["_id"], content=content.strip(),
        ))
        message = self._populate(doc)
        if self.outbox is not None:
            self.outbox.publish([sender["_id"], receiver["_id"]], "new_message", message)
            self.outbox.push(
                receiver["_id"],
                sender.get("name") or "رسالة جديدة",
                doc["content"],
                {"type": "chat", "senderId": str(sender["_id"]), "senderName": sender.get("name", ""),
                 "content": doc["content"]},
            )
        return message

    def unread_count(self, user_id) -> int:
        return self.messages.count_documents({"receiver": user_id, "isRead": False})

    def conversations(self, user_id) -> List[Dict[str, Any]]:
        others = set(self.messages.distinct("receiver", {"sender": user_id}))
        others.update(self.messages.distinct("sender", {"receiver": user_id}))

        conversations = []
        for other_id in others:
            other = self.users.find_one({"_id": other_id}, PARTY_FIELDS)
            if not other:
                continue
            last = self.messages.find_one(_between(user_id, other_id), sort=[("createdAt", -1)])
            conversations.append({
                "user": other,
                "lastMessage": {
                    "content": last["content"],
                    "createdAt": last["createdAt"],
                    "isFromMe": last["sender"] == user_id,
                } if last else None,
                "unreadCount": self.messages.count_documents({"sender": other_id, "receiver": user_id, "isRead": False}),
            })
        with_last = [c for c in conversations if c["lastMessage"]]
        with_last.sort(key=lambda c: c["lastMessage"]["createdAt"], reverse=True)
        return with_last + [c for c in conversations if not c["lastMessage"]]

    def thread(self, user_id, other_id: Any, page: int = 1, limit: int = 50) -> List[Dict[str, Any]]:
        other_id = to_obj_id(other_id)
        if not self.users.find_one({"_id": other_id}, {"_id": 1}):
            raise NotFoundError("User not found")
        page = max(page, 1)
        limit = max(min(limit, 200), 1)
        messages = list(
            self.messages.find(_between(user_id, other_id)).sort("createdAt", 1).skip((page - 1) * limit).limit(limit)
        )
        self.messages.update_many(
            {"sender": other_id, "receiver": user_id, "isRead": False},
            {"$set": {"isRead": True, "readAt": utc_now()}},
        )
        return [self._populate(m) for m in messages]

    def mark_read(self, user_id, message_id: Any) -> Dict[str, Any]:
        message = self._load(message_id)
        if message["receiver"] != user_id:
            raise AuthorizationError("Not authorized")
        return self.messages.find_one_and_update(
            {"_id": message["_id"]},
            {"$set": {"isRead": True, "readAt": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )

    def edit(self, user_id, message_id: Any, content: Any) -> Dict[str, Any]:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Content is required")
        message = self._load(message_id)
        if message["sender"] != user_id:
            raise AuthorizationError("Not authorized")
        updated = self.messages.find_one_and_update(
            {"_id": message["_id"]},
            {"$set": {"content": content.strip(), "isEdited": True, "updatedAt": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
        populated = self._populate(updated)
        if self.outbox is not None:
            self.outbox.publish([updated["sender"], updated["receiver"]], "message_edited", populated)
        return populated

    def delete(self, user_id, message_id: Any) -> None:
        message = self._load(message_id)
        if message["sender"] != user_id:
            raise AuthorizationError("Not authorized")
        self.messages.delete_one({"_id": message["_id"]})
        if self.outbox is not None:
            self.outbox.publish([message["sender"], message["receiver"]], "message_deleted",
                                {"messageId": message["_id"]})

    def delete_conversation(self, user_id, other_id: Any) -> int:
        deleted = self.messages.delete_many(_between(user_id, to_obj_id(other_id))).deleted_count
        logger.info("User %s deleted conversation with %s (%d messages)", user_id, other_id, deleted)
        return deleted


def get_messages(db: Database = Depends(get_db), outbox: Outbox = Depends(get_outbox)) -> MessageService:
    return MessageService(db, outbox)


# static paths are registered before the /{user_id} catch-alls
@router.post("", status_code=201)
def send_message(payload: MessageCreate, user: dict = Depends(get_current_user),
                 service: MessageService = Depends(get_messages)):
    message = service.send(user, payload.receiver_id, payload.content)
    return {"success": True, "message": serialize(message)}


@router.get("/unread/count")
def unread_count(user: dict = Depends(get_current_user), service: MessageService = Depends(get_messages)):
    return {"success": True, "unreadCount": service.unread_count(user["_id"])}


@router.get("/conversations")
def conversations(user: dict = Depends(get_current_user), service: MessageService = Depends(get_messages)):
    items = service.conversations(user["_id"])
    return {"success": True, "count": len(items), "conversations": serialize(items)}


@router.delete("/conversations/{user_id}")
def delete_conversation(user_id: str, user: dict = Depends(get_current_user),
                        service: MessageService = Depends(get_messages)):
    deleted = service.delete_conversation(user["_id"], user_id)
    return {"success": True, "message": "Conversation deleted successfully", "deletedCount": deleted}


@router.get("/{user_id}")
def thread(user_id: str, page: int = 1, limit: int = 50, user: dict = Depends(get_current_user),
           service: MessageService = Depends(get_messages)):
    messages = service.thread(user["_id"], user_id, page, limit)
    return {"success": True, "count": len(messages), "messages": serialize(messages)}


@router.put("/{message_id}/read")
def mark_read(message_id: str, user: dict = Depends(get_current_user), service: MessageService = Depends(get_messages)):
    return {"success": True, "message": serialize(service.mark_read(user["_id"], message_id))}


@router.put("/{message_id}")
def edit_message(message_id: str, payload: MessageEdit, user: dict = Depends(get_current_user),
                 service: MessageService = Depends(get_messages)):
    return {"success": True, "message": serialize(service.edit(user["_id"], message_id, payload.content))}


@router.delete("/{message_id}")
def delete_message(message_id: str, user: dict = Depends(get_current_user),
                   service: MessageService = Depends(get_messages)):
    service.delete(user["_id"], message_id)
    return {"success": True, "message": "Message deleted"}
