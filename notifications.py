# notifications.py
"""
Notification fan-out.

Side effects of a state change (in-app notification rows, real-time events,
push multicasts, emails) are queued on a per-request ``Outbox`` while the
handler runs, and drained once by a background task after the response has
been sent. Every entry is attempted exactly once; a failure is logged and the
entry dropped, never reported to the caller.
"""
import logging
from collections import deque
from typing import Any, Callable, Dict, Iterable, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pymongo.database import Database

from database import create_document, get_documents, serialize, to_obj_id, utc_now
from errors import AuthorizationError, NotFoundError, ValidationError
from schemas import DeviceTokenRequest, Notification
from security import get_current_user, get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])

PLATFORMS = ("android", "ios", "web")


class Dispatcher:
    """Process-scoped collaborators the outbox delivers through."""

    def __init__(self, db: Database, broadcaster, push_sender=None, email_sender=None):
        self.db = db
        self.broadcaster = broadcaster
        self.push_sender = push_sender
        self.email_sender = email_sender

    def insert_notification(self, notification: Notification) -> None:
        create_document(self.db, "notification", notification)

    def publish(self, user_ids: Iterable[Any], event: str, data: Any) -> None:
        self.broadcaster.publish_many(user_ids, event, data)

    def push_to_user(self, user_id: Any, title: str, body: str, data: Optional[Dict[str, Any]]) -> None:
        if self.push_sender is None:
            return
        tokens = [d["token"] for d in self.db["devicetoken"].find({"user": to_obj_id(user_id)}, {"token": 1}) if d.get("token")]
        if tokens:
            self.push_sender.send_to_tokens(tokens, title, body, data)

    def send_email(self, template: Callable, *args) -> None:
        if self.email_sender is None:
            return
        template(self.email_sender, *args)


class Outbox:
    def __init__(self, dispatcher: Dispatcher):
        self.dispatcher = dispatcher
        self._pending = deque()

    def __len__(self):
        return len(self._pending)

    def notify(self, recipient: Any, title: str, message: str, type: str = "info",
               data: Optional[Dict[str, Any]] = None) -> None:
        notification = Notification(recipient=to_obj_id(recipient), type=type, title=title, message=message, data=data)
        self._pending.append((f"notification to {recipient}", self.dispatcher.insert_notification, (notification,)))

    def publish(self, user_ids: Iterable[Any], event: str, data: Any) -> None:
        self._pending.append((f"{event} event", self.dispatcher.publish, (list(user_ids), event, data)))

    def push(self, user_id: Any, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._pending.append((f"push to {user_id}", self.dispatcher.push_to_user, (user_id, title, body, data)))

    def email(self, template: Callable, *args) -> None:
        self._pending.append((f"email {template.__name__}", self.dispatcher.send_email, (template,) + args))

    def drain(self) -> int:
        delivered = 0
        while self._pending:
            label, fn, args = self._pending.popleft()
            try:
                fn(*args)
                delivered += 1
            except Exception as e:
                logger.warning("Dropped %s: %s", label, e)
        return delivered


def get_outbox(request: Request, background_tasks: BackgroundTasks) -> Outbox:
    outbox = Outbox(request.app.state.dispatcher)
    background_tasks.add_task(outbox.drain)
    return outbox


class NotificationService:
    def __init__(self, db: Database):
        self.db = db

    def list_for(self, user_id, limit: int = 50) -> List[Dict[str, Any]]:
        return get_documents(self.db, "notification", {"recipient": user_id}, limit=limit, sort=[("createdAt", -1)])

    def mark_read(self, user_id, notification_id) -> Dict[str, Any]:
        notification = self.db["notification"].find_one({"_id": to_obj_id(notification_id)})
        if not notification:
            raise NotFoundError("Notification not found")
        if notification["recipient"] != user_id:
            raise AuthorizationError("Not authorized")
        self.db["notification"].update_one({"_id": notification["_id"]}, {"$set": {"read": True, "updatedAt": utc_now()}})
        notification["read"] = True
        return notification

    def unread_count(self, user_id) -> int:
        return self.db["notification"].count_documents({"recipient": user_id, "read": False})

    def register_device(self, user_id, token: Optional[str], platform: Optional[str]) -> None:
        if not token or not isinstance(token, str) or not token.strip():
            raise ValidationError("token is required")
        clean_platform = platform if platform in PLATFORMS else "unknown"
        now = utc_now()
        self.db["devicetoken"].update_one(
            {"user": user_id, "token": token.strip()},
            {
                "$set": {"platform": clean_platform, "lastSeenAt": now, "updatedAt": now},
                "$setOnInsert": {"createdAt": now},
            },
            upsert=True,
        )

    def unregister_device(self, user_id, token: Optional[str]) -> None:
        if not token or not isinstance(token, str) or not token.strip():
            raise ValidationError("token is required")
        self.db["devicetoken"].delete_one({"user": user_id, "token": token.strip()})


# Routes
@router.get("")
def list_notifications(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    notifications = NotificationService(db).list_for(user["_id"])
    return {"success": True, "count": len(notifications), "notifications": serialize(notifications)}


@router.get("/unread/count")
def unread_notifications_count(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"success": True, "count": NotificationService(db).unread_count(user["_id"])}


@router.put("/{notification_id}/read")
def mark_notification_read(notification_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    notification = NotificationService(db).mark_read(user["_id"], notification_id)
    return {"success": True, "message": "Notification marked as read", "notification": serialize(notification)}


@router.post("/device-token")
def register_device_token(payload: DeviceTokenRequest, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    NotificationService(db).register_device(user["_id"], payload.token, payload.platform)
    return {"success": True}


@router.delete("/device-token")
def unregister_device_token(payload: DeviceTokenRequest, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    NotificationService(db).unregister_device(user["_id"], payload.token)
    return {"success": True}
