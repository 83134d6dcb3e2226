# linkage.py
"""
Parent / specialist / child linkage.

Three paths lead to a child being assigned to a specialist:

* Path A, the specialist creates the parent and/or child directly.
* Path B, the parent sends a LinkRequest which the specialist accepts.
* Path C, the parent puts the child in the open pending queue and any
  specialist picks it up.

Two invariants hold after every write here:

* ``child.assignedSpecialist`` is set exactly when
  ``child.specialistRequestStatus == "approved"`` (both change in one update).
* ``parent.linkedSpecialist == S`` exactly when ``parent ∈ S.linkedParents``.

Status transitions are conditional updates on the expected current state,
so two specialists racing for the same request or child cannot both win.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from bson.objectid import ObjectId
from fastapi import APIRouter, Depends
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from accounts import UserService, user_summary
from children import ChildService, in_open_queue, load_child, populate_child
from database import create_document, serialize, to_obj_id, utc_now
from email_service import send_child_creation_email
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from notifications import NotificationService, Outbox, get_outbox
from schemas import (ChildCreate, DurationUpdate, LinkParentRequest, LinkRequest, LinkRequestCreate,
                     NewParent, Referral, SpecialistChildCreate)
from security import get_db, require_roles

logger = logging.getLogger(__name__)

specialists_router = APIRouter(prefix="/api/specialists", tags=["specialists"])
parents_router = APIRouter(prefix="/api/parents", tags=["parents"])

PARENT_FIELDS = {"name": 1, "email": 1, "phone": 1, "profilePhoto": 1}
SPECIALIST_FIELDS = {"name": 1, "email": 1, "phone": 1, "specialization": 1, "profilePhoto": 1, "bio": 1}


def _regex(text: str) -> Dict[str, str]:
    return {"$regex": re.escape(text.strip()), "$options": "i"}


class LinkageService:
    def __init__(self, db: Database, outbox: Optional[Outbox] = None):
        self.db = db
        self.outbox = outbox
        self.users = db["user"]
        self.children = db["child"]
        self.requests = db["linkrequest"]

    # Edge helpers
    def _link_edge(self, parent_id: ObjectId, specialist_id: ObjectId) -> None:
        """Write both sides of the parent/specialist edge."""
        result = self.users.update_one(
            {"_id": parent_id, "role": "parent", "linkedSpecialist": {"$in": [None, specialist_id]}},
            {"$set": {"linkedSpecialist": specialist_id, "updatedAt": utc_now()}},
        )
        if result.matched_count == 0:
            raise ConflictError("Parent is already linked to another specialist")
        self.users.update_one({"_id": specialist_id}, {"$addToSet": {"linkedParents": parent_id}})

    def _unlink_edge(self, parent_id: ObjectId, specialist_id: ObjectId) -> List[Dict[str, Any]]:
        """Remove the edge and detach every child of the parent assigned to the specialist."""
        self.users.update_one(
            {"_id": parent_id, "linkedSpecialist": specialist_id},
            {"$set": {"linkedSpecialist": None, "updatedAt": utc_now()}},
        )
        self.users.update_one({"_id": specialist_id}, {"$pull": {"linkedParents": parent_id}})

        detached = list(self.children.find({"parent": parent_id, "assignedSpecialist": specialist_id}, {"name": 1}))
        child_ids = [c["_id"] for c in detached]
        if child_ids:
            self.children.update_many(
                {"_id": {"$in": child_ids}, "assignedSpecialist": specialist_id},
                {"$set": {"assignedSpecialist": None, "specialistRequestStatus": "none", "updatedAt": utc_now()}},
            )
            self.users.update_one({"_id": specialist_id}, {"$pullAll": {"assignedChildren": child_ids}})
        return detached

    def _assign_child(self, child_id: ObjectId, specialist_id: ObjectId,
                      expected_status: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query: Dict[str, Any] = {"_id": child_id, "assignedSpecialist": None}
        if expected_status:
            query["specialistRequestStatus"] = expected_status
        child = self.children.find_one_and_update(
            query,
            {"$set": {"assignedSpecialist": specialist_id, "specialistRequestStatus": "approved", "updatedAt": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
        if child is not None:
            self.users.update_one({"_id": specialist_id}, {"$addToSet": {"assignedChildren": child_id}})
        return child

    def _unassign_child(self, child_id: ObjectId, specialist_id: ObjectId, status: str) -> None:
        """Roll back an ``_assign_child`` whose follow-up link could not be written."""
        self.children.update_one(
            {"_id": child_id, "assignedSpecialist": specialist_id},
            {"$set": {"assignedSpecialist": None, "specialistRequestStatus": status, "updatedAt": utc_now()}},
        )
        self.users.update_one({"_id": specialist_id}, {"$pull": {"assignedChildren": child_id}})

    def _record_referral(self, parent_id, specialist_id, referral_type: str, notes: Optional[str] = None) -> None:
        # audit trail only; the linkage itself is already committed
        try:
            create_document(self.db, "referral", Referral(
                parent=parent_id, specialist=specialist_id, referral_type=referral_type, notes=notes,
            ))
        except PyMongoError as e:
            logger.warning("Referral %s for parent %s failed: %s", referral_type, parent_id, e)

    def _notify(self, recipient, title: str, message: str, type: str = "info", data=None) -> None:
        if self.outbox is not None:
            self.outbox.notify(recipient, title, message, type=type, data=data)

    def _load_user(self, user_id: Any, role: str, message: str) -> Dict[str, Any]:
        user = self.users.find_one({"_id": to_obj_id(user_id), "role": role})
        if not user:
            raise NotFoundError(message)
        return user

    # Path A: specialist-initiated
    def create_parent(self, specialist: Dict[str, Any], payload: NewParent) -> Dict[str, Any]:
        parent = UserService(self.db).create_user(
            payload.name, payload.email, payload.password, "parent",
            phone=payload.phone,
            email_verified=True,
            linked_specialist=specialist["_id"],
            created_by=specialist["_id"],
        )
        self.users.update_one({"_id": specialist["_id"]}, {"$addToSet": {"linkedParents": parent["_id"]}})
        logger.info("Specialist %s created parent %s", specialist["_id"], parent["_id"])
        return parent

    def create_child(self, specialist: Dict[str, Any], payload: SpecialistChildCreate) -> Dict[str, Any]:
        specialist_id = specialist["_id"]
        if payload.parent_id:
            parent = self._load_user(payload.parent_id, "parent", "Parent not found")
            if parent.get("linkedSpecialist") != specialist_id:
                raise AuthorizationError("Parent is not linked to this specialist")
        elif payload.parent is not None:
            parent = UserService(self.db).find_by_email(payload.parent.email)
            if parent is None:
                parent = self.create_parent(specialist, payload.parent)
            elif parent.get("role") != "parent":
                raise ConflictError("User with this email already exists")
            else:
                self._link_edge(parent["_id"], specialist_id)
        else:
            raise ValidationError("Parent ID, name, age and gender are required")

        child_fields = payload.model_dump(include={"name", "age", "gender", "target_letters", "target_words",
                                                   "difficulty_level"})
        child = ChildService(self.db).create(parent["_id"], ChildCreate(**child_fields),
                                             assigned_specialist=specialist_id)
        self.users.update_one({"_id": specialist_id}, {"$addToSet": {"assignedChildren": child["_id"]}})

        self._record_referral(parent["_id"], specialist_id, "specialist_created")
        self._notify(
            parent["_id"],
            "تم إنشاء ملف طفل جديد",
            f"A new profile for child {child['name']} has been created by specialist {specialist['name']}.",
            type="child_assigned",
            data={"childId": child["_id"], "specialistId": specialist_id},
        )
        if self.outbox is not None:
            self.outbox.email(send_child_creation_email, parent["email"], child["name"], specialist["name"])
        return child

    def link_parent(self, specialist: Dict[str, Any], parent_id: Optional[str]) -> None:
        if not parent_id:
            raise ValidationError("Parent ID is required")
        parent = self._load_user(parent_id, "parent", "Parent not found")
        if parent.get("linkedSpecialist") == specialist["_id"]:
            raise ValidationError("Parent already linked to this specialist")
        self._link_edge(parent["_id"], specialist["_id"])

    # Path B: parent-initiated link request
    def send_link_request(self, parent: Dict[str, Any], payload: LinkRequestCreate) -> Dict[str, Any]:
        if not payload.specialist_id:
            raise ValidationError("Specialist ID is required")
        if not payload.child_id:
            raise ValidationError("Child ID is required")
        specialist = self._load_user(payload.specialist_id, "specialist", "Specialist not found")
        child = self.children.find_one({"_id": to_obj_id(payload.child_id), "parent": parent["_id"]})
        if not child:
            raise NotFoundError("Child not found")
        if child.get("assignedSpecialist"):
            raise ConflictError("This child is already assigned to a specialist")
        if self.requests.find_one({"from": parent["_id"], "to": specialist["_id"], "child": child["_id"],
                                   "status": "pending"}):
            raise ConflictError("You already have a pending request to this specialist for this child")

        request = create_document(self.db, "linkrequest", LinkRequest(
            from_=parent["_id"], to=specialist["_id"], child=child["_id"], message=payload.message or "",
        ))
        self.children.update_one(
            {"_id": child["_id"], "assignedSpecialist": None},
            {"$set": {"specialistRequestStatus": "pending", "updatedAt": utc_now()}},
        )
        self._notify(
            specialist["_id"],
            "طلب ربط جديد",
            f"Parent {parent['name']} sent a link request for {child['name']}.",
            data={"requestId": request["_id"], "childId": child["_id"]},
        )
        return request

    def _load_request_for(self, specialist_id: ObjectId, request_id: Any) -> Dict[str, Any]:
        request = self.requests.find_one({"_id": to_obj_id(request_id)})
        if not request:
            raise NotFoundError("Request not found")
        if request["to"] != specialist_id:
            raise AuthorizationError("Not authorized")
        if request["status"] != "pending":
            raise ValidationError("Request is no longer pending")
        return request

    def _transition(self, request_id: ObjectId, status: str) -> None:
        result = self.requests.update_one(
            {"_id": request_id, "status": "pending"},
            {"$set": {"status": status, "updatedAt": utc_now()}},
        )
        if result.matched_count == 0:
            raise ValidationError("Request is no longer pending")

    def accept_link_request(self, specialist: Dict[str, Any], request_id: Any) -> Dict[str, Any]:
        specialist_id = specialist["_id"]
        request = self._load_request_for(specialist_id, request_id)
        parent = self.users.find_one({"_id": request["from"]})
        if not parent:
            raise NotFoundError("Parent not found")
        if parent.get("linkedSpecialist") not in (None, specialist_id):
            raise ValidationError("Parent is already linked to another specialist")
        child = load_child(self.db, request["child"])
        if child.get("assignedSpecialist") not in (None, specialist_id):
            raise ValidationError("Child is already assigned to another specialist")

        self._transition(request["_id"], "accepted")
        assigned_now = child.get("assignedSpecialist") is None
        if assigned_now and self._assign_child(child["_id"], specialist_id) is None:
            # the child was assigned elsewhere in the meantime; hand the request back
            self.requests.update_one({"_id": request["_id"]}, {"$set": {"status": "pending"}})
            logger.warning("Child %s was assigned elsewhere while accepting request %s", child["_id"], request["_id"])
            raise ConflictError("Child is already assigned to another specialist")
        try:
            self._link_edge(parent["_id"], specialist_id)
        except ConflictError:
            if assigned_now:
                self._unassign_child(child["_id"], specialist_id, child.get("specialistRequestStatus", "none"))
            self.requests.update_one({"_id": request["_id"]}, {"$set": {"status": "pending"}})
            raise ValidationError("Parent is already linked to another specialist")

        self._record_referral(parent["_id"], specialist_id, "link_request", notes=request.get("message") or None)
        rejected = self.requests.update_many(
            {"from": parent["_id"], "status": "pending", "_id": {"$ne": request["_id"]}},
            {"$set": {"status": "rejected", "updatedAt": utc_now()}},
        )
        if rejected.modified_count:
            logger.info("Auto-rejected %d other pending requests from parent %s", rejected.modified_count, parent["_id"])

        self._notify(
            parent["_id"],
            "تم قبول طلب الربط",
            f"وافق الأخصائي {specialist['name']} على طلب الربط الخاص بك.",
            type="success",
            data={"specialistId": specialist_id, "childId": child["_id"]},
        )
        if self.outbox is not None:
            self.outbox.publish([parent["_id"]], "link_request_accepted",
                                {"requestId": request["_id"], "childId": child["_id"]})
        return self.requests.find_one({"_id": request["_id"]})

    def reject_link_request(self, specialist: Dict[str, Any], request_id: Any) -> Dict[str, Any]:
        request = self._load_request_for(specialist["_id"], request_id)
        self._transition(request["_id"], "rejected")
        self._notify(
            request["from"],
            "تم رفض طلب الربط",
            f"Specialist {specialist['name']} declined your link request.",
            type="warning",
            data={"specialistId": specialist["_id"], "childId": request["child"]},
        )
        return self.requests.find_one({"_id": request["_id"]})

    def cancel_link_request(self, parent: Dict[str, Any], request_id: Any) -> None:
        request = self.requests.find_one({"_id": to_obj_id(request_id)})
        if not request:
            raise NotFoundError("Request not found")
        if request["from"] != parent["_id"]:
            raise AuthorizationError("Not authorized")
        if request["status"] != "pending":
            raise ValidationError("Can only cancel pending requests")
        if self.requests.delete_one({"_id": request["_id"], "status": "pending"}).deleted_count == 0:
            raise ValidationError("Can only cancel pending requests")
        if not self.requests.find_one({"child": request["child"], "status": "pending"}):
            self.children.update_one(
                {"_id": request["child"], "assignedSpecialist": None, "specialistRequestStatus": "pending"},
                {"$set": {"specialistRequestStatus": "none", "updatedAt": utc_now()}},
            )

    def _populate_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(request)
        result["from"] = self.users.find_one({"_id": request["from"]}, PARENT_FIELDS) or request["from"]
        result["to"] = self.users.find_one({"_id": request["to"]}, SPECIALIST_FIELDS) or request["to"]
        result["child"] = self.children.find_one({"_id": request["child"]}, {"name": 1, "age": 1, "gender": 1}) or request["child"]
        return result

    def sent_requests(self, parent: Dict[str, Any]) -> List[Dict[str, Any]]:
        cursor = self.requests.find({"from": parent["_id"]}).sort("createdAt", -1)
        return [self._populate_request(r) for r in cursor]

    def incoming_requests(self, specialist_ids: List[ObjectId], status: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"to": {"$in": specialist_ids}}
        if status in ("pending", "accepted", "rejected"):
            query["status"] = status
        cursor = self.requests.find(query).sort("createdAt", -1)
        return [self._populate_request(r) for r in cursor]

    def pending_request_count(self, specialist: Dict[str, Any]) -> int:
        return self.requests.count_documents({"to": specialist["_id"], "status": "pending"})

    # Path C: open pending queue
    def pending_children(self) -> List[Dict[str, Any]]:
        """Children waiting for any specialist, excluding those tied to a directed request."""
        directed = self.requests.distinct("child", {"status": "pending"})
        cursor = self.children.find({
            "specialistRequestStatus": "pending",
            "assignedSpecialist": None,
            "specialistRequestedAt": {"$ne": None},
            "_id": {"$nin": directed},
        }).sort("specialistRequestedAt", 1)
        return [populate_child(self.db, c) for c in cursor if in_open_queue(self.db, c)]

    def accept_child(self, specialist: Dict[str, Any], child_id: Any) -> Dict[str, Any]:
        specialist_id = specialist["_id"]
        child = load_child(self.db, child_id)
        if not in_open_queue(self.db, child):
            raise ValidationError("No pending request for this child")
        parent = self.users.find_one({"_id": child["parent"]})
        if parent and parent.get("linkedSpecialist") not in (None, specialist_id):
            raise ConflictError("Parent is already linked to another specialist")

        assigned = self._assign_child(child["_id"], specialist_id, expected_status="pending")
        if assigned is None:
            raise ValidationError("No pending request for this child")
        try:
            self._link_edge(child["parent"], specialist_id)
        except ConflictError:
            # the parent was linked elsewhere in the meantime
            self._unassign_child(child["_id"], specialist_id, "pending")
            raise

        self._record_referral(child["parent"], specialist_id, "link_request")
        self._notify(
            child["parent"],
            "تم قبول طفلك",
            f"Specialist {specialist['name']} accepted {child['name']}.",
            type="child_assigned",
            data={"childId": child["_id"], "specialistId": specialist_id},
        )
        return assigned

    def reject_child(self, specialist: Dict[str, Any], child_id: Any) -> Dict[str, Any]:
        child = load_child(self.db, child_id)
        if not in_open_queue(self.db, child):
            raise ValidationError("No pending request for this child")
        updated = self.children.find_one_and_update(
            {"_id": child["_id"], "specialistRequestStatus": "pending", "assignedSpecialist": None,
             "specialistRequestedAt": child["specialistRequestedAt"]},
            {"$set": {"specialistRequestStatus": "rejected", "updatedAt": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ValidationError("No pending request for this child")
        return updated

    # Admin assignment
    def assign_child(self, admin: Dict[str, Any], center: Dict[str, Any], child_id: Any,
                     specialist_id: Any) -> Dict[str, Any]:
        specialist = self._load_user(specialist_id, "specialist", "Specialist not found")
        if specialist.get("center") != center["_id"] and specialist["_id"] not in center.get("specialists", []):
            raise AuthorizationError("Specialist does not belong to your center")
        child = load_child(self.db, child_id)
        if child.get("assignedSpecialist"):
            raise ConflictError("This child is already assigned to a specialist")
        parent = self.users.find_one({"_id": child["parent"]})
        if parent and parent.get("linkedSpecialist") not in (None, specialist["_id"]):
            raise ConflictError("Parent is already linked to another specialist")

        assigned = self._assign_child(child["_id"], specialist["_id"])
        if assigned is None:
            raise ConflictError("This child is already assigned to a specialist")
        try:
            self._link_edge(child["parent"], specialist["_id"])
        except ConflictError:
            self._unassign_child(child["_id"], specialist["_id"], child.get("specialistRequestStatus", "none"))
            raise

        self._record_referral(child["parent"], specialist["_id"], "admin_assigned",
                              notes=f"Assigned by admin {admin['name']}")
        self._notify(
            child["parent"],
            "تم تعيين أخصائي",
            f"{specialist['name']} is now the specialist for {child['name']}.",
            type="child_assigned",
            data={"childId": child["_id"], "specialistId": specialist["_id"]},
        )
        self._notify(
            specialist["_id"],
            "طفل جديد",
            f"{child['name']} has been assigned to you by {admin['name']}.",
            type="child_assigned",
            data={"childId": child["_id"]},
        )
        return assigned

    # Unlink
    def unlink_specialist(self, parent: Dict[str, Any]) -> int:
        specialist_id = parent.get("linkedSpecialist")
        if not specialist_id:
            raise ValidationError("You are not linked to any specialist")
        detached = self._unlink_edge(parent["_id"], specialist_id)
        names = ", ".join(c.get("name", "") for c in detached)
        self._notify(
            specialist_id,
            "تم إلغاء الارتباط",
            f"قام ولي الأمر {parent['name']} بإلغاء التعامل. تم فصل الأطفال: {names}." if detached
            else f"قام ولي الأمر {parent['name']} بإلغاء التعامل.",
            type="warning",
            data={"parentId": parent["_id"], "childIds": [c["_id"] for c in detached]},
        )
        logger.info("Parent %s unlinked from specialist %s (%d children detached)",
                    parent["_id"], specialist_id, len(detached))
        return len(detached)

    def unlink_parent(self, specialist: Dict[str, Any], parent_id: Any) -> int:
        parent = self._load_user(parent_id, "parent", "Parent not found")
        if parent.get("linkedSpecialist") != specialist["_id"]:
            raise ValidationError("Parent is not linked to this specialist")
        detached = self._unlink_edge(parent["_id"], specialist["_id"])
        self._notify(
            parent["_id"],
            "تم إلغاء الارتباط",
            f"Specialist {specialist['name']} ended the link with your account.",
            type="warning",
            data={"specialistId": specialist["_id"], "childIds": [c["_id"] for c in detached]},
        )
        return len(detached)

    # Specialist-side child management
    def set_duration(self, specialist: Dict[str, Any], child_id: Any, payload: DurationUpdate) -> Dict[str, Any]:
        child = load_child(self.db, child_id)
        if child.get("assignedSpecialist") != specialist["_id"]:
            raise AuthorizationError("Not authorized")
        updates = payload.model_dump(by_alias=True, exclude_none=True)
        if updates:
            updates["updatedAt"] = utc_now()
            child = self.children.find_one_and_update(
                {"_id": child["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
            )
        self._notify(
            child["parent"],
            "تحديث الخطة العلاجية",
            f"قام الأخصائي {specialist['name']} بتحديث إعدادات الجلسة لطفلك {child['name']}.",
            data={"childId": child["_id"], "specialistId": specialist["_id"]},
        )
        return child

    def my_children(self, specialist: Dict[str, Any]) -> List[Dict[str, Any]]:
        cursor = self.children.find({"assignedSpecialist": specialist["_id"]}).sort("createdAt", -1)
        return [populate_child(self.db, c) for c in cursor]

    def linked_parents(self, specialist: Dict[str, Any]) -> List[Dict[str, Any]]:
        return list(self.users.find({"role": "parent", "linkedSpecialist": specialist["_id"]}, PARENT_FIELDS))

    def search_parents(self, specialist: Dict[str, Any], email: Optional[str] = None,
                       query: Optional[str] = None) -> List[Dict[str, Any]]:
        criteria: Dict[str, Any] = {"role": "parent", "_id": {"$nin": specialist.get("linkedParents", [])}}
        if query and query.strip():
            criteria["$or"] = [{"email": _regex(query.lower())}, {"name": _regex(query)}]
        elif email and email.strip():
            criteria["email"] = _regex(email.lower())
        return list(self.users.find(criteria, PARENT_FIELDS).limit(20))

    def search_specialists(self, query: Optional[str] = None) -> List[Dict[str, Any]]:
        criteria: Dict[str, Any] = {"role": "specialist"}
        if query and query.strip():
            criteria["$or"] = [{"name": _regex(query)}, {"specialization": _regex(query)}]
        return list(self.users.find(criteria, SPECIALIST_FIELDS).limit(30))

    def search_centers(self, query: Optional[str] = None) -> List[Dict[str, Any]]:
        criteria: Dict[str, Any] = {"isActive": True}
        if query and query.strip():
            criteria["$or"] = [{"name": _regex(query)}, {"address": _regex(query)}, {"description": _regex(query)}]
        centers = list(self.db["center"].find(
            criteria, {"name": 1, "address": 1, "phone": 1, "email": 1, "description": 1, "specialists": 1}
        ).limit(30))
        for center in centers:
            center["specialists"] = list(self.users.find(
                {"_id": {"$in": center.get("specialists", [])}}, {"name": 1, "specialization": 1, "profilePhoto": 1}
            ))
        return centers


def get_linkage(db: Database = Depends(get_db), outbox: Outbox = Depends(get_outbox)) -> LinkageService:
    return LinkageService(db, outbox)


# Specialist routes
specialist_only = require_roles("specialist")


@specialists_router.get("/pending-requests")
def pending_requests(user: dict = Depends(specialist_only), service: LinkageService = Depends(get_linkage)):
    children = service.pending_children()
    return {"success": True, "count": len(children), "children": serialize(children)}


@specialists_router.post("/accept-child/{child_id}")
def accept_child(child_id: str, user: dict = Depends(specialist_only), service: LinkageService = Depends(get_linkage)):
    child = service.accept_child(user, child_id)
    return {"success": True, "message": "Child assignment accepted", "child": serialize(child)}


@specialists_router.post("/reject-child/{child_id}")
def reject_child(child_id: str, user: dict = Depends(specialist_only), service: LinkageService = Depends(get_linkage)):
    child = service.reject_child(user, child_id)
    return {"success": True, "message": "Child assignment rejected", "child": serialize(child)}


@specialists_router.post("/set-duration/{child_id}")
def set_duration(child_id: str, payload: DurationUpdate, user: dict = Depends(specialist_only),
                 service: LinkageService = Depends(get_linkage)):
    child = service.set_duration(user, child_id, payload)
    return {"success": True, "message": "Settings updated successfully", "child": serialize(child)}


@specialists_router.get("/search-parent")
def search_parent(email: Optional[str] = None, query: Optional[str] = None, user: dict = Depends(specialist_only),
                  service: LinkageService = Depends(get_linkage)):
    parents = service.search_parents(user, email=email, query=query)
    return {"success": True, "count": len(parents), "parents": serialize(parents)}


@specialists_router.post("/link-parent")
def link_parent(payload: LinkParentRequest, user: dict = Depends(specialist_only),
                service: LinkageService = Depends(get_linkage)):
    service.link_parent(user, payload.parent_id)
    return {"success": True, "message": "Parent linked successfully"}


@specialists_router.delete("/unlink-parent/{parent_id}")
def unlink_parent(parent_id: str, user: dict = Depends(specialist_only), service: LinkageService = Depends(get_linkage)):
    count = service.unlink_parent(user, parent_id)
    return {"success": True, "message": "Parent unlinked successfully", "unlinkedChildren": count}


@specialists_router.get("/parents")
def linked_parents(user: dict = Depends(specialist_only), service: LinkageService = Depends(get_linkage)):
    return {"success": True, "parents": serialize(service.linked_parents(user))}


@specialists_router.post("/create-parent", status_code=201)
def create_parent(payload: NewParent, user: dict = Depends(specialist_only),
                  service: LinkageService = Depends(get_linkage)):
    parent = service.create_parent(user, payload)
    return {"success": True, "message": "Parent account created successfully", "parent": user_summary(parent)}


@specialists_router.post("/create-child", status_code=201)
def create_child(payload: SpecialistChildCreate, user: dict = Depends(specialist_only),
                 service: LinkageService = Depends(get_linkage)):
    child = service.create_child(user, payload)
    return {"success": True, "message": "Child created successfully", "child": serialize(child)}


@specialists_router.get("/my-children")
def my_children(user: dict = Depends(specialist_only), service: LinkageService = Depends(get_linkage)):
    children = service.my_children(user)
    return {"success": True, "count": len(children), "children": serialize(children)}


@specialists_router.get("/link-requests")
def link_requests(status: Optional[str] = None, user: dict = Depends(specialist_only),
                  service: LinkageService = Depends(get_linkage)):
    requests = service.incoming_requests([user["_id"]], status)
    return {"success": True, "count": len(requests), "requests": serialize(requests)}


@specialists_router.post("/accept-link-request/{request_id}")
def accept_link_request(request_id: str, user: dict = Depends(specialist_only),
                        service: LinkageService = Depends(get_linkage)):
    request = service.accept_link_request(user, request_id)
    return {"success": True, "message": "Link request accepted successfully", "request": serialize(request)}


@specialists_router.post("/reject-link-request/{request_id}")
def reject_link_request(request_id: str, user: dict = Depends(specialist_only),
                        service: LinkageService = Depends(get_linkage)):
    request = service.reject_link_request(user, request_id)
    return {"success": True, "message": "Link request rejected", "request": serialize(request)}


@specialists_router.get("/pending-link-requests-count")
def pending_link_requests_count(user: dict = Depends(specialist_only), service: LinkageService = Depends(get_linkage)):
    return {"success": True, "count": service.pending_request_count(user)}


# Parent routes
parent_only = require_roles("parent")


@parents_router.get("/search-specialists")
def search_specialists(query: Optional[str] = None, user: dict = Depends(parent_only),
                       service: LinkageService = Depends(get_linkage)):
    specialists = service.search_specialists(query)
    return {"success": True, "count": len(specialists), "specialists": serialize(specialists)}


@parents_router.get("/search-centers")
def search_centers(query: Optional[str] = None, user: dict = Depends(parent_only),
                   service: LinkageService = Depends(get_linkage)):
    centers = service.search_centers(query)
    return {"success": True, "count": len(centers), "centers": serialize(centers)}


@parents_router.post("/send-link-request", status_code=201)
def send_link_request(payload: LinkRequestCreate, user: dict = Depends(parent_only),
                      service: LinkageService = Depends(get_linkage)):
    request = service.send_link_request(user, payload)
    return {"success": True, "message": "Link request sent successfully", "request": serialize(request)}


@parents_router.get("/my-requests")
def my_requests(user: dict = Depends(parent_only), service: LinkageService = Depends(get_linkage)):
    requests = service.sent_requests(user)
    return {"success": True, "count": len(requests), "requests": serialize(requests)}


@parents_router.delete("/cancel-request/{request_id}")
def cancel_request(request_id: str, user: dict = Depends(parent_only), service: LinkageService = Depends(get_linkage)):
    service.cancel_link_request(user, request_id)
    return {"success": True, "message": "Request cancelled successfully"}


@parents_router.get("/my-specialist")
def parent_specialist(user: dict = Depends(parent_only), db: Database = Depends(get_db)):
    if not user.get("linkedSpecialist"):
        raise NotFoundError("No specialist linked")
    specialist = db["user"].find_one({"_id": user["linkedSpecialist"]}, SPECIALIST_FIELDS)
    if not specialist:
        raise NotFoundError("No specialist linked")
    return {"success": True, "specialist": serialize(specialist)}


@parents_router.get("/notifications")
def parent_notifications(user: dict = Depends(parent_only), db: Database = Depends(get_db)):
    notifications = NotificationService(db).list_for(user["_id"])
    return {"success": True, "count": len(notifications), "notifications": serialize(notifications)}


@parents_router.put("/notifications/{notification_id}/read")
def parent_notification_read(notification_id: str, user: dict = Depends(parent_only), db: Database = Depends(get_db)):
    notification = NotificationService(db).mark_read(user["_id"], notification_id)
    return {"success": True, "message": "Notification marked as read", "notification": serialize(notification)}


@parents_router.get("/notifications/unread/count")
def parent_unread_count(user: dict = Depends(parent_only), db: Database = Depends(get_db)):
    return {"success": True, "count": NotificationService(db).unread_count(user["_id"])}


@parents_router.delete("/unlink-specialist")
def unlink_specialist(user: dict = Depends(parent_only), service: LinkageService = Depends(get_linkage)):
    count = service.unlink_specialist(user)
    return {"success": True, "message": "Unlinked from specialist successfully", "unlinkedChildren": count}
