# children.py
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, next_sequence, serialize, to_obj_id, utc_now
from errors import AuthorizationError, ConflictError, NotFoundError
from schemas import Child, ChildCreate, ChildUpdate, Progress, SessionStructure
from security import get_current_user, get_db, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/children", tags=["children"])

PARENT_FIELDS = {"name": 1, "email": 1, "phone": 1, "profilePhoto": 1}
SPECIALIST_FIELDS = {"name": 1, "email": 1, "phone": 1, "profilePhoto": 1, "specialization": 1, "center": 1}


def load_child(db: Database, child_id: Any) -> Dict[str, Any]:
    child = db["child"].find_one({"_id": to_obj_id(child_id)})
    if not child:
        raise NotFoundError("Child not found")
    return child


def in_open_queue(db: Database, child: Dict[str, Any]) -> bool:
    """Whether the child is waiting for any specialist rather than on a directed link request.

    A child is in the open queue only if it was put there by ``request_specialist``
    after every link request ever sent for it. A rejected or cancelled link request
    leaves the child ``pending`` but never places it in the queue.
    """
    requested_at = child.get("specialistRequestedAt")
    if child.get("specialistRequestStatus") != "pending" or child.get("assignedSpecialist") or not requested_at:
        return False
    if db["linkrequest"].find_one({"child": child["_id"], "status": "pending"}):
        return False
    latest = db["linkrequest"].find_one({"child": child["_id"]}, sort=[("createdAt", -1)])
    return latest is None or latest["createdAt"] <= requested_at


def can_access_child(user: Dict[str, Any], child: Dict[str, Any]) -> bool:
    role = user.get("role")
    if role in ("admin", "superadmin"):
        return True
    if role == "parent":
        return child.get("parent") == user["_id"]
    if role == "specialist":
        return child.get("assignedSpecialist") == user["_id"]
    return False


def ensure_child_access(user: Dict[str, Any], child: Dict[str, Any]) -> None:
    if not can_access_child(user, child):
        raise AuthorizationError("Not authorized to access this child")


def get_accessible_child(db: Database, user: Dict[str, Any], child_id: Any) -> Dict[str, Any]:
    child = load_child(db, child_id)
    ensure_child_access(user, child)
    return child


def populate_child(db: Database, child: Dict[str, Any]) -> Dict[str, Any]:
    """Inline the parent and specialist summaries the apps display next to a child."""
    result = dict(child)
    if child.get("parent"):
        result["parent"] = db["user"].find_one({"_id": child["parent"]}, PARENT_FIELDS) or child["parent"]
    if child.get("assignedSpecialist"):
        specialist = db["user"].find_one({"_id": child["assignedSpecialist"]}, SPECIALIST_FIELDS)
        if specialist and specialist.get("center"):
            specialist["center"] = db["center"].find_one({"_id": specialist["center"]}, {"name": 1, "nameEn": 1})
        result["assignedSpecialist"] = specialist or child["assignedSpecialist"]
    return result


class ChildService:
    def __init__(self, db: Database):
        self.db = db

    def create(self, parent_id, payload: ChildCreate, assigned_specialist=None) -> Dict[str, Any]:
        """Create a child with its empty progress ledger.

        A child created already assigned is stored approved in the same insert,
        so the assignment invariant holds from the first write.
        """
        child = Child(
            name=payload.name.strip(),
            age=payload.age,
            gender=payload.gender,
            parent=parent_id,
            assigned_specialist=assigned_specialist,
            specialist_request_status="approved" if assigned_specialist else "none",
            daily_play_duration=payload.daily_play_duration,
            session_structure=payload.session_structure or SessionStructure(),
            target_letters=payload.target_letters,
            target_words=payload.target_words,
            difficulty_level=payload.difficulty_level,
            child_id=f"CH-{next_sequence(self.db, 'childId'):04d}",
            avatar_id=payload.avatar_id or default_avatar(payload.gender),
        )
        doc = create_document(self.db, "child", child)
        create_document(self.db, "progress", Progress(child=doc["_id"]))
        logger.info("Created child %s for parent %s", doc["_id"], parent_id)
        return doc

    def list_for(self, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        role = user.get("role")
        if role == "parent":
            query = {"parent": user["_id"]}
        elif role in ("specialist", "admin"):
            query = {"assignedSpecialist": user["_id"]}
        else:
            raise AuthorizationError("Invalid user role")
        return [populate_child(self.db, c) for c in self.db["child"].find(query).sort("createdAt", -1)]

    def update(self, user: Dict[str, Any], child_id: Any, payload: ChildUpdate) -> Dict[str, Any]:
        child = get_accessible_child(self.db, user, child_id)
        # only therapy and demographic fields; ownership and assignment have their own paths
        updates = payload.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)
        if not updates:
            return child
        updates["updatedAt"] = utc_now()
        return self.db["child"].find_one_and_update(
            {"_id": child["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )

    def delete(self, parent: Dict[str, Any], child_id: Any) -> None:
        child = load_child(self.db, child_id)
        if child["parent"] != parent["_id"]:
            raise AuthorizationError("Not authorized")
        self.db["child"].delete_one({"_id": child["_id"]})
        if child.get("assignedSpecialist"):
            self.db["user"].update_one({"_id": child["assignedSpecialist"]}, {"$pull": {"assignedChildren": child["_id"]}})
        self.db["linkrequest"].delete_many({"child": child["_id"], "status": "pending"})
        logger.info("Parent %s deleted child %s", parent["_id"], child["_id"])

    def request_specialist(self, parent: Dict[str, Any], child_id: Any) -> Dict[str, Any]:
        """Put an unassigned child into the open pending queue."""
        child = load_child(self.db, child_id)
        if child["parent"] != parent["_id"]:
            raise AuthorizationError("Not authorized")
        if child.get("assignedSpecialist"):
            raise ConflictError("Child already has an assigned specialist")
        # a pending child left over from a rejected link request may re-enter the queue
        if in_open_queue(self.db, child) or self.db["linkrequest"].find_one({"child": child["_id"], "status": "pending"}):
            raise ConflictError("Specialist request already pending")

        updated = self.db["child"].find_one_and_update(
            {
                "_id": child["_id"],
                "assignedSpecialist": None,
                "specialistRequestStatus": child.get("specialistRequestStatus"),
                "specialistRequestedAt": child.get("specialistRequestedAt"),
            },
            {"$set": {"specialistRequestStatus": "pending", "specialistRequestedAt": utc_now(), "updatedAt": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            current = load_child(self.db, child["_id"])
            if current.get("assignedSpecialist"):
                raise ConflictError("Child already has an assigned specialist")
            raise ConflictError("Specialist request already pending")
        return updated


def default_avatar(gender: Optional[str]) -> str:
    return "avatar_02" if gender == "female" else "avatar_01"


# Routes
@router.post("", status_code=201)
def create_child(payload: ChildCreate, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if user.get("role") != "parent":
        raise AuthorizationError("Only parents can create child profiles")
    child = ChildService(db).create(user["_id"], payload)
    return {"success": True, "child": serialize(child)}


@router.get("")
def list_children(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    children = ChildService(db).list_for(user)
    return {"success": True, "count": len(children), "children": serialize(children)}


@router.get("/{child_id}")
def get_child(child_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    child = get_accessible_child(db, user, child_id)
    return {"success": True, "child": serialize(populate_child(db, child))}


@router.put("/{child_id}")
def update_child(child_id: str, payload: ChildUpdate, user: dict = Depends(get_current_user),
                 db: Database = Depends(get_db)):
    child = ChildService(db).update(user, child_id, payload)
    return {"success": True, "child": serialize(child)}


@router.delete("/{child_id}")
def delete_child(child_id: str, user: dict = Depends(require_roles("parent")), db: Database = Depends(get_db)):
    ChildService(db).delete(user, child_id)
    return {"success": True, "message": "Child deleted successfully"}


@router.post("/{child_id}/request-specialist")
def request_specialist(child_id: str, user: dict = Depends(require_roles("parent")), db: Database = Depends(get_db)):
    child = ChildService(db).request_specialist(user, child_id)
    return {"success": True, "message": "Specialist request submitted", "child": serialize(child)}
