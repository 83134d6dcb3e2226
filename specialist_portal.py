# specialist_portal.py
from typing import Optional

from fastapi import APIRouter, Depends
from pymongo.database import Database

from children import load_child
from content import ContentStore
from database import serialize
from errors import AuthorizationError, ValidationError
from schemas import ContentCreate
from security import get_db, require_roles

router = APIRouter(prefix="/api/specialist", tags=["specialist-portal"])

specialist_only = require_roles("specialist")


def _assigned_child(db: Database, specialist: dict, child_id, message: str) -> dict:
    child = load_child(db, child_id)
    if child.get("assignedSpecialist") != specialist["_id"]:
        raise AuthorizationError(message)
    return child


@router.get("/dashboard")
def dashboard(user: dict = Depends(specialist_only), db: Database = Depends(get_db)):
    children = list(db["child"].find({"assignedSpecialist": user["_id"]}).sort("createdAt", -1))
    child_ids = [c["_id"] for c in children]
    sessions = sum(
        len(p.get("sessions") or []) for p in db["progress"].find({"child": {"$in": child_ids}}, {"sessions": 1})
    ) if child_ids else 0

    recent = children[:5]
    parent_ids = list({c["parent"] for c in recent if c.get("parent")})
    parents = {
        p["_id"]: p for p in db["user"].find(
            {"_id": {"$in": parent_ids}}, {"name": 1, "email": 1, "phone": 1, "profilePhoto": 1, "staffId": 1}
        )
    }
    for child in recent:
        child["parent"] = parents.get(child.get("parent"), child.get("parent"))

    stats = {
        "children": len(children),
        "pendingRequests": db["linkrequest"].count_documents({"to": user["_id"], "status": "pending"}),
        "parents": len(user.get("linkedParents") or []),
        "sessions": sessions,
    }
    return {"success": True, "stats": stats, "recentChildren": serialize(recent)}


@router.get("/words")
def words_management(childId: Optional[str] = None, contentType: Optional[str] = None,
                     difficulty: Optional[str] = None, user: dict = Depends(specialist_only),
                     db: Database = Depends(get_db)):
    if not childId:
        children = list(db["child"].find({"assignedSpecialist": user["_id"]}, {"name": 1, "age": 1, "parent": 1}))
        for child in children:
            child["parent"] = db["user"].find_one({"_id": child.get("parent")}, {"name": 1}) or child.get("parent")
        return {"success": True, "mode": "select_child", "children": serialize(children)}

    child = _assigned_child(db, user, childId, "Not authorized to access this child")
    store = ContentStore(db)
    words = store.list_items(child["_id"], "word", difficulty) if contentType in (None, "word") else []
    letters = store.list_items(child["_id"], "letter", difficulty) if contentType in (None, "letter") else []
    return {
        "success": True,
        "mode": "manage_child",
        "child": serialize({"_id": child["_id"], "name": child["name"], "age": child.get("age")}),
        "words": serialize(words),
        "letters": serialize(letters),
        "contentType": contentType or "word",
        "difficulty": difficulty,
    }


@router.post("/content/add", status_code=201)
def add_content(payload: ContentCreate, user: dict = Depends(specialist_only), db: Database = Depends(get_db)):
    if not payload.text or not payload.content_type or not payload.child_id:
        raise ValidationError("Text, content type, and child ID are required")
    child = _assigned_child(db, user, payload.child_id, "Not authorized to add content for this child")
    content = ContentStore(db).add_item(child["_id"], payload.text, payload.content_type, payload.difficulty,
                                        created_by=user["_id"])
    label = "Word" if payload.content_type == "word" else "Letter"
    return {"success": True, "message": f"{label} added successfully", "content": serialize(content)}


@router.post("/content/delete/{content_id}")
def delete_content(content_id: str, user: dict = Depends(specialist_only), db: Database = Depends(get_db)):
    store = ContentStore(db)
    owner = store.owner_of(content_id)
    _assigned_child(db, user, owner["child"], "Not authorized to delete this content")
    store.delete_item(content_id)
    return {"success": True, "message": "Content deleted successfully"}
