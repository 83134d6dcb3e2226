# content.py
"""
Per-child word and letter library.

Each child owns exactly one ``exercise`` document with ``kind="content"``
holding two embedded lists, ``contentWords`` and ``contentLetters``. Items
are addressed by their own ``_id`` inside those lists. Writes are guarded by
a ``version`` counter so two concurrent adds cannot both pass the duplicate
check and append the same text.
"""
import logging
from typing import Any, Dict, List, Optional

from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, File, Form, UploadFile
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from children import get_accessible_child
from database import EPOCH, serialize, to_obj_id, utc_now
from errors import ConflictError, NotFoundError, ValidationError
from schemas import DIFFICULTIES, ContentCreate, ContentItem
from security import get_current_user, get_db
from uploads import save_image

logger = logging.getLogger(__name__)

content_router = APIRouter(prefix="/api/content", tags=["content"])
words_router = APIRouter(prefix="/api/words", tags=["words"])

CONTENT_TYPES = ("word", "letter")
FIELDS = {"word": "contentWords", "letter": "contentLetters"}
MAX_LENGTH = {"letter": 2, "word": 20}
MAX_WRITE_ATTEMPTS = 5


def legacy_item(item: Dict[str, Any], content_type: str, child: Any) -> Dict[str, Any]:
    """Flat per-item view the client apps were built against."""
    return {
        "_id": item.get("_id"),
        "text": item.get("text"),
        "contentType": content_type,
        "difficulty": item.get("difficulty"),
        "image": item.get("image"),
        "child": child,
        "createdBy": item.get("createdBy"),
        "createdAt": item.get("createdAt"),
    }


def _newest_first(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(items, key=lambda i: i.get("createdAt") or EPOCH, reverse=True)


def _difficulty_ok(difficulty: Optional[str]):
    # an unknown level is treated as no filter
    if difficulty not in DIFFICULTIES:
        return lambda item: True
    return lambda item: item.get("difficulty") == difficulty


def _content_types(content_type: Optional[str]):
    return (content_type,) if content_type in CONTENT_TYPES else CONTENT_TYPES


def validate_item(text: Any, content_type: Any, difficulty: Any) -> tuple:
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Text is required")
    if content_type not in CONTENT_TYPES:
        raise ValidationError('Content type must be either "word" or "letter"')
    if difficulty is None or difficulty == "":
        difficulty = "easy"
    if difficulty not in DIFFICULTIES:
        raise ValidationError("Difficulty must be easy, medium, or hard")
    trimmed = text.strip()
    if len(trimmed) > MAX_LENGTH[content_type]:
        if content_type == "letter":
            raise ValidationError("Letter with vowel must not exceed 2 characters")
        raise ValidationError("Word must not exceed 20 characters")
    return trimmed, difficulty


class ContentStore:
    def __init__(self, db: Database):
        self.collection = db["exercise"]

    def find(self, child_id: ObjectId) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"child": child_id, "kind": "content"})

    def get_or_create(self, child_id: Any) -> Dict[str, Any]:
        child_id = to_obj_id(child_id)
        query = {"child": child_id, "kind": "content"}
        now = utc_now()
        try:
            return self.collection.find_one_and_update(
                query,
                {"$setOnInsert": {
                    "active": True,
                    "contentWords": [],
                    "contentLetters": [],
                    "version": 0,
                    "createdAt": now,
                    "updatedAt": now,
                }},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # another request inserted first; the unique index kept it to one document
            doc = self.collection.find_one(query)
            if doc is None:
                raise
            return doc

    def add_item(self, child_id: Any, text: Any, content_type: Any, difficulty: Any = None,
                 created_by: Any = None, image: Optional[str] = None) -> Dict[str, Any]:
        trimmed, difficulty = validate_item(text, content_type, difficulty)
        field = FIELDS[content_type]
        label = "Word" if content_type == "word" else "Letter"

        for _ in range(MAX_WRITE_ATTEMPTS):
            doc = self.get_or_create(child_id)
            if any(existing.get("text") == trimmed for existing in doc.get(field, [])):
                raise ConflictError(f"{label} already exists for this child")

            item = ContentItem(text=trimmed, difficulty=difficulty, created_by=created_by,
                               image=image or "default-word.png").model_dump(by_alias=True)
            result = self.collection.update_one(
                {"_id": doc["_id"], "version": doc.get("version")},
                {"$push": {field: item}, "$inc": {"version": 1}, "$set": {"updatedAt": utc_now()}},
            )
            if result.modified_count:
                return legacy_item(item, content_type, doc["child"])
            logger.info("Content document for child %s changed underneath, retrying", doc["child"])
        raise ConflictError("Content is being modified, please retry")

    def owner_of(self, content_id: Any) -> Dict[str, Any]:
        oid = to_obj_id(content_id)
        doc = self.collection.find_one({
            "kind": "content",
            "$or": [{"contentWords._id": oid}, {"contentLetters._id": oid}],
        })
        if not doc:
            raise NotFoundError("Content not found")
        return doc

    def delete_item(self, content_id: Any) -> ObjectId:
        """Remove an item from whichever list holds it and return the owning child id."""
        oid = to_obj_id(content_id)
        doc = self.owner_of(oid)
        self.collection.update_one(
            {"_id": doc["_id"]},
            {
                "$pull": {"contentWords": {"_id": oid}, "contentLetters": {"_id": oid}},
                "$inc": {"version": 1},
                "$set": {"updatedAt": utc_now()},
            },
        )
        return doc["child"]

    def list_items(self, child_id: Any, content_type: Optional[str] = None,
                   difficulty: Optional[str] = None) -> List[Dict[str, Any]]:
        child_id = to_obj_id(child_id)
        doc = self.find(child_id) or {}
        keep = _difficulty_ok(difficulty)
        items = []
        for kind in _content_types(content_type):
            items.extend(legacy_item(i, kind, child_id) for i in doc.get(FIELDS[kind], []) if keep(i))
        return _newest_first(items)

    def list_all(self, content_type: Optional[str] = None, difficulty: Optional[str] = None,
                 child_ids: Optional[List[ObjectId]] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"kind": "content"}
        if child_ids is not None:
            query["child"] = {"$in": child_ids}
        keep = _difficulty_ok(difficulty)
        children = self.collection.database["child"]
        items = []
        for doc in self.collection.find(query).sort("updatedAt", -1):
            child = children.find_one({"_id": doc["child"]}, {"name": 1, "age": 1}) or doc["child"]
            for kind in _content_types(content_type):
                items.extend(legacy_item(i, kind, child) for i in doc.get(FIELDS[kind], []) if keep(i))
        return _newest_first(items)


def visible_child_ids(db: Database, user: Dict[str, Any], child_id: Optional[str] = None) -> Optional[List[ObjectId]]:
    """Children whose content the user may list; None means every child."""
    if child_id:
        return [get_accessible_child(db, user, child_id)["_id"]]
    role = user.get("role")
    if role in ("admin", "superadmin"):
        return None
    field = "parent" if role == "parent" else "assignedSpecialist"
    return [c["_id"] for c in db["child"].find({field: user["_id"]}, {"_id": 1})]


def ensure_content_access(db: Database, user: Dict[str, Any], content_id: Any) -> None:
    owner = ContentStore(db).owner_of(content_id)
    get_accessible_child(db, user, owner["child"])


# /api/content
@content_router.get("/child/{child_id}")
def child_content(child_id: str, contentType: Optional[str] = None, difficulty: Optional[str] = None,
                  user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    child = get_accessible_child(db, user, child_id)
    content = ContentStore(db).list_items(child["_id"], contentType, difficulty)
    return {"success": True, "content": serialize(content), "count": len(content)}


@content_router.get("/words/child/{child_id}")
def child_words(child_id: str, difficulty: Optional[str] = None,
                user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    child = get_accessible_child(db, user, child_id)
    words = ContentStore(db).list_items(child["_id"], "word", difficulty)
    return {"success": True, "words": serialize(words), "count": len(words)}


@content_router.get("/letters/child/{child_id}")
def child_letters(child_id: str, difficulty: Optional[str] = None,
                  user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    child = get_accessible_child(db, user, child_id)
    letters = ContentStore(db).list_items(child["_id"], "letter", difficulty)
    return {"success": True, "letters": serialize(letters), "count": len(letters)}


@content_router.post("/add", status_code=201)
def add_content(payload: ContentCreate, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if not payload.text or not payload.content_type or not payload.child_id:
        raise ValidationError("Text, content type, and child ID are required")
    child = get_accessible_child(db, user, payload.child_id)
    content = ContentStore(db).add_item(child["_id"], payload.text, payload.content_type, payload.difficulty,
                                        created_by=user["_id"])
    label = "Word" if payload.content_type == "word" else "Letter"
    return {"success": True, "message": f"{label} added successfully", "content": serialize(content)}


@content_router.delete("/delete/{content_id}")
def delete_content(content_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_content_access(db, user, content_id)
    ContentStore(db).delete_item(content_id)
    return {"success": True, "message": "Content deleted successfully"}


@content_router.get("/all")
def all_content(contentType: Optional[str] = None, difficulty: Optional[str] = None, childId: Optional[str] = None,
                user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    content = ContentStore(db).list_all(contentType, difficulty, visible_child_ids(db, user, childId))
    return {"success": True, "content": serialize(content), "count": len(content)}


# /api/words
@words_router.post("", status_code=201)
def create_word(
    text: Optional[str] = Form(None),
    contentType: Optional[str] = Form(None),
    difficulty: Optional[str] = Form(None),
    childId: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    if not text or not childId:
        raise ValidationError("Text and Child ID are required")
    child = get_accessible_child(db, user, childId)
    store = ContentStore(db)
    content_type = contentType or "word"
    validate_item(text, content_type, difficulty)
    image_path = save_image(image, "word") if image is not None and image.filename else None
    word = store.add_item(child["_id"], text, content_type, difficulty, created_by=user["_id"], image=image_path)
    return {"success": True, "word": serialize(word)}


@words_router.delete("/{content_id}")
def delete_word(content_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_content_access(db, user, content_id)
    child_id = ContentStore(db).delete_item(content_id)
    return {"success": True, "message": "Word deleted", "childId": str(child_id)}


@words_router.get("/child/{child_id}")
def words_for_child(child_id: str, contentType: Optional[str] = None, difficulty: Optional[str] = None,
                    user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    child = get_accessible_child(db, user, child_id)
    store = ContentStore(db)
    words = store.list_items(child["_id"], "word", difficulty) if contentType in (None, "word") else []
    letters = store.list_items(child["_id"], "letter", difficulty) if contentType in (None, "letter") else []
    return {"success": True, "words": serialize(words), "letters": serialize(letters)}


@words_router.get("")
def all_words(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    words = ContentStore(db).list_all(child_ids=visible_child_ids(db, user))
    return {"success": True, "words": serialize(words)}
