# exercises.py
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pymongo import ReturnDocument
from pymongo.database import Database

from children import get_accessible_child, load_child
from database import create_document, serialize, to_obj_id, utc_now
from errors import AuthorizationError, NotFoundError
from schemas import Exercise, PlanCreate, PlanUpdate
from security import get_current_user, get_db, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/exercises", tags=["exercises"])

# fatha, kasra, damma, sukun
VOWEL_MARKS = ("َ", "ِ", "ُ", "ْ")

ARTICULATION_POINTS = [
    ("ب", "الشفتان"),
    ("ت", "طرف اللسان مع أصول الثنايا العليا"),
    ("ث", "طرف اللسان مع أطراف الثنايا العليا"),
    ("ج", "وسط اللسان مع الحنك الصلب"),
    ("ح", "وسط الحلق"),
    ("خ", "أدنى الحلق"),
    ("د", "طرف اللسان مع أصول الثنايا العليا"),
    ("ذ", "طرف اللسان مع أطراف الثنايا العليا"),
    ("ر", "طرف اللسان مع اللثة العليا"),
    ("ز", "طرف اللسان مع اللثة العليا"),
    ("س", "طرف اللسان مع اللثة العليا"),
    ("ش", "وسط اللسان مع الحنك الصلب"),
    ("ص", "طرف اللسان مع اللثة العليا"),
    ("ض", "حافة اللسان مع الأضراس العليا"),
    ("ط", "طرف اللسان مع أصول الثنايا العليا"),
    ("ظ", "طرف اللسان مع أطراف الثنايا العليا"),
    ("ع", "وسط الحلق"),
    ("غ", "أدنى الحلق"),
    ("ف", "الشفة السفلى مع الثنايا العليا"),
    ("ق", "أقصى اللسان مع الحنك الرخو"),
    ("ك", "أقصى اللسان مع الحنك الرخو"),
    ("ل", "حافة اللسان مع اللثة العليا"),
    ("م", "الشفتان"),
    ("ن", "طرف اللسان مع اللثة العليا"),
    ("ه", "أقصى الحلق"),
    ("و", "الشفتان"),
    ("ي", "وسط اللسان مع الحنك الصلب"),
]

DEFAULT_LETTERS = [
    {"letter": letter, "articulationPoint": point, "vowels": [letter + mark for mark in VOWEL_MARKS]}
    for letter, point in ARTICULATION_POINTS
]

# Libyan dialect starter vocabulary
DEFAULT_WORDS = [
    {"word": "فرحان", "translation": "Happy", "category": "emotions"},
    {"word": "حزين", "translation": "Sad", "category": "emotions"},
    {"word": "خايف", "translation": "Scared", "category": "emotions"},
    {"word": "زعلان", "translation": "Upset", "category": "emotions"},
    {"word": "جعان", "translation": "Hungry", "category": "needs"},
    {"word": "عطشان", "translation": "Thirsty", "category": "needs"},
    {"word": "نعسان", "translation": "Sleepy", "category": "needs"},
    {"word": "تعبان", "translation": "Tired", "category": "needs"},
    {"word": "ماشي", "translation": "Walking", "category": "actions"},
    {"word": "راكض", "translation": "Running", "category": "actions"},
    {"word": "قاعد", "translation": "Sitting", "category": "actions"},
    {"word": "واقف", "translation": "Standing", "category": "actions"},
    {"word": "بابا", "translation": "Dad", "category": "family"},
    {"word": "ماما", "translation": "Mom", "category": "family"},
    {"word": "خويا", "translation": "Brother", "category": "family"},
    {"word": "ختي", "translation": "Sister", "category": "family"},
]


class PlanService:
    def __init__(self, db: Database):
        self.db = db
        self.collection = db["exercise"]

    def create(self, specialist: Dict[str, Any], payload: PlanCreate) -> Dict[str, Any]:
        child = load_child(self.db, payload.child_id)
        if child.get("assignedSpecialist") != specialist["_id"]:
            raise AuthorizationError("Not authorized")

        plan = Exercise(
            child=child["_id"],
            kind="plan",
            specialist=specialist["_id"],
            letters=payload.letters or [],
            words=payload.words or [],
            target_duration=payload.target_duration,
            end_date=payload.end_date,
        )
        doc = create_document(self.db, "exercise", plan)

        targets: Dict[str, Any] = {}
        if payload.letters is not None:
            targets["targetLetters"] = [l.letter for l in payload.letters]
        if payload.words is not None:
            targets["targetWords"] = [w.word for w in payload.words]
        if targets:
            targets["updatedAt"] = utc_now()
            self.db["child"].update_one({"_id": child["_id"]}, {"$set": targets})
        logger.info("Specialist %s created plan %s for child %s", specialist["_id"], doc["_id"], child["_id"])
        return doc

    def active_for(self, child_id) -> List[Dict[str, Any]]:
        plans = list(self.collection.find({"child": child_id, "kind": "plan", "active": True}).sort("createdAt", -1))
        for plan in plans:
            if plan.get("specialist"):
                plan["specialist"] = self.db["user"].find_one(
                    {"_id": plan["specialist"]}, {"name": 1, "specialization": 1}
                ) or plan["specialist"]
        return plans

    def _owned(self, specialist: Dict[str, Any], plan_id: Any) -> Dict[str, Any]:
        plan = self.collection.find_one({"_id": to_obj_id(plan_id), "kind": "plan"})
        if not plan:
            raise NotFoundError("Exercise not found")
        if plan.get("specialist") != specialist["_id"]:
            raise AuthorizationError("Not authorized")
        return plan

    def update(self, specialist: Dict[str, Any], plan_id: Any, payload: PlanUpdate) -> Dict[str, Any]:
        plan = self._owned(specialist, plan_id)
        updates = payload.model_dump(by_alias=True, exclude_unset=True)
        if not updates:
            return plan
        updates["updatedAt"] = utc_now()
        return self.collection.find_one_and_update(
            {"_id": plan["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )

    def deactivate(self, specialist: Dict[str, Any], plan_id: Any) -> None:
        plan = self._owned(specialist, plan_id)
        self.collection.update_one({"_id": plan["_id"]}, {"$set": {"active": False, "updatedAt": utc_now()}})


@router.post("", status_code=201)
def create_plan(payload: PlanCreate, user: dict = Depends(require_roles("specialist")), db: Database = Depends(get_db)):
    plan = PlanService(db).create(user, payload)
    return {"success": True, "exercise": serialize(plan)}


@router.get("/child/{child_id}")
def child_plans(child_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    child = get_accessible_child(db, user, child_id)
    plans = PlanService(db).active_for(child["_id"])
    return {"success": True, "count": len(plans), "exercises": serialize(plans)}


@router.get("/letters/default")
def default_letters():
    return {"success": True, "letters": DEFAULT_LETTERS}


@router.get("/words/default")
def default_words():
    return {"success": True, "words": DEFAULT_WORDS}


@router.put("/{plan_id}")
def update_plan(plan_id: str, payload: PlanUpdate, user: dict = Depends(require_roles("specialist")),
                db: Database = Depends(get_db)):
    plan = PlanService(db).update(user, plan_id, payload)
    return {"success": True, "exercise": serialize(plan)}


@router.delete("/{plan_id}")
def deactivate_plan(plan_id: str, user: dict = Depends(require_roles("specialist")), db: Database = Depends(get_db)):
    PlanService(db).deactivate(user, plan_id)
    return {"success": True, "message": "Exercise deactivated"}
