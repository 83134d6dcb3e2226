# progress.py
"""
Per-child progress ledger.

One ``progress`` document per child holds an append-only list of sessions
and ``overallStats``, which is always recomputed from the full session list
in the same write that appends to it. Nothing else writes ``overallStats``.
"""
import logging
from collections import defaultdict
from io import BytesIO
from typing import Any, Dict, Iterable, List, Optional

from fastapi import APIRouter, Depends, Response
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from children import get_accessible_child
from database import EPOCH, serialize, utc_now
from errors import ConflictError
from notifications import Outbox, get_outbox
from schemas import OverallStats, Session, SessionPayload, SyncPayload
from security import get_current_user, get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/progress", tags=["progress"])

DEFAULT_ATTEMPT_LIMIT = 50
MAX_ATTEMPT_LIMIT = 200
RECENT_SESSIONS = 30
MASTERY_MIN_ATTEMPTS = 3
MASTERED_RATE = 80
CHALLENGING_RATE = 50
MAX_WRITE_ATTEMPTS = 5


def _targets(sessions: Iterable[Dict[str, Any]], key: str):
    counts = defaultdict(lambda: [0, 0])
    for session in sessions:
        for attempt in session.get("attempts") or []:
            target = attempt.get(key)
            if not target:
                continue
            counts[target][0] += 1
            if attempt.get("success"):
                counts[target][1] += 1
    mastered, challenging = [], []
    for target, (total, ok) in counts.items():
        if total < MASTERY_MIN_ATTEMPTS:
            continue
        rate = 100 * ok / total
        if rate >= MASTERED_RATE:
            mastered.append(target)
        elif rate < CHALLENGING_RATE:
            challenging.append(target)
    return sorted(mastered), sorted(challenging)


def compute_overall_stats(sessions: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Fold stored sessions into the overallStats rollup."""
    total_attempts = sum(s.get("totalAttempts") or 0 for s in sessions)
    successful = sum(s.get("successfulAttempts") or 0 for s in sessions)
    mastered_letters, challenging_letters = _targets(sessions, "letter")
    mastered_words, challenging_words = _targets(sessions, "word")
    stats = OverallStats(
        total_sessions=len(sessions),
        total_play_time=sum(s.get("duration") or 0 for s in sessions),
        total_attempts=total_attempts,
        success_rate=100 * successful / total_attempts if total_attempts else 0,
        average_score=sum(s.get("averageScore") or 0 for s in sessions) / len(sessions) if sessions else 0,
        mastered_letters=mastered_letters,
        mastered_words=mastered_words,
        challenging_letters=challenging_letters,
        challenging_words=challenging_words,
    )
    return stats.model_dump(by_alias=True)


def clamp_limit(raw: Any) -> int:
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_ATTEMPT_LIMIT
    if limit < 1:
        return DEFAULT_ATTEMPT_LIMIT
    return min(limit, MAX_ATTEMPT_LIMIT)


def session_summary(session: Dict[str, Any]) -> Dict[str, Any]:
    total = session.get("totalAttempts") or 0
    ok = session.get("successfulAttempts") or 0
    return {
        "sessionDate": session.get("sessionDate"),
        "duration": session.get("duration") or 0,
        "totalAttempts": total,
        "successfulAttempts": ok,
        "failedAttempts": session.get("failedAttempts") or 0,
        "averageScore": session.get("averageScore") or 0,
        "successRate": 100 * ok / total if total else 0,
    }


def flatten_attempts(sessions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    attempts = []
    for session in sessions:
        for a in session.get("attempts") or []:
            attempts.append({
                "sessionDate": session.get("sessionDate"),
                "timestamp": a.get("timestamp"),
                "target": a.get("word") or a.get("letter") or a.get("vowel") or "",
                "letter": a.get("letter"),
                "word": a.get("word"),
                "vowel": a.get("vowel"),
                "success": bool(a.get("success")),
                "score": a.get("score"),
                "pronunciationScore": a.get("pronunciationScore"),
                "accuracyScore": a.get("accuracyScore"),
                "fluencyScore": a.get("fluencyScore"),
                "completenessScore": a.get("completenessScore"),
                "recognizedText": a.get("recognizedText"),
                "referenceText": a.get("referenceText"),
                "analysisSource": a.get("analysisSource"),
            })
    attempts.sort(key=lambda a: a["timestamp"] or EPOCH, reverse=True)
    return attempts


class ProgressLedger:
    def __init__(self, db: Database, outbox: Optional[Outbox] = None):
        self.db = db
        self.collection = db["progress"]
        self.outbox = outbox

    def find(self, child_id) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"child": child_id})

    def get_or_create(self, child_id) -> Dict[str, Any]:
        now = utc_now()
        try:
            return self.collection.find_one_and_update(
                {"child": child_id},
                {"$setOnInsert": {
                    "sessions": [],
                    "overallStats": compute_overall_stats([]),
                    "lastSyncDate": None,
                    "version": 0,
                    "createdAt": now,
                    "updatedAt": now,
                }},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            doc = self.find(child_id)
            if doc is None:
                raise
            return doc

    def append_sessions(self, child_id, sessions: List[Session]) -> Dict[str, Any]:
        """Append a batch and recompute the rollup once, in a single versioned write."""
        new_sessions = [s.model_dump(by_alias=True) for s in sessions]
        for _ in range(MAX_WRITE_ATTEMPTS):
            doc = self.get_or_create(child_id)
            stats = compute_overall_stats((doc.get("sessions") or []) + new_sessions)
            now = utc_now()
            updated = self.collection.find_one_and_update(
                {"_id": doc["_id"], "version": doc.get("version")},
                {
                    "$push": {"sessions": {"$each": new_sessions}},
                    "$set": {"overallStats": stats, "lastSyncDate": now, "updatedAt": now},
                    "$inc": {"version": 1},
                },
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                return updated
            logger.info("Progress for child %s changed underneath, retrying", child_id)
        raise ConflictError("Progress is being updated, please retry")

    def append_session(self, child_id, session: Session) -> Dict[str, Any]:
        return self.append_sessions(child_id, [session])

    def sync(self, child: Dict[str, Any], sessions: List[Session]) -> Dict[str, Any]:
        progress = self.append_sessions(child["_id"], sessions)
        if self.outbox is not None:
            self.outbox.notify(
                child["parent"],
                "جلسة جديدة مكتملة",
                f"أكمل طفلك {child['name']} جلسة تدريبية جديدة بنجاح!",
                type="success",
                data={"childId": child["_id"], "progressId": progress["_id"]},
            )
            self.outbox.publish(
                [child["parent"], child.get("assignedSpecialist")],
                "progress_updated",
                {"childId": child["_id"], "timestamp": progress["lastSyncDate"]},
            )
        return progress

    def stats(self, child_id) -> Dict[str, Any]:
        doc = self.find(child_id)
        if not doc:
            return compute_overall_stats([])
        return doc.get("overallStats") or compute_overall_stats([])

    def recent_sessions(self, child_id, count: int = RECENT_SESSIONS) -> List[Dict[str, Any]]:
        doc = self.find(child_id) or {}
        return [session_summary(s) for s in (doc.get("sessions") or [])[-count:]]

    def attempts(self, child_id, limit: Any = None) -> List[Dict[str, Any]]:
        doc = self.find(child_id) or {}
        return flatten_attempts(doc.get("sessions") or [])[:clamp_limit(limit)]


def render_report(child: Dict[str, Any], stats: Dict[str, Any], sessions: List[Dict[str, Any]]) -> bytes:
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=A4)
    width, height = A4

    c.setFont("Helvetica-Bold", 16)
    c.drawString(20 * mm, height - 20 * mm, "Progress Report")

    c.setFont("Helvetica", 10)
    c.drawString(20 * mm, height - 27 * mm, f"Child ID: {child.get('childId') or child['_id']}")
    c.drawString(20 * mm, height - 32 * mm, f"Total Sessions: {stats.get('totalSessions', 0)}")
    c.drawString(20 * mm, height - 37 * mm, f"Total Play Time: {stats.get('totalPlayTime', 0):.0f} min")
    c.drawString(20 * mm, height - 42 * mm, f"Success Rate: {stats.get('successRate', 0):.1f}%")
    c.drawString(20 * mm, height - 47 * mm, f"Average Score: {stats.get('averageScore', 0):.1f}")

    y = height - 60 * mm
    c.setFont("Helvetica-Bold", 12)
    c.drawString(20 * mm, y, "Recent Sessions")
    y -= 6 * mm
    c.setFont("Helvetica", 10)

    for s in reversed(sessions):
        if y < 20 * mm:
            c.showPage()
            y = height - 20 * mm
        date = s["sessionDate"].strftime("%Y-%m-%d") if s.get("sessionDate") else "-"
        line = (f"- {date} | {s['duration']:.0f} min | Attempts: {s['totalAttempts']} | "
                f"Success: {s['successRate']:.0f}% | Score: {s['averageScore']:.1f}")
        c.drawString(20 * mm, y, line)
        y -= 6 * mm

    c.showPage()
    c.save()
    pdf = buffer.getvalue()
    buffer.close()
    return pdf


# Routes
@router.get("/child/{child_id}")
def child_progress(child_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    child = get_accessible_child(db, user, child_id)
    progress = ProgressLedger(db).get_or_create(child["_id"])
    progress["child"] = child
    return {"success": True, "progress": serialize(progress)}


@router.post("/session")
def add_session(payload: SessionPayload, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    child = get_accessible_child(db, user, payload.child_id)
    progress = ProgressLedger(db).append_session(child["_id"], payload.session_data)
    return {"success": True, "progress": serialize(progress)}


@router.post("/sync")
def sync_progress(payload: SyncPayload, user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                  outbox: Outbox = Depends(get_outbox)):
    child = get_accessible_child(db, user, payload.child_id)
    progress = ProgressLedger(db, outbox).sync(child, payload.sessions)
    return {"success": True, "message": "Progress synced successfully", "progress": serialize(progress)}


@router.get("/stats/{child_id}")
def progress_stats(child_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    child = get_accessible_child(db, user, child_id)
    return {"success": True, "stats": serialize(ProgressLedger(db).stats(child["_id"]))}


@router.get("/sessions/{child_id}")
def progress_sessions(child_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    child = get_accessible_child(db, user, child_id)
    return {"success": True, "sessions": serialize(ProgressLedger(db).recent_sessions(child["_id"]))}


@router.get("/attempts/{child_id}")
def progress_attempts(child_id: str, limit: Optional[str] = None, user: dict = Depends(get_current_user),
                      db: Database = Depends(get_db)):
    child = get_accessible_child(db, user, child_id)
    return {"success": True, "attempts": serialize(ProgressLedger(db).attempts(child["_id"], limit))}


@router.get("/report/{child_id}.pdf")
def progress_report(child_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    child = get_accessible_child(db, user, child_id)
    ledger = ProgressLedger(db)
    pdf = render_report(child, ledger.stats(child["_id"]), ledger.recent_sessions(child["_id"]))
    headers = {"Content-Disposition": f"inline; filename=progress_{child_id}.pdf"}
    return Response(content=pdf, media_type="application/pdf", headers=headers)
