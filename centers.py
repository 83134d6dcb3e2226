# centers.py
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pymongo import ReturnDocument
from pymongo.database import Database

from accounts import UserService
from database import create_document, serialize, to_obj_id, utc_now
from errors import AuthorizationError, NotFoundError, ValidationError
from linkage import LinkageService, get_linkage
from schemas import AssignChildRequest, Center, CenterCreate, CenterUpdate, StaffCreate, StaffUpdate
from security import get_db, public_user, require_roles

logger = logging.getLogger(__name__)

admin_router = APIRouter(prefix="/api/admin", tags=["admin"])
superadmin_router = APIRouter(prefix="/api/superadmin", tags=["superadmin"])

admin_only = require_roles("admin")
superadmin_only = require_roles("superadmin")

STAFF_FIELDS = {"name": 1, "email": 1, "phone": 1, "specialization": 1, "licenseNumber": 1,
                "linkedParents": 1, "assignedChildren": 1, "profilePhoto": 1, "staffId": 1, "center": 1}


def staff_summary(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["_id"],
        "name": user.get("name"),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "specialization": user.get("specialization"),
        "staffId": user.get("staffId"),
    }


def admin_center(db: Database, admin: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve the center this admin runs; the center must name them as its admin."""
    if not admin.get("center"):
        raise AuthorizationError("No center is linked to your account")
    center = db["center"].find_one({"_id": admin["center"]})
    if not center or center.get("admin") != admin["_id"]:
        raise AuthorizationError("Not authorized to access this center")
    return center


class CenterService:
    def __init__(self, db: Database):
        self.db = db
        self.centers = db["center"]
        self.users = db["user"]

    def get(self, center_id: Any) -> Dict[str, Any]:
        center = self.centers.find_one({"_id": to_obj_id(center_id)})
        if not center:
            raise NotFoundError("Center not found")
        return center

    def populated(self, center: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(center)
        if center.get("admin"):
            result["admin"] = self.users.find_one({"_id": center["admin"]}, {"name": 1, "email": 1, "phone": 1}) \
                or center["admin"]
        result["specialists"] = list(self.users.find({"_id": {"$in": center.get("specialists") or []}}, STAFF_FIELDS))
        return result

    # Centers
    def list_centers(self) -> List[Dict[str, Any]]:
        return [self.populated(c) for c in self.centers.find().sort("createdAt", -1)]

    def create(self, superadmin: Dict[str, Any], payload: CenterCreate) -> Dict[str, Any]:
        if not payload.name or not payload.name.strip():
            raise ValidationError("Center name is required")
        fields = payload.model_dump(exclude_none=True)
        fields["name"] = fields["name"].strip()
        doc = create_document(self.db, "center", Center(created_by=superadmin["_id"], **fields))
        logger.info("Superadmin %s created center %s", superadmin["_id"], doc["_id"])
        return doc

    def update(self, center_id: Any, payload: CenterUpdate) -> Dict[str, Any]:
        center = self.get(center_id)
        updates = payload.model_dump(by_alias=True, exclude_none=True)
        if "name" in updates and not updates["name"].strip():
            raise ValidationError("Center name is required")
        if not updates:
            return center
        updates["updatedAt"] = utc_now()
        return self.centers.find_one_and_update(
            {"_id": center["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )

    def delete(self, center_id: Any) -> None:
        center = self.get(center_id)
        members = list(center.get("specialists") or [])
        if center.get("admin"):
            members.append(center["admin"])
        if members:
            self.users.update_many({"_id": {"$in": members}}, {"$set": {"center": None, "updatedAt": utc_now()}})
        self.centers.delete_one({"_id": center["_id"]})
        logger.info("Deleted center %s, detached %d staff", center["_id"], len(members))

    # Admins
    def list_admins(self) -> List[Dict[str, Any]]:
        admins = list(self.users.find({"role": "admin"}).sort("createdAt", -1))
        for admin in admins:
            if admin.get("center"):
                admin["center"] = self.centers.find_one({"_id": admin["center"]}, {"name": 1, "nameEn": 1}) \
                    or admin["center"]
        return [public_user(a) for a in admins]

    def _load_admin(self, admin_id: Any) -> Dict[str, Any]:
        admin = self.users.find_one({"_id": to_obj_id(admin_id), "role": "admin"})
        if not admin:
            raise NotFoundError("Admin not found")
        return admin

    def _bind_admin(self, admin_id, center: Dict[str, Any]) -> None:
        # a center has one admin; the previous one loses the binding
        previous = center.get("admin")
        if previous and previous != admin_id:
            self.users.update_one({"_id": previous}, {"$set": {"center": None}})
        self.centers.update_one({"_id": center["_id"]}, {"$set": {"admin": admin_id, "updatedAt": utc_now()}})

    def create_admin(self, superadmin: Dict[str, Any], payload: StaffCreate) -> Dict[str, Any]:
        center = self.get(payload.center_id) if payload.center_id else None
        admin = UserService(self.db).create_user(
            payload.name, payload.email, payload.password, "admin",
            phone=payload.phone,
            center=center["_id"] if center else None,
            created_by=superadmin["_id"],
            email_verified=True,
        )
        if center:
            self._bind_admin(admin["_id"], center)
        return admin

    def update_admin(self, admin_id: Any, payload: StaffUpdate) -> Dict[str, Any]:
        admin = self._load_admin(admin_id)
        updates: Dict[str, Any] = {}
        if payload.name:
            updates["name"] = payload.name.strip()
        if payload.phone is not None:
            updates["phone"] = payload.phone

        if "center_id" in payload.model_fields_set:
            new_center = self.get(payload.center_id) if payload.center_id else None
            new_center_id = new_center["_id"] if new_center else None
            if admin.get("center") != new_center_id:
                if admin.get("center"):
                    self.centers.update_one({"_id": admin["center"], "admin": admin["_id"]}, {"$set": {"admin": None}})
                if new_center:
                    self._bind_admin(admin["_id"], new_center)
                updates["center"] = new_center_id

        if not updates:
            return admin
        updates["updatedAt"] = utc_now()
        return self.users.find_one_and_update(
            {"_id": admin["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )

    def delete_admin(self, admin_id: Any) -> None:
        admin = self._load_admin(admin_id)
        if admin.get("center"):
            self.centers.update_one({"_id": admin["center"], "admin": admin["_id"]}, {"$set": {"admin": None}})
        self.users.delete_one({"_id": admin["_id"]})
        logger.info("Deleted admin %s", admin["_id"])

    def platform_stats(self) -> Dict[str, int]:
        return {
            "centers": self.centers.count_documents({}),
            "admins": self.users.count_documents({"role": "admin"}),
            "specialists": self.users.count_documents({"role": "specialist"}),
            "parents": self.users.count_documents({"role": "parent"}),
        }

    # Center staff (admin side)
    def specialists_of(self, center: Dict[str, Any]) -> List[Dict[str, Any]]:
        return list(self.users.find({"center": center["_id"], "role": "specialist"}, STAFF_FIELDS))

    def create_specialist(self, admin: Dict[str, Any], center: Dict[str, Any], payload: StaffCreate) -> Dict[str, Any]:
        specialist = UserService(self.db).create_user(
            payload.name, payload.email, payload.password, "specialist",
            phone=payload.phone,
            specialization=payload.specialization,
            license_number=payload.license_number,
            center=center["_id"],
            created_by=admin["_id"],
            email_verified=True,
        )
        self.centers.update_one({"_id": center["_id"]}, {"$addToSet": {"specialists": specialist["_id"]}})
        return specialist

    def _center_specialist(self, center: Dict[str, Any], specialist_id: Any) -> Dict[str, Any]:
        specialist = self.users.find_one({"_id": to_obj_id(specialist_id), "role": "specialist"})
        if not specialist:
            raise NotFoundError("Specialist not found")
        if specialist.get("center") != center["_id"]:
            raise AuthorizationError("Not authorized to access this specialist")
        return specialist

    def update_specialist(self, center: Dict[str, Any], specialist_id: Any, payload: StaffUpdate) -> Dict[str, Any]:
        specialist = self._center_specialist(center, specialist_id)
        updates: Dict[str, Any] = {}
        if payload.name:
            updates["name"] = payload.name.strip()
        for field, key in (("phone", "phone"), ("specialization", "specialization"),
                           ("license_number", "licenseNumber")):
            value = getattr(payload, field)
            if value is not None:
                updates[key] = value
        if not updates:
            return specialist
        updates["updatedAt"] = utc_now()
        return self.users.find_one_and_update(
            {"_id": specialist["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )

    def remove_specialist(self, center: Dict[str, Any], specialist_id: Any) -> None:
        """Detach a specialist from the center. Parent and child links are left as they are."""
        specialist = self._center_specialist(center, specialist_id)
        self.centers.update_one({"_id": center["_id"]}, {"$pull": {"specialists": specialist["_id"]}})
        self.users.update_one({"_id": specialist["_id"]}, {"$set": {"center": None, "updatedAt": utc_now()}})
        logger.info("Removed specialist %s from center %s", specialist["_id"], center["_id"])

    def center_stats(self, admin: Dict[str, Any], center: Dict[str, Any]) -> Dict[str, Any]:
        specialist_ids = [s["_id"] for s in self.specialists_of(center)]
        specialist_ids.extend(s for s in center.get("specialists") or [] if s not in specialist_ids)
        recent = list(
            self.users.find({"center": center["_id"], "role": "specialist"},
                            {"name": 1, "email": 1, "specialization": 1, "profilePhoto": 1, "staffId": 1})
            .sort("createdAt", -1).limit(5)
        )
        stats = {
            "centerSpecialists": self.users.count_documents({"center": center["_id"], "role": "specialist"}),
            "myParents": self.users.count_documents({"linkedSpecialist": admin["_id"]}),
            "myChildren": self.db["child"].count_documents({"assignedSpecialist": admin["_id"]}),
            "centerChildren": self.db["child"].count_documents({"assignedSpecialist": {"$in": specialist_ids}})
            if specialist_ids else 0,
        }
        return {"stats": stats, "recentSpecialists": recent}


# Admin routes

@admin_router.get("/center")
def get_center(user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    service = CenterService(db)
    return {"success": True, "center": serialize(service.populated(admin_center(db, user)))}


@admin_router.get("/specialists")
def center_specialists(user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    specialists = CenterService(db).specialists_of(admin_center(db, user))
    return {"success": True, "count": len(specialists), "specialists": serialize(specialists)}


@admin_router.post("/create-specialist", status_code=201)
def create_specialist(payload: StaffCreate, user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    center = admin_center(db, user)
    specialist = CenterService(db).create_specialist(user, center, payload)
    return {"success": True, "message": "Specialist account created", "specialist": serialize(staff_summary(specialist))}


@admin_router.put("/specialists/{specialist_id}")
def update_specialist(specialist_id: str, payload: StaffUpdate, user: dict = Depends(admin_only),
                      db: Database = Depends(get_db)):
    center = admin_center(db, user)
    specialist = CenterService(db).update_specialist(center, specialist_id, payload)
    return {"success": True, "message": "Specialist updated", "specialist": serialize(staff_summary(specialist))}


@admin_router.delete("/specialists/{specialist_id}")
def remove_specialist(specialist_id: str, user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    center = admin_center(db, user)
    CenterService(db).remove_specialist(center, specialist_id)
    return {"success": True, "message": "Specialist removed from center"}


@admin_router.get("/parents")
def admin_parents(user: dict = Depends(admin_only), linkage: LinkageService = Depends(get_linkage)):
    return {"success": True, "parents": serialize(linkage.linked_parents(user))}


@admin_router.get("/my-children")
def admin_children(user: dict = Depends(admin_only), linkage: LinkageService = Depends(get_linkage)):
    children = linkage.my_children(user)
    return {"success": True, "count": len(children), "children": serialize(children)}


@admin_router.get("/link-requests")
def admin_link_requests(status: Optional[str] = None, user: dict = Depends(admin_only),
                        linkage: LinkageService = Depends(get_linkage)):
    specialist_ids = [user["_id"]]
    center_id = user.get("center")
    if center_id:
        center = admin_center(linkage.db, user)
        specialist_ids.extend(center.get("specialists") or [])
    requests = linkage.incoming_requests(specialist_ids, status)
    return {"success": True, "count": len(requests), "requests": serialize(requests)}


@admin_router.get("/stats")
def admin_stats(user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    center = admin_center(db, user)
    result = CenterService(db).center_stats(user, center)
    return {"success": True, "stats": result["stats"], "recentSpecialists": serialize(result["recentSpecialists"])}


@admin_router.post("/assign-child")
def assign_child(payload: AssignChildRequest, user: dict = Depends(admin_only),
                 linkage: LinkageService = Depends(get_linkage)):
    center = admin_center(linkage.db, user)
    child = linkage.assign_child(user, center, payload.child_id, payload.specialist_id)
    return {"success": True, "message": "Child assigned to specialist", "child": serialize(child)}


# Superadmin routes

@superadmin_router.get("/centers")
def list_centers(user: dict = Depends(superadmin_only), db: Database = Depends(get_db)):
    centers = CenterService(db).list_centers()
    return {"success": True, "count": len(centers), "centers": serialize(centers)}


@superadmin_router.get("/centers/{center_id}")
def get_center_by_id(center_id: str, user: dict = Depends(superadmin_only), db: Database = Depends(get_db)):
    service = CenterService(db)
    return {"success": True, "center": serialize(service.populated(service.get(center_id)))}


@superadmin_router.post("/centers", status_code=201)
def create_center(payload: CenterCreate, user: dict = Depends(superadmin_only), db: Database = Depends(get_db)):
    center = CenterService(db).create(user, payload)
    return {"success": True, "message": "Center created", "center": serialize(center)}


@superadmin_router.put("/centers/{center_id}")
def update_center(center_id: str, payload: CenterUpdate, user: dict = Depends(superadmin_only),
                  db: Database = Depends(get_db)):
    center = CenterService(db).update(center_id, payload)
    return {"success": True, "message": "Center updated", "center": serialize(center)}


@superadmin_router.delete("/centers/{center_id}")
def delete_center(center_id: str, user: dict = Depends(superadmin_only), db: Database = Depends(get_db)):
    CenterService(db).delete(center_id)
    return {"success": True, "message": "Center deleted"}


@superadmin_router.get("/admins")
def list_admins(user: dict = Depends(superadmin_only), db: Database = Depends(get_db)):
    admins = CenterService(db).list_admins()
    return {"success": True, "count": len(admins), "admins": serialize(admins)}


@superadmin_router.post("/create-admin", status_code=201)
def create_admin(payload: StaffCreate, user: dict = Depends(superadmin_only), db: Database = Depends(get_db)):
    admin = CenterService(db).create_admin(user, payload)
    summary = staff_summary(admin)
    summary["center"] = admin.get("center")
    return {"success": True, "message": "Admin account created", "admin": serialize(summary)}


@superadmin_router.put("/admins/{admin_id}")
def update_admin(admin_id: str, payload: StaffUpdate, user: dict = Depends(superadmin_only),
                 db: Database = Depends(get_db)):
    admin = CenterService(db).update_admin(admin_id, payload)
    summary = staff_summary(admin)
    summary["center"] = admin.get("center")
    return {"success": True, "message": "Admin updated", "admin": serialize(summary)}


@superadmin_router.delete("/admins/{admin_id}")
def delete_admin(admin_id: str, user: dict = Depends(superadmin_only), db: Database = Depends(get_db)):
    CenterService(db).delete_admin(admin_id)
    return {"success": True, "message": "Admin deleted"}


@superadmin_router.get("/stats")
def platform_stats(user: dict = Depends(superadmin_only), db: Database = Depends(get_db)):
    return {"success": True, "stats": CenterService(db).platform_stats()}
