# accounts.py
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, next_sequence, serialize, utc_now
from email_service import send_password_reset_email, send_verification_email
from errors import (AuthenticationError, ConflictError, NotFoundError,
                    ValidationError, ServiceError)
from notifications import Outbox, get_outbox
from schemas import (ChangePasswordRequest, ForgotPasswordRequest, LoginRequest,
                     RegisterRequest, ResetPasswordRequest, TokenRequest, User)
from security import (generate_token, get_current_user, get_db, hash_password,
                      public_user, verify_password)
from uploads import save_image

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

STAFF_PREFIXES = {"specialist": "SP", "admin": "AD", "parent": "PT"}
RESET_CODE_TTL = timedelta(minutes=10)


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def user_summary(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role"),
        "phone": user.get("phone"),
        "emailVerified": user.get("emailVerified", False),
        "profilePhoto": user.get("profilePhoto"),
        "staffId": user.get("staffId"),
    }


class UserService:
    def __init__(self, db: Database):
        self.db = db

    def find_by_email(self, email: Optional[str]) -> Optional[Dict[str, Any]]:
        if not email:
            return None
        return self.db["user"].find_one({"email": email.strip().lower()})

    def get(self, user_id) -> Dict[str, Any]:
        user = self.db["user"].find_one({"_id": user_id})
        if not user:
            raise NotFoundError("User not found")
        return user

    def create_user(self, name: str, email: str, password: str, role: str, **fields) -> Dict[str, Any]:
        """Create an account; staffId is drawn once from the per-role counter."""
        if not name or not email or not password:
            raise ValidationError("Name, email and password are required")
        email = email.strip().lower()
        if self.find_by_email(email):
            raise ConflictError("User with this email already exists")

        if role != "specialist":
            fields.pop("specialization", None)
            fields.pop("license_number", None)
        if role not in ("admin", "specialist"):
            fields.pop("center", None)

        staff_id = None
        if role in STAFF_PREFIXES:
            staff_id = f"{STAFF_PREFIXES[role]}-{next_sequence(self.db, 'staffId:' + role):04d}"

        user = User(
            name=name.strip(),
            email=email,
            role=role,
            password_hash=hash_password(password),
            staff_id=staff_id,
            **fields,
        )
        try:
            doc = create_document(self.db, "user", user)
        except DuplicateKeyError:
            raise ConflictError("User with this email already exists")
        logger.info("Created %s account %s", role, doc["_id"])
        return doc

    def authenticate(self, email: Optional[str], password: Optional[str]) -> Dict[str, Any]:
        if not email or not password:
            raise ValidationError("Please provide email and password")
        user = self.find_by_email(email)
        if not user or not verify_password(password, user.get("passwordHash")):
            raise AuthenticationError("Invalid credentials")
        return user

    def update_profile(self, user: Dict[str, Any], name=None, email=None, phone=None, photo_path=None) -> Dict[str, Any]:
        updates: Dict[str, Any] = {}
        if email and email.strip().lower() != user["email"]:
            email = email.strip().lower()
            if self.find_by_email(email):
                raise ConflictError("Email already in use")
            updates["email"] = email
            updates["emailVerified"] = False
        if name:
            updates["name"] = name.strip()
        if phone is not None:
            updates["phone"] = phone
        if photo_path:
            updates["profilePhoto"] = photo_path
        if updates:
            updates["updatedAt"] = utc_now()
            self.db["user"].update_one({"_id": user["_id"]}, {"$set": updates})
        return self.get(user["_id"])

    def change_password(self, user: Dict[str, Any], current_password, new_password) -> None:
        if not current_password or not new_password:
            raise ValidationError("Please provide current and new password")
        if len(new_password) < 6:
            raise ValidationError("Password must be at least 6 characters")
        if not verify_password(current_password, user.get("passwordHash")):
            raise ValidationError("Current password is incorrect")
        self._set_password(user["_id"], new_password)

    def _set_password(self, user_id, new_password: str) -> None:
        self.db["user"].update_one(
            {"_id": user_id},
            {
                "$set": {"passwordHash": hash_password(new_password), "updatedAt": utc_now()},
                "$unset": {"resetPasswordToken": "", "resetPasswordExpire": ""},
            },
        )

    def issue_reset_code(self, email_sender, email: Optional[str]) -> None:
        """Store a reset code and email it; the code is withdrawn if delivery fails."""
        if not email:
            raise ValidationError("Please provide email")
        user = self.find_by_email(email)
        if not user:
            # same answer whether or not the account exists
            return
        code = generate_code()
        self.db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {"resetPasswordToken": code, "resetPasswordExpire": utc_now() + RESET_CODE_TTL}},
        )
        try:
            send_password_reset_email(email_sender, user["email"], code)
        except ServiceError:
            logger.warning("Password reset email failed for user %s, withdrawing code", user["_id"])
            self.db["user"].update_one(
                {"_id": user["_id"]},
                {"$unset": {"resetPasswordToken": "", "resetPasswordExpire": ""}},
            )
            raise
        except Exception as e:
            logger.warning("Password reset email failed for user %s: %s", user["_id"], e)
            self.db["user"].update_one(
                {"_id": user["_id"]},
                {"$unset": {"resetPasswordToken": "", "resetPasswordExpire": ""}},
            )
            raise ServiceError("Email could not be sent")

    def find_by_reset_code(self, code: Optional[str]) -> Dict[str, Any]:
        if not code:
            raise ValidationError("Reset token is required")
        user = self.db["user"].find_one({"resetPasswordToken": code, "resetPasswordExpire": {"$gt": utc_now()}})
        if not user:
            raise ValidationError("Invalid or expired code")
        return user

    def reset_password(self, code: Optional[str], new_password: Optional[str]) -> None:
        if not code or not new_password:
            raise ValidationError("Please provide code and new password")
        if len(new_password) < 6:
            raise ValidationError("Password must be at least 6 characters")
        user = self.find_by_reset_code(code)
        self._set_password(user["_id"], new_password)

    def verify_email(self, code: Optional[str]) -> None:
        if not code:
            raise ValidationError("Verification token is required")
        result = self.db["user"].update_one(
            {"verificationToken": code},
            {"$set": {"emailVerified": True, "updatedAt": utc_now()}, "$unset": {"verificationToken": ""}},
        )
        if result.matched_count == 0:
            raise ValidationError("Invalid verification token")

    def new_verification_code(self, user: Dict[str, Any]) -> str:
        if user.get("emailVerified"):
            raise ValidationError("Email already verified")
        code = generate_code()
        self.db["user"].update_one({"_id": user["_id"]}, {"$set": {"verificationToken": code}})
        return code


def get_email_sender(request: Request):
    return request.app.state.dispatcher.email_sender


# Routes
@router.post("/register", status_code=201)
def register(payload: RegisterRequest, db: Database = Depends(get_db), outbox: Outbox = Depends(get_outbox)):
    code = generate_code()
    user = UserService(db).create_user(
        payload.name,
        payload.email,
        payload.password,
        payload.role,
        phone=payload.phone,
        specialization=payload.specialization,
        license_number=payload.license_number,
        verification_token=code,
    )
    outbox.email(send_verification_email, user["email"], code)
    return {"success": True, "token": generate_token(user["_id"]), "user": user_summary(user)}


@router.post("/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = UserService(db).authenticate(payload.email, payload.password)
    return {"success": True, "token": generate_token(user["_id"]), "user": user_summary(user)}


@router.get("/me")
def me(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    result = public_user(user)
    if user.get("assignedChildren"):
        result["assignedChildren"] = list(db["child"].find({"_id": {"$in": user["assignedChildren"]}}))
    return {"success": True, "user": serialize(result)}


@router.put("/profile")
def update_profile(
    name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    photo: Optional[UploadFile] = File(None),
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    photo_path = save_image(photo, "profile") if photo is not None and photo.filename else None
    updated = UserService(db).update_profile(user, name=name, email=email, phone=phone, photo_path=photo_path)
    return {"success": True, "user": user_summary(updated)}


@router.put("/change-password")
def change_password(payload: ChangePasswordRequest, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    UserService(db).change_password(user, payload.current_password, payload.new_password)
    return {"success": True, "message": "Password changed successfully"}


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, db: Database = Depends(get_db),
                    email_sender=Depends(get_email_sender)):
    UserService(db).issue_reset_code(email_sender, payload.email)
    return {"success": True, "message": "If an account with that email exists, a password reset code has been sent"}


@router.post("/verify-reset-token")
def verify_reset_token(payload: TokenRequest, db: Database = Depends(get_db)):
    UserService(db).find_by_reset_code(payload.token)
    return {"success": True, "message": "Token verified successfully."}


@router.put("/reset-password")
def reset_password(payload: ResetPasswordRequest, db: Database = Depends(get_db)):
    UserService(db).reset_password(payload.token, payload.new_password)
    return {"success": True, "message": "Password reset successfully"}


@router.post("/verify-email")
def verify_email(payload: TokenRequest, db: Database = Depends(get_db)):
    UserService(db).verify_email(payload.token)
    return {"success": True, "message": "Email verified successfully"}


@router.post("/resend-verification")
def resend_verification(user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                        email_sender=Depends(get_email_sender)):
    code = UserService(db).new_verification_code(user)
    try:
        send_verification_email(email_sender, user["email"], code)
    except Exception as e:
        logger.warning("Verification email resend failed for user %s: %s", user["_id"], e)
        raise ServiceError("Email could not be sent")
    return {"success": True, "message": "Verification email sent"}


@router.post("/refresh-token")
def refresh_token(user: dict = Depends(get_current_user)):
    return {"success": True, "token": generate_token(user["_id"])}


@router.get("/my-specialist")
def my_specialist(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if not user.get("linkedSpecialist"):
        raise NotFoundError("No specialist linked to this account")
    specialist = db["user"].find_one(
        {"_id": user["linkedSpecialist"]},
        {"name": 1, "email": 1, "phone": 1, "specialization": 1, "profilePhoto": 1, "center": 1},
    )
    if not specialist:
        raise NotFoundError("No specialist linked to this account")
    if specialist.get("center"):
        specialist["center"] = db["center"].find_one({"_id": specialist["center"]}, {"name": 1, "nameEn": 1})
    return {"success": True, "specialist": serialize(specialist)}
