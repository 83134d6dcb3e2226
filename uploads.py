# uploads.py
import logging
import os
import secrets
import time

from fastapi import APIRouter, Depends, File, UploadFile

from config import settings
from errors import ValidationError
from security import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/upload", tags=["upload"])

ALLOWED_EXTENSIONS = {"jpeg", "jpg", "png", "gif"}
ALLOWED_MIME_PREFIX = "image/"


def _extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lstrip(".").lower()


def save_image(upload: UploadFile, prefix: str = "image") -> str:
    """Persist one uploaded image under UPLOAD_DIR and return its public path."""
    ext = _extension(upload.filename)
    if ext not in ALLOWED_EXTENSIONS or not (upload.content_type or "").startswith(ALLOWED_MIME_PREFIX):
        raise ValidationError("Only image files are allowed!")

    data = upload.file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise ValidationError("File too large")
    if not data:
        raise ValidationError("No file uploaded")

    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    name = f"{prefix}-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}.{ext}"
    with open(os.path.join(settings.UPLOAD_DIR, name), "wb") as fh:
        fh.write(data)
    logger.info("Stored upload %s (%d bytes)", name, len(data))
    return f"/uploads/{name}"


@router.post("")
def upload_image(photo: UploadFile = File(...), user: dict = Depends(get_current_user)):
    path = save_image(photo, "photo")
    return {"success": True, "message": "File uploaded successfully", "filePath": path}
