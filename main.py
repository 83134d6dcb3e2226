import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException

import accounts
import centers
import children
import content
import exercises
import linkage
import messaging
import notifications
import progress
import realtime
import specialist_portal
import uploads
from config import settings
from database import connect, ensure_indexes
from email_service import EmailSender
from errors import ServiceError
from notifications import Dispatcher
from push_service import PushSender
from realtime import Broadcaster

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ROUTERS = (
    accounts.router,
    children.router,
    linkage.specialists_router,
    linkage.parents_router,
    content.content_router,
    content.words_router,
    specialist_portal.router,
    exercises.router,
    progress.router,
    messaging.router,
    notifications.router,
    centers.admin_router,
    centers.superadmin_router,
    uploads.router,
    realtime.router,
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def create_app(database=None, broadcaster=None, push_sender=None, email_sender=None) -> FastAPI:
    broadcaster = broadcaster or Broadcaster()
    push_sender = push_sender or PushSender()
    email_sender = email_sender or EmailSender()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None
        if app.state.db is None:
            client, db = connect(settings.DATABASE_URL, settings.DATABASE_NAME)
            ensure_indexes(db)
            app.state.db = db
            app.state.dispatcher = Dispatcher(db, broadcaster, push_sender, email_sender)
            if getattr(email_sender, "host", None) and email_sender.verify():
                logger.info("SMTP server %s is ready", email_sender.host)
        try:
            yield
        finally:
            if client is not None:
                client.close()
                logger.info("MongoDB connection closed")

    app = FastAPI(title="Speech Therapy API", lifespan=lifespan)
    app.state.db = database
    app.state.broadcaster = broadcaster
    app.state.dispatcher = Dispatcher(database, broadcaster, push_sender, email_sender)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error(exc.status_code, exc.message)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return _error(400, message)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(500, "Server error")

    for router in ROUTERS:
        app.include_router(router)

    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")

    @app.get("/")
    def read_root():
        return {"success": True, "message": "Speech Therapy Backend Running"}

    @app.get("/health")
    def health():
        status = {"success": True, "status": "ok", "database": "not initialized"}
        db = app.state.db
        if db is not None:
            try:
                db.command("ping")
                status["database"] = "connected"
            except Exception as e:
                logger.warning("Health check ping failed: %s", e)
                status["database"] = "unavailable"
        return status

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
