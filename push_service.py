# push_service.py
import base64
import json
import logging
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, messaging

from config import settings

logger = logging.getLogger(__name__)


class PushSender:
    """Firebase Cloud Messaging multicast, initialised lazily on first use."""

    def __init__(self):
        self._initialized = False
        self._init_error_logged = False

    def _try_init(self) -> bool:
        if self._initialized:
            return True
        try:
            if firebase_admin._apps:
                self._initialized = True
                return True

            raw_json = None
            if settings.FIREBASE_SERVICE_ACCOUNT_JSON_BASE64 and settings.FIREBASE_SERVICE_ACCOUNT_JSON_BASE64.strip():
                raw_json = base64.b64decode(settings.FIREBASE_SERVICE_ACCOUNT_JSON_BASE64.strip()).decode("utf-8")
            elif settings.FIREBASE_SERVICE_ACCOUNT_JSON and settings.FIREBASE_SERVICE_ACCOUNT_JSON.strip():
                raw_json = settings.FIREBASE_SERVICE_ACCOUNT_JSON.strip()

            if raw_json:
                firebase_admin.initialize_app(credentials.Certificate(json.loads(raw_json)))
                self._initialized = True
                return True

            # managed environments with application default credentials
            if settings.FIREBASE_PROJECT_ID and settings.FIREBASE_PROJECT_ID.strip():
                firebase_admin.initialize_app(options={"projectId": settings.FIREBASE_PROJECT_ID.strip()})
                self._initialized = True
                return True

            if not self._init_error_logged:
                logger.warning("Push disabled: missing FIREBASE_SERVICE_ACCOUNT_JSON or FIREBASE_PROJECT_ID")
                self._init_error_logged = True
            return False
        except Exception as e:
            if not self._init_error_logged:
                logger.warning("Push disabled: firebase-admin init failed: %s", e)
                self._init_error_logged = True
            return False

    def send_to_tokens(self, tokens: List[str], title: str, body: str,
                       data: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
        if not tokens:
            return {"successCount": 0, "failureCount": 0}
        if not self._try_init():
            return {"successCount": 0, "failureCount": len(tokens)}

        message = messaging.MulticastMessage(
            tokens=tokens,
            notification=messaging.Notification(title=title, body=body),
            # FCM data payload values must be strings
            data={k: str(v) for k, v in (data or {}).items()},
            android=messaging.AndroidConfig(priority="high"),
        )
        res = messaging.send_each_for_multicast(message)
        return {"successCount": res.success_count, "failureCount": res.failure_count}
