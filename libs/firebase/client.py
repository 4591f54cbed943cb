import json
from typing import Optional

import firebase_admin
import structlog
from firebase_admin import credentials

from libs.common.settings import Settings

logger = structlog.get_logger(__name__)


def initialize_firebase_app(settings: Settings) -> Optional[firebase_admin.App]:
    """
    Initialize the Firebase Admin SDK used to verify session tokens.

    Credentials come from ``firebase_admin_sdk_json`` (inline JSON) or
    ``firebase_admin_sdk_path``. Without either, the default app is created
    without credentials, which works against the auth emulator.
    """
    if firebase_admin._apps:
        return firebase_admin.get_app()

    cred = None
    if settings.firebase_admin_sdk_json:
        try:
            cred = credentials.Certificate(json.loads(settings.firebase_admin_sdk_json))
        except json.JSONDecodeError:
            logger.error("FIREBASE_ADMIN_SDK_JSON is not valid JSON, session verification disabled")
            return None
    elif settings.firebase_admin_sdk_path:
        try:
            cred = credentials.Certificate(settings.firebase_admin_sdk_path)
        except FileNotFoundError:
            logger.error("Firebase credentials file not found", path=settings.firebase_admin_sdk_path)
            return None

    if cred is None:
        logger.warning("No Firebase credentials configured, assuming emulator or mock environment")
        try:
            return firebase_admin.initialize_app()
        except ValueError:
            return firebase_admin.get_app()

    app = firebase_admin.initialize_app(cred)
    logger.info("Firebase app initialized")
    return app
