import logging
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore

logger = logging.getLogger(__name__)

_client = None


def get_db(credentials_path: Optional[str] = None):
    """Firestore client, initialized on first use (importing this module has no side effects)."""
    global _client
    if _client is None:
        try:
            firebase_admin.get_app()
        except ValueError:
            if credentials_path:
                firebase_admin.initialize_app(credentials.Certificate(credentials_path))
            else:
                # application default credentials
                firebase_admin.initialize_app()
            logger.info("[DB] Firebase app initialized")
        _client = firestore.client()
    return _client
