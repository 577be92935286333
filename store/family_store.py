from __future__ import annotations

import asyncio
import logging
from typing import List

from google.cloud.firestore_v1 import FieldFilter

from models.family import FamilyMember
from store.base import FamilyProvider

logger = logging.getLogger(__name__)


class FirestoreFamilyProvider(FamilyProvider):
    """
    Family membership as stored by the identity service (read-only here).
    One document per (family, user): {user_id, family_id, role, display_name}.
    """

    def __init__(self, db, collection: str = "family_members"):
        self.collection = db.collection(collection)

    def _members_sync(self, family_id: str) -> List[FamilyMember]:
        q = self.collection.where(filter=FieldFilter("family_id", "==", family_id))
        members: List[FamilyMember] = []
        for doc in q.stream():
            data = doc.to_dict() or {}
            try:
                members.append(FamilyMember.model_validate(data))
            except Exception:
                logger.warning("[FAMILY] skipping malformed member doc %s", doc.id)
        return members

    async def get_members(self, family_id: str) -> List[FamilyMember]:
        try:
            return await asyncio.to_thread(self._members_sync, family_id)
        except Exception:
            logger.exception("[FAMILY] get_members failed for %s", family_id)
            raise
