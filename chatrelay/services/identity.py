# chatrelay/services/identity.py

from __future__ import annotations

import logging
from typing import Optional

from chatrelay.core.errors import StoreError
from chatrelay.services.store import ChatStore

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Reconcile a display name with a persisted user record.

    The lookup is find-or-create: an existing user with the same name is
    reused, otherwise one is created. If another connection creates the
    same name concurrently, the loser re-reads the winner's id.

    Persistence failures are not fatal. ``resolve`` logs them and returns
    None, and the session simply stays anonymous.
    """

    def __init__(self, store: ChatStore) -> None:
        self.store = store

    async def resolve(self, name: str) -> Optional[int]:
        try:
            user_id = await self.store.find_user_by_name(name)
            if user_id is not None:
                logger.info("User %s already exists with id %d", name, user_id)
                return user_id

            try:
                user_id = await self.store.create_user(name)
                logger.info("Created user %s with id %d", name, user_id)
                return user_id
            except StoreError:
                user_id = await self.store.find_user_by_name(name)
                if user_id is None:
                    raise
                return user_id

        except StoreError as e:
            logger.warning("Identity resolution failed for %s: %s", name, e)
            return None
