"""Favorites list kept in the local session store."""

from __future__ import annotations

import logging

from optisync.gateways.base import SessionStore

logger = logging.getLogger(__name__)

FAVORITES_KEY = "favorites"


class FavoritesList:
    def __init__(self, store: SessionStore, key: str = FAVORITES_KEY) -> None:
        self._store = store
        self._key = key

    def items(self) -> list[str]:
        value = self._store.get(self._key)
        if value is None:
            return []
        if not isinstance(value, list):
            logger.warning("Ignoring malformed favorites entry %r", value)
            return []
        return [str(item) for item in value]

    def __contains__(self, item_id: object) -> bool:
        return item_id in self.items()

    def add(self, item_id: str) -> bool:
        items = self.items()
        if item_id in items:
            return False
        items.append(item_id)
        self._store.set(self._key, items)
        return True

    def remove(self, item_id: str) -> bool:
        items = self.items()
        if item_id not in items:
            return False
        items.remove(item_id)
        self._store.set(self._key, items)
        return True

    def toggle(self, item_id: str) -> bool:
        """Flip membership; returns True when the item is now a favorite."""
        if self.remove(item_id):
            return False
        self.add(item_id)
        return True
