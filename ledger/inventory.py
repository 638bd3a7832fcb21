import logging
import threading
from typing import Iterable, Optional, Protocol
from uuid import uuid4

from .clock import utcnow
from .errors import ItemAlreadyOwned, ItemUnavailable
from .models import InventoryItem, ShopItem

logger = logging.getLogger(__name__)


class ItemGranter(Protocol):
    """Anything that can hand an item to a user after it has been paid for."""

    def grant_item(self, user_id: str, item_id: str, source: str, metadata: Optional[dict] = None) -> InventoryItem: ...

    def owns(self, user_id: str, item_id: str) -> bool: ...


class ShopCatalog:
    def __init__(self, items: Iterable[ShopItem] = ()):
        self.items: dict[str, ShopItem] = {i.id: i for i in items}
        self._lock = threading.Lock()

    def add_item(self, item: ShopItem) -> ShopItem:
        with self._lock:
            self.items[item.id] = item
        return item

    def get_item(self, item_id: str) -> ShopItem:
        item = self.items.get(item_id)
        if item is None:
            raise ItemUnavailable(f"Item {item_id} not found")
        return item

    def list_items(self, active_only: bool = True) -> list[ShopItem]:
        return [i for i in self.items.values() if i.is_active or not active_only]

    def reserve_stock(self, item_id: str) -> ShopItem:
        """Take one unit of stock; unlimited items (``stock=None``) always succeed."""
        with self._lock:
            item = self.get_item(item_id)
            if not item.is_active:
                raise ItemUnavailable(f"Item {item_id} is not available")
            if item.stock is None:
                return item
            if item.stock <= 0:
                raise ItemUnavailable(f"Item {item_id} is out of stock")
            item = item.model_copy(update={"stock": item.stock - 1})
            self.items[item_id] = item
            return item

    def release_stock(self, item_id: str) -> None:
        with self._lock:
            item = self.items.get(item_id)
            if item is None or item.stock is None:
                return
            self.items[item_id] = item.model_copy(update={"stock": item.stock + 1})


class Inventory:
    """In-memory record of the items each user owns."""

    def __init__(self):
        self.items: dict[tuple[str, str], InventoryItem] = {}
        self._lock = threading.Lock()

    def grant_item(self, user_id: str, item_id: str, source: str, metadata: Optional[dict] = None) -> InventoryItem:
        with self._lock:
            if (user_id, item_id) in self.items:
                raise ItemAlreadyOwned(f"User {user_id} already owns item {item_id}")
            owned = InventoryItem(
                id=uuid4(),
                user_id=user_id,
                item_id=item_id,
                source=source,
                acquired_at=utcnow(),
                metadata=metadata or {},
            )
            self.items[(user_id, item_id)] = owned
        logger.debug("Granted item %s to user %s (%s)", item_id, user_id, source)
        return owned

    def revoke_item(self, user_id: str, item_id: str) -> bool:
        with self._lock:
            return self.items.pop((user_id, item_id), None) is not None

    def owns(self, user_id: str, item_id: str) -> bool:
        return (user_id, item_id) in self.items

    def list_items(self, user_id: str) -> list[InventoryItem]:
        owned = [i for (owner, _), i in list(self.items.items()) if owner == user_id]
        return sorted(owned, key=lambda i: i.acquired_at, reverse=True)
