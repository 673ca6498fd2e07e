"""
Inventory store: product stock with versioned, never-negative decrements.

Only the order workflow decrements stock. Carts read it to clamp quantities.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set

from bson import ObjectId
from bson.errors import InvalidId

from database import Transaction, get_documents
from errors import OutOfStock, ProductUnavailable

logger = logging.getLogger(__name__)

COLLECTION = "product"


def _oid(product_id) -> Optional[ObjectId]:
    try:
        return ObjectId(str(product_id))
    except (InvalidId, TypeError):
        return None


class InventoryStore:
    def __init__(self, database):
        self.db = database

    @property
    def products(self):
        return self.db[COLLECTION]

    def get(self, product_id) -> Optional[dict]:
        """Authoritative product record, or None if missing or soft-deleted."""
        oid = _oid(product_id)
        if oid is None:
            return None
        product = self.products.find_one({"_id": oid})
        if not product or product.get("deleted"):
            return None
        return product

    def get_many(self, product_ids: Iterable[str]) -> Dict[str, dict]:
        oids = [oid for oid in (_oid(pid) for pid in product_ids) if oid is not None]
        if not oids:
            return {}
        found = self.products.find({"_id": {"$in": oids}, "deleted": {"$ne": True}})
        return {str(p["_id"]): p for p in found}

    def require_available(self, product_id, quantity: int) -> dict:
        product = self.get(product_id)
        if product is None:
            raise ProductUnavailable(str(product_id))
        available = product.get("quantity", 0)
        if available < quantity:
            raise OutOfStock(str(product_id), product.get("name"), available)
        return product

    def reserve(self, txn: Transaction, product: dict, quantity: int) -> dict:
        """
        Take `quantity` units from a product read earlier in this unit of work.

        Fails with ConflictError if the product changed since it was read or no
        longer has enough stock, so the caller can retry on fresh data.
        """
        return txn.update(
            COLLECTION,
            product,
            inc={"quantity": -quantity},
            guard={"quantity": {"$gte": quantity}},
        )

    def settle(self, txn: Transaction, product_id, quantity: int) -> int:
        """
        Decrement stock for an already-paid line, clamped at zero.

        Returns the number of units actually taken.
        """
        product = self.get(product_id)
        if product is None:
            logger.warning("Paid order references missing product %s", product_id)
            return 0
        take = min(quantity, max(product.get("quantity", 0), 0))
        if take > 0:
            txn.update(COLLECTION, product, inc={"quantity": -take}, guard={"quantity": {"$gte": take}})
        return take

    def owned_by(self, farmer_id: str) -> List[str]:
        return [str(p["_id"]) for p in get_documents(COLLECTION, {"farmer_id": farmer_id}, database=self.db)]

    def owners(self, product_ids: Iterable[str]) -> Set[str]:
        oids = [oid for oid in (_oid(pid) for pid in product_ids) if oid is not None]
        if not oids:
            return set()
        cursor = self.products.find({"_id": {"$in": oids}}, {"farmer_id": 1})
        return {p["farmer_id"] for p in cursor if p.get("farmer_id")}
