"""
Cart store.

One cart per user, created on first add. Quantities are checked against
current stock when written and clamped to it when read; stock itself is never
touched here.
"""
import logging
from typing import Optional

from config import Settings
from database import Transaction, run_in_transaction, utcnow
from errors import CartItemNotFound, OutOfStock, ProductUnavailable, ValidationError
from inventory import InventoryStore
from schemas import CartItem

logger = logging.getLogger(__name__)

COLLECTION = "cart"
MAX_LINE_QUANTITY = 100


class CartStore:
    def __init__(self, database, inventory: InventoryStore, settings: Settings):
        self.db = database
        self.inventory = inventory
        self.settings = settings

    @property
    def carts(self):
        return self.db[COLLECTION]

    def _retry(self, operation):
        return run_in_transaction(
            self.db,
            operation,
            max_attempts=self.settings.order_max_attempts,
            backoff=self.settings.order_retry_backoff,
        )

    def find(self, user_id: str) -> Optional[dict]:
        return self.carts.find_one({"user_id": user_id})

    def view(self, user_id: str) -> dict:
        """
        Cart with product details. Lines whose product is gone or out of stock
        are dropped and quantities above stock are lowered, and the cleaned
        cart is written back.
        """
        def operation(txn: Transaction) -> dict:
            cart = self.find(user_id)
            if not cart:
                return {"user_id": user_id, "items": [], "total": 0.0}

            products = self.inventory.get_many(item["product_id"] for item in cart.get("items", []))
            items = []
            changed = False
            for item in cart.get("items", []):
                product = products.get(item["product_id"])
                stock = product.get("quantity", 0) if product else 0
                if not product or stock <= 0:
                    changed = True
                    continue
                if item["quantity"] > stock:
                    item = dict(item, quantity=stock)
                    changed = True
                items.append(item)

            if changed:
                cart = txn.update(COLLECTION, cart, {"items": items})
            return self._present(cart, products)

        return self._retry(operation)

    def _present(self, cart: dict, products: dict) -> dict:
        lines = []
        total = 0.0
        for item in cart.get("items", []):
            product = products.get(item["product_id"])
            if product is None:
                continue
            lines.append({
                **item,
                "product": {
                    "id": str(product["_id"]),
                    "name": product.get("name"),
                    "price": product.get("price"),
                    "farm_name": product.get("farm_name"),
                    "quantity": product.get("quantity"),
                },
            })
            total += product.get("price", 0) * item["quantity"]
        return {
            "_id": cart.get("_id"),
            "user_id": cart["user_id"],
            "items": lines,
            "total": round(total, 2),
        }

    def add(self, user_id: str, product_id: str, quantity: int = 1) -> dict:
        def operation(txn: Transaction) -> dict:
            product = self.inventory.require_available(product_id, quantity)
            cart = self.find(user_id)
            if not cart:
                line = CartItem(product_id=product_id, quantity=quantity, added_at=utcnow())
                return txn.insert(COLLECTION, {"user_id": user_id, "items": [line.model_dump()]})

            items = [dict(item) for item in cart.get("items", [])]
            for item in items:
                if item["product_id"] == product_id:
                    new_quantity = item["quantity"] + quantity
                    if new_quantity > product.get("quantity", 0):
                        raise OutOfStock(product_id, product.get("name"), product.get("quantity", 0))
                    if new_quantity > MAX_LINE_QUANTITY:
                        raise ValidationError(f"At most {MAX_LINE_QUANTITY} units per line")
                    item["quantity"] = new_quantity
                    break
            else:
                line = CartItem(product_id=product_id, quantity=quantity, added_at=utcnow())
                items.append(line.model_dump())
            return txn.update(COLLECTION, cart, {"items": items})

        cart = self._retry(operation)
        logger.debug("Added %d x %s to cart of %s", quantity, product_id, user_id)
        return self._present(cart, self.inventory.get_many(i["product_id"] for i in cart["items"]))

    def update_quantity(self, user_id: str, item_id: str, quantity: int) -> dict:
        # a line whose product disappeared is dropped, then reported as unavailable
        def operation(txn: Transaction) -> tuple:
            cart = self.carts.find_one({"user_id": user_id, "items.item_id": item_id})
            if not cart:
                raise CartItemNotFound(item_id)
            items = [dict(item) for item in cart["items"]]
            line = next(item for item in items if item["item_id"] == item_id)

            product = self.inventory.get(line["product_id"])
            if product is None:
                return txn.update(
                    COLLECTION, cart, {"items": [i for i in items if i["item_id"] != item_id]}
                ), line["product_id"]
            if quantity > product.get("quantity", 0):
                raise OutOfStock(line["product_id"], product.get("name"), product.get("quantity", 0))
            line["quantity"] = quantity
            return txn.update(COLLECTION, cart, {"items": items}), None

        cart, removed_product = self._retry(operation)
        if removed_product is not None:
            raise ProductUnavailable(removed_product)
        return self._present(cart, self.inventory.get_many(i["product_id"] for i in cart["items"]))

    def remove(self, user_id: str, item_id: str) -> dict:
        def operation(txn: Transaction) -> dict:
            cart = self.carts.find_one({"user_id": user_id, "items.item_id": item_id})
            if not cart:
                raise CartItemNotFound(item_id)
            items = [item for item in cart["items"] if item["item_id"] != item_id]
            return txn.update(COLLECTION, cart, {"items": items})

        cart = self._retry(operation)
        return self._present(cart, self.inventory.get_many(i["product_id"] for i in cart["items"]))

    def clear(self, user_id: str) -> bool:
        result = self.carts.delete_one({"user_id": user_id})
        return result.deleted_count > 0
