"""
Order workflow: checkout, payment verification and seller status updates.

Stock is taken at different moments depending on how the buyer pays:

- cash on delivery: stock is taken and the cart deleted when the order is
  created;
- gateway: creation only checks stock. Stock is taken and the cart deleted
  when the payment is verified;
- bank transfer: the order waits for manual confirmation, nothing is taken.

Gateway orders do not hold stock between checkout and verification, and
abandoned checkouts are never expired.

Every multi-document change runs in a Transaction and is retried on
ConflictError, so a lost race against another request is redone on fresh
data instead of overselling.
"""
import logging
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import ValidationError as PydanticValidationError

from carts import COLLECTION as CARTS, CartStore
from config import Settings
from database import Transaction, parse_object_id, run_in_transaction, serialize_doc
from errors import (
    AmountMismatch,
    CartEmpty,
    Forbidden,
    GatewayError,
    InvalidMetadata,
    InvalidTransition,
    OrderNotFound,
    PaymentInitError,
    ValidationError,
)
from inventory import InventoryStore
from notifications import NotificationSink
from order_states import (
    SELLER_SETTABLE,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    check_payment_transition,
    check_status_transition,
)
from payments import PaymentGateway, Verification, order_reference, to_minor_units
from schemas import Order, OrderItem, PaymentDetails, ShippingInfo

logger = logging.getLogger(__name__)

ORDERS = "order"


def order_number(order_id) -> str:
    return f"ORD-{str(order_id)[-6:].upper()}"


def present_order(order: dict) -> dict:
    """JSON-ready order with its display number."""
    data = serialize_doc(order)
    data["order_number"] = order_number(order["_id"])
    return data


class OrderWorkflow:
    def __init__(self, database, gateway: PaymentGateway, notifier: NotificationSink, settings: Settings,
                 inventory: Optional[InventoryStore] = None, carts: Optional[CartStore] = None):
        self.db = database
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings
        self.inventory = inventory or InventoryStore(database)
        self.carts = carts or CartStore(database, self.inventory, settings)

    @property
    def orders(self):
        return self.db[ORDERS]

    def _retry(self, operation):
        return run_in_transaction(
            self.db,
            operation,
            max_attempts=self.settings.order_max_attempts,
            backoff=self.settings.order_retry_backoff,
        )

    def _load(self, order_id) -> dict:
        order = self.orders.find_one({"_id": order_id})
        if not order:
            raise OrderNotFound(str(order_id))
        return order

    # ---------- Checkout ----------

    def create_order(self, buyer: dict, shipping_info: Union[ShippingInfo, Dict[str, Any]],
                     payment_method: Union[PaymentMethod, str]) -> Dict[str, Any]:
        """
        Turn the buyer's cart into an order.

        Returns {"order": ...} and, for gateway payments, "redirect_url" where
        the buyer completes the payment. Nothing is written if any line is
        unavailable or the gateway refuses the transaction.
        """
        shipping = self._shipping(shipping_info)
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {payment_method}")
        buyer_id = str(buyer["_id"])

        def operation(txn: Transaction) -> Dict[str, Any]:
            cart = self.carts.find(buyer_id)
            if not cart or not cart.get("items"):
                raise CartEmpty()

            # same product on two lines must be checked and taken as one amount
            wanted: Dict[str, int] = {}
            for line in cart["items"]:
                wanted[line["product_id"]] = wanted.get(line["product_id"], 0) + line["quantity"]
            products = {pid: self.inventory.require_available(pid, qty) for pid, qty in wanted.items()}

            items = []
            total = 0.0
            for line in cart["items"]:
                price = products[line["product_id"]]["price"]
                items.append(OrderItem(product_id=line["product_id"], quantity=line["quantity"],
                                       price_at_purchase=price))
                total += price * line["quantity"]

            status = OrderStatus.PENDING
            if method == PaymentMethod.CASH_ON_DELIVERY:
                status = check_status_transition(OrderStatus.PENDING, OrderStatus.PROCESSING)

            order_id = ObjectId()
            order = Order(
                buyer_id=buyer_id,
                items=items,
                total_price=round(total, 2),
                shipping_address=shipping,
                payment_method=method,
                status=status,
                transaction_reference=order_reference(order_id),
            )
            draft = {"_id": order_id, **order.model_dump(mode="json")}

            # written only after the gateway accepts; verify_payment must never
            # see an order that a failed initialization would undo
            redirect_url = None
            if method == PaymentMethod.GATEWAY:
                redirect_url = self._initialize_payment(buyer, draft)
            doc = txn.insert(ORDERS, draft)

            result: Dict[str, Any] = {"order": doc}
            if redirect_url is not None:
                result["redirect_url"] = redirect_url
            elif method == PaymentMethod.CASH_ON_DELIVERY:
                for pid, qty in wanted.items():
                    self.inventory.reserve(txn, products[pid], qty)
                txn.delete(CARTS, cart)

            txn.after_commit(lambda: self._announce_new_order(doc))
            return result

        result = self._retry(operation)
        logger.info("Order %s created for buyer %s via %s (total %.2f)",
                    result["order"]["_id"], buyer_id, method.value, result["order"]["total_price"])
        return result

    def _shipping(self, shipping_info) -> ShippingInfo:
        shipping = shipping_info
        if not isinstance(shipping, ShippingInfo):
            try:
                shipping = ShippingInfo(**(shipping_info or {}))
            except PydanticValidationError as exc:
                fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
                raise ValidationError("Shipping information is incomplete", {"fields": fields})
        for field in ("address", "city", "state", "phone"):
            if not getattr(shipping, field).strip():
                raise ValidationError(f"{field.capitalize()} is required", {"fields": [field]})
        return shipping

    def _initialize_payment(self, buyer: dict, order: dict) -> str:
        try:
            init = self.gateway.initialize(
                email=buyer.get("email", ""),
                amount_minor=to_minor_units(order["total_price"]),
                reference=order["transaction_reference"],
                callback_url=f"{self.settings.frontend_url}/order-confirmation",
                metadata={"orderId": str(order["_id"]), "userId": order["buyer_id"]},
            )
        except GatewayError as exc:
            raise PaymentInitError("Failed to initialize payment", {"reason": exc.message})
        if not init.status or not init.redirect_url:
            logger.warning("Gateway refused payment for order %s: %s", order["_id"], init.message)
            raise PaymentInitError("Failed to initialize payment", {"reason": init.message})
        return init.redirect_url

    # ---------- Payment verification ----------

    def verify_payment(self, reference: str) -> dict:
        """
        Settle a gateway payment. Safe to call any number of times for the same
        reference: once an order is paid, later calls return it unchanged.
        Cash on delivery and bank transfer orders are refused, their stock is
        handled elsewhere.
        """
        verification = self._verify_with_gateway(reference)
        order_id = self._order_id_from(verification)

        def operation(txn: Transaction) -> dict:
            order = self._load(order_id)
            if order.get("payment_method") != PaymentMethod.GATEWAY.value:
                raise ValidationError(
                    "Order is not paid through the payment gateway",
                    {"payment_method": order.get("payment_method")},
                )
            expected = to_minor_units(order["total_price"])
            if verification.amount_minor < expected:
                raise AmountMismatch(expected, verification.amount_minor)
            if order["payment_status"] == PaymentStatus.COMPLETED.value:
                return order

            check_payment_transition(order["payment_status"], PaymentStatus.COMPLETED)
            status = order["status"]
            if status == OrderStatus.CANCELLED.value:
                raise InvalidTransition("status", status, OrderStatus.PROCESSING.value)
            if status == OrderStatus.PENDING.value:
                status = OrderStatus.PROCESSING.value

            payment = PaymentDetails(
                reference=verification.reference,
                channel=verification.channel,
                paid_at=verification.paid_at,
                amount_minor=verification.amount_minor,
            )
            order = txn.update(
                ORDERS,
                order,
                {
                    "payment_status": PaymentStatus.COMPLETED.value,
                    "status": status,
                    "transaction_reference": verification.reference,
                    "payment": payment.model_dump(),
                },
                guard={"payment_status": PaymentStatus.PENDING.value},
            )

            shortfall = []
            for item in order["items"]:
                taken = self.inventory.settle(txn, item["product_id"], item["quantity"])
                if taken < item["quantity"]:
                    shortfall.append({"product_id": item["product_id"], "requested": item["quantity"],
                                      "settled": taken})
            if shortfall:
                logger.warning("Order %s paid but stock was short: %s", order["_id"], shortfall)
                order = txn.update(ORDERS, order, {"stock_shortfall": shortfall})

            cart = self.carts.find(order["buyer_id"])
            if cart:
                txn.delete(CARTS, cart)

            txn.after_commit(lambda paid=order: self._announce_payment(paid))
            return order

        order = self._retry(operation)
        logger.info("Payment %s verified for order %s", reference, order["_id"])
        return order

    def _verify_with_gateway(self, reference: str) -> Verification:
        verification = self.gateway.verify(reference)
        if not verification.status:
            raise GatewayError(
                "Payment was not successful",
                {"reference": reference, "reason": verification.message},
            )
        return verification

    def _order_id_from(self, verification: Verification) -> ObjectId:
        raw = verification.metadata.get("orderId")
        if not raw:
            raise InvalidMetadata()
        try:
            return ObjectId(str(raw))
        except (InvalidId, TypeError):
            raise InvalidMetadata()

    # ---------- Seller updates ----------

    def update_order_status(self, order_id: str, actor: dict, new_status: Union[OrderStatus, str]) -> dict:
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown status: {new_status}")
        if target not in SELLER_SETTABLE:
            raise ValidationError(f"Status cannot be set to {target.value}")
        oid = parse_object_id(order_id, "order id")
        actor_id = str(actor["_id"])

        def operation(txn: Transaction) -> dict:
            order = self._load(oid)
            if actor_id not in self.inventory.owners(item["product_id"] for item in order["items"]):
                raise Forbidden("Not authorized to update this order")
            check_status_transition(order["status"], target)
            updated = txn.update(ORDERS, order, {"status": target.value})
            txn.after_commit(lambda: self._announce_status(updated))
            return updated

        order = self._retry(operation)
        logger.info("Order %s moved to %s by %s", order["_id"], target.value, actor_id)
        return order

    # ---------- Reads ----------

    def get_order(self, order_id: str, actor: dict) -> dict:
        order = self._load(parse_object_id(order_id, "order id"))
        actor_id = str(actor["_id"])
        if order["buyer_id"] == actor_id:
            return order
        if actor_id in self.inventory.owners(item["product_id"] for item in order["items"]):
            return order
        raise Forbidden("Not authorized to view this order")

    def buyer_orders(self, buyer_id: str) -> List[dict]:
        return list(self.orders.find({"buyer_id": buyer_id}).sort("created_at", -1))

    def farmer_orders(self, farmer: dict) -> List[dict]:
        """Orders containing the farmer's products, reduced to the farmer's lines."""
        if farmer.get("role") != "farmer":
            raise Forbidden("Only farmers can access this endpoint")
        product_ids = set(self.inventory.owned_by(str(farmer["_id"])))
        if not product_ids:
            return []

        cursor = self.orders.find({"items.product_id": {"$in": list(product_ids)}}).sort("created_at", -1)
        result = []
        for order in cursor:
            items = [item for item in order["items"] if item["product_id"] in product_ids]
            if not items:
                continue
            farmer_total = sum(item["price_at_purchase"] * item["quantity"] for item in items)
            result.append({**order, "items": items, "total_price": round(farmer_total, 2)})
        return result

    def buyer_summary(self, buyer_id: str) -> Dict[str, Any]:
        count = 0
        total = 0.0
        for order in self.orders.find({"buyer_id": buyer_id}, {"total_price": 1}):
            if isinstance(order.get("total_price"), (int, float)):
                count += 1
                total += order["total_price"]
        return {"count": count, "total_spent": round(total, 2)}

    # ---------- Notifications ----------

    def _farmers_of(self, order: dict):
        return self.inventory.owners(item["product_id"] for item in order["items"])

    def _announce_new_order(self, order: dict) -> None:
        number = order_number(order["_id"])
        self.notifier.notify_many(
            self._farmers_of(order),
            title="New order received",
            message=f"Order {number} includes your products",
            type="new-order",
            link=f"/farmer/orders/{order['_id']}",
            metadata={"order_id": str(order["_id"])},
        )

    def _announce_payment(self, order: dict) -> None:
        number = order_number(order["_id"])
        self.notifier.notify(
            order["buyer_id"],
            title="Payment confirmed",
            message=f"We received your payment for order {number}",
            type="payment-confirmation",
            link=f"/orders/{order['_id']}",
            metadata={"order_id": str(order["_id"])},
        )
        self.notifier.notify_many(
            self._farmers_of(order),
            title="Payment received",
            message=f"Order {number} has been paid and is ready to process",
            type="payment-received",
            link=f"/farmer/orders/{order['_id']}",
            metadata={"order_id": str(order["_id"])},
        )

    def _announce_status(self, order: dict) -> None:
        status = order["status"]
        kind = "shipment-update" if status in ("shipped", "delivered") else "order-update"
        self.notifier.notify(
            order["buyer_id"],
            title="Order update",
            message=f"Order {order_number(order['_id'])} is now {status}",
            type=kind,
            link=f"/orders/{order['_id']}",
            metadata={"order_id": str(order["_id"]), "status": status},
        )
