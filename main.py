import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from auth import get_current_user
from carts import CartStore
from config import Settings, get_settings
from database import db, ensure_indexes, get_db, serialize_doc
from errors import MarketError
from inventory import InventoryStore
from notifications import NotificationSink
from order_states import OrderStatus, PaymentMethod
from payments import PaymentGateway, build_gateway
from schemas import ShippingInfo
from workflow import OrderWorkflow, present_order

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("crop_connect")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    logger.info("Order service starting in %s mode", settings.app_env)
    yield


app = FastAPI(title="Crop Connect Orders API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "https://crop-connect-pink.vercel.app",
        "http://localhost:5173",
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Errors ----------

def _error_body(message: str, code: str, details=None) -> dict:
    body = {"success": False, "error": message, "code": code}
    if details:
        body["details"] = details
    return body


@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.code, exc.details))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content=_error_body("Invalid request", "VALIDATION_ERROR", errors))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    details = {"message": str(exc)} if settings.is_development else None
    return JSONResponse(status_code=500, content=_error_body("Internal Server Error", "INTERNAL_ERROR", details))


# ---------- Dependencies ----------

_gateway: Optional[PaymentGateway] = None


def get_gateway(database=Depends(get_db), settings: Settings = Depends(get_settings)) -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway(settings, database)
    return _gateway


def _require_db(database):
    if database is None:
        raise MarketError("Database not configured")
    return database


def get_notifier(database=Depends(get_db)) -> NotificationSink:
    return NotificationSink(_require_db(database))


def get_carts(database=Depends(get_db), settings: Settings = Depends(get_settings)) -> CartStore:
    database = _require_db(database)
    return CartStore(database, InventoryStore(database), settings)


def get_workflow(
    database=Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: NotificationSink = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> OrderWorkflow:
    return OrderWorkflow(_require_db(database), gateway, notifier, settings)


# ---------- Health ----------

@app.get("/")
def read_root():
    return {"message": "Crop Connect order service running"}


@app.get("/api/health")
def health():
    return {"status": "healthy"}


@app.get("/test")
def test_database(database=Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if database is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = database.name if hasattr(database, 'name') else "❌ Unknown"
            response["connection_status"] = "Connected"
            try:
                response["collections"] = database.list_collection_names()
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"

    return response


# ---------- Request models ----------

# older clients send the gateway's brand name and hyphenated method names
_METHOD_ALIASES = {
    "paystack": PaymentMethod.GATEWAY.value,
    "bank-transfer": PaymentMethod.BANK_TRANSFER.value,
    "cash-on-delivery": PaymentMethod.CASH_ON_DELIVERY.value,
}


class OrderIn(BaseModel):
    shipping_info: ShippingInfo
    payment_method: PaymentMethod

    @field_validator("payment_method", mode="before")
    @classmethod
    def _normalize_method(cls, value):
        if isinstance(value, str):
            return _METHOD_ALIASES.get(value, value)
        return value


class StatusIn(BaseModel):
    status: OrderStatus


class CartAddIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=100)


class CartUpdateIn(BaseModel):
    quantity: int = Field(..., ge=1, le=100)


# ---------- Orders ----------

@app.post("/api/orders")
def create_order(payload: OrderIn, user: dict = Depends(get_current_user),
                 workflow: OrderWorkflow = Depends(get_workflow)):
    result = workflow.create_order(user, payload.shipping_info, payload.payment_method)
    body = {"success": True, "order": present_order(result["order"])}
    if "redirect_url" in result:
        body["redirect_url"] = result["redirect_url"]
    return body


@app.get("/api/orders/recent")
def recent_orders(user: dict = Depends(get_current_user), workflow: OrderWorkflow = Depends(get_workflow)):
    summary = workflow.buyer_summary(str(user["_id"]))
    return {"success": True, **summary}


@app.get("/api/orders/my-orders")
def my_orders(user: dict = Depends(get_current_user), workflow: OrderWorkflow = Depends(get_workflow)):
    return [present_order(o) for o in workflow.buyer_orders(str(user["_id"]))]


@app.get("/api/orders/farmer-orders")
def farmer_orders(user: dict = Depends(get_current_user), workflow: OrderWorkflow = Depends(get_workflow)):
    return [present_order(o) for o in workflow.farmer_orders(user)]


@app.get("/api/orders/verify-payment/{reference}")
def verify_payment(reference: str, user: dict = Depends(get_current_user),
                   workflow: OrderWorkflow = Depends(get_workflow)):
    order = workflow.verify_payment(reference)
    return {"success": True, "order": present_order(order), "message": "Payment verified successfully"}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user),
              workflow: OrderWorkflow = Depends(get_workflow)):
    return present_order(workflow.get_order(order_id, user))


@app.patch("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusIn, user: dict = Depends(get_current_user),
                        workflow: OrderWorkflow = Depends(get_workflow)):
    return present_order(workflow.update_order_status(order_id, user, payload.status))


# ---------- Cart ----------

@app.get("/api/cart")
def get_cart(user: dict = Depends(get_current_user), carts: CartStore = Depends(get_carts)):
    return serialize_doc(carts.view(str(user["_id"])))


@app.post("/api/cart/add")
def cart_add(payload: CartAddIn, user: dict = Depends(get_current_user), carts: CartStore = Depends(get_carts)):
    return serialize_doc(carts.add(str(user["_id"]), payload.product_id, payload.quantity))


@app.put("/api/cart/update/{item_id}")
def cart_update(item_id: str, payload: CartUpdateIn, user: dict = Depends(get_current_user),
                carts: CartStore = Depends(get_carts)):
    return serialize_doc(carts.update_quantity(str(user["_id"]), item_id, payload.quantity))


@app.delete("/api/cart/remove/{item_id}")
def cart_remove(item_id: str, user: dict = Depends(get_current_user), carts: CartStore = Depends(get_carts)):
    return serialize_doc(carts.remove(str(user["_id"]), item_id))


@app.delete("/api/cart/clear")
def cart_clear(user: dict = Depends(get_current_user), carts: CartStore = Depends(get_carts)):
    carts.clear(str(user["_id"]))
    return {"message": "Cart cleared successfully"}


# ---------- Notifications ----------

@app.get("/api/notifications")
def list_notifications(unread: bool = Query(False), user: dict = Depends(get_current_user),
                       notifier: NotificationSink = Depends(get_notifier)):
    return [serialize_doc(n) for n in notifier.list_for(str(user["_id"]), unread_only=unread)]


@app.patch("/api/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, user: dict = Depends(get_current_user),
                           notifier: NotificationSink = Depends(get_notifier)):
    return serialize_doc(notifier.mark_read(str(user["_id"]), notification_id))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
