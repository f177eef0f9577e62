import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from cart_service import CartService
from config import OwnerIdentityStrategy, Settings, load_settings
from database import MongoResource
from errors import ServiceResult
from image_processing import ImageProcessor
from media_store import CloudinaryMediaStore, MediaStore
from notifier import BrevoNotifier, Notifier
from order_service import OrderService
from tasks import BackgroundDispatcher

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("mousepad")


# Owner identity
class TokenData(BaseModel):
    user_id: str
    role: str = "customer"


class Principal(BaseModel):
    owner: Optional[str] = None
    is_admin: bool = False


def decode_token(token: str, secret: str) -> TokenData:
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
        return TokenData(user_id=payload["sub"], role=payload.get("role", "customer"))
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_principal(request: Request,
                  authorization: Optional[str] = Header(default=None),
                  x_user_email: Optional[str] = Header(default=None),
                  x_admin_key: Optional[str] = Header(default=None),
                  userEmail: Optional[str] = None) -> Principal:
    settings: Settings = request.app.state.settings
    if settings.owner_strategy == OwnerIdentityStrategy.user_id:
        if not authorization:
            raise HTTPException(status_code=401, detail="Unauthorized")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise HTTPException(status_code=401, detail="Invalid authorization header")
        token_data = decode_token(token, settings.jwt_secret)
        return Principal(owner=token_data.user_id, is_admin=token_data.role == "admin")
    is_admin = bool(settings.admin_api_key and x_admin_key) and secrets.compare_digest(
        x_admin_key, settings.admin_api_key)
    return Principal(owner=x_user_email or userEmail, is_admin=is_admin)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    return principal


def cart_service(request: Request) -> CartService:
    return request.app.state.cart


def order_service(request: Request) -> OrderService:
    return request.app.state.orders


def respond(result: ServiceResult) -> JSONResponse:
    return JSONResponse(status_code=result.status_code, content=jsonable_encoder(result.body()))


router = APIRouter()


# Health
@router.get("/")
def root(request: Request):
    return {"name": request.app.state.settings.store_name, "status": "ok"}


@router.get("/health")
def health(request: Request):
    settings: Settings = request.app.state.settings
    return {
        "success": True,
        "message": "Server is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment,
        "database": "connected" if request.app.state.database.ping() else "disconnected",
    }


# Cart
@router.get("/api/cart")
def cart_list(principal: Principal = Depends(get_principal), cart: CartService = Depends(cart_service)):
    return respond(cart.list_cart(principal.owner))


@router.post("/api/cart")
def cart_add(payload: Dict[str, Any] = Body(...), principal: Principal = Depends(get_principal),
             cart: CartService = Depends(cart_service)):
    owner = principal.owner
    # Email-mode clients may send the owner inside the cart item body
    if owner is None and isinstance(payload, dict):
        owner = payload.get("userEmail")
    return respond(cart.add_or_update_item(payload, owner))


@router.get("/api/cart/summary")
def cart_summary(principal: Principal = Depends(get_principal), cart: CartService = Depends(cart_service)):
    return respond(cart.get_cart_summary(principal.owner))


@router.delete("/api/cart/clear")
def cart_clear(principal: Principal = Depends(get_principal), cart: CartService = Depends(cart_service)):
    return respond(cart.clear_cart(principal.owner))


@router.patch("/api/cart/payment")
def cart_payment(data: Dict[str, Any] = Body(...), principal: Principal = Depends(get_principal),
                 cart: CartService = Depends(cart_service)):
    return respond(cart.bulk_set_payment_status(principal.owner, data.get("itemIds"), data.get("status")))


@router.get("/api/cart/admin/all")
def cart_admin_all(principal: Principal = Depends(require_admin), cart: CartService = Depends(cart_service)):
    return respond(cart.list_all_items())


@router.put("/api/cart/{item_id}")
def cart_update(item_id: str, updates: Dict[str, Any] = Body(...), principal: Principal = Depends(get_principal),
                cart: CartService = Depends(cart_service)):
    return respond(cart.update_item(item_id, principal.owner, updates))


@router.delete("/api/cart/{item_id}")
def cart_remove(item_id: str, principal: Principal = Depends(get_principal),
                cart: CartService = Depends(cart_service)):
    return respond(cart.remove_item(item_id, principal.owner))


# Orders
@router.post("/api/order")
def order_create(data: Dict[str, Any] = Body(...), principal: Principal = Depends(get_principal),
                 orders: OrderService = Depends(order_service)):
    pricing = {k: data.get(k) for k in ("subtotal", "shipping", "tax", "total", "currency") if data.get(k) is not None}
    return respond(orders.create_order(principal.owner, data.get("items"), pricing, data.get("customerInfo")))


@router.get("/api/order")
def order_list(principal: Principal = Depends(get_principal), orders: OrderService = Depends(order_service)):
    return respond(orders.list_orders(principal.owner))


@router.get("/api/order/{order_id}")
def order_get(order_id: str, principal: Principal = Depends(get_principal),
              orders: OrderService = Depends(order_service)):
    return respond(orders.get_order(order_id, principal.owner, is_admin=principal.is_admin))


@router.patch("/api/order/{order_id}/payment-status")
def order_payment_status(order_id: str, data: Dict[str, Any] = Body(...),
                         principal: Principal = Depends(get_principal),
                         orders: OrderService = Depends(order_service)):
    return respond(orders.update_payment_status(
        order_id, principal.owner, data.get("status"),
        transaction_id=data.get("paymentTransactionId"), is_admin=principal.is_admin,
    ))


def create_app(settings: Optional[Settings] = None, database: Optional[MongoResource] = None,
               media_store: Optional[MediaStore] = None, notifier: Optional[Notifier] = None,
               dispatcher: Optional[BackgroundDispatcher] = None) -> FastAPI:
    settings = settings or load_settings()
    database = database or MongoResource(settings.database_url, settings.database_name)
    media_store = media_store or CloudinaryMediaStore(settings.cloudinary)
    notifier = notifier or BrevoNotifier(settings.email, settings.store_name)
    dispatcher = dispatcher or BackgroundDispatcher(
        max_workers=settings.background_workers,
        max_attempts=settings.background_max_attempts,
        retry_delay=settings.background_retry_delay,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            database.ensure_indexes()
            logger.info("Owner strategy: %s, image strategy: %s",
                        settings.owner_strategy.value, settings.image.strategy.value)
        except PyMongoError as exc:
            # Keep serving; requests report storage errors until the database is back
            logger.error("Failed to connect to MongoDB: %s", exc)
        yield
        dispatcher.shutdown(wait=True)
        database.close()

    app = FastAPI(title=f"{settings.store_name} API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.database = database
    app.state.cart = CartService(settings, database, ImageProcessor(settings.image, media_store), dispatcher)
    app.state.orders = OrderService(settings, database, notifier, dispatcher)
    app.state.dispatcher = dispatcher

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc.detail)},
                            headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request body"})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error: %s", exc)
        error = "Internal server error" if settings.is_production else str(exc)
        return JSONResponse(status_code=500, content={"success": False, "error": error})

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import os
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
