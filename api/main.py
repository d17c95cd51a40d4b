"""
FastAPI application exposing the sync engine's inbound commands.

The app runs one engine client against an in-memory remote store seeded with
the demo catalog. Every route is a thin wrapper around a SyncEngine command;
engine errors are mapped to HTTP status codes in one exception handler.
Routes touching the engine are async so they run on the engine's event loop.

Run with:
    uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from shared.config import SyncSettings, get_settings
from shared.exceptions import (
    CartItemNotFoundError,
    CommandError,
    CommandInProgressError,
    EmptyCartError,
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotFoundError,
    ProductNotFoundError,
    ProductUnavailableError,
    RemoteWriteError,
    StructuralError,
    SyncEngineError,
)
from shared.models import Cart, CartTotals, Order, OrderStatus, Product, ProductStatus, Recipient, UserRole
from shared.storage import SharedStorage
from sync_engine.demo import SEED_PRODUCTS
from sync_engine.engine import SyncEngine
from sync_engine.remote import InMemoryRemoteStore

logger = logging.getLogger("api")

# Status code per error type; the first matching class wins
ERROR_STATUS: list[tuple[type[SyncEngineError], int]] = [
    (ProductNotFoundError, 404),
    (OrderNotFoundError, 404),
    (CartItemNotFoundError, 404),
    (CommandInProgressError, 409),
    (InvalidTransitionError, 409),
    (InsufficientStockError, 409),
    (ProductUnavailableError, 409),
    (EmptyCartError, 422),
    (CommandError, 400),
    (RemoteWriteError, 503),
    (StructuralError, 500),
]


# =============================================================================
# Request / response models
# =============================================================================

class ProductCreate(BaseModel):
    id: Optional[str] = None
    name: str
    price: Decimal = Field(..., ge=0)
    stock: int = Field(default=0, ge=0)
    status: ProductStatus = ProductStatus.AVAILABLE


class ProductPatch(BaseModel):
    name: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    stock: Optional[int] = Field(default=None, ge=0)
    status: Optional[ProductStatus] = None


class CartItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)


class QuantityRequest(BaseModel):
    quantity: int


class CartResponse(BaseModel):
    user_id: str
    items: list[dict[str, Any]]
    totals: CartTotals


class StatusRequest(BaseModel):
    status: OrderStatus
    tracking: Optional[str] = None


class MarkReadRequest(BaseModel):
    ids: Optional[list[str]] = None


class ApplicationRequest(BaseModel):
    business_name: str
    contact_email: str


# =============================================================================
# Application
# =============================================================================

def create_app(settings: Optional[SyncSettings] = None, seed: bool = True) -> FastAPI:
    """Build the app; tests pass their own settings."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        server = InMemoryRemoteStore()
        if seed:
            server.seed("products", SEED_PRODUCTS)
        storage = SharedStorage(
            capacity_bytes=settings.storage_capacity_bytes,
            persist_dir=settings.storage_dir or None,
        )
        engine = SyncEngine(
            "api-server",
            storage,
            server.connect("api-server"),
            Recipient(user_id="admin", role=UserRole.ADMIN),
            settings=settings,
        )
        await engine.start()
        await engine.settle()
        app.state.server = server
        app.state.engine = engine
        logger.info("Wholesale Sync Engine API started")
        yield
        await engine.stop()
        logger.info("Shutting down")

    app = FastAPI(
        title="Wholesale Sync Engine",
        description="""
        Inbound commands for the wholesale portal's sync engine.

        ## Areas

        - `/products` - Catalog administration
        - `/carts/{user_id}` - Carts and checkout
        - `/orders` - Order status
        - `/notifications` - Inbox and read state
        - `/backups`, `/recovery` - Backup & recovery
        """,
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(SyncEngineError)
    async def engine_error_handler(request: Request, exc: SyncEngineError):
        status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
        logger.warning(f"{request.method} {request.url.path} -> {status_code} {exc.error_code}: {exc.message}")
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.error_code, "message": exc.message, "details": exc.details},
        )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"error": "VALIDATION_ERROR", "message": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": "BAD_REQUEST", "message": str(exc)})

    register_routes(app)
    return app


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


def cart_response(engine: SyncEngine, cart: Cart) -> CartResponse:
    return CartResponse(
        user_id=cart.user_id,
        items=[item.model_dump(mode="json") for item in cart.items],
        totals=cart.totals(engine.settings),
    )


def register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Health & status
    # =========================================================================

    @app.get("/health", tags=["Health"])
    def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "wholesale-sync-engine"}

    @app.get("/status", tags=["Health"])
    async def sync_status(engine: SyncEngine = Depends(get_engine)):
        return engine.status()

    @app.post("/sync", tags=["Health"])
    async def sync_now(engine: SyncEngine = Depends(get_engine)):
        """Run a reconciliation pass against the remote store and wait for it to apply."""
        connected = await engine.sync_now()
        return {"connected": connected, **engine.status()}

    # =========================================================================
    # Catalog
    # =========================================================================

    @app.get("/products", response_model=list[Product], tags=["Catalog"])
    async def list_products(engine: SyncEngine = Depends(get_engine)):
        return engine.catalog.list_products()

    @app.post("/products", response_model=Product, status_code=201, tags=["Catalog"])
    async def add_product(body: ProductCreate, engine: SyncEngine = Depends(get_engine)):
        return engine.add_product(body.model_dump(mode="json", exclude_none=True))

    @app.put("/products", response_model=list[Product], tags=["Catalog"])
    async def replace_products(body: list[ProductCreate], engine: SyncEngine = Depends(get_engine)):
        return engine.replace_products([p.model_dump(mode="json", exclude_none=True) for p in body])

    @app.patch("/products/{product_id}", response_model=Product, tags=["Catalog"])
    async def update_product(product_id: str, body: ProductPatch, engine: SyncEngine = Depends(get_engine)):
        return engine.update_product(product_id, body.model_dump(mode="json", exclude_unset=True))

    @app.delete("/products/{product_id}", status_code=204, tags=["Catalog"])
    async def delete_product(product_id: str, engine: SyncEngine = Depends(get_engine)):
        engine.delete_product(product_id)

    # =========================================================================
    # Carts
    # =========================================================================

    @app.get("/carts/{user_id}", response_model=CartResponse, tags=["Carts"])
    async def get_cart(user_id: str, engine: SyncEngine = Depends(get_engine)):
        return cart_response(engine, engine.get_cart(user_id))

    @app.post("/carts/{user_id}/items", response_model=CartResponse, tags=["Carts"])
    async def add_to_cart(user_id: str, body: CartItemRequest, engine: SyncEngine = Depends(get_engine)):
        return cart_response(engine, engine.add_to_cart(user_id, body.product_id, body.quantity))

    @app.patch("/carts/{user_id}/items/{item_id}", response_model=CartResponse, tags=["Carts"])
    async def update_cart_quantity(user_id: str, item_id: str, body: QuantityRequest, engine: SyncEngine = Depends(get_engine)):
        return cart_response(engine, engine.update_cart_quantity(user_id, item_id, body.quantity))

    @app.delete("/carts/{user_id}/items/{item_id}", response_model=CartResponse, tags=["Carts"])
    async def remove_from_cart(user_id: str, item_id: str, engine: SyncEngine = Depends(get_engine)):
        return cart_response(engine, engine.remove_from_cart(user_id, item_id))

    @app.post("/carts/{user_id}/checkout", response_model=Order, status_code=201, tags=["Carts"])
    async def checkout(user_id: str, engine: SyncEngine = Depends(get_engine)):
        return await engine.checkout(user_id)

    # =========================================================================
    # Orders
    # =========================================================================

    @app.get("/orders", response_model=list[Order], tags=["Orders"])
    async def list_orders(user_id: Optional[str] = None, engine: SyncEngine = Depends(get_engine)):
        return engine.ordering.list_orders(user_id)

    @app.patch("/orders/{order_id}/status", response_model=Order, tags=["Orders"])
    async def update_order_status(order_id: str, body: StatusRequest, engine: SyncEngine = Depends(get_engine)):
        return engine.update_order_status(order_id, body.status.value, body.tracking)

    # =========================================================================
    # Notifications & applications
    # =========================================================================

    @app.get("/notifications", tags=["Notifications"])
    async def list_notifications(
        user_id: Optional[str] = None,
        role: UserRole = UserRole.PARTNER,
        engine: SyncEngine = Depends(get_engine),
    ):
        recipient = Recipient(user_id=user_id, role=role) if user_id else None
        notifications = engine.notifications_for(recipient)
        return {
            "unread": sum(1 for n in notifications if not n.read),
            "notifications": [n.model_dump(mode="json") for n in notifications],
        }

    @app.post("/notifications/read", tags=["Notifications"])
    async def mark_notifications_read(body: MarkReadRequest, engine: SyncEngine = Depends(get_engine)):
        return {"marked": engine.mark_notifications_read(body.ids)}

    @app.post("/applications", status_code=202, tags=["Notifications"])
    async def submit_application(body: ApplicationRequest, engine: SyncEngine = Depends(get_engine)):
        application = engine.submit_application(body.business_name, body.contact_email)
        return application.model_dump(mode="json")

    # =========================================================================
    # Backup & recovery
    # =========================================================================

    @app.post("/backups", status_code=201, tags=["Backups"])
    async def create_backup(engine: SyncEngine = Depends(get_engine)):
        backup = engine.create_backup()
        return {"timestamp": backup.timestamp.isoformat(), "checksum": backup.checksum, "version": backup.version}

    @app.get("/backups", tags=["Backups"])
    async def backup_status(engine: SyncEngine = Depends(get_engine)):
        return engine.backups.status()

    @app.post("/recovery", tags=["Backups"])
    async def recover(engine: SyncEngine = Depends(get_engine)):
        restored = await engine.recover()
        return {"restored": restored is not None, "products": len(engine.store.get_products())}


app = create_app()
