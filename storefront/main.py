"""
Storefront — FastAPI エントリーポイント

商品カタログの CRUD と、注文のチェックアウト・参照・ステータス更新を公開する。
決済プロバイダからの戻り先として /success, /failure, /pending の案内ページも返す。

外部リソース (DB エンジン, httpx クライアント, Redis) は lifespan で作成し app.state に置く。
テストではゲートウェイとパブリッシャを create_app() に注入できる。
"""

import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from . import catalog, db, orders
from .checkout import CheckoutEngine
from .config import Settings
from .errors import InternalError, NotFoundError, StorefrontError, ValidationError
from .events import OrderStatusChanged
from .gateway import MercadoPagoGateway
from .publisher import EventPublisher
from .schemas import (
    CreateOrderRequest,
    ProductCreate,
    ProductUpdate,
    UpdateOrderStatusRequest,
)

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    gateway: MercadoPagoGateway | None = None,
    publisher: EventPublisher | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = db.create_engine(settings.database_url)
        await db.create_schema(engine)
        session_factory = db.create_session_factory(engine)

        http_client = httpx.AsyncClient(timeout=settings.gateway_timeout)
        redis_conn: aioredis.Redis | None = None
        event_publisher = publisher
        if event_publisher is None and settings.redis_url:
            redis_conn = aioredis.from_url(settings.redis_url, decode_responses=True)
            event_publisher = EventPublisher(redis_conn)

        app.state.session_factory = session_factory
        app.state.publisher = event_publisher
        app.state.checkout = CheckoutEngine(
            session_factory,
            gateway
            or MercadoPagoGateway(http_client, settings.mp_access_token, settings.mp_api_url),
            settings,
            event_publisher,
        )
        logger.info("Storefront started (database=%s)", engine.dialect.name)
        yield
        if redis_conn is not None:
            await redis_conn.aclose()
        await http_client.aclose()
        await engine.dispose()

    app = FastAPI(title="Storefront", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)
    _register_routes(app, settings)
    return app


# ── エラーハンドラ ──────────────────────────────


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StorefrontError)
    async def handle_storefront_error(request: Request, exc: StorefrontError):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"Invalid request: {location} {first.get('msg', '')}".strip()
        else:
            message = "Invalid request."
        return JSONResponse(status_code=400, content={"message": message})

    @app.exception_handler(SQLAlchemyError)
    async def handle_database_error(request: Request, exc: SQLAlchemyError):
        logger.exception("Database error on %s %s", request.method, request.url.path)
        return _internal_error()

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _internal_error()


def _internal_error() -> JSONResponse:
    error = InternalError("Internal server error.")
    return JSONResponse(status_code=error.status_code, content={"message": error.message})


# ── ルート ──────────────────────────────────────


def _register_routes(app: FastAPI, settings: Settings) -> None:
    # ── 商品 (Catalog) ──

    @app.post("/api/products", status_code=201)
    async def create_product(req: ProductCreate, request: Request):
        async with request.app.state.session_factory() as session:
            async with session.begin():
                product = await catalog.create_product(session, req.model_dump())
        logger.info("Created product %s", product["id"])
        return {"message": "Product created.", "data": product}

    @app.get("/api/products")
    async def list_products(request: Request):
        async with request.app.state.session_factory() as session:
            return {"message": "Products retrieved.", "data": await catalog.list_products(session)}

    @app.get("/api/products/{product_id}")
    async def get_product(product_id: int, request: Request):
        async with request.app.state.session_factory() as session:
            return {"message": "Product found.", "data": await catalog.get_product(session, product_id)}

    @app.put("/api/products/{product_id}")
    async def update_product(product_id: int, req: ProductUpdate, request: Request):
        async with request.app.state.session_factory() as session:
            async with session.begin():
                product = await catalog.update_product(
                    session, product_id, req.model_dump(exclude_unset=True)
                )
        return {"message": "Product updated.", "data": product}

    @app.delete("/api/products/{product_id}")
    async def delete_product(product_id: int, request: Request):
        async with request.app.state.session_factory() as session:
            async with session.begin():
                product = await catalog.delete_product(session, product_id)
        logger.info("Deleted product %s", product_id)
        return {"message": "Product deleted.", "data": product}

    # ── 注文 (Orders) ──

    @app.post("/api/orders", status_code=201)
    async def create_order(req: CreateOrderRequest, request: Request):
        try:
            result = await request.app.state.checkout.checkout(req.customer_info, req.items)
        except NotFoundError as e:
            # カート内の不明な商品は業務エラーとして 400 で返す
            raise ValidationError(e.message) from e
        return {
            "message": "Order placed.",
            "orderId": result.order_id,
            "total": float(result.total),
            "redirectUrl": result.redirect_url,
        }

    @app.get("/api/orders")
    async def list_orders(request: Request):
        async with request.app.state.session_factory() as session:
            return {"message": "Orders retrieved.", "data": await orders.list_orders(session)}

    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: int, request: Request):
        async with request.app.state.session_factory() as session:
            return {"message": "Order found.", "data": await orders.get_order(session, order_id)}

    @app.put("/api/orders/{order_id}")
    async def update_order_status(
        order_id: int, req: UpdateOrderStatusRequest, request: Request
    ):
        async with request.app.state.session_factory() as session:
            async with session.begin():
                order = await orders.update_status(session, order_id, req.status)

        publisher = request.app.state.publisher
        if publisher is not None:
            await publisher.publish(
                OrderStatusChanged(
                    order_id=order_id,
                    status=order["status"],
                    timestamp=order["updated_at"],
                )
            )
        return {"message": "Order updated.", "data": order}

    # ── 決済からの戻り先ページ ──

    @app.get("/success", response_class=HTMLResponse)
    async def payment_success():
        return _landing_page(
            "Payment approved!",
            f"Thank you for shopping at {settings.statement_descriptor.title()}.",
            "#2E7D32",
            "Back to the store",
        )

    @app.get("/failure", response_class=HTMLResponse)
    async def payment_failure():
        return _landing_page(
            "The payment was not completed",
            "There was a problem with your payment.",
            "#C62828",
            "Go back and try again",
        )

    @app.get("/pending", response_class=HTMLResponse)
    async def payment_pending():
        return _landing_page(
            "Payment pending",
            "Your payment is being processed.",
            "#EF6C00",
            "Back to the store",
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "storefront"}


def _landing_page(title: str, text: str, color: str, link_text: str) -> str:
    return f"""
    <div style="font-family: sans-serif; text-align: center; margin-top: 50px; color: {color};">
        <h1>{title}</h1>
        <p>{text}</p>
        <a href="/index.html" style="background: #D87093; color: white; padding: 10px 20px; text-decoration: none; border-radius: 5px;">{link_text}</a>
    </div>
    """
