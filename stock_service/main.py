"""
Stock Service — FastAPI エントリーポイント

在庫の参照・引き当て・解放を HTTP で公開する。
起動時に注文イベントのコンシューマをバックグラウンドタスクとして開始する。

┌──────────┐  HTTP   ┌──────────────────┐        ┌───────┐
│  Client  │ ──────▶ │                  │ ─────▶ │ Redis │ (cache)
└──────────┘         │ ReservationService│        └───────┘
┌──────────┐ Streams │                  │        ┌───────┐
│  Orders  │ ──────▶ │                  │ ─────▶ │  DB   │ (正)
└──────────┘         └──────────────────┘        └───────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .cache import RedisCache
from .config import Settings
from .consumer import OrderEventConsumer, run_consumer
from .errors import (
    ConcurrentModificationError,
    DependencyFailure,
    InvalidQuantity,
    ProductNotFound,
    StockInvariantViolation,
)
from .repository import ProductRepository
from .schema import init_schema
from .service import ReservationService

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class StockRequest(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)
    order_id: int | str | None = None


# ── App ──────────────────────────────────────────


def create_app(
    settings: Settings | None = None, *, service: ReservationService | None = None
) -> FastAPI:
    """
    service を渡した場合はインフラ (DB / Redis / コンシューマ) を起動しない。
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is not None:
            yield
            return

        engine = create_async_engine(settings.database_url, echo=False)
        await init_schema(engine)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)

        products = ProductRepository(
            async_session, RedisCache(redis_pool, ttl=settings.cache_ttl_seconds)
        )
        app.state.service = ReservationService(
            products, max_retries=settings.max_write_retries
        )

        shutdown_event = asyncio.Event()
        consumer_task = None
        if settings.consumer_enabled:
            consumer_task = asyncio.create_task(
                run_consumer(
                    redis_pool,
                    OrderEventConsumer(app.state.service),
                    stream=settings.order_event_stream,
                    group=settings.consumer_group,
                    name=settings.consumer_name,
                    workers=settings.consumer_workers,
                    shutdown_event=shutdown_event,
                )
            )
        yield
        # 読み取りループを止め、レーンに積まれた分を処理し切ってから閉じる
        shutdown_event.set()
        if consumer_task is not None:
            try:
                await asyncio.wait_for(
                    consumer_task, timeout=settings.consumer_shutdown_seconds
                )
            except asyncio.TimeoutError:
                logger.warning("Order event consumer did not drain in time; cancelled")
            except Exception:
                logger.exception("Order event consumer stopped with an error")
        await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Stock Service", lifespan=lifespan)
    app.state.settings = settings
    if service is not None:
        app.state.service = service

    _register_error_handlers(app)
    app.include_router(_routes())
    return app


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "Invalid request format"})

    @app.exception_handler(ProductNotFound)
    async def not_found(request: Request, exc: ProductNotFound):
        return JSONResponse(status_code=404, content={"detail": "Product not found"})

    @app.exception_handler(InvalidQuantity)
    async def invalid_quantity(request: Request, exc: InvalidQuantity):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ConcurrentModificationError)
    async def conflict(request: Request, exc: ConcurrentModificationError):
        return JSONResponse(status_code=409, content={"detail": "Product is being modified, retry"})

    @app.exception_handler(StockInvariantViolation)
    async def invariant_violation(request: Request, exc: StockInvariantViolation):
        return JSONResponse(status_code=500, content={"detail": "Product stock is inconsistent"})

    @app.exception_handler(DependencyFailure)
    async def dependency_failure(request: Request, exc: DependencyFailure):
        logger.error("Dependency failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Stock backend unavailable"})

    @app.exception_handler(TimeoutError)
    async def deadline_exceeded(request: Request, exc: TimeoutError):
        logger.warning("Deadline exceeded on %s", request.url.path)
        return JSONResponse(status_code=504, content={"detail": "Deadline exceeded"})


def get_service(request: Request) -> ReservationService:
    return request.app.state.service


def get_deadline(
    request: Request,
    x_request_timeout: float | None = Header(default=None, gt=0),
) -> float:
    """X-Request-Timeout (秒) があればそれ、無ければ設定値"""
    if x_request_timeout is not None:
        return x_request_timeout
    return request.app.state.settings.request_timeout_seconds


def _routes() -> APIRouter:
    router = APIRouter()

    @router.get("/product/{product_id}/stock")
    async def get_product_stock(
        product_id: int, service: ReservationService = Depends(get_service)
    ):
        """在庫数を取得"""
        return {"stock": await service.get_stock(product_id)}

    @router.post("/product/reserve")
    async def reserve_product_stock(
        req: StockRequest,
        service: ReservationService = Depends(get_service),
        deadline: float = Depends(get_deadline),
    ):
        """在庫引き当て"""
        ok = await service.reserve(
            req.product_id, req.quantity, order_id=req.order_id, timeout=deadline
        )
        if not ok:
            raise HTTPException(status_code=400, detail="Insufficient stock available")
        return {"message": "Product stock reserved successfully"}

    @router.post("/product/release")
    async def release_product_stock(
        req: StockRequest,
        service: ReservationService = Depends(get_service),
        deadline: float = Depends(get_deadline),
    ):
        """在庫解放"""
        ok = await service.release(
            req.product_id, req.quantity, order_id=req.order_id, timeout=deadline
        )
        if not ok:
            raise HTTPException(status_code=400, detail="Nothing to release for this order")
        return {"message": "Product stock released successfully"}

    @router.get("/health")
    async def health():
        return {"status": "ok", "service": "stock-service"}

    return router
