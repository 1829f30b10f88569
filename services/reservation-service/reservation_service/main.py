import asyncio
import logging

from fastapi import FastAPI

from shared.rabbitmq import RabbitPublisher
from shared.redis import close_redis, get_redis

from .breaker import CircuitBreaker
from .config import RABBIT_URL, SERVICE_NAME
from .consumer import start_consumer
from .container import Services, build_services
from .db import build_session_factory
from .handlers import register_exception_handlers
from .middleware import RequestLoggingMiddleware
from .processor import HttpPaymentProcessor
from .routes import router
from .workers import maintenance_loop

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)


def default_services(publisher: RabbitPublisher) -> Services:
    redis_client = get_redis()
    breaker = CircuitBreaker(redis_client, "payment-processor", failure_threshold=5, reset_timeout_seconds=10) if redis_client else None
    return build_services(build_session_factory(), HttpPaymentProcessor(breaker=breaker), publisher)


def create_app(services: Services | None = None, run_background: bool = True) -> FastAPI:
    app = FastAPI(title="Reservation Service")
    app.add_middleware(RequestLoggingMiddleware)
    register_exception_handlers(app)
    app.include_router(router)

    publisher = RabbitPublisher()
    app.state.services = services
    app.state.publisher = publisher
    app.state.stop_event = asyncio.Event()
    app.state.worker_task = None
    app.state.consumer_conn = None

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": SERVICE_NAME, "events_enabled": publisher.enabled}

    @app.on_event("startup")
    async def startup():
        if app.state.services is None:
            app.state.services = default_services(publisher)

        try:
            await publisher.connect()
        except Exception as e:
            logger.warning("RabbitMQ connect failed at startup; continuing: %s", e)

        if not run_background:
            return

        try:
            if RABBIT_URL:
                app.state.consumer_conn = await start_consumer(app.state.services, get_redis(), RABBIT_URL)
        except Exception as e:
            app.state.consumer_conn = None
            logger.warning("processor event consumer failed to start: %s", e)

        app.state.worker_task = asyncio.create_task(maintenance_loop(app.state.services, app.state.stop_event))

    @app.on_event("shutdown")
    async def shutdown():
        app.state.stop_event.set()
        if app.state.worker_task:
            try:
                await app.state.worker_task
            except Exception:
                logger.exception("maintenance worker stopped with an error")

        conn = app.state.consumer_conn
        if conn and not conn.is_closed:
            await conn.close()

        await publisher.close()
        await close_redis()

    return app


app = create_app()
