import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from . import models  # noqa: F401 - registers tables on Base
from .database import Base, SessionLocal
from .domain.reservations.events import RedisBroadcaster, ReservationEventBus
from .domain.reservations.policy import BookingPolicy
from .domain.reservations.router import router as reservations_router
from .domain.reservations.service import build_availability_index
from .domain.reservations.settlement import router as settlement_router
from .domain.reservations.time_window import utcnow
from .errors import ReservationError
from .scheduler import ExpiryScheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


def create_app(
    session_factory=SessionLocal,
    policy: Optional[BookingPolicy] = None,
    clock: Callable = utcnow,
    start_scheduler: bool = config.EXPIRY_SCHEDULER_ENABLED,
    settlement_secret: Optional[str] = config.SETTLEMENT_WEBHOOK_SECRET,
    redis_broadcast: bool = config.REDIS_BROADCAST_ENABLED,
) -> FastAPI:
    policy = policy or BookingPolicy.from_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting up...")
        engine = session_factory.kw["bind"]
        try:
            Base.metadata.create_all(bind=engine, checkfirst=True)
            logger.info("Database tables created successfully")
        except Exception as e:
            # Another worker may have created them concurrently
            error_msg = str(e)
            if "already exists" in error_msg or "duplicate key" in error_msg:
                logger.info("Database tables already exist (created by another worker)")
            else:
                logger.error(f"Failed to create database tables: {e}")
                raise

        events = ReservationEventBus()
        if redis_broadcast:
            events.subscribe(RedisBroadcaster())
        index = build_availability_index(session_factory, ttl_seconds=config.AVAILABILITY_INDEX_TTL_SECONDS)
        scheduler = ExpiryScheduler(session_factory, index, events, policy=policy, clock=clock)

        app.state.event_bus = events
        app.state.availability_index = index
        app.state.scheduler = scheduler

        if start_scheduler:
            await scheduler.start()

        yield

        logger.info("Application shutting down...")
        await scheduler.stop()
        events.drain(timeout=5)
        events.shutdown()

    app = FastAPI(title="EV Reservation API", version="1.0.0", lifespan=lifespan)
    app.state.booking_policy = policy
    app.state.clock = clock
    app.state.settlement_secret = settlement_secret

    @app.exception_handler(ReservationError)
    async def reservation_error_handler(request: Request, exc: ReservationError):
        if exc.status_code >= 500:
            logger.error(f"❌ {exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(reservations_router)
    app.include_router(settlement_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "scheduler": app.state.scheduler.running if hasattr(app.state, "scheduler") else False}

    return app


app = create_app()
