import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import models  # noqa: F401 - register tables with Base
from .database import Base, engine
from .domain.appointments.router import router as appointments_router
from .domain.escrow.router import router as escrow_router
from .domain.payments.router import webhooks_router
from .domain.slots.router import router as slots_router
from .errors import BookingEngineError, InvalidEscrowState, InvalidTransition

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="CareBook Booking & Escrow API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(BookingEngineError)
async def booking_engine_exception_handler(request: Request, exc: BookingEngineError):
    """Typed engine failures become JSON errors with a stable code"""
    if isinstance(exc, (InvalidTransition, InvalidEscrowState)):
        logger.warning(f"⚠️ {exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"ℹ️ {exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(slots_router)
app.include_router(appointments_router)
app.include_router(escrow_router)
app.include_router(webhooks_router)


@app.get("/")
def root():
    return {"message": "CareBook Booking & Escrow API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}
