import logging
import re
import sys
import uuid
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from app.config import settings
from app.errors import InternalError, TradeError
from app.routers import dealings, ledger, trades
from app.utils.logger import logger

# Global logging configuration
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True,
)

app = FastAPI(title="Arcade Trade API", version="1.0.0")

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Ledger-Warnings"],
    max_age=3600,
)

# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logger.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logger.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logger.exception("Unhandled error rid=%s: %s", rid, str(e))
        error = InternalError()
        error_resp = JSONResponse({**error.to_dict(), "rid": rid}, status_code=error.status_code)
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


@app.exception_handler(TradeError)
async def trade_error_handler(request: Request, exc: TradeError):
    logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    # Driver messages stay in the log; callers only see the stable kind.
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    error = InternalError("The trade could not be saved, please retry")
    return JSONResponse(error.to_dict(), status_code=error.status_code)


app.include_router(trades.router)
app.include_router(dealings.router)
app.include_router(ledger.router)


@app.on_event("startup")
async def startup_event():
    logger.info("Arcade Trade API starting up...")
    masked_url = re.sub(r'://([^:]+):([^@]+)@', r'://\1:****@', settings.DATABASE_URL)
    logger.info(f"📊 Database URL: {masked_url}")
    logger.info(f"Trades start in {settings.TRADE_INITIAL_STATUS}, default tax rate {settings.DEFAULT_TAX_RATE}")


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
async def healthz_db():
    """Database health check endpoint"""
    from fastapi import HTTPException, status
    try:
        from app.models_sqlalchemy import engine
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {"status": "ok", "database": "connected"}
    except Exception:
        logger.exception("Database health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        )


@app.get("/")
async def root():
    return {
        "message": "Arcade Trade API",
        "version": "1.0.0",
        "docs": "/docs"
    }
