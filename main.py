"""
GPT Paywall API
Gates a GPT tool behind a Stripe subscription: access checks, checkout,
billing portal and Stripe webhook reconciliation
"""

from pathlib import Path
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from routers.access_router import access_router
from routers.billing_router import billing_router
from routers.users_router import users_router
from utils.errors import PaywallError
from utils.rate_limit import RateLimiterMiddleware
from utils.responses import error_response
from database import init_db
from config.settings import settings

# ============================================================================
# LOGGING
# ============================================================================

LOGS_DIR = Path(settings.log_dir)
LOGS_DIR.mkdir(parents=True, exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(title="GPT Paywall API")


def _is_render_env() -> bool:
    """Check if running in Render.com environment"""
    return bool(settings.render or settings.render_external_url or settings.render_service_name)


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "data": {}, "error": "internal_error", "message": "Internal Server Error"}
            )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: HSTS, X-Frame-Options, X-Content-Type-Options"""
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # Only set in production (Render environment) where HTTPS is guaranteed
        if _is_render_env():
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        return response


app.add_middleware(UncaughtExceptionMiddleware)
app.add_middleware(RateLimiterMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(PaywallError)
async def paywall_error_handler(request: Request, exc: PaywallError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}: {exc.message}")
    return error_response(exc.code, status=exc.status_code, message=exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return error_response("validation_error", status=400, message="Invalid request body")


# ============================================================================
# STARTUP CHECKS
# ============================================================================

@app.on_event("startup")
async def check_env_keys_on_startup():
    """Warn about missing configuration on startup (non-fatal)"""
    key_checks = {
        "GPT_API_KEY": settings.gpt_api_key,
        "STRIPE_SECRET_KEY": settings.stripe_secret_key,
        "STRIPE_WEBHOOK_SECRET": settings.stripe_webhook_secret,
        "STRIPE_PRICE_ID": settings.stripe_price_id,
    }
    missing = [key for key, value in key_checks.items() if not value]
    if missing:
        logger.warning(f"Startup check: Missing environment variables: {', '.join(missing)}")
    else:
        logger.info("Startup check: All critical environment variables are set")


@app.on_event("startup")
async def initialize_database():
    """Create the users table if needed."""
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

# ============================================================================
# ROUTES
# ============================================================================

@app.get("/health")
async def health():
    return {"status": "ok"}


app.include_router(billing_router)
app.include_router(access_router)
app.include_router(users_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
