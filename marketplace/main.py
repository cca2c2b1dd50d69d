from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import logging

from .config import get_settings
from .db import close_db, get_db
from .dependencies import build_gateway_factory, build_services, get_email_sender, get_fx_provider
from .errors import MarketplaceError
from .middleware.rate_limit import build_limiter
from .routers import bookings, moyasar, payments, paypal, stripe_routes
from .services.scheduler import get_scheduler_status, start_scheduler, stop_scheduler

# Configurar logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

settings = get_settings()


async def run_auto_reject() -> dict:
    db = await get_db()
    services = build_services(db, get_email_sender(), build_gateway_factory(get_fx_provider()))
    result = await services["sweep"].run()
    return result.as_dict()


@asynccontextmanager
async def lifespan(app: FastAPI):
    start_scheduler(run_auto_reject)
    yield
    stop_scheduler()
    close_db()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.limiter = build_limiter()
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Configuración de CORS según entorno
if settings.env == "dev":
    # Desarrollo: más permisivo para facilitar desarrollo
    cors_origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]
    cors_regex = r"https?://(localhost|127\.0\.0\.1)(:\d+)?"
    cors_headers = ["Authorization", "Content-Type", "Accept", "Origin", "X-Requested-With"]
else:
    # Producción: sólo la app cliente
    cors_origins = [url for url in (settings.frontend_base_url, settings.client_app_url) if url]
    cors_regex = None
    cors_headers = ["Authorization", "Content-Type", "Accept"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_origin_regex=cors_regex,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=cors_headers,
    expose_headers=["Content-Type"],
)

@app.get("/health")
async def health():
    return {"status": "ok", "env": settings.env, "scheduler": get_scheduler_status()}

# Routers
app.include_router(bookings.router, prefix="/bookings", tags=["bookings"])
app.include_router(payments.router, prefix="/payments", tags=["payments"])
app.include_router(moyasar.router, prefix="/moyasar", tags=["moyasar"])
app.include_router(paypal.router, prefix="/paypal", tags=["paypal"])
app.include_router(stripe_routes.router, prefix="/stripe", tags=["stripe"])
