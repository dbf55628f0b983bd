import logging
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .background import runner
from .database import init_db
from .errors import DuetError, Unauthorized
from .routers import accounts as accounts_router
from .routers import auth as auth_router
from .routers import pairing as pairing_router
from .routers import programs as programs_router
from .routers import steps as steps_router
from .services.scheduler import start_scheduler, stop_scheduler
from .settings.config import settings
from .utils import api_rate_limit

logging.basicConfig(
    level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Duet")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Update for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------
# Route Includes
# ----------------------
for r in (auth_router, accounts_router, pairing_router, programs_router, steps_router):
    app.include_router(r.router, dependencies=[Depends(api_rate_limit)])


# ----------------------
# Errors
# ----------------------
@app.exception_handler(DuetError)
async def _duet_error_handler(request: Request, exc: DuetError):
    headers = {}
    if isinstance(exc, Unauthorized):
        headers["WWW-Authenticate"] = exc.www_authenticate
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.on_event("startup")
async def on_startup():
    from . import models  # Required for SQLAlchemy model detection
    await init_db()
    start_scheduler()


@app.on_event("shutdown")
async def on_shutdown():
    stop_scheduler()
    await runner.shutdown()


@app.get("/health")
async def health():
    return {"status": "ok"}
