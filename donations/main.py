import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from donations.config import get_settings
from donations.routers import api_router
from donations.services.case_amount_reconciliation import case_amount_reconciliation_engine

settings = get_settings()
log_level_name = (settings.log_level or "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
logging.getLogger("donations").setLevel(log_level)

app = FastAPI(title=settings.app_name)

logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.frontend_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router, prefix="/api")


@app.get("/health", tags=["Health"])
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@app.on_event("startup")
async def startup_scheduler() -> None:
    if settings.amount_reconciliation_enabled:
        case_amount_reconciliation_engine.start()


@app.on_event("shutdown")
async def shutdown_scheduler() -> None:
    case_amount_reconciliation_engine.shutdown()
