import os
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import router as api_router
from app.config import get_settings
from app.services.errors import DatasetStoreError
from src.polltrend.errors import LookupTableError

DEFAULT_CORS_ALLOW_ORIGINS = "http://127.0.0.1:3000,http://localhost:3000,http://127.0.0.1:5173,http://localhost:5173"

logger = logging.getLogger(__name__)


def _resolve_cors_allow_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", DEFAULT_CORS_ALLOW_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app = FastAPI(title="Poll Trend Backend", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=_resolve_cors_allow_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router)


@app.exception_handler(DatasetStoreError)
def handle_dataset_store_error(_, exc: DatasetStoreError):  # noqa: ANN001
    logger.error("dataset_store_error detail=%s", exc)
    return JSONResponse(status_code=503, content={"detail": "dataset store unavailable"})


@app.exception_handler(LookupTableError)
def handle_lookup_table_error(_, exc: LookupTableError):  # noqa: ANN001
    logger.error("lookup_table_error detail=%s", exc)
    return JSONResponse(status_code=503, content={"detail": "lookup tables unavailable"})


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/health/store")
def health_store_check():
    settings = get_settings()
    dataset_path = settings.resolved_dataset_path()
    return {
        "status": "ok",
        "app_env": settings.app_env,
        "dataset_present": dataset_path.exists(),
        "dataset_path": str(dataset_path),
    }
