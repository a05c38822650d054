# backend/manualdb/main.py
import logging
import os
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .apps.accounts.router import router as accounts_router
from .apps.audit.router import router as audit_router
from .apps.manuals.router import router as manuals_router

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def _allowed_origins() -> List[str]:
    """
    Parse CORS_ALLOWED_ORIGINS from env.

    Accepts comma-separated origins. If unset, defaults to local dev ports.
    """
    raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if raw:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
        if origins:
            return origins
    return [
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ]


app = FastAPI(title="Manual Revision API", version="1.0.0")
cors_origins = _allowed_origins()
allow_credentials = "*" not in cors_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["health"])
def read_root():
    return {"status": "ok", "message": "Manual revision backend is running"}


@app.get("/health", tags=["health"])
def health():
    return {"status": "ok"}


app.include_router(accounts_router)
app.include_router(audit_router)
app.include_router(manuals_router)
