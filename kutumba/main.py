from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

import psycopg
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .auth import MissingSecretError, check_jwt_secret
from .middleware import AuthMiddleware
from .routes.auth import router as auth_router
from .routes.persons import router as persons_router
from .routes.relationships import router as relationships_router
from .routes.tree import router as tree_router

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    check_jwt_secret()
    yield


app = FastAPI(title="Kutumba Family Tree API", version="0.1.0", lifespan=_lifespan)

app.add_middleware(AuthMiddleware)

app.include_router(auth_router)
app.include_router(persons_router)
app.include_router(relationships_router)
app.include_router(tree_router)


@app.exception_handler(psycopg.Error)
def _database_error(request: Request, exc: psycopg.Error) -> JSONResponse:
    log.error("database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse({"detail": "Internal Server Error"}, status_code=500)


@app.exception_handler(MissingSecretError)
def _missing_secret(request: Request, exc: MissingSecretError) -> JSONResponse:
    log.error("cannot sign sessions on %s: %s", request.url.path, exc)
    return JSONResponse({"detail": "Authentication system error"}, status_code=500)


@app.get("/health")
def health() -> dict[str, str]:
    return {"ok": "true"}
