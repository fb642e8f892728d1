import logging
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .api import auth, bookings, conversations, notifications, properties
from .core.errors import StoreError
from .core.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
  settings = settings or get_settings()
  logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
  app = FastAPI(title="Rentboard API", version="1.0.0")

  app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
  )

  client = http_client or httpx.AsyncClient(timeout=settings.http_timeout)
  app.state.settings = settings
  app.state.http_client = client
  app.state.sessions = {}

  @app.on_event("shutdown")
  async def shutdown_event():
    for context in list(app.state.sessions.values()):
      await context.aclose()
    app.state.sessions.clear()
    if http_client is None:
      await client.aclose()

  @app.exception_handler(StoreError)
  async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

  @app.exception_handler(ValidationError)
  async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": exc.errors(include_url=False, include_context=False, include_input=False)})

  app.include_router(auth.router)
  app.include_router(properties.router)
  app.include_router(bookings.router)
  app.include_router(conversations.router)
  app.include_router(notifications.router)

  @app.get("/api/health")
  async def health():
    return {"status": "ok"}

  logger.info("Rentboard API ready (%s)", settings.firebase_database_url or "no database configured")
  return app


app = create_app()


if __name__ == "__main__":  # pragma: no cover
  import uvicorn

  settings = get_settings()
  uvicorn.run("rentboard.main:app", host="0.0.0.0", port=settings.port, reload=True)
