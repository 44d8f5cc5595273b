"""Outbound FastAPI application.

Web server that processes outbound queue commands synchronously via HTTP.
Each request under ``/outbound`` is wrapped in the outbound domain context.

Usage:
    uvicorn src.app:app --host 0.0.0.0 --port 8000 --reload
"""

# ---------------------------------------------------------------------------
# Domain initialization
# ---------------------------------------------------------------------------
# The domain is initialized at module level so uvicorn workers share it.
# PROTEAN_ENV controls which config overlay is applied:
#   - "test"       → event_processing = "sync"  (projectors fire in UoW)
#   - "production" → event_processing = "async" (projectors fire via Engine)
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from outbound.domain import outbound  # noqa: E402

outbound.init()

_DOMAIN_PREFIX = "/outbound"


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Outbound API",
    description="Outbound notification delivery — queue, dispatch, delivery status and digests",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def domain_context_middleware(request: Request, call_next):
    """Push the outbound domain context for each domain request."""
    if request.url.path.startswith(_DOMAIN_PREFIX):
        with outbound.domain_context():
            response = await call_next(request)
        return response
    # No domain match, pass through
    return await call_next(request)


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from outbound.api import router as outbound_router  # noqa: E402

app.include_router(outbound_router)


# ---------------------------------------------------------------------------
# Health / root
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return JSONResponse(
        content={
            "status": "ok",
            "domains": {
                "outbound": {"name": outbound.name},
            },
        }
    )
