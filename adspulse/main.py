import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from adspulse.config import settings
from adspulse.envelope import REQUEST_ID_HEADER, RESPONSE_TIME_HEADER, register_exception_handlers, resolve_request_id
from adspulse.observability import configure_logging
from adspulse.routers import observability, sync, webhooks

configure_logging(settings.log_level)

app = FastAPI(title="Adspulse Ingest", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


@app.middleware("http")
async def attach_request_context(request: Request, call_next):
    request.state.started_at = time.perf_counter()
    request_id = resolve_request_id(request)
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    if RESPONSE_TIME_HEADER not in response.headers:
        elapsed_ms = int((time.perf_counter() - request.state.started_at) * 1000)
        response.headers[RESPONSE_TIME_HEADER] = str(max(0, elapsed_ms))
    return response

app.include_router(webhooks.router)
app.include_router(sync.router)
app.include_router(observability.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "adspulse-ingest"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
