import logging
import uuid

from fastapi import FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.billing import router as billing_router
from app.config import settings
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.metrics import REQUEST_COUNT

configure_logging(settings.log_level, settings.log_json)
logger = logging.getLogger(__name__)

app = FastAPI(title="partner_billing API")
register_error_handlers(app)


@app.middleware("http")
async def request_metrics_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    response = await call_next(request)
    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    REQUEST_COUNT.labels(
        method=request.method, path=path, status=str(response.status_code)
    ).inc()
    response.headers["X-Request-ID"] = request.state.request_id
    return response


app.include_router(billing_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
