from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.env import env_csv
from core.logging import setup_logging
from web import routers
from web.middleware.auth_context import auth_context_middleware

setup_logging()

app = FastAPI(
    title="Billing Reconciliation API",
    description="Payment webhook intake, refund workflow and billing admin console.",
    version="0.1.0",
)

origins = env_csv("CORS_ALLOW_ORIGINS") or [
    "http://localhost:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_auth_context(request: Request, call_next):
    """Resolve the bearer token into request.state.user."""
    return await auth_context_middleware(request, call_next)


@app.get("/", summary="Health Check", tags=["Default"])
def health_check():
    """API 상태를 확인하는 헬스 체크 엔드포인트입니다."""
    return {"status": "ok", "message": "Billing Reconciliation API is running."}


@app.get("/healthz", include_in_schema=False)
def liveness_probe():
    db_ok, db_error = routers.health.ping_database()
    payload = {"status": "ok" if db_ok else "unhealthy", "database": {"ok": db_ok}}
    if db_error:
        payload["database"]["error"] = db_error
    status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=payload)


@app.get("/metrics", include_in_schema=False)
def prometheus_metrics():
    """Expose Prometheus metrics."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(routers.billing_webhook.router, prefix="/api/v1")
app.include_router(routers.billing_refunds.router, prefix="/api/v1")
app.include_router(routers.admin_billing.router, prefix="/api/v1")
app.include_router(routers.health.router, prefix="/api/v1")
