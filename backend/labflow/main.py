import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from labflow import config
from labflow.api import billing, labs, marketplace, notifications, orders
from labflow.errors import LabflowError
from labflow.services.commands import OrderDesk

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def create_app(desk: OrderDesk = None) -> FastAPI:
    """Build the HTTP app. A desk passed in is used as-is and left open on shutdown."""
    app = FastAPI(title="Labflow Order Core")
    app.state.desk = desk

    # CORS for the doctor and lab portals
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(orders.router, prefix="/orders", tags=["orders"])
    app.include_router(marketplace.router, prefix="/marketplace", tags=["marketplace"])
    app.include_router(billing.router, prefix="/invoices", tags=["invoices"])
    app.include_router(billing.rules_router, prefix="/pricing-rules", tags=["pricing-rules"])
    app.include_router(labs.router, prefix="/labs", tags=["labs"])
    app.include_router(labs.audit_router, prefix="/audit", tags=["audit"])
    app.include_router(notifications.router, prefix="/notifications", tags=["notifications"])

    @app.exception_handler(LabflowError)
    async def labflow_error_handler(request: Request, exc: LabflowError):
        if exc.retryable:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.reason, exc.detail)
        else:
            logger.warning("%s %s refused: %s %s", request.method, request.url.path, exc.kind, exc.reason)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.on_event("startup")
    def on_startup():
        if app.state.desk is None:
            app.state.desk = OrderDesk.create()
            app.state.owns_desk = True

    @app.on_event("shutdown")
    def on_shutdown():
        if getattr(app.state, "owns_desk", False):
            app.state.desk.close()
            app.state.desk = None

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "labflow-order-core"}

    return app


app = create_app()
