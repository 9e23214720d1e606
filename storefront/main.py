from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator
import structlog
from storefront.version import VERSION
from storefront.core.config import settings
from storefront.core.logging import configure_logging
from storefront.api import cart, orders, payments

configure_logging(settings.LOG_LEVEL)
logger = structlog.get_logger(__name__)

# Create instrumentator first
instrumentator = Instrumentator()

app = FastAPI(title="Storefront Order Service", version=VERSION)

instrumentator.instrument(app).expose(
    app,
    include_in_schema=False,
    endpoint="/metrics",
    should_gzip=True,
)

# Health endpoints
@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/v1/_info")
def info():
    return {"service": "storefront", "version": VERSION, "gateway": settings.PAYMENT_GATEWAY}

@app.on_event("startup")
async def startup_event():
    routes = [f"{sorted(r.methods)} {r.path}" for r in app.routes if hasattr(r, "methods") and hasattr(r, "path")]
    logger.info("service.started", version=VERSION, routes=len(routes), gateway=settings.PAYMENT_GATEWAY)
    logger.debug("service.routes", routes=routes)

# Include routers
app.include_router(orders.router, prefix="/order", tags=["orders"])
app.include_router(payments.router, prefix="/payment", tags=["payments"])
app.include_router(cart.router, prefix="/cart", tags=["cart"])
