from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from app.config.payment_config import PAYMENT_MODE
from app.core.config import settings
from app.core.database import connect_to_mongo, close_mongo_connection, ensure_indexes, get_database
from app.api.routes import cart, coupons, orders, payments
from app.services.checkout_service import build_gateway
from app.services.notification_service import build_publisher

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Backend API for the storefront - cart, coupons, checkout and order fulfillment",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    logger.info("Starting up storefront backend...")
    await connect_to_mongo()
    await ensure_indexes(get_database())
    app.state.publisher = build_publisher()
    app.state.payment_gateway = build_gateway()
    logger.info(f"Storefront backend started successfully (payment mode: {PAYMENT_MODE})")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up services on shutdown."""
    logger.info("Shutting down storefront backend...")
    publisher = getattr(app.state, "publisher", None)
    if publisher is not None:
        await publisher.close()
    await close_mongo_connection()
    logger.info("Storefront backend shut down successfully")


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "storefront-backend",
        "version": "1.0.0"
    }


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.PROJECT_NAME,
        "version": "1.0.0",
        "description": "Storefront Backend API",
        "docs": "/docs",
        "health": "/health"
    }


# Include routers
app.include_router(cart.router, prefix=f"{settings.API_V1_PREFIX}/cart", tags=["Cart"])
app.include_router(coupons.router, prefix=f"{settings.API_V1_PREFIX}/coupons", tags=["Coupons"])
app.include_router(orders.router, prefix=f"{settings.API_V1_PREFIX}/orders", tags=["Orders"])
app.include_router(payments.router, prefix=f"{settings.API_V1_PREFIX}/payments", tags=["Payments"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
