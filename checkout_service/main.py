
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .database import engine
from .models import Base
from .payment_consumer import start_payment_results_consumer
from .routers import cart_router, checkout_router, order_router, payment_router, product_router
from .utils.logging import configure_logging

configure_logging()

app = FastAPI(
    title="Checkout Service",
    description="Cart, checkout and order lifecycle for the Thriftease marketplace",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create database tables
Base.metadata.create_all(bind=engine)

# Include routers
app.include_router(product_router.router)
app.include_router(cart_router.router)
app.include_router(checkout_router.router)
app.include_router(order_router.router)
app.include_router(payment_router.router)


@app.on_event("startup")
def _startup() -> None:
    # Payment results arrive from the payment service over the event bus
    if config.PAYMENT_FEED_ENABLED:
        start_payment_results_consumer()


@app.get("/")
def root():

    return {
        "service": "Checkout Service",
        "status": "running",
        "version": "1.0.0"
    }


@app.get("/health")
def health_check():

    return {
        "status": "healthy",
        "service": "checkout-service"
    }
