from fastapi import APIRouter

from storefront.api.v1.health import router as health_router
from storefront.api.v1.notifications.router import router as notifications_router
from storefront.api.v1.orders.router import router as orders_router
from storefront.api.v1.payments.router import router as payments_router

api_router = APIRouter()
api_router.include_router(health_router, prefix="/health", tags=["health"])
api_router.include_router(payments_router, prefix="/payments")  # Tags are defined in the router itself
api_router.include_router(orders_router, prefix="/orders")
api_router.include_router(notifications_router, prefix="/notifications")
