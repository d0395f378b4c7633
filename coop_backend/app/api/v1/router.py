"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from coop_backend.app.api.v1.endpoints import (
    member_payments, payment_callbacks, admin_payments, admin_ops
)

router = APIRouter()

# Member fee payments
router.include_router(member_payments.router)

# Gateway callbacks (unauthenticated)
router.include_router(payment_callbacks.router)

# Admin endpoints
router.include_router(admin_payments.router)
router.include_router(admin_ops.router)
