# ============================================================================
# Prompt Market Payments
# API Routes Module
# ============================================================================

from app.api.payments import router as payments_router

__all__ = ["payments_router"]
