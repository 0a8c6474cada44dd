"""
PromptTuner - API Routes
========================

FastAPI routers for all API endpoints.
"""

from backend.api.routes.auto_improvement import router as auto_improvement_router

__all__ = [
    "auto_improvement_router",
]
