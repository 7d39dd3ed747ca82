"""
PromptLens Web Routers - Modular API endpoints

    - suggestions_router: enhancement suggestions (request, stream, invalidate)
    - system_router: health and metrics

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-05
"""

from .suggestions import router as suggestions_router, set_pipeline_context
from .system import router as system_router

__all__ = [
    "suggestions_router",
    "system_router",
    "set_pipeline_context",
]
