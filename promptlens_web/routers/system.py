"""
PromptLens System Router - Health and metrics endpoints

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-05
"""

from typing import Any, Dict

from fastapi import APIRouter

from promptlens_core import __version__
from promptlens_core.monitoring import HealthCheck, HealthChecker, HealthStatus

from .suggestions import get_pipeline_context

router = APIRouter(prefix="/api", tags=["system"])


def _check_cache() -> HealthCheck:
    cache = get_pipeline_context().cache
    stats = cache.stats
    if stats["shared_enabled"] and stats["shared_errors"] > 0:
        return HealthCheck(
            name="cache",
            status=HealthStatus.DEGRADED,
            message=f"Shared tier errors: {stats['shared_errors']}",
            details=stats,
        )
    return HealthCheck(name="cache", status=HealthStatus.HEALTHY, details=stats)


def _check_registry() -> HealthCheck:
    registry = get_pipeline_context().registry
    return HealthCheck(
        name="in_flight",
        status=HealthStatus.HEALTHY,
        details={"in_flight": len(registry), "created": registry.created, "joined": registry.joined},
    )


def build_health_checker() -> HealthChecker:
    checker = HealthChecker()
    checker.register("cache", _check_cache)
    checker.register("in_flight", _check_registry)
    return checker


@router.get("/health")
async def health() -> Dict[str, Any]:
    """Component health report."""
    report = build_health_checker().get_status_report()
    report["version"] = __version__
    return report


@router.get("/metrics")
async def metrics() -> Dict[str, Any]:
    """Pipeline counters, histograms and cache statistics."""
    context = get_pipeline_context()
    return {
        "metrics": context.monitor.get_stats(),
        "cache": context.cache.stats,
        "engine_invocations": context.engine.invocations,
    }
