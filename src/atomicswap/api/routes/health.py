"""Health check endpoints."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "atomicswap"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration, ledgers and supervisor state."""
    runtime = request.app.state.runtime
    report = runtime.supervisor.last_report
    return {
        "status": "healthy",
        "service": "atomicswap",
        "version": "0.1.0",
        "ledgers": runtime.adapters.chains,
        "swaps": await runtime.swaps.count_by_status(),
        "supervisor": {
            "running": runtime.supervisor.running,
            "interval_seconds": runtime.supervisor.interval,
            "last_report": report.to_dict() if report else None,
        },
        "config": runtime.settings.get_safe_dict(),
    }
