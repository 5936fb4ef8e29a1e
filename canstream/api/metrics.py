from fastapi import APIRouter
from canstream import metrics

router = APIRouter()


@router.get("/api/metrics")
def get_metrics():
    """Return the process-local send/receive counters."""
    return metrics.get_all()


@router.delete("/api/metrics")
def reset_metrics():
    metrics.reset_all()
    return {"status": "ok"}
