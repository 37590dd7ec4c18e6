"""
Signal Routes
=============
Signal detection board endpoints.
"""

from fastapi import APIRouter, HTTPException, Query
from typing import Optional

from app.models.schemas import SignalListResponse, SignalStatus, Priority
from app.services.workflow import get_workflow_service

router = APIRouter()


@router.get("", response_model=SignalListResponse)
def list_signals(
    trial_id: Optional[str] = None,
    domain: Optional[str] = None,
    status: Optional[SignalStatus] = None,
    priority: Optional[Priority] = None,
    record_id: Optional[str] = None,
    limit: int = Query(200, ge=1, le=2000),
    offset: int = Query(0, ge=0),
):
    """Get signals with optional filters."""
    try:
        signals = get_workflow_service().get_signals(
            trial_id=trial_id,
            domain=domain.upper() if domain else None,
            status=status.value if status else None,
            priority=priority.value if priority else None,
            record_id=record_id,
            limit=limit,
            offset=offset,
        )
        return SignalListResponse(signals=signals, total=len(signals))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/summary")
def get_signals_summary(trial_id: Optional[str] = None):
    """Get signal and task counts for the dashboard."""
    try:
        return get_workflow_service().get_signal_summary(trial_id)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{detection_id}")
def get_signal(detection_id: str):
    """Get one signal."""
    signal = get_workflow_service().get_signal(detection_id)
    if signal is None:
        raise HTTPException(status_code=404, detail=f"Signal {detection_id} not found")
    return signal
