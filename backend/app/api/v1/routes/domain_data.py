"""
Domain Data Routes
==================
Record ingestion and data quality analysis triggers.
"""

import logging

from fastapi import APIRouter, HTTPException

from app.models.schemas import AnalyzeRequest, AnalyzeResponse, DomainRecordRequest, DomainRecordResponse
from app.config import settings
from app.services.workflow import get_workflow_service
from trialguard.exceptions import WorkflowError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/analyze", response_model=AnalyzeResponse)
def analyze_domain_data(request: AnalyzeRequest):
    """Re-evaluate a batch of domain records and update signals and tasks."""
    try:
        service = get_workflow_service()
        return service.analyze(request.trial_id, request.domain, request.source, request.record_ids)
    except WorkflowError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/records", response_model=DomainRecordResponse)
def ingest_record(request: DomainRecordRequest):
    """Insert or update one domain record and trigger its analysis."""
    service = get_workflow_service()
    try:
        stored = service.ingest_record(
            request.trial_id, request.domain, request.source, request.record_id, request.record_data
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    response = DomainRecordResponse(**stored)
    if not request.analyze:
        return response

    if settings.ANALYZE_IN_BACKGROUND:
        service.analyze_in_background(request.trial_id, request.domain, request.source, [request.record_id])
        response.analysis_queued = True
        return response

    try:
        response.analysis = service.analyze(
            request.trial_id, request.domain, request.source, [request.record_id]
        )
    except WorkflowError as e:
        # The record is stored; the next run picks it up
        logger.error(f"Analysis after ingest failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return response


@router.delete("/records/{trial_id}/{domain}/{source}/{record_id}")
def delete_record(trial_id: str, domain: str, source: str, record_id: str, analyze: bool = True):
    """Delete one domain record; its open signals are resolved by the analysis."""
    service = get_workflow_service()
    if not service.delete_record(trial_id, domain, source, record_id):
        raise HTTPException(status_code=404, detail=f"Record {record_id} not found")

    result = {"deleted": True, "record_id": record_id}
    if analyze:
        try:
            result["analysis"] = service.analyze(trial_id, domain, source, [record_id])
        except WorkflowError as e:
            raise HTTPException(status_code=500, detail=str(e))
    return result
