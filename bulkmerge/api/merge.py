"""Bulk merge endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from ..schemas import BulkMergeAccepted, BulkMergeRequest, OperationPage, OperationSnapshot
from ..services.runner import OperationRunner
from ..services.status import StatusReporter
from .deps import get_requester_id, get_runner, get_status_reporter

router = APIRouter(prefix="/merge", tags=["merge"])


@router.post("/bulk", status_code=status.HTTP_202_ACCEPTED, response_model=BulkMergeAccepted)
async def submit_bulk_merge(
    body: BulkMergeRequest,
    requester_id: str = Depends(get_requester_id),
    runner: OperationRunner = Depends(get_runner),
):
    operation = await runner.submit(
        requester_id,
        body.pull_request_ids,
        strategy=body.strategy,
        delete_branch=body.delete_branch,
    )
    return BulkMergeAccepted(
        operation_id=operation.id,
        status=operation.status,
        total=operation.total_count,
    )


@router.get("/operations", response_model=OperationPage)
async def list_operations(
    page: int = Query(default=1, ge=1),
    per_page: Optional[int] = Query(default=None, ge=1, alias="perPage"),
    requester_id: str = Depends(get_requester_id),
    reporter: StatusReporter = Depends(get_status_reporter),
):
    return await reporter.list(requester_id, page=page, per_page=per_page)


@router.get("/operations/{operation_id}", response_model=OperationSnapshot)
async def get_operation(
    operation_id: str,
    requester_id: str = Depends(get_requester_id),
    reporter: StatusReporter = Depends(get_status_reporter),
):
    return await reporter.get(requester_id, operation_id)
