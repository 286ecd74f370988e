"""Request and response models for the merge API."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .db.models import MergeOperation, MergeOperationItem
from .domain import ItemStatus, OperationStatus


class CamelModel(BaseModel):
    """Serialized with camelCase keys; accepts either camelCase or snake_case input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BulkMergeRequest(CamelModel):
    pull_request_ids: List[str] = Field(default_factory=list)
    strategy: Optional[str] = None
    delete_branch: Optional[bool] = None


class BulkMergeAccepted(CamelModel):
    operation_id: str
    status: OperationStatus
    total: int


class ItemResult(CamelModel):
    id: str
    pull_request_id: Optional[str] = None
    provider: str
    repository: str
    number: int
    title: str = ""
    status: ItemStatus
    error_message: Optional[str] = None
    skip_reason: Optional[str] = None
    merge_commit_id: Optional[str] = None
    merged_at: Optional[datetime] = None
    attempted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: MergeOperationItem) -> ItemResult:
        return cls(
            id=row.id,
            pull_request_id=row.pull_request_id,
            provider=row.provider,
            repository=row.repository_full_name,
            number=row.pr_number,
            title=row.pr_title or "",
            status=row.status,
            error_message=row.error_message,
            skip_reason=row.skip_reason,
            merge_commit_id=row.merge_commit_id,
            merged_at=row.merged_at,
            attempted_at=row.attempted_at,
            completed_at=row.completed_at,
        )


class Progress(CamelModel):
    """Live per-status tally of items, available while the operation runs."""

    pending: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0

    @classmethod
    def from_items(cls, items: List[MergeOperationItem]) -> Progress:
        progress = cls()
        for item in items:
            field = item.status.value
            setattr(progress, field, getattr(progress, field) + 1)
        return progress


class OperationSummary(CamelModel):
    operation_id: str
    status: OperationStatus
    strategy: str
    delete_branch: bool
    total_count: int
    success_count: int
    failed_count: int
    skipped_count: int
    progress: Progress
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_operation(cls, operation: MergeOperation) -> OperationSummary:
        return cls(**_summary_fields(operation))


def _summary_fields(operation: MergeOperation) -> dict:
    return dict(
        operation_id=operation.id,
        status=operation.status,
        strategy=operation.strategy,
        delete_branch=operation.delete_branch,
        total_count=operation.total_count,
        success_count=operation.success_count,
        failed_count=operation.failed_count,
        skipped_count=operation.skipped_count,
        progress=Progress.from_items(operation.items),
        error_message=operation.error_message,
        created_at=operation.created_at,
        completed_at=operation.completed_at,
    )


class OperationSnapshot(OperationSummary):
    merge_delay_seconds: int = 0
    results: List[ItemResult] = Field(default_factory=list)

    @classmethod
    def from_operation(cls, operation: MergeOperation) -> OperationSnapshot:
        return cls(
            **_summary_fields(operation),
            merge_delay_seconds=operation.merge_delay_seconds,
            results=[ItemResult.from_row(item) for item in operation.items],
        )


class OperationPage(CamelModel):
    items: List[OperationSummary]
    page: int
    per_page: int
    total: int
