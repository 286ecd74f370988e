"""SQLAlchemy ORM models, dual-dialect (Postgres/SQLite)."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..core.time import utcnow
from ..domain import ItemStatus, OperationStatus, PullRequestRef, PullRequestState
from .types import GUID, EnumText


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Local cache of provider data, kept current by the dashboard poller
# ---------------------------------------------------------------------------
class Repository(Base):
    __tablename__ = "repositories"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=GUID.new)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str] = mapped_column(String(511), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    pull_requests: Mapped[list[PullRequest]] = relationship(
        back_populates="repository", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "provider", "full_name", name="uq_repositories_owner_provider_name"),
    )


class PullRequest(Base):
    __tablename__ = "pull_requests"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=GUID.new)
    repository_id: Mapped[str] = mapped_column(
        GUID(), ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    state: Mapped[PullRequestState] = mapped_column(
        EnumText(PullRequestState), nullable=False, default=PullRequestState.OPEN
    )
    merged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    repository: Mapped[Repository] = relationship(back_populates="pull_requests")

    __table_args__ = (UniqueConstraint("repository_id", "number", name="uq_pull_requests_repo_number"),)

    @property
    def ref(self) -> PullRequestRef:
        repo = self.repository
        return PullRequestRef(provider=repo.provider, owner=repo.owner, name=repo.name, number=self.number)


class UserSettings(Base):
    __tablename__ = "user_settings"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    default_merge_strategy: Mapped[str] = mapped_column(String(16), nullable=False, default="squash")
    delete_branches_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    merge_delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


# ---------------------------------------------------------------------------
# Bulk merge operations
# ---------------------------------------------------------------------------
class MergeOperation(Base):
    __tablename__ = "merge_operations"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=GUID.new)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[OperationStatus] = mapped_column(
        EnumText(OperationStatus), nullable=False, default=OperationStatus.IN_PROGRESS
    )
    strategy: Mapped[str] = mapped_column(String(16), nullable=False)
    delete_branch: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    merge_delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list[MergeOperationItem]] = relationship(
        back_populates="operation",
        cascade="all, delete-orphan",
        order_by="MergeOperationItem.position",
    )

    __table_args__ = (Index("ix_merge_operations_owner_created", "owner_id", "created_at"),)


class MergeOperationItem(Base):
    __tablename__ = "merge_operation_items"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=GUID.new)
    operation_id: Mapped[str] = mapped_column(
        GUID(), ForeignKey("merge_operations.id", ondelete="CASCADE"), nullable=False
    )
    # Submission order; drives per-repository execution order
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    pull_request_id: Mapped[str | None] = mapped_column(
        GUID(), ForeignKey("pull_requests.id", ondelete="SET NULL"), nullable=True
    )
    repository_id: Mapped[str | None] = mapped_column(
        GUID(), ForeignKey("repositories.id", ondelete="SET NULL"), nullable=True
    )
    # Snapshot of the target at submission time
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    repository_owner: Mapped[str] = mapped_column(String(255), nullable=False)
    repository_name: Mapped[str] = mapped_column(String(255), nullable=False)
    pr_number: Mapped[int] = mapped_column(Integer, nullable=False)
    pr_title: Mapped[str] = mapped_column(Text, nullable=False, default="")

    status: Mapped[ItemStatus] = mapped_column(
        EnumText(ItemStatus), nullable=False, default=ItemStatus.PENDING
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    skip_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    merge_commit_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    merged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    operation: Mapped[MergeOperation] = relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("operation_id", "position", name="uq_merge_operation_items_position"),
        Index("ix_merge_operation_items_operation_id", "operation_id"),
    )

    @property
    def ref(self) -> PullRequestRef:
        return PullRequestRef(
            provider=self.provider,
            owner=self.repository_owner,
            name=self.repository_name,
            number=self.pr_number,
        )

    @property
    def repository_full_name(self) -> str:
        return f"{self.repository_owner}/{self.repository_name}"
