"""Repository layer: Protocol interfaces and SQLAlchemy implementations."""

from .operation_repo import OperationRepository, SQLAlchemyOperationRepository
from .pull_request_repo import PullRequestRepository, SQLAlchemyPullRequestRepository
from .settings_repo import MergeDefaults, SQLAlchemyUserSettingsRepository, UserSettingsRepository
from .store import OperationStore

__all__ = [
    "OperationRepository", "SQLAlchemyOperationRepository",
    "PullRequestRepository", "SQLAlchemyPullRequestRepository",
    "UserSettingsRepository", "SQLAlchemyUserSettingsRepository", "MergeDefaults",
    "OperationStore",
]
