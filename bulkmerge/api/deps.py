"""FastAPI dependencies shared by the merge endpoints."""

from __future__ import annotations

from fastapi import Request

from ..core.exceptions import AuthenticationRequired
from ..services.runner import OperationRunner
from ..services.status import StatusReporter


def get_requester_id(request: Request) -> str:
    """Identity of the caller, forwarded by the authenticating gateway."""
    header = request.app.state.settings.requester_header
    requester_id = (request.headers.get(header) or "").strip()
    if not requester_id:
        raise AuthenticationRequired()
    return requester_id


def get_runner(request: Request) -> OperationRunner:
    return request.app.state.runner


def get_status_reporter(request: Request) -> StatusReporter:
    return request.app.state.status_reporter
