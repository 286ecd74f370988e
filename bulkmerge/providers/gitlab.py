"""GitLab REST provider."""

from typing import Dict
from urllib.parse import quote

import httpx

from ..core.exceptions import ProviderError
from ..core.logging import get_logger
from ..domain import MergeResult, MergeStrategy, PullRequestRef
from .base import HTTPProvider, ProviderType, RemoteState

logger = get_logger(__name__)


class GitLabProvider(HTTPProvider):
    """Provider for gitlab.com and self-managed GitLab (`/api/v4`)."""

    provider_type = ProviderType.GITLAB

    def __init__(self, base_url: str, token: str, timeout: int = 30):
        super().__init__(base_url, timeout=timeout)
        self.token = token

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["PRIVATE-TOKEN"] = self.token
        return headers

    def _mr_path(self, ref: PullRequestRef) -> str:
        # Owner may be a nested group path; the project id is the encoded full path
        project = quote(ref.full_name, safe="")
        return f"/projects/{project}/merge_requests/{ref.number}"

    async def healthcheck(self) -> bool:
        try:
            response = await self.client.get("/version")
            return response.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning(
                "Provider health check failed",
                data={"provider": self.provider_type.value, "error": str(exc)},
            )
            return False

    async def fetch_state(self, ref: PullRequestRef) -> RemoteState:
        async with self._translate_errors("fetch", ref):
            response = await self.client.get(self._mr_path(ref))
            response.raise_for_status()
            data = response.json()
        state = data.get("state")
        if state == "merged":
            return RemoteState.MERGED
        if state == "opened":
            return RemoteState.OPEN
        # closed, locked
        return RemoteState.CLOSED

    async def merge(
        self, ref: PullRequestRef, strategy: MergeStrategy, delete_branch: bool
    ) -> MergeResult:
        # GitLab applies rebase/fast-forward via the project's merge method setting;
        # the API only toggles squash per request.
        payload = {
            "squash": strategy is MergeStrategy.SQUASH,
            "should_remove_source_branch": delete_branch,
        }
        async with self._translate_errors("merge", ref):
            response = await self.client.put(f"{self._mr_path(ref)}/merge", json=payload)
            if response.status_code == 405:
                raise ProviderError(
                    f"Merge request {ref} is not mergeable",
                    kind=ProviderError.CONFLICT,
                    provider=self.provider_type.value,
                )
            response.raise_for_status()
            data = response.json()

        merged = data.get("state") == "merged"
        return MergeResult(
            merged=merged,
            sha=data.get("merge_commit_sha") or data.get("squash_commit_sha"),
            message="Merged successfully" if merged else f"Merge request state is {data.get('state')}",
        )
