"""GitHub REST provider."""

from typing import Dict

import httpx

from ..core.exceptions import ProviderError
from ..core.logging import get_logger
from ..domain import MergeResult, MergeStrategy, PullRequestRef
from .base import HTTPProvider, ProviderType, RemoteState

logger = get_logger(__name__)


class GitHubProvider(HTTPProvider):
    """Provider for github.com and GitHub Enterprise (`/api/v3`) instances."""

    provider_type = ProviderType.GITHUB

    def __init__(self, base_url: str, token: str, timeout: int = 30):
        super().__init__(base_url, timeout=timeout)
        self.token = token

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _pull_path(self, ref: PullRequestRef) -> str:
        return f"/repos/{ref.owner}/{ref.name}/pulls/{ref.number}"

    async def healthcheck(self) -> bool:
        try:
            response = await self.client.get("/rate_limit")
            return response.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning(
                "Provider health check failed",
                data={"provider": self.provider_type.value, "error": str(exc)},
            )
            return False

    async def _get_pull(self, ref: PullRequestRef) -> dict:
        async with self._translate_errors("fetch", ref):
            response = await self.client.get(self._pull_path(ref))
            response.raise_for_status()
            return response.json()

    async def fetch_state(self, ref: PullRequestRef) -> RemoteState:
        data = await self._get_pull(ref)
        if data.get("merged") or data.get("merged_at"):
            return RemoteState.MERGED
        if data.get("state") == "open":
            return RemoteState.OPEN
        return RemoteState.CLOSED

    async def merge(
        self, ref: PullRequestRef, strategy: MergeStrategy, delete_branch: bool
    ) -> MergeResult:
        head: dict = {}
        if delete_branch:
            head = (await self._get_pull(ref)).get("head") or {}

        async with self._translate_errors("merge", ref):
            response = await self.client.put(
                f"{self._pull_path(ref)}/merge",
                json={"merge_method": strategy.value},
            )
            if response.status_code == 405:
                raise ProviderError(
                    f"Pull request {ref} is not mergeable",
                    kind=ProviderError.CONFLICT,
                    provider=self.provider_type.value,
                )
            if response.status_code == 409:
                raise ProviderError(
                    f"Merge conflict or head branch was modified for {ref}",
                    kind=ProviderError.CONFLICT,
                    provider=self.provider_type.value,
                )
            response.raise_for_status()
            data = response.json()

        result = MergeResult(
            merged=bool(data.get("merged")),
            sha=data.get("sha"),
            message=data.get("message") or "",
        )
        if result.merged and delete_branch:
            await self._delete_head_branch(ref, head)
        return result

    async def _delete_head_branch(self, ref: PullRequestRef, head: dict) -> None:
        """Best effort: the merge already happened, so a failure here is only logged."""
        branch = head.get("ref")
        head_repo = (head.get("repo") or {}).get("full_name")
        if not branch or head_repo != ref.full_name:
            # Fork branches are not ours to delete
            return
        try:
            response = await self.client.delete(
                f"/repos/{ref.owner}/{ref.name}/git/refs/heads/{branch}"
            )
            if response.status_code not in (204, 404, 422):
                logger.warning(
                    "Failed to delete head branch",
                    data={"ref": str(ref), "branch": branch, "status": response.status_code},
                )
        except Exception as e:
            logger.warning(f"Failed to delete head branch {branch} for {ref}: {e}")
