"""Bitbucket Cloud REST provider."""

import httpx

from ..core.logging import get_logger
from ..domain import MergeResult, MergeStrategy, PullRequestRef
from .base import HTTPProvider, ProviderType, RemoteState

logger = get_logger(__name__)

_STRATEGIES = {
    MergeStrategy.MERGE: "merge_commit",
    MergeStrategy.SQUASH: "squash",
    MergeStrategy.REBASE: "fast_forward",
}


class BitbucketProvider(HTTPProvider):
    """Provider for Bitbucket Cloud using app-password basic auth."""

    provider_type = ProviderType.BITBUCKET

    def __init__(self, base_url: str, username: str, app_password: str, timeout: int = 30):
        super().__init__(base_url, timeout=timeout)
        self.username = username
        self.app_password = app_password

    def _auth(self) -> httpx.Auth | None:
        if self.username and self.app_password:
            return httpx.BasicAuth(self.username, self.app_password)
        return None

    def _pr_path(self, ref: PullRequestRef) -> str:
        return f"/repositories/{ref.owner}/{ref.name}/pullrequests/{ref.number}"

    async def healthcheck(self) -> bool:
        try:
            response = await self.client.get("/user")
            return response.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning(
                "Provider health check failed",
                data={"provider": self.provider_type.value, "error": str(exc)},
            )
            return False

    async def fetch_state(self, ref: PullRequestRef) -> RemoteState:
        async with self._translate_errors("fetch", ref):
            response = await self.client.get(self._pr_path(ref))
            response.raise_for_status()
            data = response.json()
        state = (data.get("state") or "").upper()
        if state == "MERGED":
            return RemoteState.MERGED
        if state == "OPEN":
            return RemoteState.OPEN
        # DECLINED, SUPERSEDED
        return RemoteState.CLOSED

    async def merge(
        self, ref: PullRequestRef, strategy: MergeStrategy, delete_branch: bool
    ) -> MergeResult:
        payload = {
            "merge_strategy": _STRATEGIES[strategy],
            "close_source_branch": delete_branch,
        }
        async with self._translate_errors("merge", ref):
            response = await self.client.post(f"{self._pr_path(ref)}/merge", json=payload)
            response.raise_for_status()
            data = response.json()

        merged = (data.get("state") or "").upper() == "MERGED"
        commit = data.get("merge_commit") or {}
        return MergeResult(
            merged=merged,
            sha=commit.get("hash"),
            message="Merged successfully" if merged else f"Pull request state is {data.get('state')}",
        )
