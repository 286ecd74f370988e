"""Just-in-time check of remote pull request state before a merge attempt."""

from __future__ import annotations

from dataclasses import dataclass

from ..core.exceptions import ProviderError
from ..core.logging import get_logger
from ..domain import PullRequestRef, PullRequestState
from ..providers.registry import ProviderRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class PreflightResult:
    proceed: bool
    reason: str | None = None
    remote_state: PullRequestState | None = None
    # State the local cache should be corrected to, if it disagrees with the provider
    local_update: PullRequestState | None = None

    @property
    def skip(self) -> bool:
        return not self.proceed


class PreflightVerifier:
    """Reconciles the cached state of a pull request with the provider's.

    Must be called immediately before each merge attempt, never once for a
    whole batch, to keep the check-to-merge window small.
    """

    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    async def verify(
        self, ref: PullRequestRef, local_state: PullRequestState | None
    ) -> PreflightResult:
        """Decide whether `ref` may be merged now.

        Proceeds only when the provider reports the PR open and the cache does
        not already know it to be closed or merged. A provider error while the
        cache says open propagates as ProviderError so the item is recorded as
        failed; if the cache already says non-open the item is skipped anyway.
        """
        try:
            gateway = self.registry.require_provider(ref.provider)
            remote = await gateway.fetch_state(ref)
        except ProviderError as exc:
            if local_state is not None and local_state is not PullRequestState.OPEN:
                logger.info(
                    "Preflight fetch failed for a PR already known non-open; skipping",
                    data={"ref": str(ref), "local_state": local_state.value, "error": exc.message},
                )
                return PreflightResult(proceed=False, reason=_not_open_reason(local_state))
            raise

        local_update = remote if local_state is not None and remote is not local_state else None

        if remote is not PullRequestState.OPEN:
            return PreflightResult(
                proceed=False,
                reason=_not_open_reason(remote),
                remote_state=remote,
                local_update=local_update,
            )
        if local_state is not None and local_state is not PullRequestState.OPEN:
            # Provider says open but the cache had it closed. Correct the cache,
            # but do not act on a PR the user last saw as not open.
            return PreflightResult(
                proceed=False,
                reason=_not_open_reason(local_state),
                remote_state=remote,
                local_update=local_update,
            )
        return PreflightResult(proceed=True, remote_state=remote)


def _not_open_reason(state: PullRequestState) -> str:
    return f"PR is not open ({state.value})"
