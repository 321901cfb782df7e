from __future__ import annotations

from typing import Optional

from kintai_auth.logging import get_logger
from kintai_auth.service.backoff import BackoffPolicy
from kintai_auth.service.errors import TokenUnavailable
from kintai_auth.service.identity import IdentityProvider
from kintai_auth.storage.models import TokenPair

DEFAULT_POLL_ATTEMPTS = 5
DEFAULT_POLL_INTERVAL_MS = 500


class TokenPoller:
    """Waits, boundedly, for the provider to materialize a usable token pair.

    Federated sign-in can report success before tokens are stored, so the
    session is queried up to ``policy.max_attempts`` times with the policy's
    delay in between. Provider errors during a query count as "not yet".
    """

    def __init__(self, policy: Optional[BackoffPolicy] = None) -> None:
        self.policy = policy or BackoffPolicy(
            max_attempts=DEFAULT_POLL_ATTEMPTS, base_delay_ms=DEFAULT_POLL_INTERVAL_MS
        )
        self.logger = get_logger(__name__)

    async def poll(self, provider: IdentityProvider) -> TokenPair:
        for attempt in self.policy.attempts():
            try:
                session = await provider.fetch_auth_session()
            except Exception as exc:
                self.logger.debug(
                    "token_poll_query_failed",
                    attempt=attempt,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                session = None

            tokens = session.tokens if session is not None else None
            if tokens is not None and tokens.id_token and tokens.access_token:
                if attempt > 1:
                    self.logger.info("token_poll_succeeded", attempt=attempt)
                return tokens

            if attempt < self.policy.max_attempts:
                await self.policy.wait(attempt)

        self.logger.warning("token_poll_exhausted", attempts=self.policy.max_attempts)
        raise TokenUnavailable(attempts=self.policy.max_attempts)


__all__ = ["TokenPoller", "DEFAULT_POLL_ATTEMPTS", "DEFAULT_POLL_INTERVAL_MS"]
