"""Per-provider OAuth token lifecycle.

Owns one background refresh job per provider. The job fires `lead_time`
before expiry, exchanges the refresh token, persists the new set and
re-arms itself relative to the new expiry. Refresh failures are never
retried: the provider is flagged as needing reconnection and listeners are
told why.
"""

import asyncio
import contextlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from structlog import get_logger

from agent_providers.auth.oauth.token_exchange import (
    OAuthProviderConfig,
    refresh_token_async,
)
from agent_providers.auth.storage import CredentialStore, StorageBackend
from agent_providers.auth.tokens import OAuthTokenSet, TokenHealth
from agent_providers.exceptions import (
    CredentialsStorageError,
    TokenExchangeError,
)


logger = get_logger(__name__)

ReconnectListener = Callable[[str], None]

# Never schedule a job in the past; APScheduler would treat it as a misfire
MIN_SCHEDULE_DELAY_SECONDS = 1


class TokenLifecycleManager:
    """Refresh scheduling, expiry classification and reconnect signaling."""

    def __init__(
        self,
        provider: str,
        store: CredentialStore,
        account: str,
        oauth_config: OAuthProviderConfig,
        lead_seconds: int = 30 * 60,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the lifecycle manager.

        Args:
            provider: Provider name, used for job ids and logs
            store: Credential store holding the token set
            account: Credential store account key for the token set
            oauth_config: Endpoints used for refresh
            lead_seconds: Refresh this many seconds before expiry
            http_client: Optional shared HTTP client for refresh calls
        """
        self.provider = provider
        self.store = store
        self.account = account
        self.oauth_config = oauth_config
        self.lead_seconds = lead_seconds
        self._http_client = http_client
        self._scheduler: AsyncIOScheduler | None = None
        self._refresh_task: asyncio.Task[OAuthTokenSet | None] | None = None
        self._listeners: list[ReconnectListener] = []
        self._next_refresh_at: datetime | None = None
        self.reconnect_required = False
        self.reconnect_reason: str | None = None

    @property
    def job_id(self) -> str:
        return f"{self.provider}-token-refresh"

    @property
    def next_refresh_at(self) -> datetime | None:
        return self._next_refresh_at

    @property
    def refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load_tokens(self) -> OAuthTokenSet | None:
        raw = await self.store.load(self.account)
        if not raw:
            return None
        try:
            return OAuthTokenSet.from_json(raw)
        except (ValueError, ValidationError) as e:
            logger.warning(
                "stored_tokens_unreadable", provider=self.provider, error=str(e)
            )
            return None

    async def save_tokens(self, tokens: OAuthTokenSet) -> StorageBackend:
        """Persist a freshly exchanged token set and arm the refresh job.

        Raises:
            CredentialsStorageError: If the token set cannot be stored
        """
        backend = await self.store.store(self.account, tokens.to_json())
        self.reconnect_required = False
        self.reconnect_reason = None
        self._schedule(tokens)
        return backend

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Arm refresh for persisted tokens.

        Tokens already inside the lead window (or expired) are refreshed
        right away instead of waiting for a timer that would have fired
        while the process was down.
        """
        tokens = await self.load_tokens()
        if tokens is None:
            return
        if tokens.in_lead_window(self.lead_seconds):
            logger.info(
                "token_refresh_catch_up",
                provider=self.provider,
                expires_in=tokens.expires_in_seconds(),
            )
            await self.refresh()
        else:
            self._schedule(tokens)

    def _ensure_scheduler(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone=UTC)
            self._scheduler.start()
        return self._scheduler

    def _schedule(self, tokens: OAuthTokenSet) -> None:
        now = datetime.now(UTC)
        due = datetime.fromtimestamp(tokens.expires_at / 1000, UTC) - timedelta(
            seconds=self.lead_seconds
        )
        run_at = max(due, now + timedelta(seconds=MIN_SCHEDULE_DELAY_SECONDS))
        self._ensure_scheduler().add_job(
            self._on_refresh_due,
            "date",
            run_date=run_at,
            id=self.job_id,
            name=f"{self.provider} token refresh",
            replace_existing=True,
            misfire_grace_time=None,
        )
        self._next_refresh_at = run_at
        logger.debug(
            "token_refresh_scheduled",
            provider=self.provider,
            run_at=run_at.isoformat(),
        )

    def _cancel_job(self) -> None:
        if self._scheduler is not None:
            with contextlib.suppress(JobLookupError):
                self._scheduler.remove_job(self.job_id)
        self._next_refresh_at = None

    async def _on_refresh_due(self) -> None:
        self._next_refresh_at = None
        await self.refresh()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> OAuthTokenSet | None:
        """Refresh now, or join the refresh already in flight.

        Returns:
            The new token set, or None if there was nothing to refresh or
            the refresh failed
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._do_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _do_refresh(self) -> OAuthTokenSet | None:
        tokens = await self.load_tokens()
        if tokens is None:
            return None

        logger.info(
            "token_refresh_started",
            provider=self.provider,
            expires_in=tokens.expires_in_seconds(),
        )
        try:
            new_tokens = await refresh_token_async(
                tokens, self.oauth_config, self._http_client
            )
        except TokenExchangeError as e:
            if e.is_invalid_grant:
                reason = "Refresh token was revoked or expired. Please log in again."
            else:
                reason = f"Token refresh failed: {e.message}"
            self._mark_reconnect_required(reason)
            return None
        except httpx.HTTPError as e:
            self._mark_reconnect_required(f"Token refresh failed: {e}")
            return None

        try:
            await self.store.store(self.account, new_tokens.to_json())
        except CredentialsStorageError as e:
            self._mark_reconnect_required(f"Could not save refreshed tokens: {e}")
            return None

        self.reconnect_required = False
        self.reconnect_reason = None
        self._schedule(new_tokens)
        logger.info(
            "token_refresh_success",
            provider=self.provider,
            new_expires_in=new_tokens.expires_in_seconds(),
        )
        return new_tokens

    async def ensure_valid_token(self) -> str | None:
        """Return a usable access token, refreshing first if needed.

        Returns:
            The access token, or None when no tokens exist or they cannot
            be refreshed (reconnect_required stays set in that case)
        """
        tokens = await self.load_tokens()
        if tokens is None or self.reconnect_required:
            return None

        if tokens.in_lead_window(self.lead_seconds):
            refreshed = await self.refresh()
            return refreshed.access_token if refreshed is not None else None

        if self._next_refresh_at is None:
            self._schedule(tokens)
        return tokens.access_token

    async def health(self) -> TokenHealth:
        if self.refreshing:
            return TokenHealth.REFRESHING
        tokens = await self.load_tokens()
        if tokens is None:
            return TokenHealth.NO_TOKENS
        if self.reconnect_required:
            return TokenHealth.EXPIRED
        return tokens.health(self.lead_seconds)

    # ------------------------------------------------------------------
    # Reconnect notification
    # ------------------------------------------------------------------

    def on_reconnect_required(
        self, listener: ReconnectListener
    ) -> Callable[[], None]:
        """Subscribe to reconnect-required signals.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def _mark_reconnect_required(self, reason: str) -> None:
        self.reconnect_required = True
        self.reconnect_reason = reason
        self._cancel_job()
        logger.error("token_refresh_failed", provider=self.provider, reason=reason)
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception:
                logger.exception("reconnect_listener_failed", provider=self.provider)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _cancel_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task
        self._refresh_task = None

    async def clear(self) -> None:
        """Forget the tokens entirely (logout)."""
        self._cancel_job()
        await self._cancel_refresh()
        await self.store.delete(self.account)
        self.reconnect_required = False
        self.reconnect_reason = None
        logger.info("tokens_cleared", provider=self.provider)

    async def dispose(self) -> None:
        """Stop the refresh job. Stored tokens are left untouched."""
        self._cancel_job()
        await self._cancel_refresh()
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        logger.debug("token_lifecycle_disposed", provider=self.provider)
