from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Coroutine, List, Optional, Sequence, Set

from onevault.auth.identity import (
  ConsentRequired,
  ExchangeFailure,
  IdentityProvider,
  TokenGrant
)
from onevault.storage.credentials import CredentialStore, PersistFailed, StoredCredential

logger = logging.getLogger(__name__)

REFRESH_MARGIN_SECONDS = 60.0
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600.0


class TokenError(RuntimeError):
  """Base class for token lifecycle failures."""


class ConsentRequiredError(TokenError):
  """The identity provider needs the user to finish an interactive step."""

  def __init__(self, intent: Any) -> None:
    super().__init__('User consent required')
    self.intent = intent


class ExchangeFailed(TokenError):
  """The identity provider could not issue a token."""


class NoAccount(TokenError):
  """No account is known to exchange a token for."""


def _now_millis() -> int:
  return int(time.time() * 1000)


class RefreshScope:
  """Supervised group of background refresh tasks.

  A failing child is logged and does not affect its siblings. Once cancelled
  the scope stays inactive; callers install a new one instead of reusing it.
  """

  def __init__(self) -> None:
    self._tasks: Set[asyncio.Task] = set()
    self._active = True

  @property
  def active(self) -> bool:
    return self._active

  @property
  def pending(self) -> int:
    return len(self._tasks)

  def launch(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
    if not self._active:
      coro.close()
      raise RuntimeError('Refresh scope has been cancelled.')
    task = asyncio.get_running_loop().create_task(coro, name=name)
    self._tasks.add(task)
    task.add_done_callback(self._on_done)
    return task

  def _on_done(self, task: asyncio.Task) -> None:
    self._tasks.discard(task)
    if task.cancelled():
      return
    exc = task.exception()
    if exc is not None:
      logger.warning('Background refresh task %s failed: %s', task.get_name(), exc)

  def cancel(self) -> int:
    self._active = False
    tasks = list(self._tasks)
    for task in tasks:
      task.cancel()
    return len(tasks)

  async def join(self) -> None:
    if self._tasks:
      await asyncio.gather(*list(self._tasks), return_exceptions=True)


class AuthSession:
  """Handle for the signed-in session; owns the current refresh scope."""

  def __init__(self) -> None:
    self.scope = RefreshScope()
    self.generation = 0

  def reset(self) -> int:
    cancelled = self.scope.cancel()
    self.scope = RefreshScope()
    self.generation += 1
    logger.debug('Auth session reset: cancelled %d background refresh(es)', cancelled)
    return cancelled


class TokenLifecycleManager:
  """Hands out usable access tokens, refreshing them ahead of expiry."""

  def __init__(
    self,
    store: CredentialStore,
    identity: IdentityProvider,
    session: AuthSession,
    scopes: Sequence[str],
    refresh_margin: float = REFRESH_MARGIN_SECONDS,
    default_lifetime: float = DEFAULT_TOKEN_LIFETIME_SECONDS,
    clock: Callable[[], int] = _now_millis,
    event_logger=None
  ) -> None:
    self.store = store
    self.identity = identity
    self.session = session
    self.scopes: List[str] = list(scopes)
    self.refresh_margin_ms = int(refresh_margin * 1000)
    self.default_lifetime_ms = int(default_lifetime * 1000)
    self.clock = clock
    self._event_logger = event_logger
    self._background: Optional[asyncio.Task] = None
    self.last_credential: Optional[StoredCredential] = None

  async def get_token(self, account_hint: Optional[str] = None) -> Optional[str]:
    try:
      credential = await asyncio.to_thread(self.store.load)
    except Exception as exc:
      logger.warning('Failed to read stored credential: %s', exc)
      credential = None
    self.last_credential = credential
    account = account_hint or (credential.user_id if credential else None)

    if credential is not None and credential.usable:
      if credential.expires_at is None:
        # Unknown expiry: hand back the stored token now, refresh behind it.
        self._schedule_background_refresh(account)
        return credential.access_token
      if self.clock() < credential.expires_at - self.refresh_margin_ms:
        return credential.access_token
      logger.debug('Stored token expired or inside refresh margin; refreshing')

    return await self.refresh(account)

  async def refresh(self, account_hint: Optional[str]) -> Optional[str]:
    """Exchange for a new token now. ``ConsentRequiredError`` propagates."""
    generation = self.session.generation
    # Exchanging while signed out is a fresh sign-in and may clear the flag.
    was_signed_out = await asyncio.to_thread(lambda: self.store.signed_out)
    try:
      credential = await self._exchange(account_hint)
    except (NoAccount, ExchangeFailed) as exc:
      logger.warning('On-demand token refresh failed: %s', exc)
      return None
    if generation != self.session.generation:
      logger.info('Sign-out happened during token refresh; discarding result')
      return None
    persist = self.store.save if was_signed_out else self.store.save_unless_signed_out
    try:
      saved = await asyncio.to_thread(persist, credential)
    except PersistFailed as exc:
      logger.error('Refreshed token could not be persisted: %s', exc)
    else:
      if saved is None:
        logger.info('Sign-out recorded during token refresh; discarding result')
        return None
    self.last_credential = credential
    return credential.access_token

  async def _exchange(self, account_hint: Optional[str]) -> StoredCredential:
    if not account_hint and self.identity.requires_account:
      raise NoAccount('No account available for token exchange.')
    result = await self.identity.exchange_token(account_hint, self.scopes)
    if isinstance(result, ConsentRequired):
      raise ConsentRequiredError(result.intent)
    if isinstance(result, ExchangeFailure):
      raise ExchangeFailed(result.reason)
    if isinstance(result, TokenGrant):
      return self._to_credential(result, account_hint)
    raise ExchangeFailed(f'Unexpected exchange result {type(result).__name__}')

  def _to_credential(self, grant: TokenGrant, account: Optional[str]) -> StoredCredential:
    lifetime_ms = int(grant.expires_in * 1000) if grant.expires_in is not None else self.default_lifetime_ms
    return StoredCredential(
      access_token=grant.access_token,
      refresh_token=grant.refresh_token,
      expires_at=self.clock() + lifetime_ms,
      user_id=grant.user_id or account
    )

  def _schedule_background_refresh(self, account: Optional[str]) -> None:
    if not account and self.identity.requires_account:
      logger.debug('No account hint; skipping background refresh')
      return
    if self._background is not None and not self._background.done():
      return
    scope = self.session.scope
    self._background = scope.launch(self._background_refresh(account, scope), name='token-refresh')

  async def _background_refresh(self, account: Optional[str], scope: RefreshScope) -> None:
    try:
      credential = await self._exchange(account)
    except Exception as exc:
      logger.info('Background token refresh failed (ignored): %s', exc)
      return
    saved = None
    if scope.active:
      try:
        saved = await asyncio.to_thread(self.store.save_unless_signed_out, credential)
      except PersistFailed as exc:
        logger.warning('Background refresh could not persist token: %s', exc)
        return
    if saved is None:
      logger.info('Background token refresh completed after sign-out; dropping token')
      if self._event_logger:
        self._event_logger.log_event('auth', 'background_refresh_dropped', {'account': account})
      return
    self.last_credential = credential

  async def sign_in(self, grant: TokenGrant, account: Optional[str] = None) -> StoredCredential:
    credential = self._to_credential(grant, account)
    await asyncio.to_thread(self.store.save, credential)
    self.last_credential = credential
    if self._event_logger:
      self._event_logger.log_event('auth', 'signed_in', {'account': credential.user_id})
    return credential

  async def invalidate(self) -> bool:
    self.last_credential = None
    cleared = await asyncio.to_thread(self.store.discard)
    if self._event_logger:
      self._event_logger.log_event('auth', 'credential_invalidated', {'cleared': cleared})
    return cleared

  async def sign_out(self) -> bool:
    cancelled = self.session.reset()
    self._background = None
    self.last_credential = None
    cleared = await asyncio.to_thread(self.store.clear)
    if self._event_logger:
      self._event_logger.log_event('auth', 'signed_out', {'cancelled_refreshes': cancelled, 'cleared': cleared})
    return cleared
