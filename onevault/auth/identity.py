"""Identity collaborator contract and the OAuth refresh-token implementation.

An exchange yields exactly one tagged result; consent is never discovered by
inspecting exception types.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

import requests

from onevault.storage.credentials import CredentialStore

logger = logging.getLogger(__name__)

CONSENT_ERRORS = {'invalid_grant', 'consent_required', 'interaction_required', 'login_required'}


@dataclass(frozen=True)
class TokenGrant:
  access_token: str
  expires_in: Optional[float] = None
  refresh_token: Optional[str] = None
  user_id: Optional[str] = None

  def __repr__(self) -> str:
    return f'TokenGrant(access_token=<{len(self.access_token)} chars>, expires_in={self.expires_in}, user_id={self.user_id!r})'


@dataclass(frozen=True)
class ConsentRequired:
  intent: Any


@dataclass(frozen=True)
class ExchangeFailure:
  reason: str


ExchangeResult = Union[TokenGrant, ConsentRequired, ExchangeFailure]


class IdentityProvider:
  # Providers that resolve identity from their own stored state set this False.
  requires_account: bool = True

  async def exchange_token(self, account_id: Optional[str], scopes: Sequence[str]) -> ExchangeResult:
    raise NotImplementedError


class OAuthRefreshProvider(IdentityProvider):
  """Refreshes access tokens against an OAuth 2.0 token endpoint.

  The refresh token comes from the credential store. When there is none, or
  the server rejects it as needing user interaction, the result is
  ``ConsentRequired`` carrying the authorization URL the UI should open.
  The account id is only a login hint, so exchanges work without one.
  """

  requires_account = False

  def __init__(
    self,
    store: CredentialStore,
    client_id: Optional[str],
    client_secret: Optional[str],
    token_url: str,
    auth_url: str,
    redirect_uri: str,
    scopes: Sequence[str],
    timeout: float = 60.0,
    session: Optional[requests.Session] = None
  ) -> None:
    self.store = store
    self.client_id = client_id
    self.client_secret = client_secret
    self.token_url = token_url
    self.auth_url = auth_url
    self.redirect_uri = redirect_uri
    self.scopes = list(scopes)
    self.timeout = timeout
    self.http = session or requests.Session()

  def authorization_url(self, account_id: Optional[str] = None, state: Optional[str] = None) -> str:
    if not self.client_id:
      raise ValueError('OAuth client_id is not configured.')
    params = {
      'client_id': self.client_id,
      'redirect_uri': self.redirect_uri,
      'response_type': 'code',
      'scope': ' '.join(self.scopes),
      'state': state or uuid.uuid4().hex,
      'access_type': 'offline',
      'prompt': 'consent'
    }
    if account_id:
      params['login_hint'] = account_id
    return f'{self.auth_url}?{requests.compat.urlencode(params)}'

  async def exchange_token(self, account_id: Optional[str], scopes: Sequence[str]) -> ExchangeResult:
    return await asyncio.to_thread(self._exchange_blocking, account_id, list(scopes))

  def _exchange_blocking(self, account_id: Optional[str], scopes: Sequence[str]) -> ExchangeResult:
    if not self.client_id or not self.client_secret:
      return ExchangeFailure('OAuth client credentials are not configured.')
    stored = self.store.load()
    refresh_token = stored.refresh_token if stored else None
    if not refresh_token:
      logger.info('No refresh token stored for %s; consent required', account_id)
      return ConsentRequired(intent=self.authorization_url(account_id))
    data = {
      'client_id': self.client_id,
      'client_secret': self.client_secret,
      'refresh_token': refresh_token,
      'grant_type': 'refresh_token',
      'scope': ' '.join(scopes or self.scopes)
    }
    try:
      response = self.http.post(self.token_url, data=data, timeout=self.timeout)
    except requests.RequestException as exc:
      logger.warning('Token endpoint unreachable: %s', exc)
      return ExchangeFailure(f'network: {exc}')
    return self._interpret(response, account_id or stored.user_id, refresh_token)

  def _interpret(self, response: requests.Response, account_id: Optional[str], refresh_token: Optional[str]) -> ExchangeResult:
    try:
      payload = response.json()
    except ValueError:
      payload = {}
    if not isinstance(payload, dict):
      payload = {}
    if not response.ok:
      error = payload.get('error')
      if error in CONSENT_ERRORS:
        logger.info('Token endpoint requires user consent (%s)', error)
        return ConsentRequired(intent=self.authorization_url(account_id))
      logger.warning('Token refresh failed: status=%s error=%s', response.status_code, error)
      return ExchangeFailure(f'status {response.status_code}: {error or "unknown"}')
    access_token = payload.get('access_token')
    if not access_token:
      return ExchangeFailure('Token endpoint returned no access_token.')
    return TokenGrant(
      access_token=access_token,
      expires_in=float(payload['expires_in']) if payload.get('expires_in') is not None else None,
      refresh_token=payload.get('refresh_token') or refresh_token,
      user_id=account_id
    )

  def complete_consent(self, code: str, account_id: Optional[str] = None) -> TokenGrant:
    """Trade the authorization code from the consent redirect for tokens."""
    if not self.client_id or not self.client_secret:
      raise ValueError('OAuth client credentials are not configured.')
    data = {
      'code': code,
      'client_id': self.client_id,
      'client_secret': self.client_secret,
      'redirect_uri': self.redirect_uri,
      'grant_type': 'authorization_code'
    }
    response = self.http.post(self.token_url, data=data, timeout=self.timeout)
    response.raise_for_status()
    payload = response.json()
    access_token = payload.get('access_token')
    if not access_token:
      raise ValueError('Token exchange did not return an access token.')
    return TokenGrant(
      access_token=access_token,
      expires_in=float(payload.get('expires_in', 3600)),
      refresh_token=payload.get('refresh_token'),
      user_id=account_id
    )
