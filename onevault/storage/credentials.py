"""Tiered persistence for the remote-store access token.

Backends are consulted in order. Precedence rules:

* write: the first backend that accepts the credential wins;
* read: the first backend holding a credential wins, misses and read
  failures fall through to the next one;
* the sign-out flag is checked before any read and again after it, and a set
  flag suppresses whatever the backends still hold.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import keyring

from onevault.storage.preferences import PreferenceStore

logger = logging.getLogger(__name__)

SIGNED_OUT_KEY = 'user_signed_out'
ACCESS_TOKEN_KEY = 'access_token'
REFRESH_TOKEN_KEY = 'refresh_token'
EXPIRES_AT_KEY = 'expires_at'
USER_ID_KEY = 'user_id'


class StoreError(RuntimeError):
  """Base class for credential persistence failures."""


class PersistFailed(StoreError):
  """No backend accepted the credential."""


class ReadFailed(StoreError):
  """A backend could not be read."""


@dataclass
class StoredCredential:
  access_token: str
  refresh_token: Optional[str] = None
  expires_at: Optional[int] = None  # epoch millis; None means unknown, not "never"
  user_id: Optional[str] = None

  def as_dict(self) -> Dict[str, Any]:
    return {
      ACCESS_TOKEN_KEY: self.access_token,
      REFRESH_TOKEN_KEY: self.refresh_token,
      EXPIRES_AT_KEY: self.expires_at,
      USER_ID_KEY: self.user_id
    }

  @property
  def usable(self) -> bool:
    return bool(self.access_token)

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> Optional['StoredCredential']:
    token = data.get(ACCESS_TOKEN_KEY)
    refresh_token = data.get(REFRESH_TOKEN_KEY) or None
    # A credential whose access token was invalidated keeps its refresh token.
    if not token and not refresh_token:
      return None
    expires_at = data.get(EXPIRES_AT_KEY)
    return cls(
      access_token=str(token or ''),
      refresh_token=refresh_token,
      expires_at=int(expires_at) if expires_at not in (None, '', 0, '0') else None,
      user_id=data.get(USER_ID_KEY) or None
    )

  def __repr__(self) -> str:
    return (
      f'StoredCredential(access_token=<{len(self.access_token)} chars>, '
      f'refresh_token={"<set>" if self.refresh_token else None}, '
      f'expires_at={self.expires_at}, user_id={self.user_id!r})'
    )


class CredentialBackend:
  """One storage tier. Public methods serialise access with a per-backend lock."""

  name: str = 'base'

  def __init__(self) -> None:
    self._lock = threading.Lock()

  def write(self, credential: StoredCredential) -> None:
    with self._lock:
      try:
        self._write(credential)
      except Exception as exc:
        raise PersistFailed(f'{self.name}: {exc}') from exc

  def read(self) -> Optional[StoredCredential]:
    with self._lock:
      try:
        return self._read()
      except Exception as exc:
        raise ReadFailed(f'{self.name}: {exc}') from exc

  def wipe(self) -> None:
    with self._lock:
      try:
        self._wipe()
      except Exception as exc:
        raise PersistFailed(f'{self.name}: {exc}') from exc

  def _write(self, credential: StoredCredential) -> None:
    raise NotImplementedError

  def _read(self) -> Optional[StoredCredential]:
    raise NotImplementedError

  def _wipe(self) -> None:
    raise NotImplementedError


class KeyringCredentialBackend(CredentialBackend):
  """Primary tier: the OS credential manager, reached through ``keyring``."""

  name = 'keyring'

  def __init__(self, service: str, username: str, backend: Optional[Any] = None) -> None:
    super().__init__()
    self.service = service
    self.username = username
    self._backend = backend

  @property
  def backend(self) -> Any:
    return self._backend if self._backend is not None else keyring.get_keyring()

  def _write(self, credential: StoredCredential) -> None:
    payload = {key: value for key, value in credential.as_dict().items() if value is not None}
    self.backend.set_password(self.service, self.username, json.dumps(payload))

  def _read(self) -> Optional[StoredCredential]:
    raw = self.backend.get_password(self.service, self.username)
    if not raw:
      return None
    return StoredCredential.from_dict(json.loads(raw))

  def _wipe(self) -> None:
    # Overwrite with an empty payload rather than delete; some keychains refuse deletes.
    self.backend.set_password(self.service, self.username, json.dumps({}))


class PreferenceCredentialBackend(CredentialBackend):
  """Fallback tier: an encrypted preference namespace, one key per field."""

  name = 'preferences'

  def __init__(self, preferences: PreferenceStore) -> None:
    super().__init__()
    self.preferences = preferences

  def _write(self, credential: StoredCredential) -> None:
    self.preferences.put_many({
      ACCESS_TOKEN_KEY: credential.access_token,
      REFRESH_TOKEN_KEY: credential.refresh_token,
      EXPIRES_AT_KEY: str(credential.expires_at) if credential.expires_at is not None else None,
      USER_ID_KEY: credential.user_id or None
    })

  def _read(self) -> Optional[StoredCredential]:
    return StoredCredential.from_dict(self.preferences.get_all())

  def _wipe(self) -> None:
    self.preferences.clear()


class SignOutFlag:
  """Durable "user signed out" marker kept in a plain preference namespace."""

  def __init__(self, preferences: PreferenceStore) -> None:
    self.preferences = preferences
    self._local: Optional[bool] = None

  def is_set(self) -> bool:
    if self._local:
      return True
    try:
      return self.preferences.get_bool(SIGNED_OUT_KEY, False)
    except Exception as exc:
      logger.warning('Could not read sign-out flag: %s', exc)
      return bool(self._local)

  def set(self) -> None:
    self._local = True
    try:
      self.preferences.put_bool(SIGNED_OUT_KEY, True)
    except Exception as exc:
      logger.error('Could not persist sign-out flag; suppressing reads in-process only: %s', exc)

  def clear(self) -> None:
    self.preferences.remove(SIGNED_OUT_KEY)
    self._local = False


class CredentialStore:
  """Ordered credential tiers plus the sign-out flag.

  ``save``, ``save_unless_signed_out``, ``clear`` and ``discard`` hold one
  store-wide lock, so a clear never interleaves with a write.
  """

  def __init__(self, backends: Sequence[CredentialBackend], sign_out_flag: SignOutFlag) -> None:
    if not backends:
      raise ValueError('CredentialStore needs at least one backend.')
    self.backends: List[CredentialBackend] = list(backends)
    self.sign_out_flag = sign_out_flag
    self._lock = threading.RLock()

  @property
  def signed_out(self) -> bool:
    return self.sign_out_flag.is_set()

  def save(self, credential: StoredCredential) -> CredentialBackend:
    with self._lock:
      return self._save(credential)

  def save_unless_signed_out(self, credential: StoredCredential) -> Optional[CredentialBackend]:
    """Persist only if no sign-out has been recorded; returns ``None`` when skipped."""
    with self._lock:
      if self.signed_out:
        logger.info('Sign-out recorded; not persisting refreshed credential')
        return None
      return self._save(credential)

  def _save(self, credential: StoredCredential) -> CredentialBackend:
    errors: List[str] = []
    for backend in self.backends:
      try:
        backend.write(credential)
      except PersistFailed as exc:
        logger.warning('Credential write to %s failed, trying next tier: %s', backend.name, exc)
        errors.append(str(exc))
        continue
      try:
        self.sign_out_flag.clear()
      except Exception as exc:
        logger.warning('Saved credential to %s but could not clear sign-out flag: %s', backend.name, exc)
      logger.debug('Saved credential to %s', backend.name)
      return backend
    raise PersistFailed('All credential backends failed: ' + '; '.join(errors))

  def load(self) -> Optional[StoredCredential]:
    if self.signed_out:
      logger.debug('User signed out; skipping stored credential lookup')
      return None
    for backend in self.backends:
      try:
        credential = backend.read()
      except ReadFailed as exc:
        logger.warning('Credential read from %s failed, trying next tier: %s', backend.name, exc)
        continue
      if credential is None:
        continue
      if self.signed_out:
        logger.debug('Sign-out happened during credential read; ignoring %s result', backend.name)
        return None
      return credential
    return None

  def clear(self) -> bool:
    """Tombstone every tier and set the sign-out flag, whatever the tiers report."""
    with self._lock:
      try:
        cleared = self._wipe_all('clear')
      finally:
        self.sign_out_flag.set()
    return cleared

  def discard(self) -> bool:
    """Drop the access token without recording a sign-out.

    The refresh token and account survive so the next exchange can run
    without user interaction.
    """
    with self._lock:
      current = self.load()
      cleared = self._wipe_all('discard')
      if current is None or not current.refresh_token:
        return cleared
      remnant = StoredCredential(
        access_token='',
        refresh_token=current.refresh_token,
        expires_at=None,
        user_id=current.user_id
      )
      for backend in self.backends:
        try:
          backend.write(remnant)
          break
        except PersistFailed as exc:
          logger.warning('Keeping refresh token on %s failed: %s', backend.name, exc)
    return cleared

  def _wipe_all(self, operation: str) -> bool:
    cleared = True
    for backend in self.backends:
      try:
        backend.wipe()
      except PersistFailed as exc:
        logger.warning('Credential %s on %s failed: %s', operation, backend.name, exc)
        cleared = False
    return cleared
