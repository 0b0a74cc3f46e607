"""Shared fakes and fixtures for the vault tests."""
from __future__ import annotations

import secrets
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from onevault.auth.identity import ExchangeResult, IdentityProvider, TokenGrant
from onevault.security.keys import DeviceKeyProvider, KeyMaterial, KeySpec, SecureKeyStore
from onevault.storage.credentials import (
  CredentialStore,
  KeyringCredentialBackend,
  PreferenceCredentialBackend,
  SignOutFlag
)
from onevault.storage.preferences import EncryptedPreferenceStore, PreferenceStore


class MemoryKeyStore(SecureKeyStore):
  """In-memory secure key store that counts key creations."""

  def __init__(self) -> None:
    self.keys: Dict[str, bytes] = {}
    self.created = 0

  def has_key(self, alias: str) -> bool:
    return alias in self.keys

  def create_key(self, alias: str, spec: KeySpec) -> None:
    self.created += 1
    self.keys[alias] = secrets.token_bytes(spec.size_bits // 8)

  def get_key(self, alias: str) -> Optional[KeyMaterial]:
    raw = self.keys.get(alias)
    return KeyMaterial(raw, exportable=False, alias=alias) if raw else None


class MemoryKeyring:
  """Stand-in for a keyring backend; can be told to fail."""

  def __init__(self) -> None:
    self.values: Dict[Tuple[str, str], str] = {}
    self.fail_writes = False
    self.fail_reads = False

  def set_password(self, service: str, username: str, password: str) -> None:
    if self.fail_writes:
      raise RuntimeError('keychain locked')
    self.values[(service, username)] = password

  def get_password(self, service: str, username: str) -> Optional[str]:
    if self.fail_reads:
      raise RuntimeError('keychain locked')
    return self.values.get((service, username))


class FakeIdentity(IdentityProvider):
  """Identity collaborator returning queued results and recording calls."""

  def __init__(self, *results: ExchangeResult) -> None:
    self.results: List[ExchangeResult] = list(results)
    self.calls: List[Tuple[Optional[str], List[str]]] = []

  async def exchange_token(self, account_id: Optional[str], scopes: Sequence[str]) -> ExchangeResult:
    self.calls.append((account_id, list(scopes)))
    if self.results:
      return self.results.pop(0)
    return TokenGrant(access_token=f'token-{len(self.calls)}', expires_in=3600)


@pytest.fixture
def key_store():
  return MemoryKeyStore()


@pytest.fixture
def device_keys(key_store):
  return DeviceKeyProvider(key_store, 'test.master_key')


@pytest.fixture
def db_path(tmp_path):
  return tmp_path / 'prefs.db'


@pytest.fixture
def plain_prefs(db_path):
  return PreferenceStore(db_path, 'plain')


@pytest.fixture
def secure_prefs(db_path, device_keys):
  return EncryptedPreferenceStore(db_path, 'secure', device_keys)


@pytest.fixture
def keyring_backend():
  return MemoryKeyring()


@pytest.fixture
def credential_store(keyring_backend, secure_prefs, plain_prefs):
  return CredentialStore(
    backends=[
      KeyringCredentialBackend('test.service', 'drive', backend=keyring_backend),
      PreferenceCredentialBackend(secure_prefs)
    ],
    sign_out_flag=SignOutFlag(plain_prefs)
  )
