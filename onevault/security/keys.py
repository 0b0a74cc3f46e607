from __future__ import annotations

import logging
import os
import secrets
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from onevault.security.cipher import KeyUnavailable

logger = logging.getLogger(__name__)

KEY_SIZE_BYTES = 32
SALT_SIZE = 16
PBKDF2_ITERATIONS = 100_000


def scrub(buffer: Union[bytearray, memoryview, None]) -> None:
  """Zero-fill a mutable secret buffer in place."""
  if buffer is None:
    return
  for index in range(len(buffer)):
    buffer[index] = 0


class KeyMaterial:
  """Opaque 256-bit AES key handle.

  The raw bytes are never handed out; callers only obtain the AES-GCM
  primitive. ``scrub`` wipes the held copy, after which the handle is dead.
  """

  __slots__ = ('_secret', 'exportable', 'alias')

  def __init__(self, secret: Union[bytes, bytearray], exportable: bool = True, alias: Optional[str] = None) -> None:
    if len(secret) != KEY_SIZE_BYTES:
      raise ValueError(f'AES-256 key must be {KEY_SIZE_BYTES} bytes, got {len(secret)}')
    self._secret = bytearray(secret)
    self.exportable = exportable
    self.alias = alias

  @property
  def scrubbed(self) -> bool:
    return not any(self._secret)

  def aead(self) -> AESGCM:
    if self.scrubbed:
      raise KeyUnavailable('Key material has been scrubbed.')
    return AESGCM(bytes(self._secret))

  def scrub(self) -> None:
    scrub(self._secret)

  def __repr__(self) -> str:
    label = self.alias or ('passphrase' if self.exportable else 'device')
    return f'<KeyMaterial {label} [redacted]>'


@dataclass(frozen=True)
class KeySpec:
  algorithm: str = 'AES'
  size_bits: int = 256
  block_mode: str = 'GCM'
  padding: str = 'NoPadding'
  purposes: Tuple[str, ...] = ('encrypt', 'decrypt')


DEVICE_KEY_SPEC = KeySpec()


class SecureKeyStore:
  """Platform key store contract: keys are created and used, never exported."""

  def has_key(self, alias: str) -> bool:
    raise NotImplementedError

  def create_key(self, alias: str, spec: KeySpec) -> None:
    raise NotImplementedError

  def get_key(self, alias: str) -> Optional[KeyMaterial]:
    raise NotImplementedError


class FileKeyStore(SecureKeyStore):
  """Key store backed by owner-only key files, one per alias."""

  def __init__(self, base_dir: Path) -> None:
    self.base_dir = Path(base_dir)
    self.base_dir.mkdir(parents=True, exist_ok=True)
    self._handles: Dict[str, KeyMaterial] = {}

  def _key_path(self, alias: str) -> Path:
    safe = ''.join(ch if ch.isalnum() or ch in '._-' else '_' for ch in alias)
    return self.base_dir / f'{safe}.key'

  def has_key(self, alias: str) -> bool:
    return self._key_path(alias).exists()

  def create_key(self, alias: str, spec: KeySpec) -> None:
    if spec.algorithm != 'AES' or spec.block_mode != 'GCM' or spec.padding != 'NoPadding':
      raise ValueError(f'Unsupported key spec: {spec}')
    path = self._key_path(alias)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, 'wb') as fh:
      fh.write(secrets.token_bytes(spec.size_bits // 8))
    try:
      os.chmod(path, 0o600)
    except PermissionError:
      # On Windows chmod may fail; ignore as long as file exists.
      pass

  def get_key(self, alias: str) -> Optional[KeyMaterial]:
    handle = self._handles.get(alias)
    if handle is not None and not handle.scrubbed:
      return handle
    path = self._key_path(alias)
    if not path.exists():
      return None
    raw = path.read_bytes()
    if len(raw) != KEY_SIZE_BYTES:
      raise KeyUnavailable(f'Key file for {alias} is corrupt ({len(raw)} bytes)')
    handle = KeyMaterial(raw, exportable=False, alias=alias)
    self._handles[alias] = handle
    return handle


class KeyProvider:
  def get_or_create_key(self) -> KeyMaterial:
    raise NotImplementedError


class DeviceKeyProvider(KeyProvider):
  """Lazily creates, then reuses, a non-exportable key held by the key store."""

  def __init__(self, store: SecureKeyStore, alias: str, spec: KeySpec = DEVICE_KEY_SPEC) -> None:
    self.store = store
    self.alias = alias
    self.spec = spec
    self._lock = threading.Lock()
    self._cached: Optional[KeyMaterial] = None

  def get_or_create_key(self) -> KeyMaterial:
    with self._lock:
      if self._cached is not None and not self._cached.scrubbed:
        return self._cached
      try:
        if not self.store.has_key(self.alias):
          logger.info('Creating device key %s', self.alias)
          self.store.create_key(self.alias, self.spec)
        key = self.store.get_key(self.alias)
      except KeyUnavailable:
        raise
      except Exception as exc:
        raise KeyUnavailable(f'Secure key store failed for {self.alias}: {exc}') from exc
      if key is None:
        raise KeyUnavailable(f'Device key {self.alias} missing after creation')
      self._cached = key
      return key


class PassphraseKeyProvider(KeyProvider):
  """Derives an AES-256 key from a passphrase with PBKDF2-HMAC-SHA256.

  Without a salt a fresh 16-byte one is generated (encrypt path); with the
  salt read from an envelope the same key is re-derived (decrypt path). The
  passphrase buffer stays owned by the caller, who scrubs it.
  """

  def __init__(self, passphrase: Union[bytearray, bytes], salt: Optional[bytes] = None) -> None:
    if not isinstance(passphrase, (bytearray, bytes)):
      # A str would need an encoded copy this provider could never scrub.
      raise TypeError('Passphrase must be a bytearray the caller can scrub.')
    self._passphrase = passphrase
    self.salt = bytes(salt) if salt is not None else secrets.token_bytes(SALT_SIZE)

  def get_or_create_key(self) -> KeyMaterial:
    return derive_key(self._passphrase, self.salt)


def derive_key(passphrase: Union[bytearray, bytes], salt: bytes) -> KeyMaterial:
  kdf = PBKDF2HMAC(
    algorithm=hashes.SHA256(),
    length=KEY_SIZE_BYTES,
    salt=salt,
    iterations=PBKDF2_ITERATIONS
  )
  derived = bytearray(kdf.derive(bytes(passphrase)))
  try:
    return KeyMaterial(derived, exportable=True)
  finally:
    scrub(derived)
