from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from onevault.auth.tokens import TokenLifecycleManager
from onevault.security.cipher import (
  AuthenticationFailed,
  CryptoError,
  MalformedEnvelope,
  SymmetricCipher,
  decode_envelope,
  encode_envelope,
  parse_envelope
)
from onevault.security.keys import KeyMaterial, KeyProvider, PassphraseKeyProvider
from onevault.storage.drive import RemoteBackupTransport, TransportError, Unauthorized

logger = logging.getLogger(__name__)


class BackupError(RuntimeError):
  """Base class for backup payload failures."""


class CorruptPayload(BackupError):
  """Decrypted bytes are not a valid backup document."""


class WrongPassphrase(BackupError):
  """The passphrase does not open this backup."""


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
  return {key: value for key, value in values.items() if value is not None}


def _require(data: Dict[str, Any], key: str, kind: type = str) -> Any:
  value = data.get(key)
  if not isinstance(value, kind) or isinstance(value, bool):
    raise CorruptPayload(f'Field {key!r} missing or not {kind.__name__}')
  return value


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
  value = data.get(key)
  if value is not None and not isinstance(value, str):
    raise CorruptPayload(f'Field {key!r} is not a string')
  return value


@dataclass
class AttachmentExport:
  uri: str
  display_name: Optional[str] = None
  mime_type: Optional[str] = None
  data_base64: Optional[str] = None

  def as_dict(self) -> Dict[str, Any]:
    return _compact({
      'uri': self.uri,
      'displayName': self.display_name,
      'mimeType': self.mime_type,
      'base64': self.data_base64
    })

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> 'AttachmentExport':
    return cls(
      uri=_require(data, 'uri'),
      display_name=_optional_str(data, 'displayName'),
      mime_type=_optional_str(data, 'mimeType'),
      data_base64=_optional_str(data, 'base64')
    )


@dataclass
class NoteExport:
  title: str
  content: str
  attachments: List[AttachmentExport] = field(default_factory=list)

  def as_dict(self) -> Dict[str, Any]:
    return {
      'title': self.title,
      'content': self.content,
      'attachments': [attachment.as_dict() for attachment in self.attachments]
    }

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> 'NoteExport':
    attachments = data.get('attachments') or []
    if not isinstance(attachments, list):
      raise CorruptPayload('Note attachments must be a list')
    return cls(
      title=_require(data, 'title'),
      content=_require(data, 'content'),
      attachments=[AttachmentExport.from_dict(_as_object(item)) for item in attachments]
    )


@dataclass
class PasswordExport:
  uuid: str
  title: str
  username: str
  raw_password: Optional[str]
  created_at: int

  def as_dict(self) -> Dict[str, Any]:
    return _compact({
      'uuid': self.uuid,
      'title': self.title,
      'username': self.username,
      'rawPassword': self.raw_password,
      'createdAt': self.created_at
    })

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> 'PasswordExport':
    return cls(
      uuid=_require(data, 'uuid'),
      title=_require(data, 'title'),
      username=_require(data, 'username'),
      raw_password=_optional_str(data, 'rawPassword'),
      created_at=_require(data, 'createdAt', int)
    )

  def __repr__(self) -> str:
    return f'PasswordExport(uuid={self.uuid!r}, title={self.title!r}, username={self.username!r})'


@dataclass
class CardExport:
  uuid: str
  cardholder_name: str
  last4: str
  full_number: Optional[str]
  brand: Optional[str]
  expiry: Optional[str]
  security_code: Optional[str]
  created_at: int

  def as_dict(self) -> Dict[str, Any]:
    return _compact({
      'uuid': self.uuid,
      'cardholderName': self.cardholder_name,
      'last4': self.last4,
      'fullNumber': self.full_number,
      'brand': self.brand,
      'expiry': self.expiry,
      'securityCode': self.security_code,
      'createdAt': self.created_at
    })

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> 'CardExport':
    return cls(
      uuid=_require(data, 'uuid'),
      cardholder_name=_require(data, 'cardholderName'),
      last4=_require(data, 'last4'),
      full_number=_optional_str(data, 'fullNumber'),
      brand=_optional_str(data, 'brand'),
      expiry=_optional_str(data, 'expiry'),
      security_code=_optional_str(data, 'securityCode'),
      created_at=_require(data, 'createdAt', int)
    )

  def __repr__(self) -> str:
    return f'CardExport(uuid={self.uuid!r}, cardholder_name={self.cardholder_name!r}, last4={self.last4!r})'


def _as_object(value: Any) -> Dict[str, Any]:
  if not isinstance(value, dict):
    raise CorruptPayload(f'Expected a JSON object, got {type(value).__name__}')
  return value


def _as_list(data: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
  value = data.get(key, [])
  if not isinstance(value, list):
    raise CorruptPayload(f'{key!r} must be a list')
  return [_as_object(item) for item in value]


@dataclass
class BackupPayload:
  notes: List[NoteExport] = field(default_factory=list)
  passwords: List[PasswordExport] = field(default_factory=list)
  cards: List[CardExport] = field(default_factory=list)

  def as_dict(self) -> Dict[str, Any]:
    return {
      'notes': [note.as_dict() for note in self.notes],
      'passwords': [password.as_dict() for password in self.passwords],
      'cards': [card.as_dict() for card in self.cards]
    }

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> 'BackupPayload':
    data = _as_object(data)
    return cls(
      notes=[NoteExport.from_dict(item) for item in _as_list(data, 'notes')],
      passwords=[PasswordExport.from_dict(item) for item in _as_list(data, 'passwords')],
      cards=[CardExport.from_dict(item) for item in _as_list(data, 'cards')]
    )

  def to_json(self) -> str:
    return json.dumps(self.as_dict(), separators=(',', ':'), ensure_ascii=False)

  @classmethod
  def from_json(cls, text: str) -> 'BackupPayload':
    try:
      data = json.loads(text)
    except ValueError as exc:
      raise CorruptPayload(f'Backup is not valid JSON: {exc.__class__.__name__}') from exc
    return cls.from_dict(data)

  def summary(self) -> Dict[str, int]:
    return {'notes': len(self.notes), 'passwords': len(self.passwords), 'cards': len(self.cards)}


@dataclass(frozen=True)
class DeviceMode:
  """Encrypt under the non-exportable device key."""


@dataclass(frozen=True)
class PassphraseMode:
  """Encrypt under a key derived from ``passphrase``; the caller scrubs the buffer."""

  passphrase: bytearray = field(repr=False)


BackupMode = Union[DeviceMode, PassphraseMode]


class BackupCodec:
  """Turns a payload into a base64 envelope string and back."""

  def __init__(self, device_key_provider: KeyProvider, cipher: Optional[SymmetricCipher] = None) -> None:
    self.device_key_provider = device_key_provider
    self.cipher = cipher or SymmetricCipher()

  def encode(self, payload: BackupPayload, mode: BackupMode) -> str:
    return self.encode_text(payload.to_json(), mode)

  def encode_text(self, text: str, mode: BackupMode) -> str:
    plaintext = text.encode('utf-8')
    if isinstance(mode, PassphraseMode):
      provider = PassphraseKeyProvider(mode.passphrase)
      key = provider.get_or_create_key()
      try:
        envelope = self.cipher.encrypt(plaintext, key, salt=provider.salt)
      finally:
        key.scrub()
    else:
      envelope = self.cipher.encrypt(plaintext, self.device_key_provider.get_or_create_key())
    return encode_envelope(envelope)

  def open(self, text: str, mode: BackupMode) -> str:
    """Decrypt to JSON text, raising ``CryptoError`` subclasses on failure."""
    envelope = parse_envelope(decode_envelope(text))
    key: KeyMaterial
    if isinstance(mode, PassphraseMode):
      if not envelope.salt:
        raise MalformedEnvelope('Passphrase backup carries no salt.')
      key = PassphraseKeyProvider(mode.passphrase, salt=envelope.salt).get_or_create_key()
      try:
        plain = self.cipher.open(envelope, key)
      finally:
        key.scrub()
    else:
      plain = self.cipher.open(envelope, self.device_key_provider.get_or_create_key())
    try:
      return plain.decode('utf-8')
    except UnicodeDecodeError as exc:
      raise CorruptPayload('Decrypted backup is not UTF-8 text.') from exc

  def decode_text(self, text: str, mode: BackupMode) -> Optional[str]:
    try:
      return self.open(text, mode)
    except CryptoError as exc:
      logger.info('Backup could not be decrypted: %s', type(exc).__name__)
      return None

  def decode(self, text: str, mode: BackupMode) -> Optional[BackupPayload]:
    """Return the payload, or ``None`` when the envelope does not open.

    JSON that fails to parse after a successful decrypt raises ``CorruptPayload``.
    """
    plain = self.decode_text(text, mode)
    if plain is None:
      return None
    return BackupPayload.from_json(plain)

  def decode_strict(self, text: str, mode: BackupMode) -> BackupPayload:
    """Like ``decode`` but names the failure for user-facing messages."""
    try:
      plain = self.open(text, mode)
    except AuthenticationFailed as exc:
      if isinstance(mode, PassphraseMode):
        raise WrongPassphrase('Wrong passphrase or corrupted backup.') from exc
      raise CorruptPayload('Backup does not open with this device key.') from exc
    except CryptoError as exc:
      raise CorruptPayload(str(exc)) from exc
    return BackupPayload.from_json(plain)


class BackupService:
  """Entry points the UI calls: backup, restore, sign-out, last-backup time."""

  def __init__(
    self,
    codec: BackupCodec,
    transport: RemoteBackupTransport,
    tokens: TokenLifecycleManager,
    event_logger=None,
    account_hint: Optional[str] = None
  ) -> None:
    self.codec = codec
    self.transport = transport
    self.tokens = tokens
    self._event_logger = event_logger
    self.account_hint = account_hint

  def _log(self, message: str, payload: Optional[Dict[str, Any]] = None, error: bool = False) -> None:
    if not self._event_logger:
      return
    if error:
      self._event_logger.log_error(message, payload)
    else:
      self._event_logger.log_event('backup', message, payload)

  async def _token(self) -> Optional[str]:
    token = await self.tokens.get_token(self.account_hint)
    if not token:
      logger.warning('No access token available for remote backup')
      self._log('no_token', error=True)
    return token

  async def _handle_unauthorized(self, operation: str) -> None:
    logger.warning('Remote store rejected token during %s; invalidating stored credential', operation)
    await self.tokens.invalidate()
    self._log('unauthorized', {'operation': operation}, error=True)

  async def perform_backup(self, payload: BackupPayload, mode: BackupMode) -> bool:
    try:
      blob = await asyncio.to_thread(self.codec.encode, payload, mode)
    except CryptoError as exc:
      logger.error('Backup encryption failed: %s', type(exc).__name__)
      self._log('encrypt_failed', {'reason': type(exc).__name__}, error=True)
      return False
    token = await self._token()
    if not token:
      return False
    try:
      uploaded = await self.transport.upload(blob, token)
    except Unauthorized:
      await self._handle_unauthorized('backup')
      return False
    except TransportError as exc:
      logger.warning('Backup upload failed: %s', exc)
      self._log('upload_failed', {'reason': type(exc).__name__}, error=True)
      return False
    if uploaded:
      self._log('uploaded', {**payload.summary(), 'mode': type(mode).__name__})
    else:
      self._log('upload_rejected', error=True)
    return uploaded

  async def perform_restore(self, mode: BackupMode) -> Optional[BackupPayload]:
    token = await self._token()
    if not token:
      return None
    try:
      blob = await self.transport.download_latest(token)
    except Unauthorized:
      await self._handle_unauthorized('restore')
      return None
    except TransportError as exc:
      logger.warning('Backup download failed: %s', exc)
      self._log('download_failed', {'reason': type(exc).__name__}, error=True)
      return None
    if blob is None:
      self._log('nothing_to_restore')
      return None
    try:
      payload = await asyncio.to_thread(self.codec.decode, blob, mode)
    except BackupError as exc:
      logger.warning('Backup decrypted but is corrupt: %s', exc)
      self._log('restore_corrupt', error=True)
      return None
    if payload is None:
      self._log('restore_failed', {'reason': 'wrong passphrase or corrupted backup'}, error=True)
      return None
    self._log('restored', payload.summary())
    return payload

  async def get_last_backup_timestamp(self) -> Optional[str]:
    token = await self._token()
    if not token:
      return None
    try:
      return await self.transport.get_latest_created_time(token)
    except Unauthorized:
      await self._handle_unauthorized('last_backup')
      return None
    except TransportError as exc:
      logger.warning('Backup listing failed: %s', exc)
      return None

  async def sign_out(self) -> bool:
    return await self.tokens.sign_out()
