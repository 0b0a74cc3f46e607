"""AES-256-GCM envelope encryption.

Envelope layout (all integers unsigned 32-bit big-endian)::

  [salt length][salt][iv length][iv][ciphertext || 16-byte tag]

Device-key envelopes carry a zero-length salt. Envelopes travel as standard
base64 without line breaks.
"""
from __future__ import annotations

import base64
import binascii
import os
import struct
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag

if TYPE_CHECKING:
  from onevault.security.keys import KeyMaterial

IV_SIZE = 12
MIN_IV_SIZE = 12
MAX_IV_SIZE = 16
TAG_SIZE = 16
_LENGTH = struct.Struct('>I')


class CryptoError(RuntimeError):
  """Base class for cipher and key failures."""


class AuthenticationFailed(CryptoError):
  """GCM tag check failed: wrong key or tampered envelope."""


class MalformedEnvelope(CryptoError):
  """Envelope length fields do not match the data."""


class KeyUnavailable(CryptoError):
  """The key could not be produced or has already been scrubbed."""


@dataclass(frozen=True)
class Envelope:
  salt: bytes
  iv: bytes
  ciphertext: bytes

  def to_bytes(self) -> bytes:
    return b''.join((
      _LENGTH.pack(len(self.salt)),
      self.salt,
      _LENGTH.pack(len(self.iv)),
      self.iv,
      self.ciphertext
    ))


def parse_envelope(data: bytes) -> Envelope:
  offset = 0

  def read_length() -> int:
    nonlocal offset
    if len(data) - offset < _LENGTH.size:
      raise MalformedEnvelope('Envelope truncated inside a length header.')
    (value,) = _LENGTH.unpack_from(data, offset)
    offset += _LENGTH.size
    return value

  salt_len = read_length()
  if salt_len > len(data) - offset:
    raise MalformedEnvelope(f'Salt length {salt_len} exceeds envelope size.')
  salt = bytes(data[offset:offset + salt_len])
  offset += salt_len

  iv_len = read_length()
  if not MIN_IV_SIZE <= iv_len <= MAX_IV_SIZE:
    raise MalformedEnvelope(f'IV length {iv_len} outside {MIN_IV_SIZE}..{MAX_IV_SIZE}.')
  if iv_len > len(data) - offset:
    raise MalformedEnvelope(f'IV length {iv_len} exceeds envelope size.')
  iv = bytes(data[offset:offset + iv_len])
  offset += iv_len

  ciphertext = bytes(data[offset:])
  if len(ciphertext) < TAG_SIZE:
    raise MalformedEnvelope('Ciphertext shorter than the authentication tag.')
  return Envelope(salt=salt, iv=iv, ciphertext=ciphertext)


def encode_envelope(data: bytes) -> str:
  return base64.b64encode(data).decode('ascii')


def decode_envelope(text: str) -> bytes:
  try:
    return base64.b64decode(text.strip(), validate=True)
  except (binascii.Error, ValueError) as exc:
    raise MalformedEnvelope('Envelope is not valid base64.') from exc


class SymmetricCipher:
  """Encrypts and decrypts envelopes with an opaque AES-256 key handle."""

  def encrypt(self, plaintext: bytes, key: KeyMaterial, salt: bytes = b'') -> bytes:
    iv = os.urandom(IV_SIZE)
    try:
      ciphertext = key.aead().encrypt(iv, plaintext, None)
    except CryptoError:
      raise
    except Exception as exc:
      raise CryptoError(f'AES-GCM encryption failed: {type(exc).__name__}') from exc
    return Envelope(salt=bytes(salt), iv=iv, ciphertext=ciphertext).to_bytes()

  def decrypt(self, envelope: bytes, key: KeyMaterial) -> bytes:
    parsed = parse_envelope(envelope)
    return self.open(parsed, key)

  def open(self, envelope: Envelope, key: KeyMaterial) -> bytes:
    aead = key.aead()
    try:
      return aead.decrypt(envelope.iv, envelope.ciphertext, None)
    except InvalidTag as exc:
      raise AuthenticationFailed('Envelope authentication failed.') from exc
    except ValueError as exc:
      raise MalformedEnvelope(str(exc)) from exc

  def encrypt_text(self, plaintext: str, key: KeyMaterial, salt: bytes = b'') -> str:
    return encode_envelope(self.encrypt(plaintext.encode('utf-8'), key, salt))

  def decrypt_text(self, envelope: str, key: KeyMaterial) -> str:
    plain = self.decrypt(decode_envelope(envelope), key)
    try:
      return plain.decode('utf-8')
    except UnicodeDecodeError as exc:
      raise MalformedEnvelope('Decrypted data is not UTF-8 text.') from exc
