"""Tests for device and passphrase key providers."""
import os
import stat
import threading

import pytest

from onevault.security.cipher import KeyUnavailable, SymmetricCipher
from onevault.security.keys import (
  DeviceKeyProvider,
  FileKeyStore,
  KeyMaterial,
  PassphraseKeyProvider,
  SALT_SIZE,
  derive_key,
  scrub
)


class TestDeviceKeyProvider:
  """Lazy creation and reuse of the device key."""

  def test_creates_once_and_reuses(self, key_store, device_keys):
    first = device_keys.get_or_create_key()
    second = device_keys.get_or_create_key()
    assert key_store.created == 1
    assert first is second
    assert first.exportable is False

  def test_concurrent_first_use_creates_one_key(self, key_store):
    provider = DeviceKeyProvider(key_store, 'race')
    barrier = threading.Barrier(8)
    results = []

    def worker():
      barrier.wait()
      results.append(provider.get_or_create_key())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
      thread.start()
    for thread in threads:
      thread.join()
    assert key_store.created == 1
    assert len({id(key) for key in results}) == 1

  def test_store_failure_is_key_unavailable(self, key_store):
    class Broken(type(key_store)):
      def create_key(self, alias, spec):
        raise OSError('no secure hardware')

    with pytest.raises(KeyUnavailable):
      DeviceKeyProvider(Broken(), 'x').get_or_create_key()

  def test_missing_after_creation(self, key_store):
    class Forgetful(type(key_store)):
      def get_key(self, alias):
        return None

    with pytest.raises(KeyUnavailable):
      DeviceKeyProvider(Forgetful(), 'x').get_or_create_key()


class TestFileKeyStore:
  """The shipped file-backed key store."""

  def test_key_file_is_owner_only(self, tmp_path):
    store = FileKeyStore(tmp_path / 'secrets')
    provider = DeviceKeyProvider(store, 'onevault.master_key')
    key = provider.get_or_create_key()
    path = tmp_path / 'secrets' / 'onevault.master_key.key'
    assert path.exists()
    if os.name == 'posix':
      assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert 'redacted' in repr(key)

  def test_key_survives_new_store_instance(self, tmp_path):
    cipher = SymmetricCipher()
    first = DeviceKeyProvider(FileKeyStore(tmp_path), 'alias').get_or_create_key()
    envelope = cipher.encrypt(b'persist', first)
    second = DeviceKeyProvider(FileKeyStore(tmp_path), 'alias').get_or_create_key()
    assert cipher.decrypt(envelope, second) == b'persist'

  def test_corrupt_key_file(self, tmp_path):
    (tmp_path / 'bad.key').write_bytes(b'short')
    with pytest.raises(KeyUnavailable):
      FileKeyStore(tmp_path).get_key('bad')


class TestPassphraseKeyProvider:
  """PBKDF2 derivation."""

  def test_deterministic_for_same_salt(self):
    salt = b'\x01' * SALT_SIZE
    cipher = SymmetricCipher()
    envelope = cipher.encrypt(b'data', derive_key(b'pw', salt))
    assert cipher.decrypt(envelope, PassphraseKeyProvider(bytearray(b'pw'), salt).get_or_create_key()) == b'data'

  def test_fresh_salt_when_none_given(self):
    first = PassphraseKeyProvider(bytearray(b'pw'))
    second = PassphraseKeyProvider(bytearray(b'pw'))
    assert len(first.salt) == SALT_SIZE
    assert first.salt != second.salt

  def test_rejects_str_passphrase(self):
    with pytest.raises(TypeError):
      PassphraseKeyProvider('pw', b'\x02' * SALT_SIZE)

  def test_uses_caller_buffer_without_copying(self):
    passphrase = bytearray(b'pw')
    provider = PassphraseKeyProvider(passphrase, b'\x02' * SALT_SIZE)
    scrub(passphrase)
    assert provider._passphrase is passphrase
    assert bytes(provider._passphrase) == b'\x00\x00'


class TestScrub:
  def test_scrub_zero_fills(self):
    buffer = bytearray(b'secret')
    scrub(buffer)
    assert buffer == bytearray(6)

  def test_key_material_scrub(self):
    key = KeyMaterial(b'\xff' * 32)
    key.scrub()
    assert key.scrubbed
    with pytest.raises(KeyUnavailable):
      key.aead()

  def test_rejects_wrong_size(self):
    with pytest.raises(ValueError):
      KeyMaterial(b'short')
