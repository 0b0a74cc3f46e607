"""End-to-end tests of backup, restore and sign-out through the service."""
import asyncio
import re

import httpx
import pytest

from onevault.auth.identity import ConsentRequired
from onevault.auth.tokens import AuthSession, ConsentRequiredError, TokenLifecycleManager
from onevault.logging.event_logger import EventLogger
from onevault.storage.backup import (
  BackupCodec,
  BackupPayload,
  BackupService,
  DeviceMode,
  NoteExport,
  PassphraseMode
)
from onevault.storage.credentials import StoredCredential
from onevault.storage.drive import RemoteBackupTransport

from conftest import FakeIdentity

NOW = 1_700_000_000_000
ACCOUNT = 'me@example.com'
UPLOAD_URL = 'https://upload.test/files'
FILES_URL = 'https://api.test/files'


class FakeDrive:
  """In-memory Drive: keeps uploaded blobs and answers list/download."""

  def __init__(self):
    self.blobs = []
    self.status_override = None
    self.requests = []

  def __call__(self, request: httpx.Request) -> httpx.Response:
    self.requests.append(request)
    if self.status_override:
      return httpx.Response(self.status_override)
    if request.method == 'POST':
      match = re.search(rb'name="file".*?\r\n\r\n(.*?)\r\n--', request.content, re.S)
      self.blobs.append(match.group(1).decode('utf-8'))
      return httpx.Response(200, json={'id': f'id-{len(self.blobs)}'})
    if request.url.params.get('alt') == 'media':
      index = int(request.url.path.rsplit('-', 1)[1]) - 1
      return httpx.Response(200, text=self.blobs[index])
    files = [{'id': f'id-{len(self.blobs)}', 'name': 'one_backup.json.enc', 'createdTime': '2024-05-01T10:00:00Z'}]
    return httpx.Response(200, json={'files': files if self.blobs else []})


@pytest.fixture
def drive():
  return FakeDrive()


@pytest.fixture
def events(tmp_path):
  return EventLogger(tmp_path / 'logs')


def build_service(credential_store, device_keys, drive, events, identity=None):
  tokens = TokenLifecycleManager(
    store=credential_store,
    identity=identity or FakeIdentity(),
    session=AuthSession(),
    scopes=['drive.appdata'],
    clock=lambda: NOW,
    event_logger=events
  )
  client = httpx.AsyncClient(transport=httpx.MockTransport(drive))
  transport = RemoteBackupTransport(UPLOAD_URL, FILES_URL, 'one_backup.json.enc', 'appDataFolder', client=client)
  return BackupService(BackupCodec(device_keys), transport, tokens, event_logger=events, account_hint=ACCOUNT)


@pytest.fixture
def signed_in(credential_store):
  credential_store.save(StoredCredential('live', expires_at=NOW + 3_600_000, user_id=ACCOUNT))
  return credential_store


PAYLOAD = BackupPayload(notes=[NoteExport('Hello', 'world')])


class TestBackupAndRestore:
  def test_device_round_trip(self, signed_in, device_keys, drive, events):
    service = build_service(signed_in, device_keys, drive, events)

    async def scenario():
      assert await service.perform_backup(PAYLOAD, DeviceMode())
      return await service.perform_restore(DeviceMode())

    assert asyncio.run(scenario()) == PAYLOAD
    assert drive.requests[0].headers['Authorization'] == 'Bearer live'
    messages = [entry['message'] for entry in events.recent()]
    assert 'uploaded' in messages and 'restored' in messages

  def test_passphrase_round_trip_and_wrong_passphrase(self, signed_in, device_keys, drive, events):
    service = build_service(signed_in, device_keys, drive, events)

    async def scenario():
      await service.perform_backup(PAYLOAD, PassphraseMode(bytearray(b'correct-horse')))
      wrong = await service.perform_restore(PassphraseMode(bytearray(b'wrong-horse')))
      right = await service.perform_restore(PassphraseMode(bytearray(b'correct-horse')))
      return wrong, right

    wrong, right = asyncio.run(scenario())
    assert wrong is None
    assert right == PAYLOAD
    assert any(entry['message'] == 'restore_failed' for entry in events.recent(category='error'))

  def test_restore_with_nothing_uploaded(self, signed_in, device_keys, drive, events):
    service = build_service(signed_in, device_keys, drive, events)
    assert asyncio.run(service.perform_restore(DeviceMode())) is None
    assert len(drive.requests) == 1

  def test_last_backup_timestamp(self, signed_in, device_keys, drive, events):
    service = build_service(signed_in, device_keys, drive, events)

    async def scenario():
      before = await service.get_last_backup_timestamp()
      await service.perform_backup(PAYLOAD, DeviceMode())
      after = await service.get_last_backup_timestamp()
      return before, after

    assert asyncio.run(scenario()) == (None, '2024-05-01T10:00:00Z')

  def test_upload_failure_returns_false(self, signed_in, device_keys, drive, events):
    drive.status_override = 500
    service = build_service(signed_in, device_keys, drive, events)
    assert asyncio.run(service.perform_backup(PAYLOAD, DeviceMode())) is False


class TestAuthFailures:
  def test_unauthorized_invalidates_credential(self, signed_in, device_keys, drive, events):
    drive.status_override = 401
    service = build_service(signed_in, device_keys, drive, events)
    assert asyncio.run(service.perform_backup(PAYLOAD, DeviceMode())) is False
    assert len(drive.requests) == 1
    assert signed_in.load() is None
    assert signed_in.signed_out is False

  def test_unauthorized_on_restore(self, signed_in, device_keys, drive, events):
    drive.status_override = 401
    service = build_service(signed_in, device_keys, drive, events)
    assert asyncio.run(service.perform_restore(DeviceMode())) is None
    assert signed_in.load() is None

  def test_no_token_skips_network(self, credential_store, device_keys, drive, events):
    service = build_service(credential_store, device_keys, drive, events, identity=FakeIdentity())
    service.account_hint = None
    assert asyncio.run(service.perform_backup(PAYLOAD, DeviceMode())) is False
    assert drive.requests == []

  def test_consent_required_reaches_caller(self, credential_store, device_keys, drive, events):
    identity = FakeIdentity(ConsentRequired(intent='https://consent.example'))
    service = build_service(credential_store, device_keys, drive, events, identity=identity)
    with pytest.raises(ConsentRequiredError):
      asyncio.run(service.perform_backup(PAYLOAD, DeviceMode()))
    assert drive.requests == []


class TestSignOut:
  def test_sign_out_forces_fresh_exchange(self, signed_in, device_keys, drive, events):
    service = build_service(signed_in, device_keys, drive, events)

    async def scenario():
      await service.sign_out()
      return await service.perform_backup(PAYLOAD, DeviceMode())

    # After sign-out the stored token is gone and the account hint triggers a
    # fresh exchange rather than reusing the old token.
    assert asyncio.run(scenario()) is True
    assert drive.requests[0].headers['Authorization'] == 'Bearer token-1'
    assert any(entry['message'] == 'signed_out' for entry in events.recent(category='auth'))
