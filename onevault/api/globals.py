from onevault.auth.identity import OAuthRefreshProvider
from onevault.auth.tokens import AuthSession, TokenLifecycleManager
from onevault.config import settings
from onevault.logging.event_logger import EventLogger
from onevault.security.keys import DeviceKeyProvider, FileKeyStore
from onevault.storage.backup import BackupCodec, BackupService
from onevault.storage.credentials import (
  CredentialStore,
  KeyringCredentialBackend,
  PreferenceCredentialBackend,
  SignOutFlag
)
from onevault.storage.drive import RemoteBackupTransport
from onevault.storage.preferences import EncryptedPreferenceStore, PreferenceStore

# Initialize globals
event_logger = EventLogger(settings.event_log_dir)
key_store = FileKeyStore(settings.secrets_dir)
device_keys = DeviceKeyProvider(key_store, settings.device_key_alias)
token_keys = DeviceKeyProvider(key_store, settings.token_key_alias)
plain_preferences = PreferenceStore(settings.preferences_db_path, 'onevault_prefs')
token_preferences = EncryptedPreferenceStore(settings.preferences_db_path, 'onevault_auth', token_keys)
credential_store = CredentialStore(
  backends=[
    KeyringCredentialBackend(settings.keyring_service, settings.keyring_username),
    PreferenceCredentialBackend(token_preferences)
  ],
  sign_out_flag=SignOutFlag(plain_preferences)
)
identity = OAuthRefreshProvider(
  store=credential_store,
  client_id=settings.oauth_client_id,
  client_secret=settings.oauth_client_secret,
  token_url=settings.oauth_token_url,
  auth_url=settings.oauth_auth_url,
  redirect_uri=settings.oauth_redirect_uri,
  scopes=settings.scopes,
  timeout=settings.request_timeout_seconds
)
auth_session = AuthSession()
token_manager = TokenLifecycleManager(
  store=credential_store,
  identity=identity,
  session=auth_session,
  scopes=settings.scopes,
  refresh_margin=settings.refresh_margin_seconds,
  default_lifetime=settings.default_token_lifetime_seconds,
  event_logger=event_logger
)
transport = RemoteBackupTransport(
  upload_url=settings.drive_upload_url,
  files_url=settings.drive_files_url,
  backup_name=settings.backup_name,
  folder=settings.app_data_folder,
  timeout=settings.request_timeout_seconds
)
backup_service = BackupService(
  codec=BackupCodec(device_keys),
  transport=transport,
  tokens=token_manager,
  event_logger=event_logger,
  account_hint=settings.account_hint
)
