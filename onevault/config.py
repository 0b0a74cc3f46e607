from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


def _scopes(raw: str) -> List[str]:
  return [scope for scope in raw.split() if scope]


@dataclass
class Settings:
  """Global vault configuration derived from environment variables."""

  api_host: str = os.getenv('ONEVAULT_HOST', '127.0.0.1')
  api_port: int = int(os.getenv('ONEVAULT_PORT', '6120'))
  log_level: str = os.getenv('ONEVAULT_LOG_LEVEL', 'info')
  data_dir: Path = Path(os.getenv('ONEVAULT_DATA_DIR', './data')).resolve()
  preferences_db_path: Path = Path(os.getenv('ONEVAULT_PREFERENCES_DB', './data/preferences.db')).resolve()
  secrets_dir: Path = Path(os.getenv('ONEVAULT_SECRETS_DIR', './data/secrets')).resolve()
  event_log_dir: Path = Path(os.getenv('ONEVAULT_EVENT_LOG_DIR', './data/logs')).resolve()
  device_key_alias: str = os.getenv('ONEVAULT_DEVICE_KEY_ALIAS', 'onevault.master_key')
  token_key_alias: str = os.getenv('ONEVAULT_TOKEN_KEY_ALIAS', 'onevault.auth.master_key')
  keyring_service: str = os.getenv('ONEVAULT_KEYRING_SERVICE', 'onevault.auth')
  keyring_username: str = os.getenv('ONEVAULT_KEYRING_USERNAME', 'drive')
  drive_upload_url: str = os.getenv('ONEVAULT_DRIVE_UPLOAD_URL', 'https://www.googleapis.com/upload/drive/v3/files')
  drive_files_url: str = os.getenv('ONEVAULT_DRIVE_FILES_URL', 'https://www.googleapis.com/drive/v3/files')
  backup_name: str = os.getenv('ONEVAULT_BACKUP_NAME', 'one_backup.json.enc')
  app_data_folder: str = os.getenv('ONEVAULT_APP_DATA_FOLDER', 'appDataFolder')
  oauth_client_id: Optional[str] = os.getenv('ONEVAULT_OAUTH_CLIENT_ID')
  oauth_client_secret: Optional[str] = os.getenv('ONEVAULT_OAUTH_CLIENT_SECRET')
  oauth_auth_url: str = os.getenv('ONEVAULT_OAUTH_AUTH_URL', 'https://accounts.google.com/o/oauth2/v2/auth')
  oauth_token_url: str = os.getenv('ONEVAULT_OAUTH_TOKEN_URL', 'https://oauth2.googleapis.com/token')
  oauth_redirect_uri: str = os.getenv('ONEVAULT_OAUTH_REDIRECT_URI', 'http://127.0.0.1:6120/auth/callback')
  oauth_scopes: str = os.getenv(
    'ONEVAULT_OAUTH_SCOPES',
    'https://www.googleapis.com/auth/drive https://www.googleapis.com/auth/drive.appdata'
  )
  account_hint: Optional[str] = os.getenv('ONEVAULT_ACCOUNT')
  request_timeout_seconds: float = float(os.getenv('ONEVAULT_REQUEST_TIMEOUT', '60'))
  refresh_margin_seconds: float = float(os.getenv('ONEVAULT_REFRESH_MARGIN', '60'))
  default_token_lifetime_seconds: float = float(os.getenv('ONEVAULT_TOKEN_LIFETIME', '3600'))

  @property
  def scopes(self) -> List[str]:
    return _scopes(self.oauth_scopes)

  def ensure_directories(self) -> None:
    self.data_dir.mkdir(parents=True, exist_ok=True)
    if not self.preferences_db_path.parent.exists():
      self.preferences_db_path.parent.mkdir(parents=True, exist_ok=True)
    self.secrets_dir.mkdir(parents=True, exist_ok=True)
    self.event_log_dir.mkdir(parents=True, exist_ok=True)


settings = Settings()
settings.ensure_directories()
