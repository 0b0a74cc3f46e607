from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
  """Base class for remote object-store failures."""


class Unauthorized(TransportError):
  """The store rejected the bearer token (HTTP 401)."""


class NetworkFailure(TransportError):
  """The request never produced an HTTP response."""


class NotFound(TransportError):
  """The requested object does not exist (HTTP 404)."""


class RemoteBackupTransport:
  """Google Drive v3 client for the single backup object in the app-data folder.

  No call is retried. A 401 always raises ``Unauthorized`` so the caller can
  invalidate the token; connection-level errors raise ``NetworkFailure``.
  """

  def __init__(
    self,
    upload_url: str,
    files_url: str,
    backup_name: str,
    folder: str,
    timeout: float = 60.0,
    client: Optional[httpx.AsyncClient] = None
  ) -> None:
    self.upload_url = upload_url.rstrip('/')
    self.files_url = files_url.rstrip('/')
    self.backup_name = backup_name
    self.folder = folder
    self._client = client or httpx.AsyncClient(timeout=timeout)

  async def aclose(self) -> None:
    await self._client.aclose()

  @staticmethod
  def _auth(token: str) -> Dict[str, str]:
    return {'Authorization': f'Bearer {token}'}

  async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
    try:
      response = await self._client.request(method, url, **kwargs)
    except httpx.TransportError as exc:
      logger.warning('Drive request %s %s failed: %s', method, url, type(exc).__name__)
      raise NetworkFailure(str(exc) or type(exc).__name__) from exc
    if response.status_code == 401:
      raise Unauthorized(f'{method} {url} rejected the access token')
    return response

  async def upload(self, blob: str, token: str) -> bool:
    metadata = {'name': self.backup_name, 'parents': [self.folder]}
    files = {
      'metadata': ('metadata', json.dumps(metadata).encode('utf-8'), 'application/json'),
      'file': (self.backup_name, blob.encode('utf-8'), 'application/octet-stream')
    }
    response = await self._send(
      'POST',
      self.upload_url,
      params={'uploadType': 'multipart', 'fields': 'id'},
      headers=self._auth(token),
      files=files
    )
    if not response.is_success:
      logger.warning('Backup upload failed with status %s', response.status_code)
      return False
    logger.info('Uploaded backup %s (%d bytes)', self.backup_name, len(blob))
    return True

  async def list_latest(self, token: str) -> Optional[Dict[str, Any]]:
    params = {
      'q': f"name='{self.backup_name}' and '{self.folder}' in parents",
      'spaces': self.folder,
      'fields': 'files(id,name,createdTime)',
      'orderBy': 'createdTime desc',
      'pageSize': '1'
    }
    response = await self._send('GET', self.files_url, params=params, headers=self._auth(token))
    if not response.is_success:
      logger.warning('Backup listing failed with status %s', response.status_code)
      return None
    try:
      body = response.json()
    except ValueError:
      logger.warning('Backup listing returned a non-JSON body')
      return None
    files = body.get('files') if isinstance(body, dict) else None
    if not isinstance(files, list):
      logger.warning('Backup listing has no files array')
      return None
    if not files:
      return None
    latest = files[0]
    if not isinstance(latest, dict):
      logger.warning('Backup listing entry is not an object')
      return None
    return latest

  async def download(self, file_id: str, token: str) -> Optional[str]:
    response = await self._send(
      'GET',
      f'{self.files_url}/{file_id}',
      params={'alt': 'media'},
      headers=self._auth(token)
    )
    if response.status_code == 404:
      raise NotFound(f'Backup object {file_id} not found')
    if not response.is_success:
      logger.warning('Backup download failed with status %s', response.status_code)
      return None
    return response.text

  async def download_latest(self, token: str) -> Optional[str]:
    latest = await self.list_latest(token)
    if not latest or not isinstance(latest.get('id'), str) or not latest['id']:
      logger.info('No remote backup named %s', self.backup_name)
      return None
    try:
      return await self.download(latest['id'], token)
    except NotFound:
      logger.warning('Latest backup %s vanished before download', latest['id'])
      return None

  async def get_latest_created_time(self, token: str) -> Optional[str]:
    latest = await self.list_latest(token)
    if not latest:
      return None
    created = latest.get('createdTime')
    return created if isinstance(created, str) else None
