from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from onevault.api.globals import backup_service
from onevault.security.keys import scrub
from onevault.storage.backup import BackupError, BackupPayload, DeviceMode, PassphraseMode

router = APIRouter()


class ModePayload(BaseModel):
  mode: str = Field(default='device', pattern='^(device|passphrase)$')
  passphrase: Optional[str] = Field(default=None, min_length=1)


class BackupRequest(ModePayload):
  notes: List[Dict[str, Any]] = Field(default_factory=list)
  passwords: List[Dict[str, Any]] = Field(default_factory=list)
  cards: List[Dict[str, Any]] = Field(default_factory=list)


def _mode(payload: ModePayload):
  if payload.mode == 'passphrase':
    if not payload.passphrase:
      raise HTTPException(status_code=400, detail='Passphrase mode requires a passphrase.')
    return PassphraseMode(bytearray(payload.passphrase.encode('utf-8')))
  return DeviceMode()


def _release(mode) -> None:
  if isinstance(mode, PassphraseMode):
    scrub(mode.passphrase)


@router.post('/backups')
async def create_backup(payload: BackupRequest) -> Dict[str, Any]:
  try:
    backup = BackupPayload.from_dict({
      'notes': payload.notes,
      'passwords': payload.passwords,
      'cards': payload.cards
    })
  except BackupError as exc:
    raise HTTPException(status_code=400, detail=str(exc)) from exc
  mode = _mode(payload)
  try:
    uploaded = await backup_service.perform_backup(backup, mode)
  finally:
    _release(mode)
  if not uploaded:
    raise HTTPException(status_code=502, detail='Backup upload failed.')
  return {'status': 'uploaded', 'counts': backup.summary()}


@router.post('/backups/restore')
async def restore_backup(payload: ModePayload) -> Dict[str, Any]:
  mode = _mode(payload)
  try:
    restored = await backup_service.perform_restore(mode)
  finally:
    _release(mode)
  if restored is None:
    raise HTTPException(status_code=404, detail='No backup restored: missing, wrong passphrase or corrupted.')
  return {'backup': restored.as_dict(), 'counts': restored.summary()}


@router.get('/backups/latest')
async def latest_backup() -> Dict[str, Any]:
  return {'created_time': await backup_service.get_last_backup_timestamp()}
