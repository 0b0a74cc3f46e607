from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from onevault.config import settings

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def build_service():
  from onevault.api.globals import backup_service, event_logger
  return backup_service, event_logger


def parse_global_args() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog='onevault', description='OneVault encrypted backup CLI')
  sub = parser.add_subparsers(dest='command', required=True)

  p_backup = sub.add_parser('backup', help='Encrypt a payload file and upload it to Drive')
  p_backup.add_argument('--payload', required=True, help='JSON file with notes, passwords and cards')
  p_backup.add_argument('--passphrase', action='store_true', help='Encrypt under a passphrase instead of the device key')

  p_restore = sub.add_parser('restore', help='Download and decrypt the latest backup')
  p_restore.add_argument('--passphrase', action='store_true')
  p_restore.add_argument('--out', help='Write the restored payload here instead of stdout')

  sub.add_parser('last-backup', help='Show when the latest remote backup was created')
  sub.add_parser('sign-out', help='Forget stored Drive credentials')

  p_events = sub.add_parser('events', help='Show recent audit events')
  p_events.add_argument('--limit', type=int, default=50)
  p_events.add_argument('--category')

  return parser


def _read_passphrase(confirm: bool) -> bytearray:
  from onevault.security.keys import scrub
  first = bytearray(getpass.getpass('Passphrase: ').encode('utf-8'))
  if not confirm:
    return first
  second = bytearray(getpass.getpass('Repeat passphrase: ').encode('utf-8'))
  matched = first == second
  scrub(second)
  if not matched:
    scrub(first)
    raise ValueError('Passphrases do not match.')
  return first


def _mode(use_passphrase: bool, confirm: bool = False):
  from onevault.storage.backup import DeviceMode, PassphraseMode
  if use_passphrase:
    return PassphraseMode(_read_passphrase(confirm))
  return DeviceMode()


def _release(mode) -> None:
  from onevault.security.keys import scrub
  from onevault.storage.backup import PassphraseMode
  if isinstance(mode, PassphraseMode):
    scrub(mode.passphrase)


def cmd_backup(service, payload_path: str, use_passphrase: bool) -> int:
  from onevault.storage.backup import BackupError, BackupPayload
  path = Path(payload_path).expanduser().resolve()
  if not path.is_file():
    print('Payload file does not exist.', file=sys.stderr)
    return 2
  try:
    payload = BackupPayload.from_json(path.read_text(encoding='utf-8'))
  except BackupError as exc:
    print(f'Invalid payload: {exc}', file=sys.stderr)
    return 2
  try:
    mode = _mode(use_passphrase, confirm=True)
  except ValueError as exc:
    print(str(exc), file=sys.stderr)
    return 2
  try:
    ok = asyncio.run(service.perform_backup(payload, mode))
  finally:
    _release(mode)
  print(json.dumps({'uploaded': ok, 'counts': payload.summary()}))
  return 0 if ok else 1


def cmd_restore(service, use_passphrase: bool, out: Optional[str]) -> int:
  mode = _mode(use_passphrase)
  try:
    payload = asyncio.run(service.perform_restore(mode))
  finally:
    _release(mode)
  if payload is None:
    print('Nothing restored: no backup, wrong passphrase or corrupted backup.', file=sys.stderr)
    return 1
  text = json.dumps(payload.as_dict(), indent=2, ensure_ascii=False)
  if out:
    Path(out).expanduser().write_text(text, encoding='utf-8')
    print(json.dumps({'restored': payload.summary(), 'out': out}))
  else:
    print(text)
  return 0


def cmd_last_backup(service) -> int:
  created = asyncio.run(service.get_last_backup_timestamp())
  print(created or 'No backup found.')
  return 0 if created else 1


def cmd_sign_out(service) -> int:
  cleared = asyncio.run(service.sign_out())
  print('Signed out.' if cleared else 'Signed out; some credential stores could not be cleared.')
  return 0


def cmd_events(event_logger, limit: int, category: Optional[str]) -> int:
  for entry in event_logger.recent(limit=limit, category=category):
    print(json.dumps(entry))
  return 0


def main(argv: Optional[list[str]] = None) -> int:
  from onevault.auth.tokens import ConsentRequiredError
  parser = parse_global_args()
  ns = parser.parse_args(argv)
  service, event_logger = build_service()
  try:
    if ns.command == 'backup':
      return cmd_backup(service, ns.payload, ns.passphrase)
    if ns.command == 'restore':
      return cmd_restore(service, ns.passphrase, ns.out)
    if ns.command == 'last-backup':
      return cmd_last_backup(service)
    if ns.command == 'sign-out':
      return cmd_sign_out(service)
    if ns.command == 'events':
      return cmd_events(event_logger, ns.limit, ns.category)
  except ConsentRequiredError as exc:
    print(f'Sign-in required. Open this URL to continue:\n{exc.intent}', file=sys.stderr)
    return 3
  parser.print_help()
  return 2


if __name__ == '__main__':
  sys.exit(main())
