from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

SECRET_FIELDS = {'access_token', 'refresh_token', 'passphrase', 'password', 'key', 'token'}


class EventLogger:
  """Append-only JSON-lines audit trail of vault events."""

  def __init__(self, base_dir: Path, filename: str = 'events.log') -> None:
    self.base_dir = Path(base_dir)
    self.base_dir.mkdir(parents=True, exist_ok=True)
    self.log_file = self.base_dir / filename
    self._lock = threading.Lock()

  def log_event(self, category: str, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
    entry = {
      'timestamp': datetime.now(timezone.utc).isoformat(),
      'category': category,
      'message': message,
      'payload': {key: value for key, value in (payload or {}).items() if key not in SECRET_FIELDS}
    }
    try:
      with self._lock, self.log_file.open('a', encoding='utf-8') as handle:
        handle.write(json.dumps(entry, default=str) + '\n')
    except OSError as exc:
      logger.warning('Could not write audit event %s/%s: %s', category, message, exc)

  def log_error(self, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
    self.log_event('error', message, payload)

  def recent(self, limit: int = 200, category: Optional[str] = None) -> List[Dict[str, Any]]:
    if not self.log_file.exists():
      return []
    entries = []
    for line in self.log_file.read_text(encoding='utf-8').splitlines():
      try:
        entry = json.loads(line)
      except json.JSONDecodeError:
        logger.warning('Malformed audit line skipped')
        continue
      if category and entry.get('category') != category:
        continue
      entries.append(entry)
    return entries[-limit:] if limit > 0 else []
