from __future__ import annotations

import sqlite3
import threading
import time
from pathlib import Path
from typing import Dict, Mapping, Optional

from onevault.security.cipher import SymmetricCipher
from onevault.security.keys import KeyProvider


class PreferenceStore:
  """SQLite-backed key-value namespace, the local stand-in for shared preferences."""

  def __init__(self, db_path: Path, namespace: str) -> None:
    self.db_path = Path(db_path)
    self.db_path.parent.mkdir(parents=True, exist_ok=True)
    self.namespace = namespace
    self._write_lock = threading.Lock()
    self._init_schema()

  def _connect(self) -> sqlite3.Connection:
    connection = sqlite3.connect(self.db_path, timeout=30)
    connection.row_factory = sqlite3.Row
    return connection

  def _init_schema(self) -> None:
    with self._connect() as conn:
      conn.execute(
        """
        CREATE TABLE IF NOT EXISTS preferences (
          namespace TEXT NOT NULL,
          key TEXT NOT NULL,
          value TEXT NOT NULL,
          updated_at REAL NOT NULL,
          PRIMARY KEY (namespace, key)
        );
        """
      )
      conn.commit()

  def _encode(self, value: str) -> str:
    return value

  def _decode(self, stored: str) -> str:
    return stored

  def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
    with self._connect() as conn:
      row = conn.execute(
        "SELECT value FROM preferences WHERE namespace = ? AND key = ?",
        (self.namespace, key)
      ).fetchone()
    if not row:
      return default
    return self._decode(row['value'])

  def get_all(self) -> Dict[str, str]:
    with self._connect() as conn:
      rows = conn.execute(
        "SELECT key, value FROM preferences WHERE namespace = ?",
        (self.namespace,)
      ).fetchall()
    return {row['key']: self._decode(row['value']) for row in rows}

  def put(self, key: str, value: str) -> None:
    self.put_many({key: value})

  def put_many(self, values: Mapping[str, Optional[str]]) -> None:
    """Write several keys in one transaction; ``None`` values remove the key."""
    now = time.time()
    encoded = {key: (self._encode(value) if value is not None else None) for key, value in values.items()}
    with self._write_lock, self._connect() as conn:
      for key, value in encoded.items():
        if value is None:
          conn.execute(
            "DELETE FROM preferences WHERE namespace = ? AND key = ?",
            (self.namespace, key)
          )
          continue
        conn.execute(
          """
          INSERT INTO preferences (namespace, key, value, updated_at)
          VALUES (?, ?, ?, ?)
          ON CONFLICT(namespace, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
          """,
          (self.namespace, key, value, now)
        )
      conn.commit()

  def remove(self, key: str) -> None:
    self.put_many({key: None})

  def clear(self) -> None:
    with self._write_lock, self._connect() as conn:
      conn.execute("DELETE FROM preferences WHERE namespace = ?", (self.namespace,))
      conn.commit()

  def get_bool(self, key: str, default: bool = False) -> bool:
    value = self.get(key)
    if value is None:
      return default
    return value == 'true'

  def put_bool(self, key: str, value: bool) -> None:
    self.put(key, 'true' if value else 'false')


class EncryptedPreferenceStore(PreferenceStore):
  """Preference namespace whose values are sealed under the device key."""

  def __init__(
    self,
    db_path: Path,
    namespace: str,
    key_provider: KeyProvider,
    cipher: Optional[SymmetricCipher] = None
  ) -> None:
    self.key_provider = key_provider
    self.cipher = cipher or SymmetricCipher()
    super().__init__(db_path, namespace)

  def _encode(self, value: str) -> str:
    return self.cipher.encrypt_text(value, self.key_provider.get_or_create_key())

  def _decode(self, stored: str) -> str:
    return self.cipher.decrypt_text(stored, self.key_provider.get_or_create_key())
