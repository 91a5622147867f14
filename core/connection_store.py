"""
Persisted wallet connection.
One versioned JSON record holding the user's connection string and optional bridge URL.
"""

import os
import json
import time
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Optional

from nostr_clients.connection_uri import ConnectionDescriptor, parse
from wallet_errors import ConnectionStringInvalid

logger = logging.getLogger(__name__)

RECORD_VERSION = 1


@dataclass
class StoredConnection:
    """The persisted connection record"""
    connection_string: str
    bridge_url: Optional[str] = None
    saved_at: float = None
    version: int = RECORD_VERSION

    def __post_init__(self):
        if self.saved_at is None:
            self.saved_at = time.time()

    @property
    def descriptor(self) -> ConnectionDescriptor:
        return parse(self.connection_string)


class ConnectionStore:
    """Reads and writes the connection record at a fixed path"""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)
        self._lock = threading.Lock()

    def load(self) -> Optional[StoredConnection]:
        """Return the stored connection, or None when nothing is saved"""
        if not os.path.exists(self.path):
            return None

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except ValueError as e:
            raise ConnectionStringInvalid(f"Connection record at {self.path} is corrupt") from e

        if not isinstance(data, dict):
            raise ConnectionStringInvalid(f"Connection record at {self.path} is corrupt")
        if data.get('version') != RECORD_VERSION:
            raise ConnectionStringInvalid(f"Unsupported connection record version: {data.get('version')!r}")

        record = StoredConnection(
            connection_string=data.get('connection_string'),
            bridge_url=data.get('bridge_url') or None,
            saved_at=data.get('saved_at'),
        )
        # Validate before handing it out
        parse(record.connection_string)
        return record

    def save(self, connection_string: str, bridge_url: Optional[str] = None) -> StoredConnection:
        """Validate and atomically write the connection record"""
        descriptor = parse(connection_string)
        record = StoredConnection(connection_string=descriptor.to_uri(), bridge_url=bridge_url or None)

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, mode=0o700, exist_ok=True)

        tmp_path = f"{self.path}.tmp"
        with self._lock:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(asdict(record), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)

        logger.info(f"Saved wallet connection to {self.path}")
        return record

    def clear(self) -> bool:
        """Remove the record, True if one existed"""
        with self._lock:
            try:
                os.remove(self.path)
            except FileNotFoundError:
                return False
        logger.info(f"Removed wallet connection at {self.path}")
        return True
