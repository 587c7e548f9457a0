"""
Jig Ledger - Ledger Storage Backend

This module provides whole-document JSON persistence for the ledger with
atomic replace semantics, an exclusive lock file for single-runner passes,
and timestamped backups.
"""

import hashlib
import json
import logging
import os
import shutil
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Union


logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base storage exception."""
    pass


class LockTimeoutError(StorageError):
    """Lock acquisition timeout exception."""
    pass


class IntegrityError(StorageError):
    """Stored document is unreadable or structurally invalid."""
    pass


class FileLock:
    """Exclusive lock file next to the guarded file."""

    def __init__(self, file_path: Union[str, Path], timeout: float = 30.0):
        self.file_path = Path(file_path)
        self.lock_file_path = self.file_path.with_suffix(self.file_path.suffix + '.lock')
        self.timeout = timeout
        self.lock_fd = None
        self._thread_lock = RLock()

    def is_locked(self) -> bool:
        return self.lock_fd is not None

    def acquire(self) -> bool:
        """Acquire the lock, waiting up to the timeout."""
        with self._thread_lock:
            if self.lock_fd is not None:
                return True

            start_time = time.time()
            while True:
                try:
                    self.lock_fd = os.open(
                        str(self.lock_file_path),
                        os.O_CREAT | os.O_EXCL | os.O_RDWR
                    )
                    os.write(self.lock_fd, str(os.getpid()).encode('ascii'))
                    return True
                except FileExistsError:
                    if time.time() - start_time >= self.timeout:
                        raise LockTimeoutError(
                            f"Failed to acquire {self.lock_file_path} within {self.timeout} seconds"
                        )
                    time.sleep(0.1)
                except OSError as e:
                    raise StorageError(f"Failed to acquire lock: {e}")

    def release(self) -> None:
        with self._thread_lock:
            if self.lock_fd is None:
                return
            try:
                os.close(self.lock_fd)
                os.unlink(self.lock_file_path)
            except OSError as e:
                logger.warning(f"Failed to release lock {self.lock_file_path}: {e}")
            finally:
                self.lock_fd = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class LedgerStorage:
    """Durable JSON document with atomic whole-file replacement."""

    def __init__(
        self,
        file_path: Union[str, Path],
        backup_dir: Optional[Union[str, Path]] = None,
        backup_count: int = 30,
        lock_timeout: float = 30.0
    ):
        self.file_path = Path(file_path)
        self.backup_dir = Path(backup_dir) if backup_dir else self.file_path.parent / 'ledger-backups'
        self.backup_count = backup_count
        self.lock_timeout = lock_timeout

        self.file_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _calculate_checksum(data: bytes) -> str:
        """Calculate SHA-256 checksum of data."""
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def serialize(data: Dict[str, Any]) -> bytes:
        return (json.dumps(data, indent=2, ensure_ascii=False) + "\n").encode('utf-8')

    def exists(self) -> bool:
        return self.file_path.exists()

    def size(self) -> int:
        if not self.file_path.exists():
            return 0
        return self.file_path.stat().st_size

    def lock(self) -> FileLock:
        """Lock guarding a whole reconciliation pass on this document."""
        return FileLock(self.file_path, timeout=self.lock_timeout)

    def read(self) -> Dict[str, Any]:
        """Read the document; a missing file reads as empty."""
        if not self.file_path.exists():
            return {}

        try:
            raw = self.file_path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {self.file_path}: {e}")

        if not raw.strip():
            return {}

        try:
            data = json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise IntegrityError(f"Invalid JSON data in {self.file_path}: {e}")

        if not isinstance(data, dict):
            raise IntegrityError(f"Ledger document {self.file_path} is not a JSON object")
        return data

    def write(self, data: Dict[str, Any]) -> str:
        """
        Replace the document atomically.

        The new content is written to a temporary file in the same directory,
        flushed to disk and renamed over the target, so readers see either the
        old or the new document and never a partial write.

        Returns:
            SHA-256 checksum of the written bytes
        """
        payload = self.serialize(data)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{self.file_path.name}.", suffix='.tmp', dir=str(self.file_path.parent)
        )
        temp_path = Path(temp_name)

        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.file_path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StorageError(f"Failed to write {self.file_path}: {e}")

        return self._calculate_checksum(payload)

    def checksum(self) -> Optional[str]:
        if not self.file_path.exists():
            return None
        return self._calculate_checksum(self.file_path.read_bytes())

    def backup(self) -> Optional[Path]:
        """Copy the current document to a timestamped backup file."""
        if not self.file_path.exists():
            return None

        timestamp = datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S%fZ')
        backup_path = self.backup_dir / f"{self.file_path.stem}-{timestamp}{self.file_path.suffix}"

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.file_path, backup_path)
        except OSError as e:
            raise StorageError(f"Failed to back up {self.file_path}: {e}")

        logger.info(f"Backed up ledger to {backup_path}")
        self._cleanup_old_backups()
        return backup_path

    def _cleanup_old_backups(self) -> None:
        """Remove backups beyond backup_count, oldest first."""
        for old in self.list_backups()[self.backup_count:]:
            try:
                old.unlink()
                logger.info(f"Removed old backup: {old.name}")
            except OSError as e:
                logger.warning(f"Failed to remove old backup {old}: {e}")

    def list_backups(self) -> List[Path]:
        """List backups, newest first."""
        if not self.backup_dir.exists():
            return []

        pattern = f"{self.file_path.stem}-*{self.file_path.suffix}"
        return sorted(self.backup_dir.glob(pattern), key=lambda p: p.name, reverse=True)

    def restore_backup(self, name: str) -> bool:
        """Restore the document from a named backup, backing up the current one first."""
        backup_path = self.backup_dir / name
        if not backup_path.exists():
            return False

        try:
            data = json.loads(backup_path.read_bytes().decode('utf-8'))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise IntegrityError(f"Backup {name} is unreadable: {e}")

        self.backup()
        self.write(data)
        return True

    def get_storage_info(self) -> Dict[str, Any]:
        return {
            'file_path': str(self.file_path),
            'size_bytes': self.size(),
            'exists': self.exists(),
            'backup_dir': str(self.backup_dir),
            'backup_count': len(self.list_backups())
        }
