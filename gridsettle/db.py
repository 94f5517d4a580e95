"""
Key-value storage for tree nodes, the finalized batch log and published
transaction lists.

`DB` wraps LevelDB through plyvel. `MemoryDB` offers the same surface over a
dict and backs scratch trees and tests.
"""
import plyvel
import logging
import threading
from typing import Optional, Iterator
from contextlib import contextmanager

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class DB:
    def __init__(self, db_path: str, create_if_missing: bool = True,
                 write_buffer_size: int = 64 * 1024 * 1024,  # 64MB
                 max_open_files: int = 1000,
                 compression: Optional[str] = 'snappy'):
        """
        Args:
            db_path: Path to database directory
            create_if_missing: Create database if it doesn't exist
            write_buffer_size: Size of write buffer
            max_open_files: Maximum number of open files
            compression: 'snappy' or None
        """
        try:
            self._db = plyvel.DB(
                db_path,
                create_if_missing=create_if_missing,
                write_buffer_size=write_buffer_size,
                max_open_files=max_open_files,
                compression=compression,
            )
            self._closed = False
            self.path = db_path
            logger.info(f"Database opened at {db_path}")
        except Exception as e:
            logger.error(f"Failed to open database at {db_path}: {e}")
            raise

    def _check_open(self):
        if self._closed:
            raise RuntimeError("Database is closed")

    def get(self, key: bytes) -> Optional[bytes]:
        """Get value by key. Returns None if key doesn't exist."""
        self._check_open()
        return self._db.get(key)

    def put(self, key: bytes, value: bytes):
        """Put a key-value pair."""
        self._check_open()
        try:
            self._db.put(key, value)
        except Exception as e:
            logger.error(f"Error putting key {key.hex()[:16]}: {e}")
            raise

    def delete(self, key: bytes):
        """Delete a key."""
        self._check_open()
        self._db.delete(key)

    def exists(self, key: bytes) -> bool:
        """Check if key exists."""
        return self.get(key) is not None

    @contextmanager
    def write_batch(self):
        """
        Context manager for atomic batch writes.

        Example:
            with db.write_batch() as batch:
                batch.put(b'epoch:1', record)
                batch.put(b'meta:root', root)
        """
        self._check_open()
        batch = self._db.write_batch()
        try:
            yield batch
            batch.write()
        except Exception as e:
            logger.error(f"Error in batch write: {e}")
            raise
        finally:
            batch.clear()

    def iterator(self, prefix: bytes, reverse: bool = False) -> Iterator[tuple[bytes, bytes]]:
        """Iterate (key, value) pairs under a prefix in key order."""
        self._check_open()
        return self._db.iterator(prefix=prefix, reverse=reverse)

    def get_prefix(self, prefix: bytes) -> list[tuple[bytes, bytes]]:
        """Get all key-value pairs with a given prefix."""
        return list(self.iterator(prefix))

    def close(self):
        """Close the database."""
        if not self._closed:
            self._db.close()
            self._closed = True
            logger.info("Database closed")

    def is_closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class _MemoryBatch:
    def __init__(self):
        self.ops = []

    def put(self, key: bytes, value: bytes):
        self.ops.append(('put', key, value))

    def delete(self, key: bytes):
        self.ops.append(('delete', key, None))


class MemoryDB:
    """In-process stand-in for DB with identical semantics."""

    def __init__(self):
        self._data: dict[bytes, bytes] = {}
        self._lock = threading.Lock()
        self._closed = False

    def _check_open(self):
        if self._closed:
            raise RuntimeError("Database is closed")

    def get(self, key: bytes) -> Optional[bytes]:
        self._check_open()
        return self._data.get(key)

    def put(self, key: bytes, value: bytes):
        self._check_open()
        with self._lock:
            self._data[key] = value

    def delete(self, key: bytes):
        self._check_open()
        with self._lock:
            self._data.pop(key, None)

    def exists(self, key: bytes) -> bool:
        return self.get(key) is not None

    @contextmanager
    def write_batch(self):
        self._check_open()
        batch = _MemoryBatch()
        yield batch
        with self._lock:
            for op, key, value in batch.ops:
                if op == 'put':
                    self._data[key] = value
                else:
                    self._data.pop(key, None)

    def iterator(self, prefix: bytes, reverse: bool = False) -> Iterator[tuple[bytes, bytes]]:
        self._check_open()
        with self._lock:
            items = sorted((k, v) for k, v in self._data.items() if k.startswith(prefix))
        if reverse:
            items.reverse()
        return iter(items)

    def get_prefix(self, prefix: bytes) -> list[tuple[bytes, bytes]]:
        return list(self.iterator(prefix))

    def close(self):
        self._closed = True

    def is_closed(self) -> bool:
        return self._closed

    def __len__(self):
        return len(self._data)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
