"""
LevelDB handle used by the persistence store.
"""
import plyvel
import logging
from typing import Optional, Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)

_MISSING = object()


class DB:
    def __init__(self, db_path: str, create_if_missing: bool = True,
                 write_buffer_size: int = 64 * 1024 * 1024,
                 max_open_files: int = 1000,
                 compression: Optional[str] = 'snappy'):
        """
        Open (or create) the collector database.

        Args:
            db_path: Path to database directory
            create_if_missing: Create database if it doesn't exist
            write_buffer_size: Size of write buffer
            max_open_files: Maximum number of open files
            compression: LevelDB block compression, None to disable
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
        """Returns the stored value, or None if the key is absent."""
        self._check_open()
        try:
            return self._db.get(key)
        except Exception as e:
            logger.error(f"Error getting key {key[:32]!r}: {e}")
            raise

    def put(self, key: bytes, value: bytes):
        self._check_open()
        try:
            self._db.put(key, value)
        except Exception as e:
            logger.error(f"Error putting key {key[:32]!r}: {e}")
            raise

    def delete(self, key: bytes):
        self._check_open()
        try:
            self._db.delete(key)
        except Exception as e:
            logger.error(f"Error deleting key {key[:32]!r}: {e}")
            raise

    def exists(self, key: bytes) -> bool:
        return self.get(key) is not None

    @contextmanager
    def write_batch(self):
        """
        Context manager for atomic multi-key writes.

        Example:
            with db.write_batch() as batch:
                batch.put(b'smeshers:id', doc)
                batch.put(b'coinbases:id', doc)
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

    def iterator(self, prefix: Optional[bytes] = None,
                 start: Optional[bytes] = None,
                 stop: Optional[bytes] = None,
                 reverse: bool = False,
                 include_value: bool = True) -> Iterator:
        """
        Iterate over keys in key order.

        Args:
            prefix: Only iterate keys with this prefix
            start: Start key (inclusive), ignored when prefix is given
            stop: Stop key (exclusive), ignored when prefix is given
            reverse: Iterate in reverse order
            include_value: Yield (key, value) tuples instead of bare keys
        """
        self._check_open()
        try:
            if prefix:
                return self._db.iterator(prefix=prefix, reverse=reverse,
                                         include_value=include_value)
            return self._db.iterator(start=start, stop=stop, reverse=reverse,
                                     include_value=include_value)
        except Exception as e:
            logger.error(f"Error creating iterator: {e}")
            raise

    def get_range(self, start: bytes, stop: bytes) -> list[tuple[bytes, bytes]]:
        """Get all key-value pairs with start <= key < stop."""
        with self.iterator(start=start, stop=stop) as it:
            return list(it)

    def get_prefix(self, prefix: bytes) -> list[tuple[bytes, bytes]]:
        """Get all key-value pairs with a given prefix."""
        with self.iterator(prefix) as it:
            return list(it)

    def count_prefix(self, prefix: bytes) -> int:
        """Count the keys with a given prefix without reading values."""
        with self.iterator(prefix, include_value=False) as it:
            return sum(1 for _ in it)

    def last(self, prefix: bytes) -> Optional[tuple[bytes, bytes]]:
        """Returns the highest (key, value) under a prefix, or None."""
        with self.iterator(prefix, reverse=True) as it:
            return next(it, None)

    def close(self):
        if not self._closed:
            try:
                self._db.close()
                self._closed = True
                logger.info("Database closed")
            except Exception as e:
                logger.error(f"Error closing database: {e}")
                raise

    def is_closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class BatchWriter:
    """
    Accumulates writes and flushes them as one LevelDB write batch.

    Pending writes are kept per key, so a later write to the same key
    replaces the earlier one and get() sees the pending value before the
    flush.
    """

    def __init__(self, db: DB, batch_size: int = 1000):
        self.db = db
        self.batch_size = batch_size
        self.pending: dict[bytes, Optional[bytes]] = {}
        self.total_written = 0

    def get(self, key: bytes) -> Optional[bytes]:
        value = self.pending.get(key, _MISSING)
        if value is _MISSING:
            return self.db.get(key)
        return value

    def put(self, key: bytes, value: bytes):
        self.pending[key] = value
        if len(self.pending) >= self.batch_size:
            self.flush()

    def delete(self, key: bytes):
        self.pending[key] = None
        if len(self.pending) >= self.batch_size:
            self.flush()

    def flush(self):
        """Write all pending operations."""
        if not self.pending:
            return

        with self.db.write_batch() as batch:
            for key, value in self.pending.items():
                if value is None:
                    batch.delete(key)
                else:
                    batch.put(key, value)

        self.total_written += len(self.pending)
        self.pending.clear()

    def __len__(self):
        return len(self.pending)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.flush()
        return False
