import logging
import random
import sqlite3
import time
from typing import Callable, TypeVar

from config import Settings, get_settings
from contact_store import SqliteContactStore
from db_setup import get_db_connection, unit_of_work
from errors import TransientStoreFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LOCK_MESSAGES = ("database is locked", "database table is locked", "database is busy")


def is_lock_conflict(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return any(fragment in message for fragment in _LOCK_MESSAGES)


def compute_backoff_seconds(attempt: int, base: float, maximum: float) -> float:
    delay = min(maximum, base * (2 ** (attempt - 1)))
    return delay + random.uniform(0, delay / 2)


class ConsistencyGuard:
    """Runs a unit of work against a fresh store under the write lock.

    Lock conflicts are retried with exponential backoff and jitter until
    either the attempt budget or the request deadline runs out, at which
    point ``TransientStoreFailure`` is raised. Work that fails for any
    reason is rolled back in full.
    """

    def __init__(self, db_name: str = None, settings: Settings = None, store_factory=SqliteContactStore):
        self.settings = settings or get_settings()
        self.db_name = db_name or self.settings.db_name
        self.store_factory = store_factory

    def run(self, work: Callable[[SqliteContactStore], T]) -> T:
        settings = self.settings
        max_attempts = settings.identify_retry_max + 1
        deadline = time.monotonic() + settings.identify_timeout_seconds

        attempt = 0
        while True:
            attempt += 1
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransientStoreFailure(f"Gave up after {attempt - 1} attempts: request deadline exceeded")

            try:
                return self._attempt(work, timeout=min(settings.db_busy_timeout_seconds, remaining))
            except sqlite3.OperationalError as e:
                if not is_lock_conflict(e):
                    logger.error("Contact store failure: %s", e)
                    raise TransientStoreFailure(f"Contact store unavailable: {e}") from e
                if attempt >= max_attempts:
                    logger.error("Contact store still locked after %s attempts", attempt)
                    raise TransientStoreFailure(f"Contact store locked after {attempt} attempts") from e

                delay = compute_backoff_seconds(
                    attempt,
                    settings.identify_retry_base_backoff_seconds,
                    settings.identify_retry_max_backoff_seconds,
                )
                delay = min(delay, max(0.0, deadline - time.monotonic()))
                logger.warning("Retrying identify after lock conflict (attempt %s, delay %.3fs)", attempt, delay)
                time.sleep(delay)
            except sqlite3.Error as e:
                logger.error("Contact store failure: %s", e)
                raise TransientStoreFailure(f"Contact store unavailable: {e}") from e

    def _attempt(self, work, timeout: float):
        conn = get_db_connection(self.db_name, timeout=timeout)
        try:
            with unit_of_work(conn):
                return work(self.store_factory(conn))
        finally:
            conn.close()
