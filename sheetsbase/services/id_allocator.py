"""Unique record id generation with bounded collision retry.

Strategies:
- uuid: random UUID v4, ``xxxxxxxx-xxxx-4xxx-yxxx-xxxxxxxxxxxx``
- short: 16 characters of ``[a-z0-9]``
- timestamp: ``<epoch-millis>_<random>``, sorts by creation time
- readable: ``<prefix>-<YYYY>-<MM>-<DD>-<random>``

Uniqueness is only checked against the snapshot of ids passed in; two
concurrent inserts are kept apart by randomness, not by locking.
"""

import secrets
import string
import threading
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Callable, Collection, Optional, Union

from sheetsbase.core.errors import ValidationError
from sheetsbase.core.logging import get_logger

logger = get_logger(__name__)

MAX_ATTEMPTS = 10

BASE36 = string.digits + string.ascii_lowercase
SHORT_ID_ALPHABET = string.ascii_lowercase + string.digits
SHORT_ID_LENGTH = 16


class IdStrategy(str, Enum):
    UUID = "uuid"
    SHORT = "short"
    TIMESTAMP = "timestamp"
    READABLE = "readable"


_ALIASES = {
    "timestampordered": IdStrategy.TIMESTAMP,
    "timestamp_ordered": IdStrategy.TIMESTAMP,
}


def parse_strategy(value: Union[str, IdStrategy, None],
                   default: Union[str, IdStrategy] = IdStrategy.UUID) -> IdStrategy:
    """Resolve a strategy name (case-insensitive), falling back to ``default``."""
    if value is None or value == "":
        value = default
    if isinstance(value, IdStrategy):
        return value
    name = str(value).strip().lower()
    if name in _ALIASES:
        return _ALIASES[name]
    try:
        return IdStrategy(name)
    except ValueError:
        supported = ", ".join(s.value for s in IdStrategy)
        raise ValidationError(
            f"Unknown id strategy: {value}. Supported: {supported}",
            field="idConfig.type",
        )


class IdAllocator:
    """Generates record ids that are absent from a known id set."""

    def __init__(self, clock: Callable[[], float] = time.time,
                 rng: Optional[secrets.SystemRandom] = None):
        self._clock = clock
        self._rng = rng or secrets.SystemRandom()
        self._lock = threading.Lock()
        self._last_millis = 0

    def _now_millis(self) -> int:
        return int(self._clock() * 1000)

    def _random_base36(self, length: int) -> str:
        return "".join(self._rng.choice(BASE36) for _ in range(length))

    # ------------------------------------------------------------------
    # Candidate generators
    # ------------------------------------------------------------------

    def uuid_id(self) -> str:
        return str(uuid.uuid4())

    def short_id(self) -> str:
        return "".join(self._rng.choice(SHORT_ID_ALPHABET) for _ in range(SHORT_ID_LENGTH))

    def timestamp_id(self) -> str:
        """Creation-ordered id.

        The millisecond part never repeats or goes backwards for one
        allocator, so lexicographic order equals generation order even when
        several ids are drawn within the same millisecond.
        """
        with self._lock:
            millis = max(self._now_millis(), self._last_millis + 1)
            self._last_millis = millis
        return f"{millis:013d}_{self._random_base36(8)}"

    def readable_id(self, prefix: str = "item") -> str:
        today = datetime.fromtimestamp(self._clock())
        return f"{prefix}-{today:%Y}-{today:%m}-{today:%d}-{self._random_base36(4)}"

    def _candidate(self, strategy: IdStrategy, prefix: str) -> str:
        if strategy is IdStrategy.SHORT:
            return self.short_id()
        elif strategy is IdStrategy.TIMESTAMP:
            return self.timestamp_id()
        elif strategy is IdStrategy.READABLE:
            return self.readable_id(prefix)
        return self.uuid_id()

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def generate(self, strategy: Union[str, IdStrategy], existing_ids: Collection[str],
                 prefix: Optional[str] = None) -> str:
        """Generate an id not contained in ``existing_ids``.

        Draws up to MAX_ATTEMPTS candidates. If the last one still collides,
        the current epoch milliseconds are appended to it (``<id>_<millis>``)
        and that value is returned as is.

        Args:
            strategy: IdStrategy or its name
            existing_ids: Ids already present in the table
            prefix: Prefix for the readable strategy (default "item")

        Raises:
            ValidationError: If the strategy name is unknown
        """
        strategy = parse_strategy(strategy)
        prefix = prefix or "item"

        candidate = ""
        for attempt in range(1, MAX_ATTEMPTS + 1):
            candidate = self._candidate(strategy, prefix)
            if candidate not in existing_ids:
                if attempt > 1:
                    logger.debug("Id collision resolved", strategy=strategy.value, attempts=attempt)
                return candidate

        fallback = f"{candidate}_{self._now_millis()}"
        logger.warning("Id collisions exhausted retries, appending timestamp",
                       strategy=strategy.value,
                       attempts=MAX_ATTEMPTS,
                       id=fallback)
        return fallback
