from __future__ import annotations

import enum
import logging
import threading
from typing import Callable, Dict, Optional, Tuple

from db_copy.errors import TokenParseError
from db_copy.tokens import token_from_hex, token_to_hex

LOG = logging.getLogger(__name__)


class Side(str, enum.Enum):
    SOURCE = "source"
    TARGET = "target"


FlushCallback = Callable[[str, str], None]


class TimestampStore:
    """
    Last-synchronized version tokens, one map per side, keyed by upper-cased
    table name. Text form is one `TABLENAME,0xHEX16` line per table.

    `on_flush(source_text, target_text)` is called by `flush()`; the caller
    decides where the two blobs live.
    """

    def __init__(self, on_flush: Optional[FlushCallback] = None):
        self._lock = threading.Lock()
        self._tokens: Dict[Side, Dict[str, bytes]] = {Side.SOURCE: {}, Side.TARGET: {}}
        self._on_flush = on_flush

    # ---------- Lookup / mutation ----------
    def get(self, table: str, side: Side) -> Optional[bytes]:
        with self._lock:
            return self._tokens[Side(side)].get(table.upper())

    def set(self, table: str, source_token: bytes, target_token: bytes) -> None:
        key = table.upper()
        with self._lock:
            self._tokens[Side.SOURCE][key] = source_token
            self._tokens[Side.TARGET][key] = target_token
        LOG.info("Stored tokens for %s: source=%s target=%s",
                 key, token_to_hex(source_token), token_to_hex(target_token))

    def clear(self, table: str) -> None:
        key = table.upper()
        with self._lock:
            self._tokens[Side.SOURCE].pop(key, None)
            self._tokens[Side.TARGET].pop(key, None)
        LOG.info("Cleared stored tokens for %s", key)

    def clear_all(self) -> None:
        with self._lock:
            self._tokens[Side.SOURCE].clear()
            self._tokens[Side.TARGET].clear()
        LOG.info("Cleared all stored tokens")

    def tables(self, side: Side) -> Tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._tokens[Side(side)]))

    # ---------- Text form ----------
    @staticmethod
    def parse_text(blob: Optional[str]) -> Dict[str, bytes]:
        result: Dict[str, bytes] = {}
        for line in (blob or "").splitlines():
            trimmed = line.strip()
            if not trimmed:
                continue
            parts = trimmed.split(",")
            if len(parts) != 2 or not parts[0].strip():
                LOG.debug("Skipping malformed token line: %r", trimmed)
                continue
            try:
                token = token_from_hex(parts[1])
            except TokenParseError:
                LOG.debug("Skipping token line with bad hex: %r", trimmed)
                continue
            if token is None:
                continue
            result[parts[0].strip().upper()] = token
        return result

    @staticmethod
    def format_text(tokens: Dict[str, bytes]) -> str:
        return "\n".join(f"{name},{token_to_hex(tokens[name])}" for name in sorted(tokens))

    def load_from_text(self, blob: Optional[str], side: Side) -> int:
        parsed = self.parse_text(blob)
        with self._lock:
            self._tokens[Side(side)] = parsed
        LOG.info("Loaded %d %s token(s)", len(parsed), Side(side).value)
        return len(parsed)

    def to_text(self, side: Side) -> str:
        with self._lock:
            snapshot = dict(self._tokens[Side(side)])
        return self.format_text(snapshot)

    def load(self, source_blob: Optional[str], target_blob: Optional[str]) -> None:
        self.load_from_text(source_blob, Side.SOURCE)
        self.load_from_text(target_blob, Side.TARGET)

    def flush(self) -> None:
        if self._on_flush is None:
            LOG.debug("No flush callback configured; tokens stay in memory")
            return
        self._on_flush(self.to_text(Side.SOURCE), self.to_text(Side.TARGET))
        LOG.info("Flushed stored tokens")
