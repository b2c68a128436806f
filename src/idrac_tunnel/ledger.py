"""Persistent record of the tunnels this tool created."""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .exceptions import LedgerCorruptError, LedgerUnavailableError


logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
FIELD_COUNT = 6


@dataclass
class TunnelRecord:
    """One tunnel as written to the ledger."""

    local_port: int
    target_host: str
    target_port: int
    process_id: Optional[int]
    created_at: datetime
    jump_host_spec: str
    # Line as read from disk, written back untouched on compaction
    raw: Optional[str] = field(default=None, compare=False, repr=False)

    def to_line(self) -> str:
        """Serialize as ``port|host|tport|pid|created|user@jumphost``."""
        pid = "" if self.process_id is None else str(self.process_id)
        return "|".join([
            str(self.local_port),
            self.target_host,
            str(self.target_port),
            pid,
            self.created_at.strftime(TIMESTAMP_FORMAT),
            self.jump_host_spec,
        ])

    @classmethod
    def from_line(cls, line: str) -> "TunnelRecord":
        """
        Parse one ledger line.

        Raises:
            LedgerCorruptError: If the line does not hold a valid record
        """
        parts = line.split("|")
        if len(parts) != FIELD_COUNT:
            raise LedgerCorruptError(
                f"Expected {FIELD_COUNT} fields, found {len(parts)}"
            )

        port, host, target_port, pid, created, jump_spec = parts
        try:
            return cls(
                local_port=int(port),
                target_host=host,
                target_port=int(target_port),
                process_id=int(pid) if pid.strip() else None,
                created_at=datetime.strptime(created, TIMESTAMP_FORMAT),
                jump_host_spec=jump_spec,
                raw=line,
            )
        except ValueError as e:
            raise LedgerCorruptError(str(e)) from e


class Ledger:
    """
    Line-oriented tunnel state file.

    Records are appended as tunnels are created. Several records for one
    port may exist; the most recent one wins on lookup. Rewrites go through
    a temporary file swapped into place, so readers never see a partial file.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path).expanduser()

    def _read_lines(self) -> List[bytes]:
        try:
            with open(self.path, "rb") as f:
                return f.read().splitlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise LedgerUnavailableError(
                f"Cannot read tunnel state file {self.path}: {e}"
            ) from e

    def _parse(self) -> Tuple[List[TunnelRecord], int]:
        records = []
        skipped = 0
        for line_num, data in enumerate(self._read_lines(), start=1):
            if not data.strip():
                continue
            try:
                line = data.decode("utf-8")
            except UnicodeDecodeError as e:
                skipped += 1
                logger.warning(
                    f"Skipping undecodable line {line_num} in {self.path}: {e}"
                )
                continue
            try:
                records.append(TunnelRecord.from_line(line))
            except LedgerCorruptError as e:
                skipped += 1
                logger.warning(
                    f"Skipping malformed line {line_num} in {self.path}: {e}"
                )
        return records, skipped

    def records(self) -> List[TunnelRecord]:
        """Return every readable record in file order."""
        return self._parse()[0]

    def append(self, record: TunnelRecord) -> None:
        """
        Append a record to the ledger.

        Raises:
            LedgerUnavailableError: If the file cannot be written
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(record.to_line() + "\n")
        except OSError as e:
            raise LedgerUnavailableError(
                f"Cannot write tunnel state file {self.path}: {e}"
            ) from e
        logger.debug(f"Recorded tunnel: {record.to_line()}")

    def lookup(self, port: int) -> Optional[TunnelRecord]:
        """Return the most recent record for ``port``."""
        found = None
        for record in self.records():
            if record.local_port == port:
                found = record
        return found

    def remove(self, port: int) -> int:
        """
        Delete all records for ``port``.

        Returns:
            Number of records removed
        """
        return self.compact(lambda record: record.local_port != port)

    def compact(self, keep: Callable[[TunnelRecord], bool]) -> int:
        """
        Rewrite the ledger keeping only records for which ``keep`` is true.

        Kept lines are written back byte for byte; malformed lines are
        dropped. The file is left untouched when nothing would change.

        Args:
            keep: Predicate selecting records to retain

        Returns:
            Number of records removed (malformed lines not counted)

        Raises:
            LedgerUnavailableError: If the rewrite fails
        """
        if not self.path.exists():
            return 0

        records, skipped = self._parse()
        kept = [record for record in records if keep(record)]
        removed = len(records) - len(kept)
        if removed == 0 and skipped == 0:
            return 0

        fd, temp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}."
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for record in kept:
                    f.write((record.raw or record.to_line()) + "\n")
            os.replace(temp_path, self.path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise LedgerUnavailableError(
                f"Cannot rewrite tunnel state file {self.path}: {e}"
            ) from e

        return removed
