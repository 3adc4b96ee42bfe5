"""Chunk readers - lazy, restartable sources of records.

A reader produces one record per read() call and returns END_OF_INPUT
when exhausted. Every reader tracks a position (the number of source
records consumed, malformed ones included) and can be reopened at a saved
position, which is how a restarted step resumes from its last committed
chunk.
"""

import csv
import logging
from pathlib import Path
from typing import Any, BinaryIO, Iterable, Optional, Protocol, Sequence, runtime_checkable

from chunkbatch.errors import MalformedRecord, SourceUnavailable
from chunkbatch.records import RecordFactory

logger = logging.getLogger(__name__)


class _EndOfInput:
    """Sentinel returned by readers once the source is exhausted."""

    _instance: Optional["_EndOfInput"] = None

    def __new__(cls) -> "_EndOfInput":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_INPUT"

    def __bool__(self) -> bool:
        return False


END_OF_INPUT = _EndOfInput()


@runtime_checkable
class ItemReader(Protocol):
    """Protocol for chunk readers."""

    def open(self, position: int = 0) -> None:
        """Open the source and skip `position` records."""
        ...

    def read(self) -> Any:
        """Return the next record, or END_OF_INPUT.

        Raises:
            MalformedRecord: If the next record cannot be parsed (the
                position still advances past it)
        """
        ...

    @property
    def position(self) -> int:
        ...

    def close(self) -> None:
        ...


class DelimitedFileReader:
    """
    Reader for delimited text files with named columns.

    Blank lines and lines starting with a comment marker are ignored and do
    not count toward the position. Each remaining line is split into
    `names` columns and passed to `record_factory` as a {name: value} dict.
    A line that does not decode in `encoding` is a malformed record.

    Example:
        reader = DelimitedFileReader(
            "people.csv",
            names=["name", "email", "age", "id"],
            comments=("--",),
            record_factory=Person.from_fields,
        )
    """

    def __init__(
        self,
        path: Path | str,
        names: Sequence[str],
        record_factory: RecordFactory = dict,
        delimiter: str = ",",
        comments: Sequence[str] = ("#",),
        skip_lines: int = 0,
        encoding: str = "utf-8",
    ):
        if not names:
            raise ValueError("DelimitedFileReader requires at least one column name")
        self._path = Path(path)
        self._names = list(names)
        self._record_factory = record_factory
        self._delimiter = delimiter
        self._comments = tuple(comments)
        self._skip_lines = skip_lines
        self._encoding = encoding
        self._file: Optional[BinaryIO] = None
        self._line_number = 0
        self._position = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def position(self) -> int:
        return self._position

    def open(self, position: int = 0) -> None:
        try:
            self._file = open(self._path, "rb")
        except OSError as e:
            raise SourceUnavailable(f"Cannot open {self._path}: {e}") from e

        self._line_number = 0
        self._position = 0
        try:
            for _ in range(self._skip_lines):
                if self._next_line() is None:
                    break

            # Fast-forward past records committed by an earlier execution
            while self._position < position:
                try:
                    if self._next_data_line() is None:
                        break
                except MalformedRecord:
                    pass
                self._position += 1
        except BaseException:
            self.close()
            raise
        if position:
            logger.info(f"Resumed {self._path.name} at record {self._position}")

    def read(self) -> Any:
        if self._file is None:
            raise RuntimeError("Reader is not open")

        try:
            line = self._next_data_line()
        except MalformedRecord:
            self._position += 1
            raise
        if line is None:
            return END_OF_INPUT
        self._position += 1

        try:
            values = next(csv.reader([line], delimiter=self._delimiter))
        except csv.Error as e:
            raise MalformedRecord(str(e), line=self._line_number, raw=line)
        if len(values) != len(self._names):
            raise MalformedRecord(
                f"expected {len(self._names)} fields, got {len(values)}",
                line=self._line_number,
                raw=line,
            )

        try:
            return self._record_factory(dict(zip(self._names, values)))
        except MalformedRecord as e:
            raise MalformedRecord(str(e), line=self._line_number, raw=line) from e
        except (TypeError, ValueError) as e:
            raise MalformedRecord(f"cannot map record: {e}", line=self._line_number, raw=line) from e

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _next_line(self) -> Optional[bytes]:
        assert self._file is not None
        raw = self._file.readline()
        if not raw:
            return None
        self._line_number += 1
        return raw.rstrip(b"\r\n")

    def _next_data_line(self) -> Optional[str]:
        """
        Next line that is neither blank nor a comment.

        Lines are decoded one at a time so a bad byte only spoils its own line.

        Raises:
            MalformedRecord: If the line cannot be decoded; it still counts
                as a data line
        """
        while True:
            raw = self._next_line()
            if raw is None:
                return None
            try:
                line = raw.decode(self._encoding)
            except UnicodeDecodeError as e:
                raise MalformedRecord(
                    f"cannot decode line as {self._encoding}: {e.reason}",
                    line=self._line_number,
                    raw=raw.decode(self._encoding, errors="replace"),
                ) from e
            if not line.strip():
                continue
            if self._comments and line.lstrip().startswith(self._comments):
                continue
            return line


class IterableReader:
    """
    In-memory reader over a sequence of items.

    Items that are exceptions are raised from read() instead of returned,
    which lets tests and inline jobs model malformed input.
    """

    def __init__(self, items: Iterable[Any]):
        self._items = list(items)
        self._position = 0
        self._opened = False

    @property
    def position(self) -> int:
        return self._position

    def open(self, position: int = 0) -> None:
        self._position = min(position, len(self._items))
        self._opened = True

    def read(self) -> Any:
        if not self._opened:
            raise RuntimeError("Reader is not open")
        if self._position >= len(self._items):
            return END_OF_INPUT
        item = self._items[self._position]
        self._position += 1
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self) -> None:
        self._opened = False
