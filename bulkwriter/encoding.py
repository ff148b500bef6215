"""CSV encoding of records into batch bodies."""

import csv
import io
from typing import Any, Iterable, List, Mapping, Sequence


class CsvRecordEncoder:
    """
    Encodes mappings as CSV lines over a fixed column list.

    Missing values become empty cells; keys outside ``fields`` are ignored.
    """

    def __init__(self, fields: Sequence[str]):
        if not fields:
            raise ValueError("CsvRecordEncoder needs at least one field")
        self.fields: List[str] = list(fields)

    def _line(self, values: Iterable[Any]) -> str:
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(["" if v is None else v for v in values])
        return buf.getvalue()

    def header(self) -> str:
        return self._line(self.fields)

    def encode(self, record: Mapping[str, Any]) -> str:
        return self._line(record.get(f) for f in self.fields)


def encode_batch(header: str, lines: Sequence[str]) -> str:
    """Join a header line and encoded record lines into one batch body."""
    return header + "".join(lines)


def record_size(line: str) -> int:
    return len(line.encode("utf-8"))
