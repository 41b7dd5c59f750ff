"""Extraction of NUL-terminated strings from DATA segments.

Most Windows 3.x era compilers place string literals in the automatic data
segment as plain ASCII terminated by a NUL byte.  The extractor mirrors that
layout and records each run together with its intra-segment offset so the
string reference heuristic can match ``mov dx, imm16`` style loads against it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .ne import Segment

__all__ = [
    "StringRecord",
    "extract_strings",
    "is_printable_text",
]


# Keyboard glyphs plus CR/LF.  Anything left after stripping these is treated
# as binary noise.
_ALLOWED_CHARACTERS = re.compile(r"[ -~\r\n]")


@dataclass(frozen=True)
class StringRecord:
    """Single string extracted from a DATA segment."""

    segment: int
    offset: int
    length: int
    text: str

    @property
    def is_printable(self) -> bool:
        """True when the text holds at least one visible ASCII character."""

        return any(33 <= ord(char) <= 125 for char in self.text)

    def quoted(self) -> str:
        return f'"{self.text}"'

    def to_dict(self) -> Dict[str, object]:
        return {
            "segment": self.segment,
            "offset": self.offset,
            "length": self.length,
            "text": self.text,
            "printable": self.is_printable,
        }


def is_printable_text(text: str) -> bool:
    """Return ``True`` when ``text`` only contains allow-listed characters."""

    return not _ALLOWED_CHARACTERS.sub("", text)


def extract_strings(segment: "Segment") -> List[StringRecord]:
    """Scan ``segment.data`` and return every NUL-terminated run.

    Runs that reach the end of the segment without a terminator are dropped.
    """

    records: List[StringRecord] = []
    current = bytearray()
    for index, byte in enumerate(segment.data):
        if byte == 0:
            if current:
                records.append(
                    StringRecord(
                        segment=segment.ordinal,
                        offset=index - len(current),
                        length=len(current),
                        text=current.decode("latin-1"),
                    )
                )
                current.clear()
            continue
        current.append(byte)
    return records
