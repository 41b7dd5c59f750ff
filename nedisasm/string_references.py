"""Best-effort recovery of instructions that reference string data.

Compilers of the era load far pointers to string literals in a handful of
recognisable shapes.  The scan below looks for three of them:

``mov dx, imm16``
    With a data segment selected by an earlier ``mov reg, SEG`` relocation
    the immediate is taken as an offset into that segment.

``mov dx, ds`` / ``mov ax, imm16``
    Segment in DX, offset in AX.

``push ds`` / ``push imm16``
    Far pointer pushed as an argument.  The segment is unknown so every DATA
    segment is searched for a string starting at the offset.

Candidate strings are only kept when they consist of keyboard characters.
The selected data segment and the pending DS flag persist from one code
segment to the next, so a single ``mov ax, SEG dgroup`` serves the whole file.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Tuple

from .disassembly import BranchType, DisassemblyLine
from .ne import NEFile, Segment
from .strings import StringRecord, is_printable_text


logger = logging.getLogger(__name__)


def is_candidate(record: StringRecord) -> bool:
    return record.is_printable and is_printable_text(record.text)


def string_reference_comment(record: StringRecord) -> str:
    return f"Possible String reference from SEG {record.segment} -> {record.quoted()}"


class StringReferenceResolver:
    """Attach :class:`StringRecord` candidates to code lines."""

    def __init__(self, ne_file: NEFile) -> None:
        self.ne_file = ne_file
        self._index: Dict[Tuple[int, int], StringRecord] = {}
        # scan state carries across code segments in file order
        self._pending = False
        self._data_segment = 0
        self._string_segments: List[Segment] = []
        for segment in ne_file.segments:
            if not segment.strings:
                continue
            self._string_segments.append(segment)
            for record in segment.strings:
                self._index.setdefault((segment.ordinal, record.offset), record)

    def resolve(self) -> int:
        """Scan every code segment and return the number of lines annotated."""

        annotated = 0
        for segment in self.ne_file.code_segments():
            if segment.lines:
                annotated += self._scan(segment)
        logger.debug("string references attached to %d lines", annotated)
        return annotated

    def _scan(self, segment: Segment) -> int:
        annotated = 0
        pending = self._pending
        data_segment = self._data_segment

        for line in segment.lines:
            instruction = line.instruction
            operands = instruction.operands

            if instruction.mnemonic == "mov" and instruction.is_unindexed:
                for edge in line.outgoing_of(BranchType.SEG_ADDR):
                    if edge.is_relocation:
                        data_segment = edge.segment
                        break

                if data_segment > 0 and len(operands) == 2:
                    destination, source = operands
                    if destination.is_reg("dx") and source.is_immediate and source.word > 0:
                        annotated += self._attach(line, self._lookup(data_segment, source.word))
                        pending = False
                        continue
                    if pending and destination.is_reg("ax") and source.is_immediate and source.word > 0:
                        annotated += self._attach(line, self._lookup(data_segment, source.word))
                        pending = False
                        continue
                    if destination.is_reg("dx") and source.is_reg("ds"):
                        pending = True
                        continue

            if instruction.mnemonic == "push" and operands:
                operand = operands[0]
                if pending and operand.is_immediate and operand.word > 0:
                    annotated += self._attach(line, self._lookup_any(operand.word))
                    pending = False
                    continue
                if operand.is_reg("ds"):
                    pending = True
                    continue

            pending = False

        self._pending = pending
        self._data_segment = data_segment
        return annotated

    def _lookup(self, segment_ordinal: int, offset: int) -> List[StringRecord]:
        record = self._index.get((segment_ordinal, offset))
        return [record] if record is not None else []

    def _lookup_any(self, offset: int) -> List[StringRecord]:
        matches: List[StringRecord] = []
        for segment in self._string_segments:
            record = self._index.get((segment.ordinal, offset))
            if record is not None:
                matches.append(record)
        return matches

    @staticmethod
    def _attach(line: DisassemblyLine, candidates: List[StringRecord]) -> int:
        matches = [record for record in candidates if is_candidate(record)]
        line.string_references = matches
        for record in matches:
            line.add_comment(string_reference_comment(record))
        return 1 if matches else 0
