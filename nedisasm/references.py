"""Reference resolution: relocation, jump, call and entry point edges.

Every resolved reference is recorded twice when possible: as an outgoing
:class:`~nedisasm.disassembly.BranchRecord` on the instruction that refers to
the target and as an incoming record on the instruction at the target.  When
the target offset does not coincide with the start of a decoded instruction
only the outgoing half is kept.
"""

from __future__ import annotations

import logging
from typing import FrozenSet, List, Optional

from .disassembly import BranchRecord, BranchType, DisassemblyLine, ExportedFunctionRecord
from .instruction import NEAR_CALL_OPCODE, Instruction
from .ne import NEFile, RelocationKind, RelocationRecord, Segment


logger = logging.getLogger(__name__)

JUMP_SHORT_OPCODES: FrozenSet[int] = frozenset(
    [0xEB, *range(0x70, 0x80), 0xE3]
)
JUMP_NEAR_FIRST_BYTE: FrozenSet[int] = frozenset([0xE9, 0x0F])
JUMP_NEAR_SECOND_BYTE: FrozenSet[int] = frozenset(range(0x80, 0x90))

# Longer encodings are prefixed forms and never yield direct branch edges.
MAX_DIRECT_BRANCH_LENGTH = 3


def _signed8(value: int) -> int:
    return value - 0x100 if value & 0x80 else value


def _signed16(value: int) -> int:
    return value - 0x10000 if value & 0x8000 else value


def jump_target(instruction: Instruction) -> Optional[int]:
    """Decode the intra-segment target of a relative jump.

    Returns ``None`` for encodings that are not covered by the short/near
    opcode tables (register indirect jumps, far jumps, prefixed forms).
    """

    raw = instruction.raw
    if not raw:
        return None
    opcode = raw[0]
    if opcode in JUMP_SHORT_OPCODES:
        if len(raw) < 2:
            return None
        displacement = _signed8(raw[1])
    elif opcode in JUMP_NEAR_FIRST_BYTE and (
        opcode == 0xE9 or (len(raw) > 1 and raw[1] in JUMP_NEAR_SECOND_BYTE)
    ):
        start = 1 if opcode == 0xE9 else 2
        if len(raw) < start + 2:
            return None
        displacement = _signed16(int.from_bytes(raw[start : start + 2], "little"))
    else:
        return None
    return (instruction.offset + instruction.length + displacement) & 0xFFFF


def call_target(instruction: Instruction) -> Optional[int]:
    """Target of a direct ``call rel16`` (opcode ``E8``)."""

    raw = instruction.raw
    if len(raw) < 3 or raw[0] != NEAR_CALL_OPCODE:
        return None
    displacement = int.from_bytes(raw[1:3], "little")
    return (displacement + instruction.offset + 3) & 0xFFFF


def import_placeholder(record: BranchRecord, module_name: Optional[str]) -> str:
    """Comment describing an unresolved import edge."""

    module = module_name or f"#{record.import_module or record.segment}"
    if record.import_name is not None:
        return f"call {module}.{record.import_name}"
    verb = "call" if record.branch_type is BranchType.CALL_IMPORT else "SEG ADDR of"
    return f"{verb} {module}.Ord({record.offset:04X}h)"


class ReferenceResolver:
    """Annotate every code segment of ``ne_file`` with reference edges."""

    def __init__(self, ne_file: NEFile) -> None:
        self.ne_file = ne_file

    def _code_segments(self) -> List[Segment]:
        return [segment for segment in self.ne_file.code_segments() if segment.lines]

    # ------------------------------------------------------------------
    # Relocations
    # ------------------------------------------------------------------
    def apply_relocations(self) -> None:
        for segment in self._code_segments():
            applied = 0
            for record in segment.relocations:
                if self._apply_relocation(segment, record):
                    applied += 1
            logger.debug(
                "segment %d: applied %d of %d relocation records",
                segment.ordinal,
                applied,
                len(segment.relocations),
            )

    def _apply_relocation(self, segment: Segment, record: RelocationRecord) -> bool:
        line = segment.line_at(record.offset - 1)
        if line is None:
            return False
        instruction = line.instruction

        if record.kind is RelocationKind.IMPORT_ORDINAL:
            branch_type = BranchType.CALL_IMPORT if instruction.is_call else BranchType.SEG_ADDR_IMPORT
            edge = BranchRecord(
                record.module,
                record.ordinal,
                branch_type,
                is_relocation=True,
                import_module=record.module,
            )
            line.outgoing.append(edge)
            line.add_comment(import_placeholder(edge, self.ne_file.module_reference(record.module)))
            return True

        if record.kind is RelocationKind.INTERNAL_REF:
            if instruction.is_call:
                target_segment = self.ne_file.segment(record.target_segment)
                target_line = (
                    target_segment.line_at(record.target_offset) if target_segment else None
                )
                if target_line is not None:
                    target_line.incoming.append(
                        BranchRecord(segment.ordinal, line.offset, BranchType.CALL, is_relocation=True)
                    )
                line.outgoing.append(
                    BranchRecord(
                        record.target_segment,
                        record.target_offset,
                        BranchType.CALL,
                        is_relocation=True,
                    )
                )
            else:
                line.outgoing.append(
                    BranchRecord(record.target_segment, 0, BranchType.SEG_ADDR, is_relocation=True)
                )
            return True

        if record.kind is RelocationKind.IMPORT_NAME:
            edge = BranchRecord(
                record.name_offset,
                0,
                BranchType.CALL_IMPORT,
                is_relocation=True,
                import_module=record.module,
                import_name=self.ne_file.imported_name(record.name_offset)
                or f"Name({record.name_offset:04X}h)",
            )
            line.outgoing.append(edge)
            line.add_comment(import_placeholder(edge, self.ne_file.module_reference(record.module)))
            return True

        return False

    # ------------------------------------------------------------------
    # Jumps and calls
    # ------------------------------------------------------------------
    def resolve_jumps(self) -> None:
        for segment in self._code_segments():
            for line in segment.lines:
                instruction = line.instruction
                if not instruction.is_jump or instruction.length > MAX_DIRECT_BRANCH_LENGTH:
                    continue
                target = jump_target(instruction)
                if target is None:
                    continue
                branch_type = (
                    BranchType.UNCONDITIONAL
                    if instruction.is_unconditional_jump
                    else BranchType.CONDITIONAL
                )
                self._link(segment, line, target, branch_type)

    def resolve_calls(self) -> None:
        for segment in self._code_segments():
            for line in segment.lines:
                if line.instruction.length > MAX_DIRECT_BRANCH_LENGTH:
                    continue
                target = call_target(line.instruction)
                if target is None:
                    continue
                self._link(segment, line, target, BranchType.CALL)

    @staticmethod
    def _link(segment: Segment, line: DisassemblyLine, target: int, branch_type: BranchType) -> None:
        target_line = segment.line_at(target)
        if target_line is not None:
            target_line.incoming.append(BranchRecord(segment.ordinal, line.offset, branch_type))
        line.outgoing.append(BranchRecord(segment.ordinal, target, branch_type))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def identify_entry_points(self) -> None:
        for entry in self.ne_file.entries:
            segment = self.ne_file.segment(entry.segment)
            if segment is None or not segment.is_code:
                continue
            line = segment.line_at(entry.offset)
            if line is None:
                continue
            line.exported_function = ExportedFunctionRecord(self.ne_file.entry_name(entry.ordinal))
