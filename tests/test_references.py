from typing import List, Sequence

from nedisasm.disassembly import BranchRecord, BranchType, build_lines
from nedisasm.instruction import Instruction, Operand
from nedisasm.ne import (
    EntryPoint,
    NameEntry,
    NEFile,
    RelocationKind,
    RelocationRecord,
    Segment,
    decode_segment_flags,
)
from nedisasm.references import ReferenceResolver, call_target, jump_target


def _make_instruction(offset: int, raw: bytes, mnemonic: str, *operands: Operand) -> Instruction:
    return Instruction(offset=offset, raw=raw, mnemonic=mnemonic, operands=tuple(operands))


def _make_segment(
    ordinal: int,
    instructions: Sequence[Instruction],
    relocations: Sequence[RelocationRecord] = (),
) -> Segment:
    data = b"".join(instruction.raw for instruction in instructions)
    segment = Segment(ordinal, 0x200 * ordinal, data, decode_segment_flags(0x0100), raw_flags=0x0100)
    segment.relocations = list(relocations)
    segment.set_lines(build_lines(instructions))
    return segment


def _nops(start: int, count: int) -> List[Instruction]:
    return [_make_instruction(start + index, b"\x90", "nop") for index in range(count)]


def test_jump_target_decodes_short_and_near_forms() -> None:
    assert jump_target(_make_instruction(0x10, b"\x74\x02", "je")) == 0x14
    assert jump_target(_make_instruction(0x10, b"\xeb\xfe", "jmp")) == 0x10
    assert jump_target(_make_instruction(0x10, b"\xe9\x00\x01", "jmp")) == 0x113
    assert jump_target(_make_instruction(0x10, b"\xe9\xfd\xff", "jmp")) == 0x10
    assert jump_target(_make_instruction(0x20, b"\xe9\xf0\xff", "jmp")) == 0x13
    assert jump_target(_make_instruction(0x02, b"\xe9\xf0\xff", "jmp")) == 0xFFF5
    assert jump_target(_make_instruction(0x10, b"\xff\xe3", "jmp", Operand.reg("bx"))) is None


def test_call_target_wraps_to_sixteen_bits() -> None:
    assert call_target(_make_instruction(0x10, b"\xe8\x10\x00", "call")) == 0x23
    assert call_target(_make_instruction(0xFFF0, b"\xe8\x20\x00", "call")) == 0x0013
    assert call_target(_make_instruction(0x10, b"\xff\xd0", "call", Operand.reg("ax"))) is None


def test_jump_edges_are_recorded_on_both_ends() -> None:
    instructions = [_make_instruction(0, b"\x74\x02", "je"), *_nops(2, 3)]
    segment = _make_segment(1, instructions)
    resolver = ReferenceResolver(NEFile([segment]))

    resolver.resolve_jumps()

    source, target = segment.line_at(0), segment.line_at(4)
    assert source.outgoing == [BranchRecord(1, 4, BranchType.CONDITIONAL)]
    assert target.incoming == [BranchRecord(1, 0, BranchType.CONDITIONAL)]


def test_jump_into_the_middle_of_an_instruction_keeps_outgoing_only() -> None:
    instructions = [
        _make_instruction(0, b"\xeb\x01", "jmp"),
        _make_instruction(2, b"\xb8\x00\x00", "mov", Operand.reg("ax"), Operand.imm(0)),
    ]
    segment = _make_segment(1, instructions)

    ReferenceResolver(NEFile([segment])).resolve_jumps()

    assert segment.line_at(0).outgoing == [BranchRecord(1, 3, BranchType.UNCONDITIONAL)]
    assert all(not line.incoming for line in segment.lines)


def test_register_indirect_jump_produces_no_edges() -> None:
    segment = _make_segment(1, [_make_instruction(0, b"\xff\xe3", "jmp", Operand.reg("bx")), *_nops(2, 1)])

    ReferenceResolver(NEFile([segment])).resolve_jumps()

    assert all(not line.outgoing and not line.incoming for line in segment.lines)


def test_near_call_links_caller_and_callee() -> None:
    instructions = [_make_instruction(0, b"\xe8\x01\x00", "call"), *_nops(3, 2)]
    segment = _make_segment(1, instructions)

    ReferenceResolver(NEFile([segment])).resolve_calls()

    assert segment.line_at(0).outgoing == [BranchRecord(1, 4, BranchType.CALL)]
    assert segment.line_at(4).incoming == [BranchRecord(1, 0, BranchType.CALL)]


def test_import_ordinal_relocation_adds_placeholder() -> None:
    relocation = RelocationRecord(1, 3, RelocationKind.IMPORT_ORDINAL, module=1, ordinal=0x42)
    segment = _make_segment(
        1, [_make_instruction(0, b"\x9a\x00\x00\x00\x00", "lcall")], relocations=[relocation]
    )
    ne_file = NEFile([segment], module_names=["MAJORBBS"])

    ReferenceResolver(ne_file).apply_relocations()

    line = segment.line_at(0)
    assert line.outgoing_of(BranchType.CALL_IMPORT) == [
        BranchRecord(1, 0x42, BranchType.CALL_IMPORT, is_relocation=True, import_module=1)
    ]
    assert line.comments == ["call MAJORBBS.Ord(0042h)"]


def test_import_ordinal_on_non_call_becomes_seg_addr_import() -> None:
    relocation = RelocationRecord(1, 2, RelocationKind.IMPORT_ORDINAL, module=1, ordinal=0x10)
    segment = _make_segment(
        1,
        [_make_instruction(0, b"\xb8\x00\x00", "mov", Operand.reg("ax"), Operand.imm(0))],
        relocations=[relocation],
    )
    ne_file = NEFile([segment], module_names=["GALGSBL"])

    ReferenceResolver(ne_file).apply_relocations()

    line = segment.line_at(0)
    assert line.outgoing[0].branch_type is BranchType.SEG_ADDR_IMPORT
    assert line.comments == ["SEG ADDR of GALGSBL.Ord(0010h)"]


def test_internal_call_relocation_links_across_segments() -> None:
    relocation = RelocationRecord(1, 3, RelocationKind.INTERNAL_REF, target_segment=2, target_offset=1)
    caller = _make_segment(
        1, [_make_instruction(0, b"\x9a\x00\x00\x00\x00", "lcall")], relocations=[relocation]
    )
    callee = _make_segment(2, _nops(0, 3))

    ReferenceResolver(NEFile([caller, callee])).apply_relocations()

    assert caller.line_at(0).outgoing == [
        BranchRecord(2, 1, BranchType.CALL, is_relocation=True)
    ]
    assert callee.line_at(1).incoming == [
        BranchRecord(1, 0, BranchType.CALL, is_relocation=True)
    ]


def test_internal_relocation_on_mov_records_segment_address() -> None:
    relocation = RelocationRecord(1, 2, RelocationKind.INTERNAL_REF, target_segment=3)
    segment = _make_segment(
        1,
        [_make_instruction(0, b"\xb8\x00\x00", "mov", Operand.reg("ax"), Operand.imm(0))],
        relocations=[relocation],
    )

    ReferenceResolver(NEFile([segment])).apply_relocations()

    assert segment.line_at(0).outgoing == [
        BranchRecord(3, 0, BranchType.SEG_ADDR, is_relocation=True)
    ]


def test_relocation_without_matching_instruction_is_ignored() -> None:
    relocation = RelocationRecord(2, 3, RelocationKind.IMPORT_ORDINAL, module=1, ordinal=1)
    segment = _make_segment(1, [_make_instruction(0, b"\x9a\x00\x00\x00\x00", "lcall")], [relocation])

    ReferenceResolver(NEFile([segment], module_names=["MAJORBBS"])).apply_relocations()

    assert not segment.line_at(0).outgoing
    assert not segment.line_at(0).comments


def test_entry_points_mark_exported_functions() -> None:
    segment = _make_segment(1, _nops(0, 4))
    ne_file = NEFile(
        [segment],
        entries=[EntryPoint(1, 1, 2), EntryPoint(2, 1, 0x100)],
        resident_names=[NameEntry("MODULE", 0), NameEntry("_RESIDENT", 1)],
        non_resident_names=[NameEntry("Module description", 0), NameEntry("_INIT", 1)],
    )

    ReferenceResolver(ne_file).identify_entry_points()

    assert segment.line_at(2).exported_function.name == "_INIT"
    assert sum(line.exported_function is not None for line in segment.lines) == 1
