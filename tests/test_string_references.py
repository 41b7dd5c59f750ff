from typing import Sequence

from nedisasm.disassembly import BranchRecord, BranchType, build_lines
from nedisasm.instruction import Instruction, Operand
from nedisasm.ne import NEFile, Segment, decode_segment_flags
from nedisasm.string_references import StringReferenceResolver
from nedisasm.strings import extract_strings


def _make_code_segment(*instructions: Instruction, ordinal: int = 1) -> Segment:
    segment = Segment(ordinal, 0x200 * ordinal, b"", decode_segment_flags(0x0000))
    segment.set_lines(build_lines(instructions))
    return segment


def _make_data_segment(ordinal: int, payload: bytes) -> Segment:
    segment = Segment(ordinal, 0x400 * ordinal, payload, decode_segment_flags(0x0001), raw_flags=0x0001)
    segment.strings = extract_strings(segment)
    return segment


def _mov(offset: int, destination: Operand, source: Operand) -> Instruction:
    return Instruction(offset=offset, raw=b"\xb8\x00\x00", mnemonic="mov", operands=(destination, source))


def _push(offset: int, operand: Operand) -> Instruction:
    return Instruction(offset=offset, raw=b"\x68\x00\x00", mnemonic="push", operands=(operand,))


def _resolve(code: Segment, data: Sequence[Segment]) -> None:
    StringReferenceResolver(NEFile([code, *data])).resolve()


def test_mov_dx_after_segment_load_references_current_data_segment() -> None:
    code = _make_code_segment(
        _mov(0, Operand.reg("ax"), Operand.imm(0)),
        _mov(3, Operand.reg("dx"), Operand.imm(0x10)),
    )
    code.lines[0].outgoing.append(BranchRecord(2, 0, BranchType.SEG_ADDR, is_relocation=True))
    data = _make_data_segment(2, b"\x00" * 0x10 + b"Hello\x00")

    _resolve(code, [data])

    line = code.lines[1]
    assert [record.text for record in line.string_references] == ["Hello"]
    assert line.comments == ['Possible String reference from SEG 2 -> "Hello"']


def test_mov_dx_without_known_data_segment_is_ignored() -> None:
    code = _make_code_segment(_mov(0, Operand.reg("dx"), Operand.imm(0x10)))
    data = _make_data_segment(2, b"\x00" * 0x10 + b"Hello\x00")

    _resolve(code, [data])

    assert code.lines[0].string_references is None
    assert not code.lines[0].comments


def test_dx_ds_then_ax_immediate() -> None:
    code = _make_code_segment(
        _mov(0, Operand.reg("ax"), Operand.imm(0)),
        _mov(3, Operand.reg("dx"), Operand.reg("ds")),
        _mov(5, Operand.reg("ax"), Operand.imm(0x4)),
    )
    code.lines[0].outgoing.append(BranchRecord(2, 0, BranchType.SEG_ADDR, is_relocation=True))
    data = _make_data_segment(2, b"abc\x00Menu\x00")

    _resolve(code, [data])

    assert code.lines[2].comments == ['Possible String reference from SEG 2 -> "Menu"']


def test_push_ds_then_push_immediate_searches_every_data_segment() -> None:
    code = _make_code_segment(
        _push(0, Operand.reg("ds")),
        _push(1, Operand.imm(0x2)),
    )
    first = _make_data_segment(2, b"\x00\x00One\x00")
    second = _make_data_segment(3, b"\x00\x00Two\x00")

    _resolve(code, [first, second])

    assert code.lines[1].comments == [
        'Possible String reference from SEG 2 -> "One"',
        'Possible String reference from SEG 3 -> "Two"',
    ]


def test_unrelated_instruction_clears_pending_push() -> None:
    code = _make_code_segment(
        _push(0, Operand.reg("ds")),
        Instruction(offset=1, raw=b"\x90", mnemonic="nop"),
        _push(2, Operand.imm(0x2)),
    )
    data = _make_data_segment(2, b"\x00\x00One\x00")

    _resolve(code, [data])

    assert not code.lines[2].comments


def test_unprintable_candidates_are_rejected() -> None:
    code = _make_code_segment(
        _push(0, Operand.reg("ds")),
        _push(1, Operand.imm(0x2)),
    )
    data = _make_data_segment(2, b"\x00\x00\x01\x02\x00")

    _resolve(code, [data])

    assert code.lines[1].string_references == []
    assert not code.lines[1].comments


def test_data_segment_selection_carries_into_later_code_segments() -> None:
    first = _make_code_segment(_mov(0, Operand.reg("ax"), Operand.imm(0)), ordinal=1)
    first.lines[0].outgoing.append(BranchRecord(3, 0, BranchType.SEG_ADDR, is_relocation=True))
    second = _make_code_segment(_mov(0, Operand.reg("dx"), Operand.imm(0x10)), ordinal=2)
    data = _make_data_segment(3, b"\x00" * 0x10 + b"Hello\x00")

    StringReferenceResolver(NEFile([first, second, data])).resolve()

    assert second.lines[0].comments == ['Possible String reference from SEG 3 -> "Hello"']
