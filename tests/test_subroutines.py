from nedisasm.disassembly import BranchRecord, BranchType, ExportedFunctionRecord, build_lines
from nedisasm.instruction import Instruction, Operand
from nedisasm.ne import NEFile, Segment, decode_segment_flags
from nedisasm.references import ReferenceResolver
from nedisasm.subroutines import SubroutineRecognizer


def _make_segment(*instructions: Instruction) -> Segment:
    segment = Segment(1, 0x200, b"", decode_segment_flags(0x0000))
    segment.set_lines(build_lines(instructions))
    return segment


def _store_local(offset: int, displacement: int, value: int) -> Instruction:
    return Instruction(
        offset=offset,
        raw=b"\xc7\x46\x00\x00\x00",
        mnemonic="mov",
        operands=(Operand.mem(base="bp", displacement=displacement), Operand.imm(value)),
    )


def _simple(offset: int, mnemonic: str, raw: bytes = b"\x90") -> Instruction:
    return Instruction(offset=offset, raw=raw, mnemonic=mnemonic)


def test_subroutine_boundaries_and_long_locals() -> None:
    segment = _make_segment(
        _simple(0, "enter", b"\xc8\x02\x00\x00"),
        _store_local(4, -4, 0x1),
        _store_local(9, -6, 0xFF),
        _store_local(14, -8, 7),
        _simple(19, "ret", b"\xc3"),
        _simple(20, "push", b"\x55"),
        _simple(21, "retf", b"\xcb"),
    )

    count = SubroutineRecognizer(NEFile([segment])).identify_subroutines(segment)

    lines = segment.lines
    assert count == 2
    assert lines[0].comments == ["BEGIN SUBROUTINE 1"]
    assert lines[1].comments == []
    assert lines[2].comments == ["VAR0 = 65791 (Long)"]
    assert lines[3].comments == ["VAR1 = 7"]
    assert lines[4].comments == ["END SUBROUTINE 1"]
    assert lines[5].comments == ["BEGIN SUBROUTINE 2"]
    assert lines[6].comments == ["END SUBROUTINE 2"]
    assert [line.subroutine_id for line in lines] == [1, 1, 1, 1, 1, 2, 2]


def test_locals_restart_numbering_in_each_subroutine() -> None:
    segment = _make_segment(
        _simple(0, "enter", b"\xc8\x02\x00\x00"),
        _store_local(4, -2, 3),
        _simple(9, "ret", b"\xc3"),
        _simple(10, "enter", b"\xc8\x02\x00\x00"),
        _store_local(14, -4, 0),
        _simple(19, "nop"),
        _store_local(20, -4, 1),
        _simple(25, "ret", b"\xc3"),
    )

    SubroutineRecognizer(NEFile([segment])).identify_subroutines(segment)

    assert segment.lines[1].comments == ["VAR0 = 3"]
    assert segment.lines[4].comments == ["VAR0 = 0"]
    assert segment.lines[6].comments == ["VAR0 = 1"]


def test_call_targets_and_exports_start_subroutines() -> None:
    segment = _make_segment(
        _simple(0, "nop"),
        _simple(1, "push", b"\x55"),
        _simple(2, "nop"),
        _simple(3, "push", b"\x55"),
        _simple(4, "retf", b"\xcb"),
    )
    segment.lines[1].incoming.append(BranchRecord(2, 0x10, BranchType.CALL, is_relocation=True))
    segment.lines[3].exported_function = ExportedFunctionRecord("_INIT")

    SubroutineRecognizer(NEFile([segment])).identify_subroutines(segment)

    ids = [line.subroutine_id for line in segment.lines]
    assert ids == [0, 1, 1, 2, 2]
    assert segment.lines[1].comments == ["BEGIN SUBROUTINE 1"]
    assert segment.lines[3].comments == ["BEGIN SUBROUTINE 2"]
    assert segment.lines[4].comments == ["END SUBROUTINE 2"]


def _make_loop(step: str) -> Segment:
    frame_slot = Operand.mem(base="bp", displacement=-2)
    segment = _make_segment(
        _simple(0, "jmp", b"\xeb\x03"),
        Instruction(offset=2, raw=b"\xff\x46\xfe", mnemonic=step, operands=(frame_slot,)),
        Instruction(
            offset=5, raw=b"\x83\x7e\xfe\x05", mnemonic="cmp", operands=(frame_slot, Operand.imm(5))
        ),
        _simple(9, "jl", b"\x7c\xf7"),
        _simple(11, "ret", b"\xc3"),
    )
    ReferenceResolver(NEFile([segment])).resolve_jumps()
    return segment


def test_for_loop_idiom_is_labelled() -> None:
    segment = _make_loop("inc")

    found = SubroutineRecognizer(NEFile([segment])).identify_loops(segment)

    lines = segment.lines
    assert found == 1
    assert lines[0].comments == ["[FOR] Beginning of FOR logic"]
    assert lines[1].comments == ["[FOR] Increment Value"]
    assert lines[2].comments == ["[FOR] Evaluate Break Condition"]
    assert lines[3].comments == ["[FOR] Branch based on evaluation"]
    assert lines[3].incoming_of(BranchType.CONDITIONAL) == []
    assert lines[1].incoming_of(BranchType.CONDITIONAL) == [
        BranchRecord(1, 9, BranchType.CONDITIONAL)
    ]


def test_decrementing_loop() -> None:
    segment = _make_loop("dec")

    SubroutineRecognizer(NEFile([segment])).identify_loops(segment)

    assert segment.lines[1].comments == ["[FOR] Decrement Value"]


def test_forward_jump_to_compare_is_not_a_loop() -> None:
    segment = _make_segment(
        Instruction(offset=0, raw=b"\x83\x7e\xfe\x05", mnemonic="cmp"),
        _simple(4, "nop"),
    )
    segment.lines[0].incoming.append(BranchRecord(1, 4, BranchType.UNCONDITIONAL))

    assert SubroutineRecognizer(NEFile([segment])).identify_loops(segment) == 0
    assert not segment.lines[0].comments


def test_analyse_counts_subroutines_across_segments() -> None:
    first = _make_segment(_simple(0, "enter", b"\xc8\x02\x00\x00"), _simple(4, "ret", b"\xc3"))
    second = Segment(2, 0x400, b"", decode_segment_flags(0x0000))
    second.set_lines(build_lines([_simple(0, "enter", b"\xc8\x02\x00\x00"), _simple(4, "retf", b"\xcb")]))

    assert SubroutineRecognizer(NEFile([first, second])).analyse() == 2
