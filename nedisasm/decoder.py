"""Capstone based decoder producing :class:`~nedisasm.instruction.Instruction` streams."""

from __future__ import annotations

from typing import Iterator, List, Optional

import capstone
from capstone import x86_const

from .instruction import Instruction, Operand, OperandKind


_WIDE_REGISTERS = {"eax", "ebx", "ecx", "edx", "ebp", "esp", "esi", "edi", "eip"}


class InstructionDecoder:
    """Decode raw segment bytes in 16-bit real mode.

    Skipdata mode is enabled so that bytes capstone cannot interpret are
    emitted as ``.byte`` pseudo instructions instead of terminating the
    stream.  Those pseudo instructions carry no operands.
    """

    def __init__(self) -> None:
        self._cs = capstone.Cs(capstone.CS_ARCH_X86, capstone.CS_MODE_16)
        self._cs.detail = True
        self._cs.skipdata = True

    def iter_decode(self, data: bytes, *, base_offset: int = 0) -> Iterator[Instruction]:
        for insn in self._cs.disasm(bytes(data), base_offset):
            yield self._convert(insn)

    def decode(self, data: bytes, *, base_offset: int = 0) -> List[Instruction]:
        return list(self.iter_decode(data, base_offset=base_offset))

    def _convert(self, insn: "capstone.CsInsn") -> Instruction:
        operands = ()
        # id 0 marks skipdata pseudo instructions which have no detail
        if insn.id != 0:
            operands = tuple(self._convert_operand(op) for op in insn.operands)
        return Instruction(
            offset=insn.address,
            raw=bytes(insn.bytes),
            mnemonic=insn.mnemonic.lower(),
            operands=operands,
            op_str=insn.op_str,
        )

    def _convert_operand(self, op: "capstone.x86.X86Op") -> Operand:
        if op.type == x86_const.X86_OP_REG:
            return Operand(
                OperandKind.REGISTER,
                size=op.size,
                register=self._reg_name(op.reg),
            )
        if op.type == x86_const.X86_OP_IMM:
            return Operand(OperandKind.IMMEDIATE, size=op.size, value=op.imm)
        mem = op.mem
        return Operand(
            OperandKind.MEMORY,
            size=op.size,
            base=self._reg_name(mem.base),
            index=self._reg_name(mem.index),
            segment=self._reg_name(mem.segment),
            displacement=mem.disp,
        )

    def _reg_name(self, reg_id: int) -> Optional[str]:
        if reg_id == x86_const.X86_REG_INVALID:
            return None
        name = self._cs.reg_name(reg_id)
        if name is None:
            return None
        name = name.lower()
        # capstone occasionally reports 32-bit aliases in 16-bit mode
        if name in _WIDE_REGISTERS:
            name = name[1:]
        return name
