"""Structured representation of decoded 16-bit x86 instructions.

The analysis passes never look at formatted instruction text.  Every pattern
(``[bp-N]`` locals, ``es:[bx+N]`` globals, ``mov dx, imm16`` string loads) is
expressed as a question about the decoded operands instead, which keeps the
heuristics independent from the decoder's formatting conventions.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple


JUMP_MNEMONICS: FrozenSet[str] = frozenset(
    {
        "jmp",
        "ja",
        "jae",
        "jb",
        "jbe",
        "jcxz",
        "jecxz",
        "jg",
        "jge",
        "jl",
        "jle",
        "jno",
        "jnp",
        "jns",
        "jnz",
        "jne",
        "jo",
        "jp",
        "js",
        "jz",
        "je",
    }
)

CALL_MNEMONICS: FrozenSet[str] = frozenset({"call", "lcall"})
RETURN_MNEMONICS: FrozenSet[str] = frozenset({"ret", "retf", "iret"})
INCREMENT_MNEMONICS: FrozenSet[str] = frozenset({"inc", "add"})
DECREMENT_MNEMONICS: FrozenSet[str] = frozenset({"dec", "sub"})

FRAME_SETUP_MNEMONIC = "enter"
NEAR_CALL_OPCODE = 0xE8


class OperandKind(enum.Enum):
    REGISTER = "register"
    IMMEDIATE = "immediate"
    MEMORY = "memory"


@dataclass(frozen=True)
class Operand:
    """A single decoded operand.

    Only the fields relevant to ``kind`` are populated: ``register`` for
    register operands, ``value`` for immediates and the ``base``/``index``/
    ``segment``/``displacement`` quartet for memory references.  ``size`` is
    expressed in bytes.
    """

    kind: OperandKind
    size: int = 2
    register: Optional[str] = None
    value: int = 0
    base: Optional[str] = None
    index: Optional[str] = None
    segment: Optional[str] = None
    displacement: int = 0

    @classmethod
    def reg(cls, name: str, size: int = 2) -> "Operand":
        return cls(OperandKind.REGISTER, size=size, register=name.lower())

    @classmethod
    def imm(cls, value: int, size: int = 2) -> "Operand":
        return cls(OperandKind.IMMEDIATE, size=size, value=value)

    @classmethod
    def mem(
        cls,
        *,
        base: Optional[str] = None,
        index: Optional[str] = None,
        segment: Optional[str] = None,
        displacement: int = 0,
        size: int = 2,
    ) -> "Operand":
        return cls(
            OperandKind.MEMORY,
            size=size,
            base=base.lower() if base else None,
            index=index.lower() if index else None,
            segment=segment.lower() if segment else None,
            displacement=displacement,
        )

    @property
    def is_register(self) -> bool:
        return self.kind is OperandKind.REGISTER

    @property
    def is_immediate(self) -> bool:
        return self.kind is OperandKind.IMMEDIATE

    @property
    def is_memory(self) -> bool:
        return self.kind is OperandKind.MEMORY

    def is_reg(self, name: str) -> bool:
        return self.is_register and self.register == name

    @property
    def word(self) -> int:
        """Immediate value truncated to an unsigned 16-bit word."""

        return self.value & 0xFFFF

    @property
    def signed_value(self) -> int:
        """Immediate value sign-extended according to the operand size."""

        bits = max(1, self.size) * 8
        value = self.value & ((1 << bits) - 1)
        if value & (1 << (bits - 1)):
            value -= 1 << bits
        return value

    @property
    def is_indexed(self) -> bool:
        """True for memory operands using register math or a segment override."""

        return self.is_memory and bool(self.base or self.index or self.segment)

    @property
    def is_frame_local(self) -> bool:
        """``[bp-N]`` with no index register and no segment override."""

        return (
            self.is_memory
            and self.base == "bp"
            and self.index is None
            and self.segment is None
            and self.displacement < 0
        )

    @property
    def is_global_slot(self) -> bool:
        """``es:[bx+N]`` with a positive displacement."""

        return (
            self.is_memory
            and self.segment == "es"
            and self.base == "bx"
            and self.index is None
            and self.displacement > 0
        )

    @property
    def is_absolute(self) -> bool:
        """Direct memory reference without base or index registers."""

        return self.is_memory and self.base is None and self.index is None


@dataclass(frozen=True)
class Instruction:
    """One decoded instruction: offset, raw bytes, mnemonic and operands."""

    offset: int
    raw: bytes
    mnemonic: str
    operands: Tuple[Operand, ...] = ()
    op_str: str = ""

    @property
    def length(self) -> int:
        return len(self.raw)

    @property
    def end(self) -> int:
        return self.offset + len(self.raw)

    def operand(self, index: int) -> Optional[Operand]:
        if 0 <= index < len(self.operands):
            return self.operands[index]
        return None

    @property
    def is_jump(self) -> bool:
        return self.mnemonic in JUMP_MNEMONICS

    @property
    def is_unconditional_jump(self) -> bool:
        return self.mnemonic == "jmp"

    @property
    def is_call(self) -> bool:
        return self.mnemonic in CALL_MNEMONICS

    @property
    def is_return(self) -> bool:
        return self.mnemonic in RETURN_MNEMONICS

    @property
    def is_frame_setup(self) -> bool:
        return self.mnemonic == FRAME_SETUP_MNEMONIC

    @property
    def is_increment(self) -> bool:
        return self.mnemonic in INCREMENT_MNEMONICS

    @property
    def is_decrement(self) -> bool:
        return self.mnemonic in DECREMENT_MNEMONICS

    @property
    def is_unindexed(self) -> bool:
        return not any(operand.is_indexed for operand in self.operands)

    def stores_immediate_word(self) -> bool:
        """``mov word <mem>, imm`` regardless of the addressing form."""

        if self.mnemonic != "mov" or len(self.operands) != 2:
            return False
        target, source = self.operands
        return target.is_memory and target.size == 2 and source.is_immediate

    def stores_immediate_local(self) -> bool:
        return self.stores_immediate_word() and self.operands[0].is_frame_local

    def stores_immediate_global(self) -> bool:
        return self.stores_immediate_word() and self.operands[0].is_global_slot

    def global_slot(self) -> Optional[Operand]:
        for operand in self.operands:
            if operand.is_global_slot:
                return operand
        return None

    def references_address(self, address: int) -> bool:
        """True when any operand is a direct memory reference to ``address``."""

        return any(
            operand.is_absolute and (operand.displacement & 0xFFFF) == address
            for operand in self.operands
        )

    def text(self) -> str:
        if self.op_str:
            return f"{self.mnemonic} {self.op_str}"
        return self.mnemonic

    def hex_bytes(self) -> str:
        return self.raw.hex().upper()
