"""Annotated disassembly lines and the reference edges attached to them."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .instruction import Instruction
from .strings import StringRecord


class BranchType(enum.Enum):
    CALL = "call"
    CALL_IMPORT = "call_import"
    CONDITIONAL = "conditional"
    UNCONDITIONAL = "unconditional"
    SEG_ADDR = "seg_addr"
    SEG_ADDR_IMPORT = "seg_addr_import"


@dataclass(frozen=True)
class BranchRecord:
    """One directed reference between two locations.

    On an outgoing record ``segment``/``offset`` name the target; on an
    incoming record they name the source.  Import edges reuse the pair for the
    module index and export ordinal.  Import-by-name relocations additionally
    remember the module index and the resolved procedure name since the
    ``segment`` field already carries the imported-names table offset.
    """

    segment: int
    offset: int
    branch_type: BranchType
    is_relocation: bool = False
    import_module: int = 0
    import_name: Optional[str] = None


@dataclass(frozen=True)
class ExportedFunctionRecord:
    name: Optional[str]


@dataclass
class DisassemblyLine:
    """A decoded instruction plus everything the analysis passes attach to it.

    ``ordinal`` and ``instruction`` never change after decoding.  Comments and
    edges only ever grow; the single exception is the import placeholder that
    the knowledge base analyser swaps for the resolved name.
    """

    ordinal: int
    instruction: Instruction
    comments: List[str] = field(default_factory=list)
    outgoing: List[BranchRecord] = field(default_factory=list)
    incoming: List[BranchRecord] = field(default_factory=list)
    exported_function: Optional[ExportedFunctionRecord] = None
    string_references: Optional[List[StringRecord]] = None
    subroutine_id: int = 0

    @property
    def offset(self) -> int:
        return self.instruction.offset

    @property
    def mnemonic(self) -> str:
        return self.instruction.mnemonic

    def add_comment(self, comment: str) -> None:
        self.comments.append(comment)

    def insert_comment(self, comment: str) -> None:
        """Place ``comment`` ahead of everything recorded so far."""

        self.comments.insert(0, comment)

    def replace_comment(self, old: str, new: str) -> bool:
        """Drop the first ``old`` comment and append ``new``.

        Returns ``False`` (and appends nothing) when ``old`` is absent.
        """

        try:
            self.comments.remove(old)
        except ValueError:
            return False
        self.comments.append(new)
        return True

    def outgoing_of(self, *types: BranchType) -> List[BranchRecord]:
        return [record for record in self.outgoing if record.branch_type in types]

    def incoming_of(self, *types: BranchType) -> List[BranchRecord]:
        return [record for record in self.incoming if record.branch_type in types]


def build_lines(instructions: Iterable[Instruction]) -> List[DisassemblyLine]:
    """Wrap decoded instructions into contiguous, zero-based lines."""

    return [
        DisassemblyLine(ordinal=ordinal, instruction=instruction)
        for ordinal, instruction in enumerate(instructions)
    ]
