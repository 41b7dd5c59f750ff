"""Public package exports for the NE disassembler and its analysis passes."""

from .decoder import InstructionDecoder
from .disassembly import BranchRecord, BranchType, DisassemblyLine
from .instruction import Instruction, Operand
from .knowledge import KnowledgeBase
from .ne import NEFile, Segment
from .pipeline import AnalysisReport, Analyzer, Disassembler
from .renderer import ListingRenderer

__all__ = [
    "InstructionDecoder",
    "Instruction",
    "Operand",
    "BranchRecord",
    "BranchType",
    "DisassemblyLine",
    "KnowledgeBase",
    "NEFile",
    "Segment",
    "Disassembler",
    "Analyzer",
    "AnalysisReport",
    "ListingRenderer",
]
