"""Orchestration of decoding, reference resolution and heuristic analysis."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .decoder import InstructionDecoder
from .disassembly import build_lines
from .global_variables import GlobalVariableTracker
from .imports import ImportAnalyzer
from .knowledge import KnowledgeBase
from .ne import NEFile
from .references import ReferenceResolver
from .string_references import StringReferenceResolver
from .strings import extract_strings
from .subroutines import SubroutineRecognizer
from .variables import TrackedVariable


logger = logging.getLogger(__name__)


class Disassembler:
    """Decode every code segment and resolve references between instructions.

    The passes mutate the model in place and are not idempotent: running
    :meth:`resolve` twice on the same :class:`NEFile` duplicates every edge
    and comment.  Always start from a freshly loaded file.
    """

    def __init__(self, *, decoder: Optional[InstructionDecoder] = None) -> None:
        self.decoder = decoder or InstructionDecoder()

    def disassemble(self, ne_file: NEFile, *, minimal: bool = False) -> NEFile:
        for segment in ne_file.code_segments():
            logger.info("Performing disassembly of segment %d", segment.ordinal)
            segment.set_lines(build_lines(self.decoder.decode(segment.data)))

        if not any(segment.lines for segment in ne_file.code_segments()):
            raise ValueError("no instructions could be decoded from the code segments")

        if not minimal:
            self.resolve(ne_file)
        return ne_file

    @staticmethod
    def resolve(ne_file: NEFile) -> NEFile:
        """Run every reference pass over already decoded segments."""

        logger.info("Extracting strings from DATA segments")
        for segment in ne_file.data_segments():
            segment.strings = extract_strings(segment)

        resolver = ReferenceResolver(ne_file)

        logger.info("Applying relocation info")
        resolver.apply_relocations()

        logger.info("Applying string references")
        StringReferenceResolver(ne_file).resolve()

        logger.info("Resolving jump targets")
        resolver.resolve_jumps()

        logger.info("Resolving call targets")
        resolver.resolve_calls()

        logger.info("Identifying entry points")
        resolver.identify_entry_points()
        return ne_file


@dataclass
class AnalysisReport:
    resolved_imports: int = 0
    subroutines: int = 0
    return_variables: List[TrackedVariable] = field(default_factory=list)
    global_variables: List[TrackedVariable] = field(default_factory=list)


class Analyzer:
    """Heuristic passes layered on top of a resolved :class:`NEFile`."""

    def __init__(self, knowledge: Optional[KnowledgeBase] = None) -> None:
        self.knowledge = knowledge or KnowledgeBase()

    def analyse(self, ne_file: NEFile) -> AnalysisReport:
        report = AnalysisReport()

        logger.info("Identifying imported functions")
        imports = ImportAnalyzer(ne_file, self.knowledge)
        imports.analyse()
        report.resolved_imports = imports.resolved_calls
        report.return_variables = list(imports.variables.values())

        logger.info("Identifying subroutines and loops")
        report.subroutines = SubroutineRecognizer(ne_file).analyse()

        logger.info("Tracking global variables")
        tracker = GlobalVariableTracker(ne_file)
        tracker.analyse()
        report.global_variables = list(tracker.variables)
        return report
