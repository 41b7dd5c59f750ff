"""Resolve imported calls against the module definition knowledge base.

For every ``call`` carrying a :attr:`~nedisasm.disassembly.BranchType.CALL_IMPORT`
edge the analyser looks up the export behind the ordinal (or name), swaps the
``MODULE.Ord(XXXXh)`` placeholder for the real name or signature and then
tries to go further:

* argument reconstruction: when the export declares a ``SignatureFormat`` and
  a list of preceding instructions, the literal pushed by each of them is
  collected.  If any of them cannot be found no signature is
  produced at all.
* return value tracking: the instruction storing ``AX`` after the call is
  labelled and its destination address becomes a tracked variable.  Every
  later instruction in the segment touching that address is cross-referenced.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .disassembly import BranchRecord, BranchType, DisassemblyLine
from .knowledge import ArgumentValue, Export, KnowledgeBase, ReturnValue, ValueKind
from .ne import NEFile, Segment
from .references import import_placeholder
from .variables import TrackedVariable


logger = logging.getLogger(__name__)


class ImportAnalyzer:
    """Annotate imported calls using a :class:`KnowledgeBase`."""

    def __init__(self, ne_file: NEFile, knowledge: KnowledgeBase) -> None:
        self.ne_file = ne_file
        self.knowledge = knowledge
        self.variables: Dict[Tuple[int, int], TrackedVariable] = {}
        self.resolved_calls = 0

    def analyse(self) -> None:
        if not self.knowledge.covers_any(self.ne_file.module_names):
            logger.info("no module definitions match the imported modules, skipping import analysis")
            return

        for segment in self.ne_file.code_segments():
            if not segment.lines:
                continue
            created: Dict[int, Tuple[TrackedVariable, int]] = {}
            for line in segment.lines:
                for edge in line.outgoing_of(BranchType.CALL_IMPORT):
                    self._resolve_call(segment, line, edge, created)
            self._cross_reference(segment, created)
        logger.info("resolved %d imported calls", self.resolved_calls)

    # ------------------------------------------------------------------
    def _lookup(self, edge: BranchRecord) -> Tuple[Optional[str], Optional[Export]]:
        module_name = self.ne_file.module_reference(edge.import_module or edge.segment)
        if edge.import_name is not None:
            return module_name, self.knowledge.lookup_by_name(module_name, edge.import_name)
        return module_name, self.knowledge.lookup(module_name, edge.offset)

    def _resolve_call(
        self,
        segment: Segment,
        line: DisassemblyLine,
        edge: BranchRecord,
        created: Dict[int, Tuple[TrackedVariable, int]],
    ) -> None:
        module_name, export = self._lookup(edge)
        if export is None:
            return
        self.resolved_calls += 1

        module = self.knowledge.module(module_name)
        label = export.signature or f"{module.name if module else module_name}.{export.name}"
        if not line.replace_comment(import_placeholder(edge, module_name), label):
            line.add_comment(label)

        if export.signature_format and export.preceding_instructions:
            arguments = self._collect_arguments(segment, line, export)
            if arguments is not None:
                signature = self._format_signature(export, arguments)
                if signature is not None:
                    line.add_comment(f"Resolved Signature: {signature}")

        for descriptor in export.return_values:
            self._track_return_value(segment, line, descriptor, created)

        for comment in export.comments:
            line.add_comment(comment)

    @staticmethod
    def _collect_arguments(
        segment: Segment, line: DisassemblyLine, export: Export
    ) -> Optional[List[ArgumentValue]]:
        arguments: List[ArgumentValue] = []
        for matcher in export.preceding_instructions:
            source = segment.line_by_ordinal(line.ordinal + matcher.offset)
            if source is None or not matcher.matches(source.mnemonic):
                return None
            if matcher.kind is ValueKind.INT:
                operand = source.instruction.operand(0)
                if operand is None or not operand.is_immediate:
                    return None
                arguments.append(ArgumentValue(ValueKind.INT, operand.signed_value))
            else:
                if not source.string_references:
                    return None
                arguments.append(ArgumentValue(ValueKind.STRING, source.string_references[0].quoted()))
        return arguments

    @staticmethod
    def _format_signature(export: Export, arguments: List[ArgumentValue]) -> Optional[str]:
        try:
            return export.signature_format % tuple(argument.value for argument in arguments)
        except (TypeError, ValueError) as exc:
            logger.warning("signature template for %s does not fit its arguments: %s", export.name, exc)
            return None

    def _track_return_value(
        self,
        segment: Segment,
        line: DisassemblyLine,
        descriptor: ReturnValue,
        created: Dict[int, Tuple[TrackedVariable, int]],
    ) -> None:
        target = segment.line_by_ordinal(line.ordinal + descriptor.offset)
        if target is None or not descriptor.matches(target.mnemonic):
            return
        destination = target.instruction.operand(0)
        if destination is None or not destination.is_absolute:
            return

        address = destination.displacement & 0xFFFF
        target.add_comment(f"Return value saved to 0x{address:04X}h")
        if descriptor.comment:
            target.add_comment(descriptor.comment)

        key = (segment.ordinal, address)
        if key in self.variables:
            return
        variable = TrackedVariable(
            name=f"RET_{segment.ordinal}_{address:04X}",
            address=address,
            segment=segment.ordinal,
            offset=target.offset,
            comment=descriptor.comment,
        )
        self.variables[key] = variable
        created[address] = (variable, target.ordinal)

    @staticmethod
    def _cross_reference(segment: Segment, created: Dict[int, Tuple[TrackedVariable, int]]) -> None:
        for address, (variable, ordinal) in created.items():
            for line in segment.lines[ordinal + 1 :]:
                if line.instruction.references_address(address):
                    line.add_comment(
                        f"Reference to variable created at {variable.segment:04d}.{variable.offset:04X}h"
                    )
