"""Subroutine boundaries, stack-local variables and FOR loop idioms.

The recogniser targets the code shapes emitted by the Borland and Microsoft
compilers used for 16-bit Windows and BBS modules and matches them literally:

* a subroutine begins at ``enter``, at any target of a ``call``, at an
  exported entry point and right after a ``ret``;
* it ends at the next ``ret``;
* ``mov word [bp-N], imm`` stores name stack locals ``VAR0``, ``VAR1``... in
  order of first appearance.  Two consecutive stores are read as the high and
  low word of a 32-bit value;
* a ``cmp`` reached by a backward unconditional ``jmp`` is the condition of a
  ``for`` loop whose increment sits right before it.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .disassembly import BranchType, DisassemblyLine
from .ne import NEFile, Segment
from .variables import VariablePool


logger = logging.getLogger(__name__)


class SubroutineRecognizer:
    """Tag lines with subroutine ids and annotate locals and loops."""

    def __init__(self, ne_file: NEFile) -> None:
        self.ne_file = ne_file

    def analyse(self) -> int:
        """Run both scans over every code segment and return the subroutine count."""

        total = 0
        for segment in self.ne_file.code_segments():
            if not segment.lines:
                continue
            count = self.identify_subroutines(segment)
            loops = self.identify_loops(segment)
            logger.debug(
                "segment %d: %d subroutines, %d loops", segment.ordinal, count, loops
            )
            total += count
        return total

    # ------------------------------------------------------------------
    # Subroutines and locals
    # ------------------------------------------------------------------
    def identify_subroutines(self, segment: Segment) -> int:
        lines = segment.lines
        counter = 0
        inside = False
        follows_return = False
        local_variables = VariablePool()
        pending_high: Optional[int] = None

        for index, line in enumerate(lines):
            instruction = line.instruction
            starts = (
                instruction.is_frame_setup
                or bool(line.incoming_of(BranchType.CALL))
                or line.exported_function is not None
                or follows_return
            )
            follows_return = instruction.is_return

            if starts:
                counter += 1
                inside = True
                line.subroutine_id = counter
                line.insert_comment(f"BEGIN SUBROUTINE {counter}")
                local_variables.clear()
                pending_high = None
            elif inside:
                line.subroutine_id = counter
                pending_high = self._track_local(lines, index, local_variables, pending_high)

            if instruction.is_return and inside:
                inside = False
                line.add_comment(f"END SUBROUTINE {counter}")
                local_variables.clear()
                pending_high = None

        return counter

    @staticmethod
    def _track_local(
        lines: List[DisassemblyLine],
        index: int,
        pool: VariablePool,
        pending_high: Optional[int],
    ) -> Optional[int]:
        """Record a ``[bp-N] = imm`` store and return the deferred high word."""

        line = lines[index]
        instruction = line.instruction
        if not instruction.stores_immediate_local():
            return pending_high

        displacement = instruction.operands[0].displacement
        value = instruction.operands[1].word

        if pending_high is not None:
            combined = (pending_high << 16) | value
            variable = pool.allocate(displacement)
            variable.observe(combined)
            line.add_comment(f"{variable.name} = {combined} (Long)")
            return None

        following = lines[index + 1] if index + 1 < len(lines) else None
        if following is not None and following.instruction.stores_immediate_local():
            return value

        variable = pool.allocate(displacement)
        variable.observe(value)
        line.add_comment(f"{variable.name} = {value}")
        return None

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------
    def identify_loops(self, segment: Segment) -> int:
        found = 0
        for line in segment.lines:
            if line.mnemonic != "cmp":
                continue
            sources = [
                edge
                for edge in line.incoming_of(BranchType.UNCONDITIONAL)
                if edge.segment == segment.ordinal and edge.offset < line.offset
            ]
            if not sources:
                continue
            found += 1

            previous = segment.line_by_ordinal(line.ordinal - 1)
            if previous is not None:
                if previous.instruction.is_increment:
                    previous.add_comment("[FOR] Increment Value")
                elif previous.instruction.is_decrement:
                    previous.add_comment("[FOR] Decrement Value")

            line.add_comment("[FOR] Evaluate Break Condition")

            following = segment.line_by_ordinal(line.ordinal + 1)
            if following is not None:
                following.add_comment("[FOR] Branch based on evaluation")

            for edge in sources:
                origin = segment.line_at(edge.offset)
                if origin is not None:
                    origin.add_comment("[FOR] Beginning of FOR logic")
        return found
