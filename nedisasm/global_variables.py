"""Whole-file tracking of the shared ``es:[bx+N]`` state structure.

BBS modules built against the MajorBBS/Worldgroup runtime keep per-user state
in a structure reached through a far pointer loaded into ``es:bx``.  Every
displacement stored to with an immediate becomes a ``GLOBAL->VARk`` variable.
Once all stores have been seen, a second pass labels stores, comparisons and
pushes against those slots, printing ``true``/``false`` for slots that only
ever held zero and one.
"""

from __future__ import annotations

import logging
from typing import Iterator

from .disassembly import DisassemblyLine
from .ne import NEFile
from .variables import VariablePool


logger = logging.getLogger(__name__)

GLOBAL_PREFIX = "GLOBAL->"


class GlobalVariableTracker:
    def __init__(self, ne_file: NEFile) -> None:
        self.ne_file = ne_file
        self.variables = VariablePool(GLOBAL_PREFIX)

    def _lines(self) -> Iterator[DisassemblyLine]:
        for segment in self.ne_file.code_segments():
            yield from segment.lines

    def analyse(self) -> None:
        self.collect()
        self.annotate()
        logger.debug("tracked %d global variables", len(self.variables))

    def collect(self) -> None:
        for line in self._lines():
            instruction = line.instruction
            if not instruction.stores_immediate_global():
                continue
            slot = instruction.operands[0]
            variable = self.variables.allocate(slot.displacement)
            variable.observe(instruction.operands[1].word)

    def annotate(self) -> None:
        for line in self._lines():
            instruction = line.instruction
            slot = instruction.global_slot()
            if slot is None:
                continue
            variable = self.variables.get(slot.displacement)
            if variable is None:
                continue

            if instruction.mnemonic == "cmp":
                operand = instruction.operand(1)
                if operand is not None and operand.is_immediate:
                    line.add_comment(f"Compare {variable.name} == {variable.render_value(operand.word)}")
            elif instruction.mnemonic == "push":
                line.add_comment(f"Push {variable.name} to stack")
            elif instruction.stores_immediate_global():
                value = instruction.operands[1].word
                line.add_comment(f"{variable.name} = {variable.render_value(value)}")
