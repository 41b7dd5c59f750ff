"""Textual listings of an analysed :class:`~nedisasm.ne.NEFile`."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

from .disassembly import BranchType, DisassemblyLine
from .ne import NEFile, Segment


SEPARATOR = ";-------------------------------------------"
MAX_INSTRUCTION_BYTES = 15


class ListingRenderer:
    """Render segment tables, the entry table, code and strings.

    Edge labels are derived while rendering so the model itself is never
    touched; rendering the same file twice yields the same listing.  Import
    placeholders (or the names the knowledge base analyser put in their
    place) are ordinary comments and are printed verbatim.
    """

    def __init__(self, ne_file: NEFile) -> None:
        self.ne_file = ne_file

    def render_header(self) -> List[str]:
        name = self.ne_file.path.name if self.ne_file.path else self.ne_file.module_name
        return [
            f"; Disassembly of {name}",
            f"; Description: {self.ne_file.description}",
            ";",
        ]

    def render_segment_information(self) -> List[str]:
        lines = [
            SEPARATOR,
            "; Segment Information",
            f"; Number of Code/Data Segments = {len(self.ne_file.segments)}",
            SEPARATOR,
        ]
        for segment in self.ne_file.segments:
            lines.append(
                f"; Segment #{segment.ordinal:04d}\tOffset: {segment.offset:08X}\t"
                f"Size: {segment.length:04X}\t Flags: 0x{segment.raw_flags:04X} -> {segment.describe()}"
            )
        return lines

    def render_entry_table(self) -> List[str]:
        lines = [
            SEPARATOR,
            "; Entry Table Information",
            f"; Number of Entry Table Functions = {len(self.ne_file.entries)}",
            SEPARATOR,
        ]
        for table in (self.ne_file.non_resident_names, self.ne_file.resident_names):
            for name in table:
                if name.ordinal == 0:
                    continue
                entry = self.ne_file.entry(name.ordinal)
                if entry is None:
                    continue
                lines.append(
                    f"; Addr:{entry.segment:04d}.{entry.offset:04X}\tOrd:{name.ordinal:04d}d\tName: {name.name}"
                )
        return lines

    def render_disassembly(self, segments: Optional[Sequence[int]] = None) -> List[str]:
        selection = set(segments or ())
        output: List[str] = []
        for segment in self.ne_file.code_segments():
            if selection and segment.ordinal not in selection:
                continue
            output.extend(self._render_segment(segment))
        return output

    def _render_segment(self, segment: Segment) -> List[str]:
        lines = [
            SEPARATOR,
            f"; Start of Code for Segment {segment.ordinal}",
            "; FILE_OFFSET:SEG_NUM.SEG_OFFSET BYTES DISASSEMBLY",
            SEPARATOR,
        ]
        if not segment.lines:
            lines.append("")
            return lines

        prefixes = [self._format_instruction(segment, line) for line in segment.lines]
        column = max(len(prefix) for prefix in prefixes) + 1

        for prefix, line in zip(prefixes, segment.lines):
            comments = self.comments_for(line)
            if not comments:
                lines.append(prefix)
                continue
            lines.append(f"{prefix.ljust(column)}; {comments[0]}")
            for comment in comments[1:]:
                lines.append(f"{' ' * column}; {comment}")
        lines.append("")
        return lines

    @staticmethod
    def _format_instruction(segment: Segment, line: DisassemblyLine) -> str:
        instruction = line.instruction
        return (
            f"{instruction.offset + segment.offset:08X}h:{segment.ordinal:04d}.{instruction.offset:04X}h "
            f"{instruction.hex_bytes():<{MAX_INSTRUCTION_BYTES * 2}} {instruction.text()}"
        )

    @staticmethod
    def comments_for(line: DisassemblyLine) -> List[str]:
        """Comments for ``line``: pass output followed by render-time edge labels."""

        labels: List[str] = []
        if line.exported_function is not None:
            labels.append(f"Exported Function: {line.exported_function.name}")

        for record in line.incoming:
            if record.branch_type is BranchType.CALL:
                suffix = " (Relocation)" if record.is_relocation else ""
                labels.append(
                    f"Referenced by CALL at address: {record.segment:04d}.{record.offset:04X}h{suffix}"
                )
            elif record.branch_type in (BranchType.CONDITIONAL, BranchType.UNCONDITIONAL):
                kind = "Conditional" if record.branch_type is BranchType.CONDITIONAL else "Unconditional"
                labels.append(f"{kind} jump from {record.segment:04d}:{record.offset:04X}h")

        for record in line.outgoing:
            if not record.is_relocation:
                continue
            if record.branch_type is BranchType.CALL:
                labels.append(f"CALL {record.segment:04d}.{record.offset:04X}h (Relocation)")
            elif record.branch_type is BranchType.SEG_ADDR:
                labels.append(f"SEG ADDR of Segment {record.segment}")

        return list(line.comments) + labels

    def render_strings(self) -> List[str]:
        lines: List[str] = []
        for segment in self.ne_file.data_segments():
            if not segment.strings:
                continue
            lines.extend(
                [
                    SEPARATOR,
                    f"; Start of Data for Segment {segment.ordinal}",
                    "; FILE_OFFSET:SEG_NUM.SEG_OFFSET",
                    SEPARATOR,
                ]
            )
            for record in segment.strings:
                lines.append(
                    f"{segment.offset + record.offset:08X}h:{segment.ordinal:04d}.{record.offset:04X}h '{record.text}'"
                )
        return lines

    def generate_listing(
        self,
        *,
        include_strings: bool = False,
        segments: Optional[Sequence[int]] = None,
    ) -> str:
        lines: List[str] = []
        lines.extend(self.render_header())
        lines.extend(self.render_segment_information())
        lines.extend(self.render_entry_table())
        lines.append(";")
        lines.extend(self.render_disassembly(segments))
        if include_strings:
            lines.extend(self.render_strings())
        return "\n".join(lines) + "\n"

    def write_listing(
        self,
        output_path: Path,
        *,
        include_strings: bool = False,
        segments: Optional[Sequence[int]] = None,
    ) -> None:
        listing = self.generate_listing(include_strings=include_strings, segments=segments)
        output_path.write_text(listing, "utf-8")
