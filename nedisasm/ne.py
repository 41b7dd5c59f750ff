"""Reader for the 16-bit segmented executable (``NE``) container.

Only the tables the analysis passes need are decoded: the segment table with
per-segment relocation records, the entry table, the resident and
non-resident name tables, the module reference table and the imported names
table.  Resource tables are skipped entirely.
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .disassembly import DisassemblyLine
    from .strings import StringRecord


MZ_SIGNATURE = b"MZ"
NE_SIGNATURE = b"NE"
NE_POINTER_OFFSET = 0x3C
NE_HEADER_SIZE = 0x40

# Field order follows the on-disk header; the trailing four words (thunk
# offsets, swap area and expected Windows version) are read but unused.
_NE_HEADER = struct.Struct("<2sBBHHIHHHHIIHHHHHHHHIHHHBBHHHH")
_SEGMENT_ENTRY = struct.Struct("<HHHH")
_RELOCATION_ENTRY = struct.Struct("<BBHHH")

SEGMENT_FLAG_DATA = 0x0001
SEGMENT_FLAG_MOVABLE = 0x0010
SEGMENT_FLAG_PRELOAD = 0x0040
SEGMENT_FLAG_RELOCINFO = 0x0100
SEGMENT_FLAG_DISCARDABLE = 0x1000

RELOCATION_TARGET_MASK = 0x03
RELOCATION_ADDITIVE = 0x04

MOVABLE_SEGMENT_MARKER = 0xFF
CONSTANT_SEGMENT_MARKER = 0xFE


class SegmentFlag(enum.Enum):
    CODE = "code"
    DATA = "data"
    FIXED = "fixed"
    MOVABLE = "movable"
    PRELOAD = "preload"
    HAS_RELOCATION_INFO = "has_relocation_info"
    DISCARDABLE = "discardable"


class RelocationKind(enum.Enum):
    INTERNAL_REF = 0
    IMPORT_ORDINAL = 1
    IMPORT_NAME = 2
    OS_FIXUP = 3


def decode_segment_flags(raw: int) -> FrozenSet[SegmentFlag]:
    flags = {SegmentFlag.DATA if raw & SEGMENT_FLAG_DATA else SegmentFlag.CODE}
    flags.add(SegmentFlag.MOVABLE if raw & SEGMENT_FLAG_MOVABLE else SegmentFlag.FIXED)
    if raw & SEGMENT_FLAG_PRELOAD:
        flags.add(SegmentFlag.PRELOAD)
    if raw & SEGMENT_FLAG_RELOCINFO:
        flags.add(SegmentFlag.HAS_RELOCATION_INFO)
    if raw & SEGMENT_FLAG_DISCARDABLE:
        flags.add(SegmentFlag.DISCARDABLE)
    return frozenset(flags)


@dataclass(frozen=True)
class NEHeader:
    linker_version: int
    linker_revision: int
    entry_table_offset: int
    entry_table_length: int
    flags: int
    auto_data_segment: int
    segment_count: int
    module_reference_count: int
    non_resident_table_size: int
    segment_table_offset: int
    resource_table_offset: int
    resident_name_table_offset: int
    module_reference_table_offset: int
    imported_names_table_offset: int
    non_resident_table_offset: int
    movable_entry_count: int
    alignment_shift: int
    target_os: int

    @classmethod
    def parse(cls, data: bytes, offset: int) -> "NEHeader":
        if offset + NE_HEADER_SIZE > len(data):
            raise ValueError("NE header extends past the end of the file")
        fields = _NE_HEADER.unpack_from(data, offset)
        if fields[0] != NE_SIGNATURE:
            raise ValueError(f"missing NE signature at 0x{offset:X}")
        return cls(
            linker_version=fields[1],
            linker_revision=fields[2],
            entry_table_offset=fields[3],
            entry_table_length=fields[4],
            flags=fields[6],
            auto_data_segment=fields[7],
            segment_count=fields[12],
            module_reference_count=fields[13],
            non_resident_table_size=fields[14],
            segment_table_offset=fields[15],
            resource_table_offset=fields[16],
            resident_name_table_offset=fields[17],
            module_reference_table_offset=fields[18],
            imported_names_table_offset=fields[19],
            non_resident_table_offset=fields[20],
            movable_entry_count=fields[21],
            alignment_shift=fields[22] or 9,
            target_os=fields[24],
        )


@dataclass(frozen=True)
class RelocationRecord:
    """A single fixup applied to a segment.

    ``offset`` is the location of the patched operand inside the segment, so
    the instruction owning it starts one byte earlier for the one-byte opcode
    forms the linker emits (``mov ax, seg``, ``call far``).  Which target
    fields are meaningful depends on ``kind``: internal references use
    ``target_segment``/``target_offset``, imports use ``module`` plus either
    ``ordinal`` or ``name_offset``.
    """

    offset: int
    source_type: int
    kind: RelocationKind
    additive: bool = False
    target_segment: int = 0
    target_offset: int = 0
    module: int = 0
    ordinal: int = 0
    name_offset: int = 0


@dataclass(frozen=True)
class EntryPoint:
    ordinal: int
    segment: int
    offset: int
    flags: int = 0
    movable: bool = False


@dataclass(frozen=True)
class NameEntry:
    name: str
    ordinal: int


@dataclass
class Segment:
    """One code or data segment together with its analysis artefacts."""

    ordinal: int
    offset: int
    data: bytes
    flags: FrozenSet[SegmentFlag]
    raw_flags: int = 0
    min_alloc: int = 0
    relocations: List[RelocationRecord] = field(default_factory=list)
    lines: List["DisassemblyLine"] = field(default_factory=list)
    strings: Optional[List["StringRecord"]] = None
    _offset_index: Optional[Dict[int, "DisassemblyLine"]] = field(
        default=None, init=False, repr=False, compare=False
    )

    @property
    def is_code(self) -> bool:
        return SegmentFlag.CODE in self.flags

    @property
    def is_data(self) -> bool:
        return SegmentFlag.DATA in self.flags

    @property
    def has_relocation_info(self) -> bool:
        return SegmentFlag.HAS_RELOCATION_INFO in self.flags

    @property
    def length(self) -> int:
        return len(self.data)

    def set_lines(self, lines: List["DisassemblyLine"]) -> None:
        self.lines = lines
        self._offset_index = None

    def line_at(self, offset: int) -> Optional["DisassemblyLine"]:
        """Return the line whose instruction starts exactly at ``offset``."""

        if self._offset_index is None:
            self._offset_index = {}
            for line in self.lines:
                self._offset_index.setdefault(line.offset, line)
        return self._offset_index.get(offset)

    def line_by_ordinal(self, ordinal: int) -> Optional["DisassemblyLine"]:
        if 0 <= ordinal < len(self.lines):
            return self.lines[ordinal]
        return None

    def describe(self) -> str:
        kind = "CODE" if self.is_code else "DATA"
        placement = "MOVABLE" if SegmentFlag.MOVABLE in self.flags else "FIXED"
        return f"{kind}, {placement}"


class NEFile:
    """Parsed view of an NE executable or DLL."""

    def __init__(
        self,
        segments: List[Segment],
        *,
        header: Optional[NEHeader] = None,
        data: bytes = b"",
        header_offset: int = 0,
        entries: Sequence[EntryPoint] = (),
        resident_names: Sequence[NameEntry] = (),
        non_resident_names: Sequence[NameEntry] = (),
        module_names: Sequence[str] = (),
        path: Optional[Path] = None,
    ) -> None:
        self.data = data
        self.header = header
        self.header_offset = header_offset
        self.segments = segments
        self.entries = list(entries)
        self.resident_names = list(resident_names)
        self.non_resident_names = list(non_resident_names)
        self.module_names = list(module_names)
        self.path = path
        self._segment_map = {segment.ordinal: segment for segment in segments}

    @classmethod
    def load(cls, path: Path) -> "NEFile":
        ne_file = cls.from_bytes(Path(path).read_bytes())
        ne_file.path = Path(path)
        return ne_file

    @classmethod
    def from_bytes(cls, data: bytes) -> "NEFile":
        if len(data) < NE_POINTER_OFFSET + 4 or data[:2] != MZ_SIGNATURE:
            raise ValueError("not an MZ executable")
        header_offset = struct.unpack_from("<I", data, NE_POINTER_OFFSET)[0]
        header = NEHeader.parse(data, header_offset)

        entries = _parse_entry_table(data, header_offset + header.entry_table_offset, header.entry_table_length)
        segments = _parse_segments(data, header, header_offset, entries)
        resident = _parse_name_table(data, header_offset + header.resident_name_table_offset, None)
        non_resident: List[NameEntry] = []
        if header.non_resident_table_offset and header.non_resident_table_size:
            non_resident = _parse_name_table(
                data, header.non_resident_table_offset, header.non_resident_table_size
            )
        module_names = _parse_module_names(data, header, header_offset)

        return cls(
            segments,
            header=header,
            data=data,
            header_offset=header_offset,
            entries=entries,
            resident_names=resident,
            non_resident_names=non_resident,
            module_names=module_names,
        )

    def code_segments(self) -> List[Segment]:
        return [segment for segment in self.segments if segment.is_code]

    def data_segments(self) -> List[Segment]:
        return [segment for segment in self.segments if segment.is_data]

    def segment(self, ordinal: int) -> Optional[Segment]:
        return self._segment_map.get(ordinal)

    @property
    def module_name(self) -> str:
        return self.resident_names[0].name if self.resident_names else ""

    @property
    def description(self) -> str:
        return self.non_resident_names[0].name if self.non_resident_names else ""

    def entry_name(self, ordinal: int) -> Optional[str]:
        """Name exported for entry ``ordinal``; non-resident names win."""

        for table in (self.non_resident_names, self.resident_names):
            for entry in table:
                if entry.ordinal == ordinal and entry.name:
                    return entry.name
        return None

    def entry(self, ordinal: int) -> Optional[EntryPoint]:
        for entry in self.entries:
            if entry.ordinal == ordinal:
                return entry
        return None

    def imported_name(self, offset: int) -> Optional[str]:
        """Read the length-prefixed name at ``offset`` in the imported names table."""

        if self.header is None:
            return None
        start = self.header_offset + self.header.imported_names_table_offset + offset
        return _read_pascal_string(self.data, start)

    def module_reference(self, index: int) -> Optional[str]:
        """Module name for the 1-based module reference ``index``."""

        if 1 <= index <= len(self.module_names):
            return self.module_names[index - 1]
        return None


def _read_pascal_string(data: bytes, start: int) -> Optional[str]:
    if not (0 <= start < len(data)):
        return None
    length = data[start]
    end = start + 1 + length
    if end > len(data):
        return None
    return data[start + 1 : end].decode("latin-1")


def _parse_segments(
    data: bytes,
    header: NEHeader,
    header_offset: int,
    entries: Sequence[EntryPoint],
) -> List[Segment]:
    table_start = header_offset + header.segment_table_offset
    table_end = table_start + header.segment_count * _SEGMENT_ENTRY.size
    if table_end > len(data):
        raise ValueError("segment table extends past the end of the file")

    segments: List[Segment] = []
    for index in range(header.segment_count):
        sector, length, raw_flags, min_alloc = _SEGMENT_ENTRY.unpack_from(
            data, table_start + index * _SEGMENT_ENTRY.size
        )
        ordinal = index + 1
        flags = decode_segment_flags(raw_flags)
        file_offset = sector << header.alignment_shift
        if sector == 0:
            segments.append(Segment(ordinal, 0, b"", flags, raw_flags, min_alloc))
            continue
        if length == 0:
            length = 0x10000
        end = file_offset + length
        if end > len(data):
            raise ValueError(
                f"Segment {ordinal} boundaries [0x{file_offset:X}, 0x{end:X}) exceed file size 0x{len(data):X}"
            )
        segment = Segment(ordinal, file_offset, data[file_offset:end], flags, raw_flags, min_alloc)
        if segment.has_relocation_info:
            segment.relocations = _parse_relocations(data, end, entries, ordinal)
        segments.append(segment)
    return segments


def _parse_relocations(
    data: bytes,
    start: int,
    entries: Sequence[EntryPoint],
    ordinal: int,
) -> List[RelocationRecord]:
    if start + 2 > len(data):
        raise ValueError(f"Segment {ordinal} relocation table is missing")
    count = struct.unpack_from("<H", data, start)[0]
    position = start + 2
    if position + count * _RELOCATION_ENTRY.size > len(data):
        raise ValueError(f"Segment {ordinal} relocation table exceeds file size")

    by_ordinal = {entry.ordinal: entry for entry in entries}
    records: List[RelocationRecord] = []
    for _ in range(count):
        source_type, flags, offset, first, second = _RELOCATION_ENTRY.unpack_from(data, position)
        position += _RELOCATION_ENTRY.size
        kind = RelocationKind(flags & RELOCATION_TARGET_MASK)
        additive = bool(flags & RELOCATION_ADDITIVE)

        if kind is RelocationKind.INTERNAL_REF:
            target_segment = first & 0xFF
            target_offset = second
            if target_segment == MOVABLE_SEGMENT_MARKER:
                entry = by_ordinal.get(second)
                if entry is not None:
                    target_segment, target_offset = entry.segment, entry.offset
            records.append(
                RelocationRecord(
                    offset,
                    source_type,
                    kind,
                    additive,
                    target_segment=target_segment,
                    target_offset=target_offset,
                )
            )
        elif kind is RelocationKind.IMPORT_ORDINAL:
            records.append(
                RelocationRecord(offset, source_type, kind, additive, module=first, ordinal=second)
            )
        elif kind is RelocationKind.IMPORT_NAME:
            records.append(
                RelocationRecord(offset, source_type, kind, additive, module=first, name_offset=second)
            )
        else:
            records.append(RelocationRecord(offset, source_type, kind, additive))
    return records


def _parse_entry_table(data: bytes, start: int, length: int) -> List[EntryPoint]:
    entries: List[EntryPoint] = []
    end = min(start + length, len(data))
    position = start
    ordinal = 1
    while position + 2 <= end:
        count = data[position]
        if count == 0:
            break
        indicator = data[position + 1]
        position += 2
        if indicator == 0:
            ordinal += count
            continue
        for _ in range(count):
            if indicator == MOVABLE_SEGMENT_MARKER:
                if position + 6 > end:
                    return entries
                flags = data[position]
                segment = data[position + 3]
                offset = struct.unpack_from("<H", data, position + 4)[0]
                position += 6
                entries.append(EntryPoint(ordinal, segment, offset, flags, movable=True))
            else:
                if position + 3 > end:
                    return entries
                flags = data[position]
                offset = struct.unpack_from("<H", data, position + 1)[0]
                position += 3
                entries.append(EntryPoint(ordinal, indicator, offset, flags))
            ordinal += 1
    return entries


def _parse_name_table(data: bytes, start: int, size: Optional[int]) -> List[NameEntry]:
    names: List[NameEntry] = []
    end = len(data) if size is None else min(len(data), start + size)
    position = start
    while position < end:
        length = data[position]
        if length == 0:
            break
        name_end = position + 1 + length
        if name_end + 2 > end:
            break
        name = data[position + 1 : name_end].decode("latin-1")
        ordinal = struct.unpack_from("<H", data, name_end)[0]
        names.append(NameEntry(name, ordinal))
        position = name_end + 2
    return names


def _parse_module_names(data: bytes, header: NEHeader, header_offset: int) -> List[str]:
    table = header_offset + header.module_reference_table_offset
    names_base = header_offset + header.imported_names_table_offset
    if table + header.module_reference_count * 2 > len(data):
        raise ValueError("module reference table extends past the end of the file")
    modules: List[str] = []
    for index in range(header.module_reference_count):
        name_offset = struct.unpack_from("<H", data, table + index * 2)[0]
        modules.append(_read_pascal_string(data, names_base + name_offset) or "")
    return modules
