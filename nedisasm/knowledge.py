"""Module definition knowledge base for imported functions.

Each definition file describes one imported module (``GALGSBL``, ``PHAPI``
and friends) and the exports it provides: the canonical name behind an
ordinal, an optional fixed signature and, optionally, enough information to
reconstruct the actual call.  ``PrecedingInstructions`` point at the pushes
that set up the arguments relative to the ``call`` instruction while
``ReturnValues`` describe where the result is stored afterwards.

The historical definition files use PascalCase keys::

    {
      "Name": "GALGSBL",
      "Exports": [
        {
          "Name": "prfmsg",
          "Ord": 479,
          "SignatureFormat": "prfmsg(%s)",
          "PrecedingInstructions": [{"Offset": -1, "Op": "PUSH", "Type": "int"}]
        }
      ]
    }

The loader accepts those as well as their snake_case spelling.  Once loaded
the :class:`KnowledgeBase` is read-only and is handed to the analyser rather
than looked up globally.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union


logger = logging.getLogger(__name__)

DEFINITION_SUFFIX = "_def.json"


class ValueKind(enum.Enum):
    """Kind of literal collected from a preceding instruction."""

    INT = "int"
    STRING = "string"

    @classmethod
    def parse(cls, token: Any) -> Optional["ValueKind"]:
        if isinstance(token, cls):
            return token
        if not isinstance(token, str):
            return None
        try:
            return cls(token.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class ArgumentValue:
    """A resolved argument, tagged with the kind it was collected as."""

    kind: ValueKind
    value: Union[int, str]

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class PrecedingInstruction:
    """Locate an argument-setup instruction relative to the call site."""

    offset: int
    op: str
    kind: ValueKind

    def matches(self, mnemonic: str) -> bool:
        return mnemonic.upper().endswith(self.op.upper())


@dataclass(frozen=True)
class ReturnValue:
    """Locate the instruction that stores a call's return value."""

    offset: int
    op: str
    comment: Optional[str] = None

    def matches(self, mnemonic: str) -> bool:
        return mnemonic.upper().endswith(self.op.upper())


@dataclass(frozen=True)
class Export:
    ordinal: int
    name: str
    signature: Optional[str] = None
    signature_format: Optional[str] = None
    preceding_instructions: Tuple[PrecedingInstruction, ...] = ()
    return_values: Tuple[ReturnValue, ...] = ()
    comments: Tuple[str, ...] = ()

    @classmethod
    def from_json(cls, entry: Mapping[str, Any]) -> Optional["Export"]:
        name = _field(entry, "name")
        ordinal = _parse_ordinal(_field(entry, "ord", "ordinal"))
        if not name or ordinal is None:
            return None

        preceding: List[PrecedingInstruction] = []
        for raw in _field(entry, "preceding_instructions") or ():
            if not isinstance(raw, Mapping):
                continue
            kind = ValueKind.parse(_field(raw, "type", "kind"))
            offset = _parse_ordinal(_field(raw, "offset"))
            op = _field(raw, "op")
            if kind is None or offset is None or not op:
                logger.debug("ignoring malformed preceding instruction on %s: %r", name, raw)
                continue
            preceding.append(PrecedingInstruction(offset, str(op), kind))

        returns: List[ReturnValue] = []
        for raw in _field(entry, "return_values") or ():
            if not isinstance(raw, Mapping):
                continue
            offset = _parse_ordinal(_field(raw, "offset"))
            op = _field(raw, "op")
            if offset is None or not op:
                continue
            comment = _field(raw, "comment")
            returns.append(ReturnValue(offset, str(op), str(comment) if comment else None))

        comments = tuple(str(text) for text in _field(entry, "comments") or ())

        return cls(
            ordinal=ordinal,
            name=str(name),
            signature=_field(entry, "signature") or None,
            signature_format=_field(entry, "signature_format") or None,
            preceding_instructions=tuple(preceding),
            return_values=tuple(returns),
            comments=comments,
        )


@dataclass(frozen=True)
class ModuleDefinition:
    name: str
    exports: Tuple[Export, ...] = ()
    comment: Optional[str] = None
    _by_ordinal: Mapping[int, Export] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )
    _by_name: Mapping[str, Export] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        by_ordinal: Dict[int, Export] = {}
        by_name: Dict[str, Export] = {}
        for export in self.exports:
            if export.ordinal in by_ordinal:
                raise ValueError(
                    f"module {self.name} defines ordinal {export.ordinal} more than once"
                )
            by_ordinal[export.ordinal] = export
            by_name.setdefault(export.name.upper(), export)
        object.__setattr__(self, "_by_ordinal", MappingProxyType(by_ordinal))
        object.__setattr__(self, "_by_name", MappingProxyType(by_name))

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "ModuleDefinition":
        name = _field(data, "name")
        if not name:
            raise ValueError("module definition is missing a name")
        exports: List[Export] = []
        for entry in _field(data, "exports") or ():
            if not isinstance(entry, Mapping):
                continue
            export = Export.from_json(entry)
            if export is None:
                logger.debug("skipping export without name/ordinal in %s", name)
                continue
            exports.append(export)
        comment = _field(data, "comment")
        return cls(str(name), tuple(exports), str(comment) if comment else None)

    def export(self, ordinal: int) -> Optional[Export]:
        return self._by_ordinal.get(ordinal)

    def export_by_name(self, name: str) -> Optional[Export]:
        return self._by_name.get(name.upper())


class KnowledgeBase:
    """Immutable registry of :class:`ModuleDefinition` objects.

    Module names are matched case-insensitively because the NE module
    reference table stores them upper-cased while definition files are not
    always consistent.
    """

    def __init__(self, modules: Iterable[ModuleDefinition] = ()) -> None:
        registry: Dict[str, ModuleDefinition] = {}
        for module in modules:
            registry[module.name.upper()] = module
        self._modules: Mapping[str, ModuleDefinition] = MappingProxyType(registry)

    @classmethod
    def load(cls, path: Path) -> "KnowledgeBase":
        """Load definitions from a directory of ``*_def.json`` files or one file.

        A missing path yields an empty knowledge base.
        """

        path = Path(path)
        if not path.exists():
            logger.info("no module definitions found at %s", path)
            return cls()

        if path.is_dir():
            files = sorted(path.glob(f"*{DEFINITION_SUFFIX}"))
        else:
            files = [path]

        modules: List[ModuleDefinition] = []
        for file in files:
            data = json.loads(file.read_text("utf-8"))
            documents = data if isinstance(data, list) else [data]
            for document in documents:
                if not isinstance(document, Mapping):
                    continue
                module = ModuleDefinition.from_json(document)
                logger.debug("loaded %d exports for %s from %s", len(module.exports), module.name, file)
                modules.append(module)
        return cls(modules)

    def __len__(self) -> int:
        return len(self._modules)

    def __iter__(self) -> Iterator[ModuleDefinition]:
        return iter(self._modules.values())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.upper() in self._modules

    def module(self, name: Optional[str]) -> Optional[ModuleDefinition]:
        if not name:
            return None
        return self._modules.get(name.upper())

    def lookup(self, module_name: Optional[str], ordinal: int) -> Optional[Export]:
        module = self.module(module_name)
        return module.export(ordinal) if module else None

    def lookup_by_name(self, module_name: Optional[str], name: str) -> Optional[Export]:
        module = self.module(module_name)
        return module.export_by_name(name) if module else None

    def covers_any(self, module_names: Iterable[str]) -> bool:
        return any(name in self for name in module_names)


def _field(entry: Mapping[str, Any], *names: str) -> Any:
    """Fetch ``names`` from ``entry`` accepting snake_case and PascalCase keys."""

    for name in names:
        if name in entry:
            return entry[name]
        pascal = "".join(part.capitalize() for part in name.split("_"))
        if pascal in entry:
            return entry[pascal]
    lowered = {str(key).lower(): value for key, value in entry.items()}
    for name in names:
        compact = name.replace("_", "")
        if compact in lowered:
            return lowered[compact]
    return None


def _parse_ordinal(value: Any) -> Optional[int]:
    """Interpret ``value`` as a decimal, ``0x`` hexadecimal or negative integer."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        try:
            return int(token, 0)
        except ValueError:
            return None
    return None
