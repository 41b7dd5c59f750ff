"""Tracked variables and the pools that hand out their synthetic names."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional


@dataclass
class TrackedVariable:
    """A memory location whose literal assignments are being observed.

    ``address`` is a stack displacement for subroutine locals, a structure
    displacement for globals and a data address for import return values.
    ``segment``/``offset`` identify the instruction that created the variable.
    """

    name: str
    address: int
    values: List[int] = field(default_factory=list)
    segment: int = 0
    offset: int = 0
    comment: Optional[str] = None

    def observe(self, value: int) -> None:
        self.values.append(value)

    @property
    def is_boolean(self) -> bool:
        """At least two distinct values were seen and none exceeds one."""

        return len(set(self.values)) >= 2 and max(self.values) <= 1

    def render_value(self, value: int) -> str:
        if self.is_boolean:
            return "true" if value else "false"
        return str(value)


class VariablePool:
    """Allocate ``<prefix>VARk`` names per distinct address.

    Numbering restarts whenever the pool is cleared, which is how subroutine
    scoped locals are discarded at every ``ret``.
    """

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix
        self._variables: Dict[int, TrackedVariable] = {}

    def __len__(self) -> int:
        return len(self._variables)

    def __iter__(self) -> Iterator[TrackedVariable]:
        return iter(self._variables.values())

    def __contains__(self, address: object) -> bool:
        return address in self._variables

    def get(self, address: int) -> Optional[TrackedVariable]:
        return self._variables.get(address)

    def allocate(self, address: int, *, segment: int = 0, offset: int = 0) -> TrackedVariable:
        variable = self._variables.get(address)
        if variable is None:
            variable = TrackedVariable(
                name=f"{self.prefix}VAR{len(self._variables)}",
                address=address,
                segment=segment,
                offset=offset,
            )
            self._variables[address] = variable
        return variable

    def clear(self) -> None:
        self._variables.clear()
