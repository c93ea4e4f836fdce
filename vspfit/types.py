"""Core data types for vspfit.

This module is the SINGLE SOURCE OF TRUTH for:
  - Sex and SelectionMode enumerations
  - The individual record layout (make_individual_dtype, allocate_individuals)
  - VspID: a (subpopulation, virtual subpopulation) identity
  - SubPopList: an ordered selection of (virtual) subpopulations

All modules import these types from here. No other module defines
individual fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Iterable, Iterator, List, Optional, Sequence

import numpy as np

from vspfit.errors import ConfigurationError

if TYPE_CHECKING:
    from vspfit.population import Population


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class Sex(IntEnum):
    """Individual sex, stored in the ``sex`` column."""
    FEMALE = 0
    MALE   = 1


class SelectionMode(IntEnum):
    """How a multi-locus selector combines the fitness of its children.

    MULTIPLICATIVE:  f = Π f_i
    ADDITIVE:        f = max(0, 1 − Σ (1 − f_i))
    HETEROGENEITY:   f = 1 − Π (1 − f_i)
    """
    MULTIPLICATIVE = 1
    ADDITIVE       = 2
    HETEROGENEITY  = 3


# ═══════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════

FITNESS_FIELD = "fitness"   # default output field of every selector

INVALID_ID: Optional[int] = None   # "unset" subpopulation / VSP index


# ═══════════════════════════════════════════════════════════════════════
# INDIVIDUAL RECORD LAYOUT
# ═══════════════════════════════════════════════════════════════════════

BASE_FIELDS = [
    ('sex',      np.int8),    # Sex enum (0=female, 1=male)
    ('affected', np.bool_),   # affection status
    ('visible',  np.bool_),   # toggled exclusively by splitter activation
]


def make_individual_dtype(info_fields: Sequence[str] = (FITNESS_FIELD,)) -> np.dtype:
    """Build the structured dtype for individuals carrying ``info_fields``.

    Each information field becomes one float64 column after the base
    fields. Field names must be unique and must not shadow a base field.

    Raises:
        ConfigurationError: On duplicate or reserved field names.
    """
    reserved = {name for name, _ in BASE_FIELDS}
    seen = set()
    for name in info_fields:
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"Invalid information field name: {name!r}")
        if name in reserved:
            raise ConfigurationError(
                f"Information field '{name}' shadows a built-in individual field"
            )
        if name in seen:
            raise ConfigurationError(f"Duplicate information field '{name}'")
        seen.add(name)
    return np.dtype(BASE_FIELDS + [(name, np.float64) for name in info_fields])


def allocate_individuals(n: int, info_fields: Sequence[str] = (FITNESS_FIELD,)) -> np.ndarray:
    """Allocate ``n`` zeroed individuals, all visible.

    Returns:
        Structured array of shape (n,) with make_individual_dtype(info_fields).
    """
    inds = np.zeros(n, dtype=make_individual_dtype(info_fields))
    inds['visible'] = True
    return inds


def allocate_genotypes(n: int, n_loci: int, ploidy: int = 2) -> np.ndarray:
    """Allocate a zeroed genotype array.

    Stored apart from the individual records so genotype-only models can
    slice it directly.

    Returns:
        Zeroed array of shape (n, n_loci, ploidy), dtype int32.
        Axis 0: individuals, Axis 1: loci, Axis 2: allele copies.
    """
    return np.zeros((n, n_loci, ploidy), dtype=np.int32)


# ═══════════════════════════════════════════════════════════════════════
# VIRTUAL SUBPOPULATION IDENTITY
# ═══════════════════════════════════════════════════════════════════════

def _normalize_id(value) -> Optional[int]:
    if value is None:
        return INVALID_ID
    value = int(value)
    return value if value >= 0 else INVALID_ID


@dataclass(frozen=True, init=False)
class VspID:
    """A subpopulation index and an optional virtual subpopulation index.

    Negative or ``None`` indices are stored as INVALID_ID ("unset"). A VspID
    without a subpopulation is invalid and must not be dereferenced.
    """
    subpop: Optional[int]
    vsp: Optional[int]

    def __init__(self, subpop: Optional[int] = INVALID_ID, vsp: Optional[int] = INVALID_ID):
        object.__setattr__(self, 'subpop', _normalize_id(subpop))
        object.__setattr__(self, 'vsp', _normalize_id(vsp))

    @classmethod
    def from_spec(cls, spec) -> "VspID":
        """Build from an int, a VspID, or a sequence ``[subpop]`` / ``[subpop, vsp]``."""
        if isinstance(spec, VspID):
            return spec
        if spec is None or isinstance(spec, (int, np.integer)):
            return cls(spec)
        items = list(spec)
        if len(items) > 2:
            raise ConfigurationError(
                f"A VSP is a (subpop, virtual subpop) pair, got {items}"
            )
        return cls(*items)

    def valid(self) -> bool:
        return self.subpop is not INVALID_ID

    def is_virtual(self) -> bool:
        return self.vsp is not INVALID_ID

    def __str__(self) -> str:
        if self.is_virtual():
            return f"({self.subpop}, {self.vsp})"
        return str(self.subpop)


class SubPopList:
    """An ordered list of (virtual) subpopulations.

    ``SubPopList(None)`` selects all available subpopulations; the concrete
    list is only known once ``expand`` is given a population.
    """

    def __init__(self, subpops=None):
        self._all_avail = subpops is None
        self._vsps: List[VspID] = []
        if subpops is None:
            return
        if isinstance(subpops, (int, np.integer, VspID)):
            subpops = [subpops]
        elif isinstance(subpops, tuple) and len(subpops) == 2 and all(
            isinstance(x, (int, np.integer)) or x is None for x in subpops
        ):
            # a bare (subpop, vsp) pair
            subpops = [subpops]
        for item in subpops:
            self._vsps.append(VspID.from_spec(item))

    @classmethod
    def from_vsps(cls, vsps: Iterable[VspID]) -> "SubPopList":
        out = cls([])
        out._vsps = list(vsps)
        return out

    @property
    def all_avail(self) -> bool:
        return self._all_avail

    def expand(self, pop: "Population") -> "SubPopList":
        """Return a concrete list, one non-virtual VspID per subpopulation if all available."""
        if not self._all_avail:
            return self
        return SubPopList.from_vsps(VspID(sp) for sp in range(pop.num_subpops()))

    def contains(self, vsp) -> bool:
        return VspID.from_spec(vsp) in self._vsps

    def overlap(self, subpop: int) -> bool:
        """True if any entry refers to ``subpop``, virtual or not."""
        return any(v.subpop == subpop for v in self._vsps)

    def empty(self) -> bool:
        return not self._vsps

    def __len__(self) -> int:
        return len(self._vsps)

    def __iter__(self) -> Iterator[VspID]:
        return iter(self._vsps)

    def __getitem__(self, idx: int) -> VspID:
        return self._vsps[idx]

    def __repr__(self) -> str:
        if self._all_avail:
            return "SubPopList(ALL_AVAIL)"
        return f"SubPopList([{', '.join(str(v) for v in self._vsps)}])"
