"""Virtual subpopulation (VSP) splitters.

A splitter defines a fixed number of named VSPs: groups of individuals of
a subpopulation that share some property. VSPs need not cover the whole
subpopulation and may overlap. Individuals are never copied or reordered;
membership is a predicate evaluated against the population storage.

Every splitter answers the same questions:
  - num_virtual_subpops():  how many VSPs it defines (fixed at construction)
  - name(vsp):              default or user-supplied VSP name
  - contains(pop, ind, vsp): is individual ``ind`` (relative index) a member
  - mask(pop, subpop, vsp): membership bitmap of a whole subpopulation
  - size(pop, subpop, vsp): number of members
  - activate / deactivate:  restrict / restore individual visibility

All membership questions go through one vectorized kernel per splitter,
``_match(pop, subpop, vsp, inds)``, so ``contains``, ``mask`` and ``size``
always agree.

Leaf splitters (this module):
  SexSplitter, AffectionSplitter, InfoSplitter, ProportionSplitter,
  RangeSplitter, GenotypeSplitter
Composite splitters: see vspfit.composite.
"""

from __future__ import annotations

import copy
import logging
import math
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

import numpy as np

from vspfit.errors import ConfigurationError, UsageError
from vspfit.types import Sex, VspID

if TYPE_CHECKING:
    from vspfit.population import Population

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# BASE SPLITTER
# ═══════════════════════════════════════════════════════════════════════

class Splitter(ABC):
    """Base class of all VSP splitters.

    Only one subpopulation can be activated at a time per splitter. A
    subclass sets up its own parameters and THEN calls
    ``super().__init__(names)``, so that user-supplied names can be checked
    against the number of VSPs.

    Args:
        names: Optional VSP names replacing the defaults. Must have exactly
            one entry per VSP.
    """

    def __init__(self, names: Optional[Sequence[str]] = None):
        if isinstance(names, str):
            names = [names]
        self._names: Optional[List[str]] = [str(n) for n in names] if names else None
        self._activated: Optional[int] = None
        if self._names is not None and len(self._names) != self.num_virtual_subpops():
            raise ConfigurationError(
                f"{type(self).__name__} defines {self.num_virtual_subpops()} VSPs "
                f"but {len(self._names)} names were given"
            )

    # ── Model-specific ────────────────────────────────────────────────

    @abstractmethod
    def num_virtual_subpops(self) -> int:
        """Number of VSPs defined by this splitter."""

    @abstractmethod
    def _default_name(self, vsp: int) -> str:
        """Name of ``vsp`` when no names were supplied."""

    @abstractmethod
    def _match(self, pop: "Population", subpop: int, vsp: int, inds: np.ndarray) -> np.ndarray:
        """Membership of individuals ``inds`` (relative indices) of ``subpop`` in ``vsp``.

        Returns:
            Bool array with one entry per index in ``inds``.
        """

    # ── Contract ──────────────────────────────────────────────────────

    @property
    def activated_subpop(self) -> Optional[int]:
        """Index of the activated subpopulation, or None."""
        return self._activated

    def clone(self) -> "Splitter":
        """Deep copy with its own, idle, activation state."""
        other = copy.deepcopy(self)
        other._activated = None
        return other

    def _check_vsp(self, vsp) -> int:
        if vsp is None:
            raise UsageError(f"{type(self).__name__}: invalid (unset) virtual subpopulation index")
        vsp = int(vsp)
        if not 0 <= vsp < self.num_virtual_subpops():
            raise UsageError(
                f"{type(self).__name__}: virtual subpopulation index {vsp} out of "
                f"range [0, {self.num_virtual_subpops()})"
            )
        return vsp

    def name(self, vsp: int) -> str:
        vsp = self._check_vsp(vsp)
        if self._names is not None:
            return self._names[vsp]
        return self._default_name(vsp)

    def names(self) -> List[str]:
        return [self.name(v) for v in range(self.num_virtual_subpops())]

    def contains(self, pop: "Population", ind: int, vsp) -> bool:
        """True if individual ``ind`` (relative to ``vsp.subpop``) belongs to ``vsp``."""
        vsp = VspID.from_spec(vsp)
        if not vsp.valid() or not vsp.is_virtual():
            raise UsageError(f"contains() needs a virtual subpopulation, got {vsp}")
        v = self._check_vsp(vsp.vsp)
        n = pop.subpop_size(vsp.subpop)
        if not 0 <= ind < n:
            raise UsageError(
                f"Individual index {ind} out of range for subpopulation {vsp.subpop} of size {n}"
            )
        return bool(self._match(pop, vsp.subpop, v, np.array([ind], dtype=np.int64))[0])

    def mask(self, pop: "Population", subpop: int, vsp: int) -> np.ndarray:
        """Membership bitmap of every individual of ``subpop``, in storage order."""
        vsp = self._check_vsp(vsp)
        n = pop.subpop_size(subpop)
        return np.asarray(self._match(pop, subpop, vsp, np.arange(n, dtype=np.int64)), dtype=np.bool_)

    def size(self, pop: "Population", subpop: int, vsp: int) -> int:
        return int(np.count_nonzero(self.mask(pop, subpop, vsp)))

    def activate(self, pop: "Population", subpop: int, vsp: int) -> np.ndarray:
        """Make only members of VSP ``vsp`` of ``subpop`` visible.

        Activating the subpopulation that is already activated first
        deactivates it, so the new visibility is exactly the membership of
        ``vsp`` (no intersection with the previous VSP).

        Returns:
            The membership mask that was applied.

        Raises:
            UsageError: If another subpopulation is currently activated.
        """
        if self._activated is not None:
            if self._activated != subpop:
                raise UsageError(
                    f"Cannot activate subpopulation {subpop}: subpopulation "
                    f"{self._activated} is still activated"
                )
            self.deactivate(pop, subpop)
        mask = self.mask(pop, subpop, vsp)
        pop.set_visible(subpop, mask)
        self._activated = subpop
        logger.debug(
            "activated VSP (%d, %d) '%s': %d of %d visible",
            subpop, vsp, self.name(vsp), int(mask.sum()), len(mask),
        )
        return mask

    def deactivate(self, pop: "Population", subpop: int) -> None:
        """Make every individual of ``subpop`` visible again."""
        if subpop != self._activated:
            raise UsageError(
                f"Deactivate non-activated virtual subpopulation: {subpop} "
                f"(activated: {self._activated})"
            )
        pop.set_visible(subpop, True)
        self._activated = None
        logger.debug("deactivated subpopulation %d", subpop)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} with {self.num_virtual_subpops()} VSPs>"


# ═══════════════════════════════════════════════════════════════════════
# PARAMETER VALIDATION
# ═══════════════════════════════════════════════════════════════════════

def _as_ranges(ranges, what: str, non_negative: bool = False) -> List[Tuple[float, float]]:
    """Validate a list of [lower, upper) pairs."""
    out = []
    for i, pair in enumerate(ranges):
        pair = list(pair)
        if len(pair) != 2:
            raise ConfigurationError(f"{what}[{i}] must be a [lower, upper) pair, got {pair}")
        lo, hi = pair
        if lo > hi:
            raise ConfigurationError(f"{what}[{i}]: lower bound {lo} exceeds upper bound {hi}")
        if non_negative and lo < 0:
            raise ConfigurationError(f"{what}[{i}]: bounds must be non-negative, got {pair}")
        out.append((lo, hi))
    if not out:
        raise ConfigurationError(f"{what} must define at least one range")
    return out


def _fmt(value) -> str:
    return f"{value:g}" if isinstance(value, float) else str(value)


# ═══════════════════════════════════════════════════════════════════════
# SEX & AFFECTION
# ═══════════════════════════════════════════════════════════════════════

class SexSplitter(Splitter):
    """Two VSPs: males (VSP 0) and females (VSP 1)."""

    def num_virtual_subpops(self) -> int:
        return 2

    def _default_name(self, vsp: int) -> str:
        return "MALE" if vsp == 0 else "FEMALE"

    def _match(self, pop, subpop, vsp, inds):
        sex = pop.individuals_of(subpop)['sex'][inds]
        return sex == (Sex.MALE if vsp == 0 else Sex.FEMALE)


class AffectionSplitter(Splitter):
    """Two VSPs: unaffected (VSP 0) and affected (VSP 1) individuals."""

    def num_virtual_subpops(self) -> int:
        return 2

    def _default_name(self, vsp: int) -> str:
        return "UNAFFECTED" if vsp == 0 else "AFFECTED"

    def _match(self, pop, subpop, vsp, inds):
        affected = pop.individuals_of(subpop)['affected'][inds]
        return affected if vsp == 1 else ~affected


# ═══════════════════════════════════════════════════════════════════════
# INFORMATION FIELD
# ═══════════════════════════════════════════════════════════════════════

class InfoSplitter(Splitter):
    """VSPs defined by the value of an information field.

    Exactly one of the following defines the VSPs:
      values:  one VSP per value, ``field == value``
      cutoff:  len(cutoff)+1 VSPs, ``field < c0``, ``c0 <= field < c1``,
               ..., ``field >= c[-1]``; cutoffs strictly increasing
      ranges:  one VSP per ``[lower, upper)`` range; ranges may overlap

    NaN field values belong to no VSP.
    """

    def __init__(
        self,
        field: str,
        values: Optional[Sequence[float]] = None,
        cutoff: Optional[Sequence[float]] = None,
        ranges: Optional[Sequence[Sequence[float]]] = None,
        names: Optional[Sequence[str]] = None,
    ):
        if not isinstance(field, str) or not field:
            raise ConfigurationError(f"InfoSplitter needs an information field name, got {field!r}")
        given = [p for p in (values, cutoff, ranges) if p is not None and len(p) > 0]
        if len(given) != 1:
            raise ConfigurationError(
                "InfoSplitter needs exactly one of 'values', 'cutoff' or 'ranges'"
            )
        self.field = field
        self.values: Optional[List[float]] = None
        self.cutoff: Optional[List[float]] = None
        self.ranges: Optional[List[Tuple[float, float]]] = None

        if values is not None and len(values) > 0:
            self.values = [float(v) for v in values]
        elif cutoff is not None and len(cutoff) > 0:
            cutoff = [float(c) for c in cutoff]
            if any(b <= a for a, b in zip(cutoff, cutoff[1:])):
                raise ConfigurationError(
                    f"InfoSplitter cutoff values must be strictly increasing, got {cutoff}"
                )
            self.cutoff = cutoff
        else:
            self.ranges = [(float(lo), float(hi)) for lo, hi in _as_ranges(ranges, "ranges")]
        super().__init__(names)

    def num_virtual_subpops(self) -> int:
        if self.values is not None:
            return len(self.values)
        if self.cutoff is not None:
            return len(self.cutoff) + 1
        return len(self.ranges)

    def _bounds(self, vsp: int) -> Tuple[float, float]:
        """[lower, upper) interval of a cutoff or range VSP."""
        if self.ranges is not None:
            return self.ranges[vsp]
        lo = -math.inf if vsp == 0 else self.cutoff[vsp - 1]
        hi = math.inf if vsp == len(self.cutoff) else self.cutoff[vsp]
        return lo, hi

    def _default_name(self, vsp: int) -> str:
        if self.values is not None:
            return f"{self.field} = {_fmt(self.values[vsp])}"
        lo, hi = self._bounds(vsp)
        if lo == -math.inf:
            return f"{self.field} < {_fmt(hi)}"
        if hi == math.inf:
            return f"{self.field} >= {_fmt(lo)}"
        return f"{_fmt(lo)} <= {self.field} < {_fmt(hi)}"

    def _match(self, pop, subpop, vsp, inds):
        v = pop.info(self.field, subpop)[inds]
        if self.values is not None:
            return v == self.values[vsp]
        lo, hi = self._bounds(vsp)
        if hi == math.inf:
            return v >= lo
        return (v >= lo) & (v < hi)


# ═══════════════════════════════════════════════════════════════════════
# PROPORTION & RANGE (storage order)
# ═══════════════════════════════════════════════════════════════════════

class ProportionSplitter(Splitter):
    """VSPs of contiguous blocks holding given proportions of a subpopulation.

    Block ``k`` has ``floor(p_k * N + 0.5)`` individuals; the last block
    takes whatever remains so that the blocks exactly cover the
    subpopulation.
    """

    def __init__(self, proportions: Sequence[float], names: Optional[Sequence[str]] = None):
        props = [float(p) for p in proportions]
        if not props:
            raise ConfigurationError("ProportionSplitter needs at least one proportion")
        if any(p <= 0 for p in props):
            raise ConfigurationError(f"Proportions must be positive, got {props}")
        if abs(sum(props) - 1.0) > 1e-6:
            raise ConfigurationError(f"Proportions must add up to 1, got sum {sum(props)}")
        self.proportions = props
        super().__init__(names)

    def num_virtual_subpops(self) -> int:
        return len(self.proportions)

    def _default_name(self, vsp: int) -> str:
        return f"Prop {_fmt(self.proportions[vsp])}"

    def block_bounds(self, n: int) -> List[Tuple[int, int]]:
        """[begin, end) of every block for a subpopulation of size ``n``."""
        bounds = []
        begin = 0
        for k, p in enumerate(self.proportions):
            if k == len(self.proportions) - 1:
                end = n
            else:
                end = min(n, begin + int(math.floor(p * n + 0.5)))
            bounds.append((begin, end))
            begin = end
        return bounds

    def _match(self, pop, subpop, vsp, inds):
        begin, end = self.block_bounds(pop.subpop_size(subpop))[vsp]
        return (inds >= begin) & (inds < end)

    def size(self, pop, subpop, vsp) -> int:
        vsp = self._check_vsp(vsp)
        begin, end = self.block_bounds(pop.subpop_size(subpop))[vsp]
        return end - begin


class RangeSplitter(Splitter):
    """VSPs of individuals whose storage index falls in ``[begin, end)``.

    For example ``RangeSplitter([[0, 20], [40, 50]])`` defines two VSPs,
    individuals 0..19 and individuals 40..49. Ranges beyond the end of a
    subpopulation are truncated.
    """

    def __init__(self, ranges: Sequence[Sequence[int]], names: Optional[Sequence[str]] = None):
        self.ranges = [(int(lo), int(hi)) for lo, hi in _as_ranges(ranges, "ranges", non_negative=True)]
        super().__init__(names)

    def num_virtual_subpops(self) -> int:
        return len(self.ranges)

    def _default_name(self, vsp: int) -> str:
        lo, hi = self.ranges[vsp]
        return f"Range [{lo}, {hi})"

    def _match(self, pop, subpop, vsp, inds):
        lo, hi = self.ranges[vsp]
        return (inds >= lo) & (inds < hi)

    def size(self, pop, subpop, vsp) -> int:
        vsp = self._check_vsp(vsp)
        n = pop.subpop_size(subpop)
        lo, hi = self.ranges[vsp]
        return max(0, min(hi, n) - min(lo, n))


# ═══════════════════════════════════════════════════════════════════════
# GENOTYPE
# ═══════════════════════════════════════════════════════════════════════

class GenotypeSplitter(Splitter):
    """VSPs defined by genotype at ``loci``.

    Each row of ``alleles`` defines one VSP. Alleles in a row are arranged
    by haplotype: copy 0 at every locus, then copy 1 at every locus, and so
    on. A row may hold several such genotypes back to back; individuals
    matching any of them are members. A flat list defines a single VSP.

    Example (diploid): ``loci=[0, 1], alleles=[0, 0, 1, 1]`` has copy 0 =
    (0, 0) and copy 1 = (1, 1). With ``phase=True`` only ``-0-0-/-1-1-``
    qualifies; with ``phase=False`` the copies at each locus may appear in
    any order, so ``-0-1-/-1-0-`` etc. qualify too.
    """

    def __init__(
        self,
        loci: Sequence[int],
        alleles: Sequence,
        phase: bool = False,
        names: Optional[Sequence[str]] = None,
    ):
        if isinstance(loci, (int, np.integer)):
            loci = [loci]
        self.loci = [int(l) for l in loci]
        if not self.loci or any(l < 0 for l in self.loci):
            raise ConfigurationError(f"GenotypeSplitter needs non-negative loci, got {list(loci)}")
        rows = list(alleles)
        if rows and all(isinstance(a, (int, np.integer)) for a in rows):
            rows = [rows]
        if not rows:
            raise ConfigurationError("GenotypeSplitter needs at least one allele list")
        self.alleles: List[List[int]] = []
        for i, row in enumerate(rows):
            row = [int(a) for a in row]
            if not row or len(row) % len(self.loci) != 0:
                raise ConfigurationError(
                    f"alleles[{i}] has {len(row)} alleles, which is not a positive "
                    f"multiple of the number of loci ({len(self.loci)})"
                )
            self.alleles.append(row)
        self.phase = bool(phase)
        super().__init__(names)

    def num_virtual_subpops(self) -> int:
        return len(self.alleles)

    def _default_name(self, vsp: int) -> str:
        loci = ",".join(str(l) for l in self.loci)
        return f"Genotype {loci}: {' '.join(str(a) for a in self.alleles[vsp])}"

    def _genotype_groups(self, vsp: int, ploidy: int) -> np.ndarray:
        """Alternative genotypes of ``vsp`` as an (n_groups, n_loci, ploidy) array."""
        row = self.alleles[vsp]
        width = len(self.loci) * ploidy
        if len(row) % width != 0:
            raise UsageError(
                f"GenotypeSplitter: {len(row)} alleles for VSP {vsp} cannot be split "
                f"into genotypes of {len(self.loci)} loci x {ploidy} copies"
            )
        # (groups, ploidy, loci) in haplotype order -> (groups, loci, ploidy)
        return np.asarray(row).reshape(-1, ploidy, len(self.loci)).transpose(0, 2, 1)

    def _match(self, pop, subpop, vsp, inds):
        if max(self.loci) >= pop.n_loci:
            raise UsageError(
                f"GenotypeSplitter: locus {max(self.loci)} out of range for "
                f"population with {pop.n_loci} loci"
            )
        geno = pop.genotypes_of(subpop)[inds][:, self.loci, :]
        groups = self._genotype_groups(vsp, pop.ploidy)
        if not self.phase:
            geno = np.sort(geno, axis=2)
            groups = np.sort(groups, axis=2)
        hit = np.zeros(len(inds), dtype=np.bool_)
        for g in groups:
            hit |= np.all(geno == g, axis=(1, 2))
        return hit
