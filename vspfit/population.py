"""Minimal population container consumed by the splitter and selector engines.

Individuals of all subpopulations are stored contiguously in one structured
array (see vspfit.types.make_individual_dtype), subpopulation after
subpopulation, in a stable storage order. Genotypes live in a separate
(N, n_loci, ploidy) integer array with the same ordering.

Individual indices passed to splitters are RELATIVE to their
subpopulation; indices passed to Selector.evaluate are ABSOLUTE.

The container also owns at most one VSP splitter, through which virtual
subpopulations are named, sized and (de)activated.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Generator, Optional, Sequence, Tuple

import numpy as np

from vspfit.errors import ConfigurationError, UsageError
from vspfit.types import (
    FITNESS_FIELD,
    Sex,
    VspID,
    allocate_genotypes,
    allocate_individuals,
)

if TYPE_CHECKING:
    from vspfit.splitters import Splitter


class Individual:
    """A read/write view of one stored individual."""

    __slots__ = ('_pop', '_idx')

    def __init__(self, pop: "Population", idx: int):
        self._pop = pop
        self._idx = idx

    @property
    def index(self) -> int:
        """Absolute storage index."""
        return self._idx

    @property
    def population(self) -> "Population":
        return self._pop

    def allele(self, locus: int, ploidy: int = 0) -> int:
        return int(self._pop.genotypes[self._idx, locus, ploidy])

    def genotype(self, loci: Optional[Sequence[int]] = None) -> np.ndarray:
        """Alleles at ``loci`` (all loci if None), shape (len(loci), ploidy)."""
        geno = self._pop.genotypes[self._idx]
        return geno if loci is None else geno[list(loci)]

    @property
    def sex(self) -> Sex:
        return Sex(int(self._pop.individuals['sex'][self._idx]))

    @property
    def affected(self) -> bool:
        return bool(self._pop.individuals['affected'][self._idx])

    @property
    def visible(self) -> bool:
        return bool(self._pop.individuals['visible'][self._idx])

    def info(self, field: str) -> float:
        self._pop.check_info_field(field)
        return float(self._pop.individuals[field][self._idx])

    def set_info(self, field: str, value: float) -> None:
        self._pop.check_info_field(field)
        self._pop.individuals[field][self._idx] = value

    def __repr__(self) -> str:
        return f"Individual(index={self._idx}, sex={self.sex.name}, affected={self.affected})"


class Population:
    """Individuals grouped into subpopulations, with an optional VSP splitter.

    Args:
        subpop_sizes: Number of individuals per subpopulation.
        n_loci: Number of loci per chromosome copy.
        ploidy: Number of chromosome copies (2 = diploid).
        info_fields: Names of float information fields.
    """

    def __init__(
        self,
        subpop_sizes: Sequence[int],
        n_loci: int,
        ploidy: int = 2,
        info_fields: Sequence[str] = (FITNESS_FIELD,),
    ):
        sizes = [int(s) for s in subpop_sizes]
        if not sizes or any(s < 0 for s in sizes):
            raise ConfigurationError(
                f"subpop_sizes must be a non-empty list of non-negative sizes, got {list(subpop_sizes)}"
            )
        if n_loci < 1:
            raise ConfigurationError(f"n_loci must be >= 1, got {n_loci}")
        if ploidy < 1:
            raise ConfigurationError(f"ploidy must be >= 1, got {ploidy}")

        self.n_loci = int(n_loci)
        self.ploidy = int(ploidy)
        self.info_fields: Tuple[str, ...] = tuple(info_fields)
        self.generation = 0

        self._sizes = np.asarray(sizes, dtype=np.int64)
        self._offsets = np.concatenate(([0], np.cumsum(self._sizes)))
        n = int(self._offsets[-1])
        self.individuals = allocate_individuals(n, self.info_fields)
        self.genotypes = allocate_genotypes(n, self.n_loci, self.ploidy)
        self._splitter: Optional["Splitter"] = None

    # ── Sizes & bounds ────────────────────────────────────────────────

    def pop_size(self) -> int:
        return int(self._offsets[-1])

    def num_subpops(self) -> int:
        return len(self._sizes)

    def _check_subpop(self, subpop) -> int:
        if subpop is None:
            raise UsageError("Invalid (unset) subpopulation index")
        subpop = int(subpop)
        if not 0 <= subpop < len(self._sizes):
            raise UsageError(
                f"Subpopulation index {subpop} out of range [0, {len(self._sizes)})"
            )
        return subpop

    def check_info_field(self, field: str) -> None:
        if field not in self.info_fields:
            raise UsageError(
                f"Population has no information field '{field}' "
                f"(available: {list(self.info_fields)})"
            )

    def subpop_bounds(self, subpop: int) -> Tuple[int, int]:
        """Absolute [begin, end) storage range of a subpopulation."""
        subpop = self._check_subpop(subpop)
        return int(self._offsets[subpop]), int(self._offsets[subpop + 1])

    def subpop_size(self, subpop) -> int:
        """Size of a subpopulation, or of a virtual subpopulation given a VspID/pair."""
        vsp = VspID.from_spec(subpop)
        if not vsp.valid():
            raise UsageError("Invalid (unset) subpopulation index")
        if vsp.is_virtual():
            return self.virtual_splitter().size(self, vsp.subpop, vsp.vsp)
        return int(self._sizes[self._check_subpop(vsp.subpop)])

    # ── Individual access ─────────────────────────────────────────────

    def individual(self, ind: int, subpop: Optional[int] = None) -> Individual:
        """Individual ``ind``; relative to ``subpop`` when given, absolute otherwise."""
        if subpop is not None:
            begin, end = self.subpop_bounds(subpop)
            if not 0 <= ind < end - begin:
                raise UsageError(f"Individual index {ind} out of range for subpopulation {subpop}")
            return Individual(self, begin + int(ind))
        if not 0 <= ind < self.pop_size():
            raise UsageError(f"Individual index {ind} out of range [0, {self.pop_size()})")
        return Individual(self, int(ind))

    def individuals_of(self, subpop: int) -> np.ndarray:
        """Structured-array view of one subpopulation's records."""
        begin, end = self.subpop_bounds(subpop)
        return self.individuals[begin:end]

    def genotypes_of(self, subpop: int) -> np.ndarray:
        """(n, n_loci, ploidy) view of one subpopulation's genotypes."""
        begin, end = self.subpop_bounds(subpop)
        return self.genotypes[begin:end]

    def info(self, field: str, subpop: Optional[int] = None) -> np.ndarray:
        """View of an information field, for one subpopulation or all individuals."""
        self.check_info_field(field)
        if subpop is None:
            return self.individuals[field]
        return self.individuals_of(subpop)[field]

    def set_info(self, field: str, values, subpop: Optional[int] = None) -> None:
        self.check_info_field(field)
        if subpop is None:
            self.individuals[field] = values
        else:
            begin, end = self.subpop_bounds(subpop)
            self.individuals[field][begin:end] = values

    # ── Visibility ────────────────────────────────────────────────────

    def visible_mask(self, subpop: int) -> np.ndarray:
        return self.individuals_of(subpop)['visible'].copy()

    def set_visible(self, subpop: int, mask) -> None:
        """Set visibility of every individual of ``subpop`` (a bool or a per-individual mask)."""
        begin, end = self.subpop_bounds(subpop)
        mask = np.asarray(mask, dtype=np.bool_)
        if mask.ndim and mask.shape != (end - begin,):
            raise UsageError(
                f"Visibility mask of shape {mask.shape} does not match "
                f"subpopulation {subpop} of size {end - begin}"
            )
        self.individuals['visible'][begin:end] = mask

    # ── Virtual subpopulations ────────────────────────────────────────

    def set_virtual_splitter(self, splitter: Optional["Splitter"]) -> None:
        """Install a (cloned) VSP splitter; ``None`` removes the current one."""
        if self._splitter is not None and self._splitter.activated_subpop is not None:
            raise UsageError(
                f"Cannot replace splitter while subpopulation "
                f"{self._splitter.activated_subpop} is activated"
            )
        self._splitter = None if splitter is None else splitter.clone()

    def virtual_splitter(self) -> "Splitter":
        if self._splitter is None:
            raise UsageError("No virtual splitter is assigned to this population")
        return self._splitter

    def has_virtual_splitter(self) -> bool:
        return self._splitter is not None

    def num_virtual_subpops(self) -> int:
        return 0 if self._splitter is None else self._splitter.num_virtual_subpops()

    def subpop_name(self, vsp) -> str:
        vsp = VspID.from_spec(vsp)
        if vsp.is_virtual():
            return self.virtual_splitter().name(vsp.vsp)
        return f"SubPop {self._check_subpop(vsp.subpop)}"

    def activate_virtual_subpop(self, vsp) -> np.ndarray:
        """Make only members of ``vsp`` visible; returns the membership mask."""
        vsp = VspID.from_spec(vsp)
        if not vsp.is_virtual():
            raise UsageError(f"{vsp} is not a virtual subpopulation")
        return self.virtual_splitter().activate(self, vsp.subpop, vsp.vsp)

    def deactivate_virtual_subpop(self, subpop: int) -> None:
        self.virtual_splitter().deactivate(self, subpop)

    @contextmanager
    def virtual_subpop(self, vsp) -> Generator[np.ndarray, None, None]:
        """Activate ``vsp`` for the duration of a with-block.

        Usage:
            with pop.virtual_subpop((0, 1)) as mask:
                selector.apply(pop)
        """
        vsp = VspID.from_spec(vsp)
        mask = self.activate_virtual_subpop(vsp)
        try:
            yield mask
        finally:
            self.deactivate_virtual_subpop(vsp.subpop)

    def __repr__(self) -> str:
        return (
            f"Population(subpop_sizes={self._sizes.tolist()}, n_loci={self.n_loci}, "
            f"ploidy={self.ploidy}, info_fields={list(self.info_fields)})"
        )
