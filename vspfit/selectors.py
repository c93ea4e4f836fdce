"""Fitness models (selectors).

A selector assigns every individual in its scope a fitness value and
writes it to an information field (``fitness`` by default). Selection
itself happens later: mating schemes pick parents with probability
proportional to that field. A selector alone therefore selects nothing.

Models:
  - MapSelector:  genotype -> fitness dictionary at one or more loci
  - MaSelector:   wildtype / disease allele counts -> fitness table
  - MlSelector:   combines other selectors (multiplicative, additive,
                  heterogeneity)
  - PySelector:   user-supplied function of alleles and generation

Each model evaluates whole batches of individuals with NumPy
(``evaluate``) and single individuals through ``ind_fitness``; both use
the same kernel.
"""

from __future__ import annotations

import copy
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from vspfit.errors import ConfigurationError, EvaluationError, UsageError
from vspfit.types import FITNESS_FIELD, SelectionMode, SubPopList, VspID

if TYPE_CHECKING:
    from vspfit.population import Individual, Population

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# BASE SELECTOR
# ═══════════════════════════════════════════════════════════════════════

class Selector:
    """Base class of all selectors; computes no fitness on its own.

    Args:
        subpops: (Virtual) subpopulations to apply to; None or [] = all.
            A VSP entry such as ``(0, 1)`` evaluates the members of that VSP
            as defined by the population's splitter.
        output: Information field receiving the fitness values.
        parallel_workers: Threads used by ``apply`` (1 = serial).
    """

    def __init__(
        self,
        subpops=None,
        output: str = FITNESS_FIELD,
        parallel_workers: int = 1,
    ):
        if not isinstance(output, str) or not output:
            raise ConfigurationError(f"Selector output field must be a name, got {output!r}")
        if int(parallel_workers) < 1:
            raise ConfigurationError(f"parallel_workers must be >= 1, got {parallel_workers}")
        self.subpops = SubPopList(subpops)
        self.output = output
        self.parallel_workers = int(parallel_workers)

    def clone(self) -> "Selector":
        return copy.deepcopy(self)

    def ind_fitness(self, ind: "Individual", gen: int) -> float:
        """Fitness of a single individual at generation ``gen``."""
        raise NotImplementedError(
            f"{type(self).__name__} is not supposed to be called directly"
        )

    def evaluate(self, pop: "Population", inds: np.ndarray, gen: int) -> np.ndarray:
        """Fitness of individuals ``inds`` (absolute indices) of ``pop``."""
        return np.array(
            [self.ind_fitness(pop.individual(int(i)), gen) for i in inds],
            dtype=np.float64,
        )

    def _scope(self, pop: "Population") -> SubPopList:
        if self.subpops.all_avail or self.subpops.empty():
            return SubPopList(None).expand(pop)
        return self.subpops

    def _scope_indices(self, pop: "Population", vsp: VspID) -> np.ndarray:
        """Absolute indices of the individuals ``vsp`` contributes."""
        begin, _ = pop.subpop_bounds(vsp.subpop)
        if vsp.is_virtual():
            mask = pop.virtual_splitter().mask(pop, vsp.subpop, vsp.vsp)
        else:
            mask = pop.visible_mask(vsp.subpop)
        return begin + np.flatnonzero(mask)

    def _evaluate_parallel(
        self, pop: "Population", inds: np.ndarray, gen: int, workers: int
    ) -> np.ndarray:
        if workers <= 1 or len(inds) < 2 * workers:
            return self.evaluate(pop, inds, gen)
        chunks = np.array_split(inds, workers)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            parts = list(pool.map(lambda chunk: self.evaluate(pop, chunk, gen), chunks))
        return np.concatenate(parts)

    def apply(self, pop: "Population", parallel_workers: Optional[int] = None) -> bool:
        """Write the fitness of every individual in scope to the output field.

        Only visible individuals of a plain subpopulation are evaluated; for
        a VSP in scope, its members are. Errors propagate; values written
        before the error remain.

        Returns:
            True.
        """
        pop.check_info_field(self.output)
        workers = self.parallel_workers if parallel_workers is None else int(parallel_workers)
        gen = pop.generation
        for vsp in self._scope(pop):
            inds = self._scope_indices(pop, vsp)
            if len(inds) == 0:
                continue
            values = self._evaluate_parallel(pop, inds, gen, workers)
            pop.individuals[self.output][inds] = values
            logger.debug(
                "%s: wrote '%s' for %d individuals of %s (gen %d)",
                type(self).__name__, self.output, len(inds), vsp, gen,
            )
        return True

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"


# ═══════════════════════════════════════════════════════════════════════
# GENOTYPE-BASED MODELS
# ═══════════════════════════════════════════════════════════════════════

def _as_loci(loci, owner: str) -> List[int]:
    if isinstance(loci, (int, np.integer)):
        loci = [loci]
    loci = [int(l) for l in loci]
    if not loci:
        raise ConfigurationError(f"{owner}: please specify at least one locus")
    if any(l < 0 for l in loci):
        raise ConfigurationError(f"{owner}: loci must be non-negative, got {loci}")
    return loci


class _LocusSelector(Selector):
    """A selector whose fitness is a function of genotypes at ``loci``.

    Subclasses implement ``_compute(geno, gen)`` over an (n, n_loci, ploidy)
    genotype array.
    """

    def __init__(self, loci, **kwargs):
        super().__init__(**kwargs)
        self.loci = _as_loci(loci, type(self).__name__)

    def _check_population(self, pop: "Population") -> None:
        if max(self.loci) >= pop.n_loci:
            raise UsageError(
                f"{type(self).__name__}: locus {max(self.loci)} out of range for "
                f"population with {pop.n_loci} loci"
            )

    def _compute(self, geno: np.ndarray, gen: int) -> np.ndarray:
        raise NotImplementedError

    def evaluate(self, pop, inds, gen):
        self._check_population(pop)
        inds = np.asarray(inds, dtype=np.int64)
        return self._compute(pop.genotypes[inds][:, self.loci, :], gen)

    def ind_fitness(self, ind, gen):
        self._check_population(ind.population)
        return float(self._compute(ind.genotype(self.loci)[np.newaxis], gen)[0])


class MapSelector(_LocusSelector):
    """Fitness looked up from a genotype dictionary.

    Keys are genotypes at ``loci``, either as allele tuples ordered locus 0
    copy 0, locus 0 copy 1, locus 1 copy 0, ... or as strings ``'a-b'``
    (one locus) / ``'a-b|c-d'`` (two loci). Unless ``phase`` is True the
    copies at a locus are unordered, so ``(0, 1)`` and ``(1, 0)`` name the
    same genotype.

    Raises:
        ConfigurationError: On malformed keys, negative fitness, or two keys
            naming the same genotype with different fitness.
        EvaluationError: During evaluation, for a genotype with no entry.
    """

    def __init__(self, loci, fitness: Dict, phase: bool = False, **kwargs):
        super().__init__(loci, **kwargs)
        self.phase = bool(phase)
        if not fitness:
            raise ConfigurationError("MapSelector: please specify a fitness dictionary")
        self.ploidy: Optional[int] = None
        self.table: Dict[Tuple[int, ...], float] = {}
        for key, value in fitness.items():
            alleles = self._parse_key(key)
            if len(alleles) % len(self.loci) != 0:
                raise ConfigurationError(
                    f"MapSelector: genotype {key!r} does not cover {len(self.loci)} loci"
                )
            ploidy = len(alleles) // len(self.loci)
            if self.ploidy is None:
                self.ploidy = ploidy
            elif ploidy != self.ploidy:
                raise ConfigurationError(
                    f"MapSelector: genotype {key!r} has ploidy {ploidy}, expected {self.ploidy}"
                )
            value = float(value)
            if not value >= 0:
                raise ConfigurationError(
                    f"MapSelector: fitness of genotype {key!r} must be >= 0, got {value}"
                )
            canonical = self._canonical(np.asarray(alleles).reshape(len(self.loci), ploidy))
            if canonical in self.table and self.table[canonical] != value:
                raise ConfigurationError(
                    f"MapSelector: conflicting fitness values for genotype {key!r}"
                )
            self.table[canonical] = value

    @staticmethod
    def _parse_key(key) -> List[int]:
        try:
            if isinstance(key, str):
                return [int(a) for locus in key.split('|') for a in locus.split('-')]
            if isinstance(key, (int, np.integer)):
                return [int(key)]
            return [int(a) for a in key]
        except (TypeError, ValueError) as err:
            raise ConfigurationError(f"MapSelector: invalid genotype key {key!r}") from err

    def _canonical(self, geno: np.ndarray) -> Tuple[int, ...]:
        """Dictionary key of one (n_loci, ploidy) genotype."""
        if not self.phase:
            geno = np.sort(geno, axis=1)
        return tuple(int(a) for a in geno.reshape(-1))

    @staticmethod
    def _key_str(key: Tuple[int, ...], ploidy: int) -> str:
        loci = [key[i:i + ploidy] for i in range(0, len(key), ploidy)]
        return '|'.join('-'.join(str(a) for a in locus) for locus in loci)

    def _check_population(self, pop):
        super()._check_population(pop)
        if pop.ploidy != self.ploidy:
            raise UsageError(
                f"MapSelector: genotypes are given for ploidy {self.ploidy}, "
                f"population has ploidy {pop.ploidy}"
            )

    def _compute(self, geno, gen):
        n = len(geno)
        if n == 0:
            return np.zeros(0, dtype=np.float64)
        if not self.phase:
            geno = np.sort(geno, axis=2)
        flat = geno.reshape(n, -1)
        unique, inverse = np.unique(flat, axis=0, return_inverse=True)
        values = np.empty(len(unique), dtype=np.float64)
        for j, row in enumerate(unique):
            key = tuple(int(a) for a in row)
            try:
                values[j] = self.table[key]
            except KeyError as err:
                raise EvaluationError(
                    f"MapSelector: no fitness value for genotype {self._key_str(key, self.ploidy)}"
                ) from err
        return values[np.asarray(inverse).reshape(-1)]


class MaSelector(_LocusSelector):
    """Multi-allele model: wildtype versus disease alleles.

    Any allele not in ``wildtype`` is a disease allele. For diploid
    individuals each locus carries 0, 1 or 2 disease alleles (AA, Aa, aa),
    and ``fitness`` lists one value per combination with the first locus
    varying slowest: ``AABB, AABb, AAbb, AaBB, AaBb, Aabb, aaBB, aaBb, aabb``
    for two loci. Its length must be ``3 ** len(loci)``.
    """

    def __init__(self, loci, fitness: Sequence[float], wildtype=(0,), **kwargs):
        super().__init__(loci, **kwargs)
        self.fitness = np.asarray([float(f) for f in fitness], dtype=np.float64)
        expected = 3 ** len(self.loci)
        if len(self.fitness) != expected:
            raise ConfigurationError(
                f"MaSelector: please specify fitness for each combination of genotype "
                f"({expected} values for {len(self.loci)} loci), got {len(self.fitness)}"
            )
        if np.any(~(self.fitness >= 0)):
            raise ConfigurationError("MaSelector: fitness values must be >= 0")
        if isinstance(wildtype, (int, np.integer)):
            wildtype = [wildtype]
        self.wildtype = sorted({int(a) for a in wildtype})
        if not self.wildtype:
            raise ConfigurationError("MaSelector: please specify at least one wildtype allele")
        self._radix = 3 ** np.arange(len(self.loci) - 1, -1, -1, dtype=np.int64)

    def _check_population(self, pop):
        super()._check_population(pop)
        if pop.ploidy != 2:
            raise UsageError(
                f"MaSelector only works for diploid populations, got ploidy {pop.ploidy}"
            )

    def _compute(self, geno, gen):
        n_disease = np.count_nonzero(~np.isin(geno, self.wildtype), axis=2)
        return self.fitness[n_disease.astype(np.int64) @ self._radix]


# ═══════════════════════════════════════════════════════════════════════
# MULTI-LOCUS COMBINATION
# ═══════════════════════════════════════════════════════════════════════

_MODE_NAMES = {m.name.lower(): m for m in SelectionMode}


def as_selection_mode(mode) -> SelectionMode:
    """Accept a SelectionMode, its int value, or its (case-insensitive) name."""
    if isinstance(mode, str):
        try:
            return _MODE_NAMES[mode.lower()]
        except KeyError as err:
            raise ConfigurationError(
                f"Unknown selection mode '{mode}', expected one of {sorted(_MODE_NAMES)}"
            ) from err
    try:
        return SelectionMode(mode)
    except ValueError as err:
        raise ConfigurationError(f"Unknown selection mode {mode!r}") from err


class MlSelector(Selector):
    """Combine the fitness of several selectors.

    Modes (f_i = fitness from child i):
      MULTIPLICATIVE:  f = Π f_i
      ADDITIVE:        f = max(0, 1 − Σ s_i), s_i = 1 − f_i
      HETEROGENEITY:   f = 1 − Π (1 − f_i)

    Children are deep-copied and only their fitness is used; their own
    scope and output field are ignored. A multi-locus selector cannot be
    one of the children.
    """

    def __init__(self, selectors: Sequence[Selector], mode=SelectionMode.MULTIPLICATIVE, **kwargs):
        super().__init__(**kwargs)
        children = list(selectors)
        if not children:
            raise ConfigurationError("MlSelector: please specify at least one selector")
        for i, s in enumerate(children):
            if not isinstance(s, Selector):
                raise ConfigurationError(
                    f"MlSelector: expecting a list of fitness calculators, item {i} "
                    f"is {type(s).__name__}"
                )
            if isinstance(s, MlSelector):
                raise ConfigurationError("MlSelector: multi-locus selectors can not be nested")
        self.selectors: List[Selector] = [s.clone() for s in children]
        self.mode = as_selection_mode(mode)

    def _combine(self, values: np.ndarray) -> np.ndarray:
        """Combine a (n_selectors, n_individuals) array of child fitness."""
        if self.mode == SelectionMode.MULTIPLICATIVE:
            return np.prod(values, axis=0)
        if self.mode == SelectionMode.ADDITIVE:
            return np.maximum(0.0, 1.0 - np.sum(1.0 - values, axis=0))
        return 1.0 - np.prod(1.0 - values, axis=0)

    def evaluate(self, pop, inds, gen):
        values = np.stack([s.evaluate(pop, inds, gen) for s in self.selectors])
        return self._combine(values)

    def ind_fitness(self, ind, gen):
        values = np.array([[s.ind_fitness(ind, gen)] for s in self.selectors], dtype=np.float64)
        return float(self._combine(values)[0])

    def __repr__(self) -> str:
        return f"<MlSelector {self.mode.name.lower()} of {len(self.selectors)} selectors>"


# ═══════════════════════════════════════════════════════════════════════
# USER FUNCTION
# ═══════════════════════════════════════════════════════════════════════

class PySelector(_LocusSelector):
    """Fitness returned by a user-supplied function.

    For each individual, ``func(alleles, gen)`` is called with the alleles
    at ``loci`` (locus 0 copy 0, locus 0 copy 1, locus 1 copy 0, ...) as a
    1-D integer array and the generation number, and must return one
    non-negative number.

    Calls are serialized behind a lock unless ``thread_safe`` is True, so a
    function that is not re-entrant is safe under ``parallel_workers > 1``.
    """

    def __init__(self, loci, func: Callable[[np.ndarray, int], float], thread_safe: bool = False, **kwargs):
        if not callable(func):
            raise ConfigurationError("PySelector: passed variable is not a callable function")
        super().__init__(loci, **kwargs)
        self.func = func
        self.thread_safe = bool(thread_safe)
        self._lock = threading.Lock()

    def __deepcopy__(self, memo):
        # The function is shared, not copied.
        other = copy.copy(self)
        other.loci = list(self.loci)
        other.subpops = copy.deepcopy(self.subpops, memo)
        other._lock = threading.Lock()
        return other

    def _call(self, alleles: np.ndarray, gen: int) -> float:
        try:
            if self.thread_safe:
                value = self.func(alleles, gen)
            else:
                with self._lock:
                    value = self.func(alleles, gen)
        except Exception as err:
            raise EvaluationError(
                f"PySelector: fitness function failed for alleles {alleles.tolist()} "
                f"at generation {gen}: {err}"
            ) from err
        try:
            value = float(value)
        except (TypeError, ValueError) as err:
            raise EvaluationError(
                f"PySelector: fitness function returned a non-numeric value {value!r}"
            ) from err
        if not value >= 0:
            raise EvaluationError(
                f"PySelector: fitness must be >= 0, function returned {value} "
                f"for alleles {alleles.tolist()}"
            )
        return value

    def _compute(self, geno, gen):
        out = np.empty(len(geno), dtype=np.float64)
        for i, g in enumerate(geno):
            out[i] = self._call(np.array(g.reshape(-1)), gen)
        return out
