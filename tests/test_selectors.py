"""Tests for vspfit.selectors — fitness models and their application.

Acceptance criteria:
  - MapSelector looks genotypes up by (un)ordered alleles
  - MaSelector indexes its table by disease-allele counts, first locus slowest
  - MlSelector combines multiplicatively, additively (floored at 0) or
    by heterogeneity; nesting is rejected
  - PySelector passes alleles locus-major and propagates failures
  - apply() writes only individuals in scope and leaves visibility alone
"""

import logging

import numpy as np
import pytest

from vspfit.errors import ConfigurationError, EvaluationError, UsageError
from vspfit.population import Population
from vspfit.selectors import (
    MapSelector,
    MaSelector,
    MlSelector,
    PySelector,
    Selector,
    as_selection_mode,
)
from vspfit.splitters import SexSplitter
from vspfit.types import SelectionMode


# ═══════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════

def _const(value, loci=0, **kwargs):
    """PySelector returning the same fitness for everyone."""
    return PySelector(loci, lambda alleles, gen: value, **kwargs)


@pytest.fixture
def pop():
    """Single subpopulation of four diploid individuals at two loci."""
    p = Population([4], n_loci=2)
    p.genotypes[:] = [
        [[0, 0], [0, 1]],
        [[1, 0], [1, 1]],
        [[1, 1], [2, 0]],
        [[0, 2], [1, 2]],
    ]
    return p


@pytest.fixture
def sexed():
    """Two subpopulations (6 + 4), alternating males and females."""
    p = Population([6, 4], n_loci=1)
    p.individuals['sex'] = [1, 0] * 5
    p.set_virtual_splitter(SexSplitter())
    return p


def _everyone(pop):
    return np.arange(pop.pop_size())


# ═══════════════════════════════════════════════════════════════════════
# BASE SELECTOR
# ═══════════════════════════════════════════════════════════════════════

class TestBaseSelector:
    def test_ind_fitness_not_implemented(self, pop):
        with pytest.raises(NotImplementedError):
            Selector().ind_fitness(pop.individual(0), 0)

    def test_apply_not_implemented(self, pop):
        with pytest.raises(NotImplementedError):
            Selector().apply(pop)

    @pytest.mark.parametrize("kwargs", [dict(output=""), dict(parallel_workers=0)])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ConfigurationError):
            Selector(**kwargs)


# ═══════════════════════════════════════════════════════════════════════
# MAP SELECTOR
# ═══════════════════════════════════════════════════════════════════════

class TestMapSelector:
    def test_unphased_lookup(self, pop):
        s = MapSelector(0, {(0, 0): 1.0, (0, 1): 0.9, (1, 1): 0.8, (0, 2): 0.5})
        assert s.evaluate(pop, _everyone(pop), 0).tolist() == [1.0, 0.9, 0.8, 0.5]

    def test_unordered_keys_are_equivalent(self, pop):
        a = MapSelector(0, {(0, 0): 1, (0, 1): 0.9, (1, 1): 0.8, (0, 2): 0.5})
        b = MapSelector(0, {(0, 0): 1, (1, 0): 0.9, (1, 1): 0.8, (2, 0): 0.5})
        assert (a.evaluate(pop, _everyone(pop), 0) == b.evaluate(pop, _everyone(pop), 0)).all()

    def test_phased_lookup(self, pop):
        s = MapSelector(0, {(0, 0): 1, (1, 0): 0.7, (0, 1): 0.9, (1, 1): 0.8, (0, 2): 0.5}, phase=True)
        assert s.evaluate(pop, _everyone(pop), 0).tolist() == [1.0, 0.7, 0.8, 0.5]

    def test_phased_missing_order(self, pop):
        s = MapSelector(0, {(0, 0): 1, (0, 1): 0.9, (1, 1): 0.8, (0, 2): 0.5}, phase=True)
        with pytest.raises(EvaluationError, match="1-0"):
            s.evaluate(pop, _everyone(pop), 0)

    def test_two_loci_string_keys(self, pop):
        s = MapSelector([0, 1], {
            '0-0|0-1': 0.1,
            '0-1|1-1': 0.2,
            '1-1|0-2': 0.3,
            '0-2|1-2': 0.4,
        })
        assert s.evaluate(pop, _everyone(pop), 0).tolist() == [0.1, 0.2, 0.3, 0.4]

    def test_two_loci_tuple_keys_locus_major(self, pop):
        s = MapSelector([0, 1], {
            (0, 0, 0, 1): 0.1,
            (0, 1, 1, 1): 0.2,
            (1, 1, 0, 2): 0.3,
            (0, 2, 1, 2): 0.4,
        })
        assert s.ind_fitness(pop.individual(2), 0) == pytest.approx(0.3)

    def test_missing_genotype(self, pop):
        s = MapSelector(0, {(0, 0): 1.0})
        with pytest.raises(EvaluationError, match="no fitness value"):
            s.evaluate(pop, _everyone(pop), 0)

    def test_conflicting_duplicates(self):
        with pytest.raises(ConfigurationError, match="conflicting"):
            MapSelector(0, {(0, 1): 0.9, (1, 0): 0.8})

    def test_consistent_duplicates_allowed(self):
        s = MapSelector(0, {(0, 1): 0.9, (1, 0): 0.9})
        assert s.table == {(0, 1): 0.9}

    @pytest.mark.parametrize("fitness", [
        {},
        {(0, 0): -1.0},
        {'a-b': 1.0},
        {(0, 0, 0): 1.0, (0, 0): 1.0},
    ])
    def test_invalid_tables(self, fitness):
        with pytest.raises(ConfigurationError):
            MapSelector([0], fitness)

    def test_ploidy_mismatch(self):
        haploid = Population([3], n_loci=1, ploidy=1)
        with pytest.raises(UsageError):
            MapSelector(0, {(0, 0): 1.0}).evaluate(haploid, _everyone(haploid), 0)

    def test_haploid_keys(self):
        haploid = Population([3], n_loci=1, ploidy=1)
        haploid.genotypes[:, 0, 0] = [0, 1, 0]
        s = MapSelector(0, {0: 1.0, 1: 0.5})
        assert s.evaluate(haploid, _everyone(haploid), 0).tolist() == [1.0, 0.5, 1.0]

    def test_locus_out_of_range(self, pop):
        with pytest.raises(UsageError):
            MapSelector(3, {(0, 0): 1.0}).evaluate(pop, _everyone(pop), 0)

    def test_ind_fitness_matches_evaluate(self, pop):
        s = MapSelector(0, {(0, 0): 1.0, (0, 1): 0.9, (1, 1): 0.8, (0, 2): 0.5})
        batch = s.evaluate(pop, _everyone(pop), 0)
        single = [s.ind_fitness(pop.individual(i), 0) for i in range(4)]
        assert batch.tolist() == single


# ═══════════════════════════════════════════════════════════════════════
# MULTI-ALLELE SELECTOR
# ═══════════════════════════════════════════════════════════════════════

class TestMaSelector:
    def test_single_locus(self, pop):
        s = MaSelector(0, [1.0, 0.9, 0.8])
        # locus 0 disease counts: 0, 1, 2, 1
        assert s.evaluate(pop, _everyone(pop), 0).tolist() == [1.0, 0.9, 0.8, 0.9]

    def test_wildtype_set(self, pop):
        s = MaSelector(0, [1.0, 0.9, 0.8], wildtype=[0, 1])
        # only allele 2 is a disease allele
        assert s.evaluate(pop, _everyone(pop), 0).tolist() == [1.0, 1.0, 1.0, 0.9]

    def test_two_loci_first_locus_slowest(self, pop):
        s = MaSelector([0, 1], list(range(9)))
        # (count0, count1): (0, 1), (1, 2), (2, 1), (1, 2) -> 3 * c0 + c1
        assert s.evaluate(pop, _everyone(pop), 0).tolist() == [1, 5, 7, 5]

    @pytest.mark.parametrize("fitness", [[1, 0.5], [1, 0.9, 0.8, 0.7]])
    def test_wrong_table_length(self, fitness):
        with pytest.raises(ConfigurationError, match="each combination"):
            MaSelector(0, fitness)

    def test_needs_wildtype(self):
        with pytest.raises(ConfigurationError):
            MaSelector(0, [1, 1, 1], wildtype=[])

    def test_diploid_only(self):
        haploid = Population([2], n_loci=1, ploidy=1)
        with pytest.raises(UsageError, match="diploid"):
            MaSelector(0, [1, 0.9, 0.8]).evaluate(haploid, _everyone(haploid), 0)

    def test_ind_fitness(self, pop):
        s = MaSelector([0, 1], list(range(9)))
        assert s.ind_fitness(pop.individual(1), 0) == 5.0


# ═══════════════════════════════════════════════════════════════════════
# MULTI-LOCUS SELECTOR
# ═══════════════════════════════════════════════════════════════════════

class TestMlSelector:
    def test_multiplicative(self, pop):
        s = MlSelector([_const(0.8), _const(0.5)])
        assert s.evaluate(pop, _everyone(pop), 0) == pytest.approx([0.4] * 4)

    def test_additive(self, pop):
        s = MlSelector([_const(0.7), _const(0.6)], mode=SelectionMode.ADDITIVE)
        assert s.ind_fitness(pop.individual(0), 0) == pytest.approx(0.3)

    def test_additive_floored_at_zero(self, pop):
        s = MlSelector([_const(0.7), _const(0.6), _const(0.1)], mode='additive')
        assert s.evaluate(pop, _everyone(pop), 0).tolist() == [0.0] * 4

    def test_heterogeneity(self, pop):
        s = MlSelector([_const(0.5), _const(0.5)], mode=SelectionMode.HETEROGENEITY)
        assert s.ind_fitness(pop.individual(3), 0) == pytest.approx(0.75)

    def test_mixed_models(self, pop):
        s = MlSelector([MaSelector(0, [1.0, 0.9, 0.8]), _const(0.5, loci=1)])
        assert s.evaluate(pop, _everyone(pop), 0) == pytest.approx([0.5, 0.45, 0.4, 0.45])

    def test_nesting_rejected(self):
        inner = MlSelector([_const(1.0)])
        with pytest.raises(ConfigurationError, match="nested"):
            MlSelector([inner, _const(0.5)])

    def test_rejects_non_selector(self):
        with pytest.raises(ConfigurationError):
            MlSelector([_const(1.0), lambda a, g: 1.0])

    def test_needs_children(self):
        with pytest.raises(ConfigurationError):
            MlSelector([])

    def test_children_cloned(self):
        child = MaSelector(0, [1, 1, 1])
        s = MlSelector([child])
        assert s.selectors[0] is not child
        assert (s.selectors[0].fitness == child.fitness).all()

    def test_child_scope_ignored(self, sexed):
        s = MlSelector([_const(0.5, subpops=[1])], subpops=[0])
        s.apply(sexed)
        assert sexed.info('fitness', 0).tolist() == [0.5] * 6
        assert sexed.info('fitness', 1).tolist() == [0.0] * 4


class TestSelectionMode:
    @pytest.mark.parametrize("mode, expected", [
        (SelectionMode.ADDITIVE, SelectionMode.ADDITIVE),
        (1, SelectionMode.MULTIPLICATIVE),
        ('Heterogeneity', SelectionMode.HETEROGENEITY),
    ])
    def test_accepted(self, mode, expected):
        assert as_selection_mode(mode) is expected

    @pytest.mark.parametrize("mode", ['exponential', 7])
    def test_unknown(self, mode):
        with pytest.raises(ConfigurationError):
            as_selection_mode(mode)


# ═══════════════════════════════════════════════════════════════════════
# PYTHON FUNCTION SELECTOR
# ═══════════════════════════════════════════════════════════════════════

class TestPySelector:
    def test_alleles_locus_major(self, pop):
        seen = []

        def record(alleles, gen):
            seen.append(alleles.tolist())
            return 1.0

        PySelector([0, 1], record).ind_fitness(pop.individual(1), 0)
        PySelector([1, 0], record).ind_fitness(pop.individual(1), 0)
        assert seen == [[1, 0, 1, 1], [1, 1, 1, 0]]

    def test_generation_passed(self, pop):
        pop.generation = 7
        s = PySelector(0, lambda alleles, gen: gen / 10)
        s.apply(pop)
        assert pop.info('fitness').tolist() == pytest.approx([0.7] * 4)

    def test_function_error_propagates(self, pop):
        def broken(alleles, gen):
            raise ValueError("boom")

        with pytest.raises(EvaluationError, match="boom") as excinfo:
            PySelector(0, broken).apply(pop)
        assert isinstance(excinfo.value.__cause__, ValueError)

    @pytest.mark.parametrize("value", ["high", None, -0.5, float('nan')])
    def test_invalid_return(self, pop, value):
        with pytest.raises(EvaluationError):
            _const(value).evaluate(pop, _everyone(pop), 0)

    def test_not_callable(self):
        with pytest.raises(ConfigurationError, match="callable"):
            PySelector(0, 3.0)

    def test_clone_shares_function(self):
        def f(alleles, gen):
            return 1.0

        s = PySelector(0, f)
        c = s.clone()
        assert c.func is f
        assert c._lock is not s._lock

    @pytest.mark.parametrize("thread_safe", [False, True])
    def test_parallel_matches_serial(self, thread_safe):
        rng = np.random.default_rng(3)
        big = Population([150, 90], n_loci=3)
        big.genotypes[:] = rng.integers(0, 5, size=big.genotypes.shape)

        def score(alleles, gen):
            return float(alleles.sum()) / 30.0

        PySelector([0, 2], score, thread_safe=thread_safe).apply(big)
        serial = big.info('fitness').copy()
        big.set_info('fitness', 0.0)
        PySelector([0, 2], score, thread_safe=thread_safe, parallel_workers=4).apply(big)
        assert (big.info('fitness') == serial).all()
        assert serial.any()


# ═══════════════════════════════════════════════════════════════════════
# APPLY (scope, visibility, output)
# ═══════════════════════════════════════════════════════════════════════

class TestApply:
    def test_returns_true(self, pop):
        assert _const(0.5).apply(pop) is True

    def test_all_subpops_by_default(self, sexed):
        _const(0.5).apply(sexed)
        assert (sexed.info('fitness') == 0.5).all()

    def test_subpop_scope(self, sexed):
        _const(0.5, subpops=[1]).apply(sexed)
        assert sexed.info('fitness', 0).tolist() == [0.0] * 6
        assert sexed.info('fitness', 1).tolist() == [0.5] * 4

    def test_vsp_scope_writes_members_only(self, sexed):
        _const(0.5, subpops=[(0, 1)]).apply(sexed)
        assert sexed.info('fitness', 0).tolist() == [0, 0.5, 0, 0.5, 0, 0.5]
        assert (sexed.info('fitness', 1) == 0).all()
        assert sexed.individuals['visible'].all()
        assert sexed.virtual_splitter().activated_subpop is None

    def test_several_vsps(self, sexed):
        s = MlSelector([_const(0.5)], subpops=[(0, 0), (1, 1)])
        s.apply(sexed)
        assert sexed.info('fitness').tolist() == [0.5, 0, 0.5, 0, 0.5, 0, 0, 0.5, 0, 0.5]

    def test_plain_subpop_respects_visibility(self, sexed):
        with sexed.virtual_subpop((0, 0)):
            _const(0.5, subpops=[0]).apply(sexed)
        assert sexed.info('fitness', 0).tolist() == [0.5, 0, 0.5, 0, 0.5, 0]

    def test_custom_output_field(self):
        p = Population([3], n_loci=1, info_fields=['fitness', 'w'])
        _const(0.25, output='w').apply(p)
        assert p.info('w').tolist() == [0.25] * 3
        assert (p.info('fitness') == 0).all()

    def test_missing_output_field(self, pop):
        with pytest.raises(UsageError):
            _const(0.5, output='w').apply(pop)

    def test_vsp_scope_without_splitter(self, pop):
        with pytest.raises(UsageError):
            _const(0.5, subpops=[(0, 0)]).apply(pop)

    def test_empty_subpop_skipped(self):
        p = Population([0, 2], n_loci=1)
        _const(0.5).apply(p)
        assert p.info('fitness').tolist() == [0.5, 0.5]

    def test_apply_logs(self, pop, caplog):
        with caplog.at_level(logging.DEBUG, logger='vspfit.selectors'):
            _const(0.5).apply(pop)
        assert "wrote 'fitness' for 4 individuals" in caplog.text
