"""Configuration system for vspfit.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → programmatic overrides

A configuration describes a population layout, an optional VSP splitter
and one or more fitness models:

    population:
      subpop_sizes: [500, 500]
      n_loci: 3
      info_fields: [fitness, age]
    splitter:
      type: product
      splitters:
        - {type: sex}
        - {type: info, field: age, cutoff: [20, 40]}
    selectors:
      - {type: map, loci: [0], fitness: {"0-0": 1.0, "0-1": 0.9, "1-1": 0.8}}
      - {type: ma, loci: [1, 2], fitness: [1, 1, 0.9, 1, 1, 0.9, 0.8, 0.8, 0.7]}
    selection:
      mode: multiplicative
      subpops: null

Splitter and selector entries are plain dicts keyed by ``type``; they are
validated by building them (``build_splitter`` / ``build_selector``), so
every parameter error surfaces as a ConfigurationError at load time.
"""

from __future__ import annotations

import copy
import dataclasses
import importlib
import logging
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import yaml

from vspfit.composite import CombinedSplitter, ProductSplitter
from vspfit.errors import ConfigurationError
from vspfit.population import Population
from vspfit.selectors import (
    MapSelector,
    MaSelector,
    MlSelector,
    PySelector,
    Selector,
    as_selection_mode,
)
from vspfit.splitters import (
    AffectionSplitter,
    GenotypeSplitter,
    InfoSplitter,
    ProportionSplitter,
    RangeSplitter,
    SexSplitter,
    Splitter,
)
from vspfit.types import FITNESS_FIELD, SubPopList

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class PopulationSection:
    """Population layout."""
    subpop_sizes: List[int] = field(default_factory=lambda: [100])
    n_loci: int = 1
    ploidy: int = 2
    info_fields: List[str] = field(default_factory=lambda: [FITNESS_FIELD])


@dataclass
class SelectionSection:
    """How the configured selectors are applied."""
    mode: str = 'multiplicative'     # combination of several selectors
    output_field: str = FITNESS_FIELD
    subpops: Optional[List[Any]] = None   # None = all subpopulations
    parallel_workers: int = 1


@dataclass
class EngineConfig:
    """Complete engine configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    population: PopulationSection = field(default_factory=PopulationSection)
    selection: SelectionSection = field(default_factory=SelectionSection)
    splitter: Optional[Dict[str, Any]] = None
    selectors: List[Dict[str, Any]] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values (including lists) are replaced
    - Keys in override but not base are added

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, warning about unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    unknown = sorted(set(data) - valid_fields)
    if unknown:
        warnings.warn(
            f"Ignoring unknown {section_cls.__name__} keys: {unknown}",
            UserWarning,
            stacklevel=3,
        )
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> EngineConfig:
    """Convert a merged YAML dict to an EngineConfig."""
    sections = {}
    section_map = {
        'population': PopulationSection,
        'selection': SelectionSection,
    }
    for key, cls in section_map.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()

    splitter = data.get('splitter')
    if splitter is not None and not isinstance(splitter, dict):
        raise ConfigurationError(f"'splitter' must be a mapping, got {type(splitter).__name__}")
    sections['splitter'] = copy.deepcopy(splitter)

    selectors = data.get('selectors') or []
    if isinstance(selectors, dict):
        selectors = [selectors]
    if not isinstance(selectors, list) or not all(isinstance(s, dict) for s in selectors):
        raise ConfigurationError("'selectors' must be a list of mappings")
    sections['selectors'] = copy.deepcopy(selectors)

    return EngineConfig(**sections)


def validate_config(config: EngineConfig) -> None:
    """Validate configuration constraints. Raises ConfigurationError on failure.

    Checks:
      - Population layout is well formed
      - Selection mode, output field and worker count are valid
      - Splitter and selector specifications build
      - Output field and InfoSplitter fields exist in the population
      - Selector and genotype splitter loci and ploidy fit the population
      - Selector entries leave scope, output and workers to the selection section
    """
    p = config.population
    if not isinstance(p.subpop_sizes, list) or not p.subpop_sizes:
        raise ConfigurationError(
            f"population.subpop_sizes must be a non-empty list, got {p.subpop_sizes!r}"
        )
    sizes = [_as_int(v, 'population.subpop_sizes') for v in p.subpop_sizes]
    if any(v < 0 for v in sizes):
        raise ConfigurationError(
            f"population.subpop_sizes must be non-negative sizes, got {p.subpop_sizes}"
        )
    n_loci = _as_int(p.n_loci, 'population.n_loci')
    ploidy = _as_int(p.ploidy, 'population.ploidy')
    if n_loci < 1:
        raise ConfigurationError(f"population.n_loci must be >= 1, got {p.n_loci}")
    if ploidy < 1:
        raise ConfigurationError(f"population.ploidy must be >= 1, got {p.ploidy}")

    s = config.selection
    as_selection_mode(s.mode)
    if _as_int(s.parallel_workers, 'selection.parallel_workers') < 1:
        raise ConfigurationError(
            f"selection.parallel_workers must be >= 1, got {s.parallel_workers}"
        )
    if s.output_field not in p.info_fields:
        raise ConfigurationError(
            f"selection.output_field '{s.output_field}' is not one of "
            f"population.info_fields {p.info_fields}"
        )
    SubPopList(s.subpops)

    if config.splitter is not None:
        splitter = build_splitter(config.splitter)
        for info_field in _info_fields_of(splitter):
            if info_field not in p.info_fields:
                raise ConfigurationError(
                    f"splitter uses information field '{info_field}' which is not "
                    f"one of population.info_fields {p.info_fields}"
                )
        _check_splitter_layout(splitter, n_loci, ploidy)
    for i, spec in enumerate(config.selectors):
        _reject_scope_keys(spec, f"selectors[{i}]")
        _check_selector_layout(build_selector(spec), n_loci, ploidy, f"selectors[{i}]")


def _as_int(value, name: str) -> int:
    if isinstance(value, (bool, str)):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError) as err:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from err
    if number != value:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    return number


def _info_fields_of(splitter: Splitter) -> List[str]:
    if isinstance(splitter, InfoSplitter):
        return [splitter.field]
    if isinstance(splitter, (CombinedSplitter, ProductSplitter)):
        return [f for child in splitter.splitters for f in _info_fields_of(child)]
    return []


def _check_splitter_layout(splitter: Splitter, n_loci: int, ploidy: int) -> None:
    """Genotype splitters must fit the configured loci and ploidy."""
    if isinstance(splitter, (CombinedSplitter, ProductSplitter)):
        for child in splitter.splitters:
            _check_splitter_layout(child, n_loci, ploidy)
        return
    if not isinstance(splitter, GenotypeSplitter):
        return
    if max(splitter.loci) >= n_loci:
        raise ConfigurationError(
            f"genotype splitter uses locus {max(splitter.loci)} but "
            f"population.n_loci is {n_loci}"
        )
    width = len(splitter.loci) * ploidy
    for vsp, row in enumerate(splitter.alleles):
        if len(row) % width != 0:
            raise ConfigurationError(
                f"genotype splitter: {len(row)} alleles for VSP {vsp} do not form "
                f"genotypes of {len(splitter.loci)} loci x {ploidy} copies"
            )


def _check_selector_layout(selector: Selector, n_loci: int, ploidy: int, where: str) -> None:
    """Selector loci and genotype ploidy must fit the configured population."""
    if isinstance(selector, MlSelector):
        for j, child in enumerate(selector.selectors):
            _check_selector_layout(child, n_loci, ploidy, f"{where}.selectors[{j}]")
        return
    if max(selector.loci) >= n_loci:
        raise ConfigurationError(
            f"{where}: locus {max(selector.loci)} out of range, population.n_loci is {n_loci}"
        )
    if isinstance(selector, MaSelector) and ploidy != 2:
        raise ConfigurationError(
            f"{where}: ma selector needs a diploid population, population.ploidy is {ploidy}"
        )
    if isinstance(selector, MapSelector) and selector.ploidy != ploidy:
        raise ConfigurationError(
            f"{where}: map selector genotypes have ploidy {selector.ploidy}, "
            f"population.ploidy is {ploidy}"
        )


def _reject_scope_keys(spec: Dict[str, Any], where: str) -> None:
    """Scope, output and workers of configured selectors come from the selection section."""
    misplaced = sorted(k for k in _SELECTOR_COMMON if k in spec)
    if misplaced:
        raise ConfigurationError(
            f"{where}: {misplaced} cannot be set per selector; use the 'selection' section"
        )


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> EngineConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → overrides.
    Each layer overrides only the fields it specifies.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ConfigurationError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)
        else:
            warnings.warn(
                f"Scenario file '{scenario_path}' does not exist; using base configuration only.",
                UserWarning,
                stacklevel=2,
            )

    if overrides is not None:
        deep_merge(config_dict, overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    logger.debug("loaded configuration from %s", base_path)
    return config


def default_config() -> EngineConfig:
    """Return an EngineConfig with all default values."""
    config = EngineConfig()
    validate_config(config)
    return config


# ═══════════════════════════════════════════════════════════════════════
# FACTORIES
# ═══════════════════════════════════════════════════════════════════════

def _take(spec: Dict, kind: str, allowed: Tuple[str, ...]) -> Dict:
    """Copy of ``spec`` without 'type'; unknown keys are an error."""
    params = {k: v for k, v in spec.items() if k != 'type'}
    unknown = sorted(set(params) - set(allowed))
    if unknown:
        raise ConfigurationError(f"Unknown parameters for {kind}: {unknown}")
    return params


def _build_sex(spec):
    return SexSplitter(**_take(spec, 'sex splitter', ('names',)))


def _build_affection(spec):
    return AffectionSplitter(**_take(spec, 'affection splitter', ('names',)))


def _build_info(spec):
    return InfoSplitter(**_take(spec, 'info splitter', ('field', 'values', 'cutoff', 'ranges', 'names')))


def _build_proportion(spec):
    return ProportionSplitter(**_take(spec, 'proportion splitter', ('proportions', 'names')))


def _build_range(spec):
    return RangeSplitter(**_take(spec, 'range splitter', ('ranges', 'names')))


def _build_genotype(spec):
    return GenotypeSplitter(**_take(spec, 'genotype splitter', ('loci', 'alleles', 'phase', 'names')))


def _build_combined(spec):
    params = _take(spec, 'combined splitter', ('splitters', 'vsp_map', 'names'))
    params['splitters'] = [build_splitter(s) for s in params.get('splitters') or []]
    return CombinedSplitter(**params)


def _build_product(spec):
    params = _take(spec, 'product splitter', ('splitters', 'names'))
    params['splitters'] = [build_splitter(s) for s in params.get('splitters') or []]
    return ProductSplitter(**params)


SPLITTER_TYPES: Dict[str, Callable[[Dict], Splitter]] = {
    'sex': _build_sex,
    'affection': _build_affection,
    'info': _build_info,
    'proportion': _build_proportion,
    'range': _build_range,
    'genotype': _build_genotype,
    'combined': _build_combined,
    'product': _build_product,
}


def build_splitter(spec: Dict[str, Any]) -> Splitter:
    """Build a splitter from ``{'type': ..., **params}``."""
    if not isinstance(spec, dict) or 'type' not in spec:
        raise ConfigurationError(f"A splitter specification needs a 'type', got {spec!r}")
    try:
        builder = SPLITTER_TYPES[spec['type']]
    except KeyError as err:
        raise ConfigurationError(
            f"Unknown splitter type '{spec['type']}', expected one of {sorted(SPLITTER_TYPES)}"
        ) from err
    try:
        return builder(spec)
    except TypeError as err:
        raise ConfigurationError(f"Invalid {spec['type']} splitter parameters: {err}") from err


def resolve_callable(path: str) -> Callable:
    """Import ``'package.module:attribute'`` and return the attribute."""
    if not isinstance(path, str) or ':' not in path:
        raise ConfigurationError(f"Fitness function must be given as 'module:attribute', got {path!r}")
    module_name, _, attr = path.partition(':')
    try:
        module = importlib.import_module(module_name)
    except ImportError as err:
        raise ConfigurationError(f"Cannot import module '{module_name}' for {path!r}") from err
    try:
        obj = module
        for part in attr.split('.'):
            obj = getattr(obj, part)
    except AttributeError as err:
        raise ConfigurationError(f"Module '{module_name}' has no attribute '{attr}'") from err
    return obj


_SELECTOR_COMMON = ('subpops', 'output', 'parallel_workers')


def _build_map(spec):
    return MapSelector(**_take(spec, 'map selector', ('loci', 'fitness', 'phase') + _SELECTOR_COMMON))


def _build_ma(spec):
    return MaSelector(**_take(spec, 'ma selector', ('loci', 'fitness', 'wildtype') + _SELECTOR_COMMON))


def _build_ml(spec):
    params = _take(spec, 'ml selector', ('selectors', 'mode') + _SELECTOR_COMMON)
    children = params.get('selectors') or []
    for j, child in enumerate(children):
        if isinstance(child, dict):
            # MlSelector never uses a child's scope
            _reject_scope_keys(child, f"ml selector child {j}")
    params['selectors'] = [build_selector(s) for s in children]
    return MlSelector(**params)


def _build_py(spec):
    params = _take(spec, 'py selector', ('loci', 'func', 'thread_safe') + _SELECTOR_COMMON)
    if isinstance(params.get('func'), str):
        params['func'] = resolve_callable(params['func'])
    return PySelector(**params)


SELECTOR_TYPES: Dict[str, Callable[[Dict], Selector]] = {
    'map': _build_map,
    'ma': _build_ma,
    'ml': _build_ml,
    'py': _build_py,
}


def build_selector(spec: Dict[str, Any]) -> Selector:
    """Build a selector from ``{'type': ..., **params}``."""
    if not isinstance(spec, dict) or 'type' not in spec:
        raise ConfigurationError(f"A selector specification needs a 'type', got {spec!r}")
    try:
        builder = SELECTOR_TYPES[spec['type']]
    except KeyError as err:
        raise ConfigurationError(
            f"Unknown selector type '{spec['type']}', expected one of {sorted(SELECTOR_TYPES)}"
        ) from err
    try:
        return builder(spec)
    except TypeError as err:
        raise ConfigurationError(f"Invalid {spec['type']} selector parameters: {err}") from err


def build_population(config: EngineConfig) -> Population:
    """Empty population laid out as configured, with the splitter installed."""
    p = config.population
    pop = Population(
        [int(v) for v in p.subpop_sizes], int(p.n_loci),
        ploidy=int(p.ploidy), info_fields=p.info_fields,
    )
    if config.splitter is not None:
        pop.set_virtual_splitter(build_splitter(config.splitter))
    return pop


def build_engine(config: EngineConfig) -> Tuple[Population, Optional[Selector]]:
    """Population plus the selector applying all configured fitness models.

    One configured selector is used as is; several are combined by an
    MlSelector in ``selection.mode``. The selection section sets scope,
    output field and worker count of the returned selector.
    """
    pop = build_population(config)
    s = config.selection
    for i, spec in enumerate(config.selectors):
        _reject_scope_keys(spec, f"selectors[{i}]")
    models = [build_selector(spec) for spec in config.selectors]
    if not models:
        logger.warning("No selectors configured; fitness values will not be computed")
        return pop, None
    if len(models) == 1:
        selector = models[0]
    else:
        selector = MlSelector(models, mode=s.mode)
    selector.subpops = SubPopList(s.subpops)
    selector.output = s.output_field
    selector.parallel_workers = s.parallel_workers
    return pop, selector
