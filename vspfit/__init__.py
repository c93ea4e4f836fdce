"""vspfit: virtual subpopulations and fitness models for forward-time simulation.

Two engines over an individual-based population:
  - VSP splitters: named, possibly overlapping groups of individuals of a
    subpopulation, defined by sex, affection, information fields,
    proportions, index ranges or genotype, and combined by union or
    intersection
  - Selectors: per-individual fitness from genotype dictionaries,
    wildtype/disease allele tables, user functions, or combinations of
    these, written to an information field for mating schemes to use
"""

from vspfit.composite import CombinedSplitter, ProductSplitter
from vspfit.errors import ConfigurationError, EvaluationError, UsageError
from vspfit.population import Individual, Population
from vspfit.selectors import MapSelector, MaSelector, MlSelector, PySelector, Selector
from vspfit.splitters import (
    AffectionSplitter,
    GenotypeSplitter,
    InfoSplitter,
    ProportionSplitter,
    RangeSplitter,
    SexSplitter,
    Splitter,
)
from vspfit.types import FITNESS_FIELD, SelectionMode, Sex, SubPopList, VspID

__version__ = "0.1.0"
