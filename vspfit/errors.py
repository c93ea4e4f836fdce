"""Exception types raised by the splitter and selector engines.

Three failure categories:
  - ConfigurationError: malformed parameters, detected at construction
    (or config load) before any generation is simulated
  - UsageError: activate/deactivate protocol violated, out-of-range
    subpopulation or VSP index, model applied to an incompatible population
  - EvaluationError: a single individual's fitness could not be computed

ConfigurationError derives from ValueError so callers that validate
parameters the usual way (``except ValueError``) keep working.
"""


class ConfigurationError(ValueError):
    """Invalid splitter, selector or engine configuration."""


class UsageError(RuntimeError):
    """Engine called in a way its protocol does not allow."""


class EvaluationError(RuntimeError):
    """Fitness evaluation of an individual failed."""
