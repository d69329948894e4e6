"""
errors.py — Engine error taxonomy.

  DataInsufficientError  not enough ticks / reference samples for a shape or factor.
                         Always caught locally and turned into a neutral score.
  ValidationError        advisor output that cannot be interpreted at all.
                         The decision gate falls back to the pattern suggestion.
  ExternalCallFailure    advisor HTTP failure, order execution timeout or crash.
  InvariantViolation     a programming error (weight sum, rule coverage, FIFO order).
                         Logged CRITICAL and re-raised, never swallowed.
"""


class EngineError(Exception):
    """Base class for all venuewatch errors."""


class DataInsufficientError(EngineError):
    pass


class ValidationError(EngineError):
    pass


class ExternalCallFailure(EngineError):
    pass


class InvariantViolation(EngineError):
    pass
