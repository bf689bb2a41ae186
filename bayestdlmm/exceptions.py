"""Custom exceptions for bayestdlmm.

This module defines exceptions used by bayestdlmm to signal failed tree
proposals, numerical breakdowns of the sampler, invalid configurations and
missing abstract implementations.
"""

class InvalidTreeError(Exception):
    """Exception raised when a structural proposal cannot be built on the current tree."""
    pass

class NumericalDegeneracyError(ArithmeticError):
    """Exception raised when the chain hits a non positive definite precision
    matrix or a non-finite variance draw. Always fatal for the chain."""
    pass

class ConfigurationError(ValueError):
    """Exception raised for inconsistent model inputs detected at construction."""
    pass

class AbstractMethodError(Exception):
    """Exception raised when an abstract method has not been implemented."""
    pass
