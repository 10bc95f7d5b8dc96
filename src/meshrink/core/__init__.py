"""
Core data structures for the measurement-error pipeline.

1. ObservedMatrix: features × samples point-estimate abundances
2. TechnicalVariance: bootstrap-derived technical variance per feature

Design Philosophy:
    - Immutability: All operations return new instances
    - Identifier-keyed alignment: rows are matched by feature id, never by position
"""

from meshrink.core.abundance import ObservedMatrix, TechnicalVariance

__all__ = [
    'ObservedMatrix',
    'TechnicalVariance',
]
