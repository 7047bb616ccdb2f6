"""
LogQL grammar: tokenizer, parser and canonical printer.
"""

from .ast import (
    BinaryOp,
    Expr,
    LogQuery,
    LogRange,
    RangeAggregation,
    StreamSelector,
    VectorAggregation,
)
from .parser import parse_logql

__all__ = [
    'BinaryOp',
    'Expr',
    'LogQuery',
    'LogRange',
    'RangeAggregation',
    'StreamSelector',
    'VectorAggregation',
    'parse_logql',
]
