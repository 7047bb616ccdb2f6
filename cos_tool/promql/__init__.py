"""
PromQL grammar: tokenizer, parser and canonical printer.
"""

from .ast import (
    AggregateExpr,
    BinaryExpr,
    Call,
    Expr,
    MatrixSelector,
    NumberLiteral,
    ParenExpr,
    StringLiteral,
    SubqueryExpr,
    UnaryExpr,
    VectorSelector,
)
from .parser import parse_promql

__all__ = [
    'AggregateExpr',
    'BinaryExpr',
    'Call',
    'Expr',
    'MatrixSelector',
    'NumberLiteral',
    'ParenExpr',
    'StringLiteral',
    'SubqueryExpr',
    'UnaryExpr',
    'VectorSelector',
    'parse_promql',
]
