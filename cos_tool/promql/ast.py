"""
PromQL expression tree.

Each node renders itself in canonical form through ``__str__``; printing
a freshly parsed tree yields the normalized query text.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from ..durations import format_prometheus_duration
from ..lexing import format_number, quote
from ..models import Matcher, Node, SelectorNode

# Value types
SCALAR = 'scalar'
VECTOR = 'instant vector'
MATRIX = 'range vector'
STRING = 'string'


def _offset_suffix(offset: Optional[int], at: Optional['AtModifier']) -> str:
    suffix = ""
    if at is not None:
        suffix += f" @ {at}"
    if offset:
        if offset < 0:
            suffix += f" offset -{format_prometheus_duration(-offset)}"
        else:
            suffix += f" offset {format_prometheus_duration(offset)}"
    return suffix


@dataclass
class AtModifier:
    """An ``@`` modifier: a unix timestamp or ``start()`` / ``end()``."""
    timestamp: Optional[float] = None
    preprocessor: Optional[str] = None

    def __str__(self) -> str:
        if self.preprocessor:
            return f"{self.preprocessor}()"
        return f"{self.timestamp:.3f}"


class Expr(Node):
    """Base class of PromQL expressions."""

    @property
    def type(self) -> str:
        raise NotImplementedError


@dataclass
class NumberLiteral(Expr):
    value: float

    @property
    def type(self) -> str:
        return SCALAR

    def __str__(self) -> str:
        return format_number(self.value)


@dataclass
class StringLiteral(Expr):
    value: str

    @property
    def type(self) -> str:
        return STRING

    def __str__(self) -> str:
        return quote(self.value)


@dataclass
class VectorSelector(SelectorNode, Expr):
    """Selects instant vector samples by metric name and label matchers.

    Attributes:
        name: The metric name, empty when only matchers are given
        matchers: Label matchers, excluding the metric name
        offset: Offset in milliseconds
        at: Optional ``@`` modifier
    """
    name: str = ""
    matchers: List[Matcher] = field(default_factory=list)
    offset: int = 0
    at: Optional[AtModifier] = None

    @property
    def type(self) -> str:
        return VECTOR

    def selector_string(self) -> str:
        labels = sorted(self.matchers, key=lambda m: (m.name, str(m)))
        if not labels:
            return self.name
        return f"{self.name}{{{','.join(str(m) for m in labels)}}}"

    def __str__(self) -> str:
        return self.selector_string() + _offset_suffix(self.offset, self.at)


@dataclass
class MatrixSelector(Expr):
    """A vector selector with a range, ``metric[5m]``."""
    vector_selector: VectorSelector
    range: int

    @property
    def type(self) -> str:
        return MATRIX

    def children(self) -> List[Node]:
        return [self.vector_selector]

    def __str__(self) -> str:
        selector = self.vector_selector
        return (f"{selector.selector_string()}[{format_prometheus_duration(self.range)}]"
                + _offset_suffix(selector.offset, selector.at))


@dataclass
class SubqueryExpr(Expr):
    """Evaluates an instant expression over a range, ``expr[30m:1m]``."""
    expr: Expr
    range: int
    step: int = 0
    offset: int = 0
    at: Optional[AtModifier] = None

    @property
    def type(self) -> str:
        return MATRIX

    def children(self) -> List[Node]:
        return [self.expr]

    def __str__(self) -> str:
        step = format_prometheus_duration(self.step) if self.step else ""
        return (f"{self.expr}[{format_prometheus_duration(self.range)}:{step}]"
                + _offset_suffix(self.offset, self.at))


@dataclass
class Call(Expr):
    """A function call."""
    func: 'Function'
    args: List[Expr] = field(default_factory=list)

    @property
    def type(self) -> str:
        return self.func.return_type

    def children(self) -> List[Node]:
        return list(self.args)

    def __str__(self) -> str:
        return f"{self.func.name}({', '.join(str(arg) for arg in self.args)})"


@dataclass
class AggregateExpr(Expr):
    """An aggregation such as ``sum by (job) (x)`` or ``topk(5, x)``."""
    op: str
    expr: Expr
    param: Optional[Expr] = None
    grouping: List[str] = field(default_factory=list)
    without: bool = False

    @property
    def type(self) -> str:
        return VECTOR

    def children(self) -> List[Node]:
        if self.param is not None:
            return [self.param, self.expr]
        return [self.expr]

    def __str__(self) -> str:
        text = self.op
        if self.without:
            text += f" without ({', '.join(self.grouping)}) "
        elif self.grouping:
            text += f" by ({', '.join(self.grouping)}) "
        args = [str(self.expr)]
        if self.param is not None:
            args.insert(0, str(self.param))
        return f"{text}({', '.join(args)})"


@dataclass
class VectorMatching:
    """The ``on``/``ignoring`` and ``group_left``/``group_right`` modifiers."""
    on: bool = False
    labels: List[str] = field(default_factory=list)
    card: str = 'one-to-one'
    include: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        if not self.labels and not self.on:
            return ""
        text = f" {'on' if self.on else 'ignoring'} ({', '.join(self.labels)})"
        if self.card == 'many-to-one':
            text += f" group_left ({', '.join(self.include)})"
        elif self.card == 'one-to-many':
            text += f" group_right ({', '.join(self.include)})"
        return text


@dataclass
class BinaryExpr(Expr):
    op: str
    lhs: Expr
    rhs: Expr
    return_bool: bool = False
    matching: Optional[VectorMatching] = None

    @property
    def type(self) -> str:
        if self.lhs.type == SCALAR and self.rhs.type == SCALAR:
            return SCALAR
        return VECTOR

    def children(self) -> List[Node]:
        return [self.lhs, self.rhs]

    def __str__(self) -> str:
        modifier = " bool" if self.return_bool else ""
        matching = str(self.matching) if self.matching is not None else ""
        return f"{self.lhs} {self.op}{modifier}{matching} {self.rhs}"


@dataclass
class ParenExpr(Expr):
    expr: Expr

    @property
    def type(self) -> str:
        return self.expr.type

    def children(self) -> List[Node]:
        return [self.expr]

    def __str__(self) -> str:
        return f"({self.expr})"


@dataclass
class UnaryExpr(Expr):
    op: str
    expr: Expr

    @property
    def type(self) -> str:
        return self.expr.type

    def children(self) -> List[Node]:
        return [self.expr]

    def __str__(self) -> str:
        return f"{self.op}{self.expr}"


@dataclass(frozen=True)
class Function:
    """Signature of a PromQL function.

    ``variadic`` is 0 for a fixed arity, a positive number of optional
    trailing arguments, or -1 for any number of trailing arguments of the
    last declared type.
    """
    name: str
    arg_types: tuple
    return_type: str = VECTOR
    variadic: int = 0


def _fn(name: str, *arg_types: str, returns: str = VECTOR, variadic: int = 0) -> Function:
    return Function(name, tuple(arg_types), returns, variadic)


FUNCTIONS = {f.name: f for f in [
    _fn('abs', VECTOR),
    _fn('absent', VECTOR),
    _fn('absent_over_time', MATRIX),
    _fn('acos', VECTOR), _fn('acosh', VECTOR),
    _fn('asin', VECTOR), _fn('asinh', VECTOR),
    _fn('atan', VECTOR), _fn('atanh', VECTOR),
    _fn('avg_over_time', MATRIX),
    _fn('ceil', VECTOR),
    _fn('changes', MATRIX),
    _fn('clamp', VECTOR, SCALAR, SCALAR),
    _fn('clamp_max', VECTOR, SCALAR),
    _fn('clamp_min', VECTOR, SCALAR),
    _fn('cos', VECTOR), _fn('cosh', VECTOR),
    _fn('count_over_time', MATRIX),
    _fn('days_in_month', VECTOR, variadic=1),
    _fn('day_of_month', VECTOR, variadic=1),
    _fn('day_of_week', VECTOR, variadic=1),
    _fn('day_of_year', VECTOR, variadic=1),
    _fn('deg', VECTOR),
    _fn('delta', MATRIX),
    _fn('deriv', MATRIX),
    _fn('double_exponential_smoothing', MATRIX, SCALAR, SCALAR),
    _fn('exp', VECTOR),
    _fn('floor', VECTOR),
    _fn('histogram_avg', VECTOR),
    _fn('histogram_count', VECTOR),
    _fn('histogram_fraction', SCALAR, SCALAR, VECTOR),
    _fn('histogram_quantile', SCALAR, VECTOR),
    _fn('histogram_stddev', VECTOR),
    _fn('histogram_stdvar', VECTOR),
    _fn('histogram_sum', VECTOR),
    _fn('holt_winters', MATRIX, SCALAR, SCALAR),
    _fn('hour', VECTOR, variadic=1),
    _fn('idelta', MATRIX),
    _fn('increase', MATRIX),
    _fn('irate', MATRIX),
    _fn('label_join', VECTOR, STRING, STRING, STRING, variadic=-1),
    _fn('label_replace', VECTOR, STRING, STRING, STRING, STRING),
    _fn('last_over_time', MATRIX),
    _fn('ln', VECTOR), _fn('log10', VECTOR), _fn('log2', VECTOR),
    _fn('mad_over_time', MATRIX),
    _fn('max_over_time', MATRIX),
    _fn('min_over_time', MATRIX),
    _fn('minute', VECTOR, variadic=1),
    _fn('month', VECTOR, variadic=1),
    _fn('pi', returns=SCALAR),
    _fn('predict_linear', MATRIX, SCALAR),
    _fn('present_over_time', MATRIX),
    _fn('quantile_over_time', SCALAR, MATRIX),
    _fn('rad', VECTOR),
    _fn('rate', MATRIX),
    _fn('resets', MATRIX),
    _fn('round', VECTOR, SCALAR, variadic=1),
    _fn('scalar', VECTOR, returns=SCALAR),
    _fn('sgn', VECTOR),
    _fn('sin', VECTOR), _fn('sinh', VECTOR),
    _fn('sort', VECTOR),
    _fn('sort_desc', VECTOR),
    _fn('sort_by_label', VECTOR, STRING, variadic=-1),
    _fn('sort_by_label_desc', VECTOR, STRING, variadic=-1),
    _fn('sqrt', VECTOR),
    _fn('stddev_over_time', MATRIX),
    _fn('stdvar_over_time', MATRIX),
    _fn('sum_over_time', MATRIX),
    _fn('tan', VECTOR), _fn('tanh', VECTOR),
    _fn('time', returns=SCALAR),
    _fn('timestamp', VECTOR),
    _fn('vector', SCALAR),
    _fn('year', VECTOR, variadic=1),
]}
