"""
LogQL expression tree.

Log queries are a stream selector followed by pipeline stages; metric
queries wrap log ranges in range aggregations and combine them with vector
aggregations and binary operations. Every node prints itself in canonical
form through ``__str__``.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..durations import format_logql_duration
from ..lexing import format_number, quote
from ..models import Matcher, Node, SelectorNode


@dataclass
class StreamSelector(SelectorNode):
    """``{app="foo", env="prod"}``; printed in source order."""
    matchers: List[Matcher] = field(default_factory=list)

    def __str__(self) -> str:
        return "{" + ", ".join(str(m) for m in self.matchers) + "}"


# Pipeline stages


@dataclass
class FilterValue:
    value: str
    is_ip: bool = False

    def __str__(self) -> str:
        if self.is_ip:
            return f"ip({quote(self.value)})"
        return quote(self.value)


@dataclass
class LineFilter:
    """``|= "a"``, ``!~ "b"`` or ``|= "a" or "b"``."""
    op: str
    values: List[FilterValue]

    def __str__(self) -> str:
        return f"{self.op} " + " or ".join(str(v) for v in self.values)


@dataclass
class LabelParser:
    """``| json``, ``| logfmt --strict a="b"``, ``| regexp "..."`` and friends.

    Attributes:
        parser: The parser keyword
        argument: Expression of ``regexp`` and ``pattern``
        flags: ``logfmt`` flags such as ``--strict``
        params: Extraction parameters as (label, optional expression)
    """
    parser: str
    argument: Optional[str] = None
    flags: List[str] = field(default_factory=list)
    params: List[Tuple[str, Optional[str]]] = field(default_factory=list)

    def __str__(self) -> str:
        parts = ["|", self.parser]
        parts.extend(self.flags)
        if self.argument is not None:
            parts.append(quote(self.argument))
        if self.params:
            parts.append(",".join(
                name if expr is None else f"{name}={quote(expr)}"
                for name, expr in self.params))
        return " ".join(parts)


class LabelFilter:
    """Base class of label filter expressions."""


@dataclass
class MatcherFilter(LabelFilter):
    matcher: Matcher

    def __str__(self) -> str:
        return str(self.matcher)


@dataclass
class ComparisonFilter(LabelFilter):
    """Numeric, duration or bytes comparison; the literal is kept as written."""
    name: str
    op: str
    literal: str

    def __str__(self) -> str:
        return f"{self.name}{self.op}{self.literal}"


@dataclass
class IpFilter(LabelFilter):
    name: str
    op: str
    value: str

    def __str__(self) -> str:
        return f"{self.name}{self.op}ip({quote(self.value)})"


@dataclass
class BinaryLabelFilter(LabelFilter):
    op: str
    left: LabelFilter
    right: LabelFilter

    def __str__(self) -> str:
        return f"{self.left} {self.op} {self.right}"


@dataclass
class ParenLabelFilter(LabelFilter):
    inner: LabelFilter

    def __str__(self) -> str:
        return f"({self.inner})"


@dataclass
class LabelFilterStage:
    filter: LabelFilter

    def __str__(self) -> str:
        return f"| {self.filter}"


@dataclass
class LineFormat:
    template: str

    def __str__(self) -> str:
        return f"| line_format {quote(self.template)}"


@dataclass
class LabelFormat:
    """``| label_format dst=src, dst2="{{.tmpl}}"``.

    Each item is (destination, source, is_template).
    """
    items: List[Tuple[str, str, bool]]

    def __str__(self) -> str:
        rendered = [f"{dst}={quote(src) if is_template else src}"
                    for dst, src, is_template in self.items]
        return "| label_format " + ",".join(rendered)


@dataclass
class LabelSelection:
    """``| drop a, b="c"`` or ``| keep a``."""
    keyword: str
    items: List[object]

    def __str__(self) -> str:
        return f"| {self.keyword} " + ",".join(str(item) for item in self.items)


@dataclass
class Decolorize:

    def __str__(self) -> str:
        return "| decolorize"


@dataclass
class Unwrap:
    """``| unwrap latency`` or ``| unwrap duration(latency)``, plus post filters."""
    label: str
    conversion: Optional[str] = None
    post_filters: List[LabelFilter] = field(default_factory=list)

    def __str__(self) -> str:
        target = f"{self.conversion}({self.label})" if self.conversion else self.label
        text = f" | unwrap {target}"
        for post_filter in self.post_filters:
            text += f" | {post_filter}"
        return text


# Queries


class Expr(Node):
    """Base class of LogQL expressions."""

    is_log = False


@dataclass
class LogQuery(Expr):
    """A stream selector followed by zero or more pipeline stages."""
    selector: StreamSelector
    stages: List[object] = field(default_factory=list)

    is_log = True

    def children(self) -> List[Node]:
        return [self.selector]

    def __str__(self) -> str:
        return " ".join([str(self.selector)] + [str(stage) for stage in self.stages])


@dataclass
class LogRange(Node):
    query: Expr
    interval: int
    unwrap: Optional[Unwrap] = None
    offset: int = 0

    def children(self) -> List[Node]:
        return [self.query]

    def __str__(self) -> str:
        text = str(self.query)
        if self.unwrap is not None:
            text += str(self.unwrap)
        text += f"[{format_logql_duration(self.interval)}]"
        if self.offset:
            text += f" offset {format_logql_duration(self.offset)}"
        return text


@dataclass
class Grouping:
    labels: List[str] = field(default_factory=list)
    without: bool = False

    def __str__(self) -> str:
        keyword = " without" if self.without else " by"
        return f"{keyword}({','.join(self.labels)})"


@dataclass
class RangeAggregation(Expr):
    op: str
    range: LogRange
    param: Optional[float] = None
    grouping: Optional[Grouping] = None

    def children(self) -> List[Node]:
        return [self.range]

    def __str__(self) -> str:
        args = str(self.range)
        if self.param is not None:
            args = f"{format_number(self.param)},{args}"
        text = f"{self.op}({args})"
        if self.grouping is not None:
            text += str(self.grouping)
        return text


@dataclass
class VectorAggregation(Expr):
    op: str
    expr: Expr
    param: Optional[int] = None
    grouping: Optional[Grouping] = None

    def children(self) -> List[Node]:
        return [self.expr]

    def __str__(self) -> str:
        text = self.op
        if self.grouping is not None:
            text += str(self.grouping)
        args = str(self.expr)
        if self.param is not None:
            args = f"{self.param},{args}"
        return f"{text}({args})"


@dataclass
class VectorMatching:
    on: bool = False
    labels: List[str] = field(default_factory=list)
    card: Optional[str] = None
    include: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        text = f" {'on' if self.on else 'ignoring'}({','.join(self.labels)})"
        if self.card is not None:
            text += f" {self.card}({','.join(self.include)})"
        return text


@dataclass
class BinaryOp(Expr):
    op: str
    lhs: Expr
    rhs: Expr
    return_bool: bool = False
    matching: Optional[VectorMatching] = None

    def children(self) -> List[Node]:
        return [self.lhs, self.rhs]

    def __str__(self) -> str:
        modifier = " bool" if self.return_bool else ""
        matching = str(self.matching) if self.matching is not None else ""
        return f"{self.lhs} {self.op}{modifier}{matching} {self.rhs}"


@dataclass
class Literal(Expr):
    value: float

    def __str__(self) -> str:
        return format_number(self.value)


@dataclass
class VectorExpr(Expr):
    value: float

    def __str__(self) -> str:
        return f"vector({format_number(self.value)})"


@dataclass
class LabelReplace(Expr):
    expr: Expr
    dst: str
    replacement: str
    src: str
    regex: str

    def children(self) -> List[Node]:
        return [self.expr]

    def __str__(self) -> str:
        args = [str(self.expr)] + [quote(arg) for arg in
                                   (self.dst, self.replacement, self.src, self.regex)]
        return f"label_replace({','.join(args)})"


@dataclass
class ParenExpr(Expr):
    expr: Expr

    def children(self) -> List[Node]:
        return [self.expr]

    @property
    def is_log(self) -> bool:
        return self.expr.is_log

    def __str__(self) -> str:
        return f"({self.expr})"
