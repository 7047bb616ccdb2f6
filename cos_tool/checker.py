"""
Per-dialect query transformation and validation dispatch.

A Checker ties one query dialect together: the placeholder codec tuned to
the dialect printer, the grammar, the matcher injector and the rule and
configuration validators.
"""

import logging
from typing import Callable, Dict, Iterable, Mapping, Union

from .durations import format_logql_duration, format_prometheus_duration
from .errors import ConfigError, GrammarParseError
from .injector import MatcherInjector
from .logql import parse_logql
from .models import Node
from .placeholders import PlaceholderCodec
from .prom_config import validate_config as validate_prometheus_config
from .promql import parse_promql
from .rules import RuleValidationResult, validate_rules

logger = logging.getLogger(__name__)


class Checker:
    """Base class of the dialect checkers.

    Attributes:
        name: The dialect name accepted by ``get_checker``
        codec: Placeholder codec matching the dialect printer
    """

    name = ""

    def __init__(self, codec: PlaceholderCodec, parser: Callable[[str], Node]):
        self.codec = codec
        self._parser = parser

    def parse(self, text: str) -> Node:
        """Parse ``text`` with the dialect grammar."""
        return self._parser(text)

    def transform(self, query: str, matchers: Mapping[str, str]) -> str:
        """Inject ``matchers`` into every selector of ``query``.

        Template variables are swapped for placeholders before parsing and
        restored in the printed result.

        Args:
            query: The expression, possibly containing template variables
            matchers: Label name to value; existing labels are never overwritten

        Returns:
            The canonical printed expression with the matchers injected

        Raises:
            StructuralPositionError: If a variable sits where no placeholder fits
            GrammarParseError: If the expression does not parse
        """
        processed, table = self.codec.encode(query)
        try:
            expr = self.parse(processed)
        except GrammarParseError as exc:
            raise exc.with_query(query) from exc

        visited = MatcherInjector(matchers).inject(expr)
        logger.debug("%s: visited %d selector(s) in %r", self.name, visited, query)
        return self.codec.decode(str(expr), table)

    def validate_rules(self, filename: str, data: Union[bytes, str]) -> RuleValidationResult:
        """Validate a rule file's content against this dialect."""
        return validate_rules(filename, data, self.parse)

    def validate_config(self, filename: str) -> None:
        raise NotImplementedError


class PromQLChecker(Checker):
    """Checker for the PromQL metrics dialect."""

    name = "promql"

    def __init__(self):
        super().__init__(PlaceholderCodec(format_prometheus_duration, metric_names=True),
                         parse_promql)

    def validate_config(self, filename: str) -> None:
        """Strictly load a Prometheus server configuration file.

        Raises:
            ConfigError: If the file is unreadable or invalid
        """
        validate_prometheus_config(filename)


class LogQLChecker(Checker):
    """Checker for the LogQL log-stream dialect."""

    name = "logql"

    def __init__(self):
        super().__init__(PlaceholderCodec(format_logql_duration, metric_names=False),
                         parse_logql)

    def validate_config(self, filename: str) -> None:
        raise ConfigError("Loki not supported for validate-config")


CHECKERS = {
    PromQLChecker.name: PromQLChecker,
    LogQLChecker.name: LogQLChecker,
}


def get_checker(fmt: str) -> Checker:
    """Return the checker for a dialect name, falling back to PromQL."""
    checker_class = CHECKERS.get((fmt or "").lower())
    if checker_class is None:
        logger.warning("Unknown format %r, falling back to promql", fmt)
        checker_class = PromQLChecker
    return checker_class()


def get_label_matchers(flags: Iterable[str]) -> Dict[str, str]:
    """Turn ``name=value`` flags into an injection set.

    Raises:
        ValueError: If a flag does not split into exactly two parts on '='
    """
    matchers: Dict[str, str] = {}
    for flag in flags:
        parts = flag.split("=")
        if len(parts) != 2:
            raise ValueError("malformed label injector")
        matchers[parts[0]] = parts[1]
    return matchers
