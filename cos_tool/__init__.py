"""
cos-tool: label matcher injection and rule validation for PromQL and LogQL.

Injects a set of label matchers into every selector of an expression,
keeping dashboard template variables intact, and validates alerting rule
files against the query grammar.
"""

from .checker import Checker, LogQLChecker, PromQLChecker, get_checker, get_label_matchers
from .errors import (
    ConfigError,
    CosToolError,
    DecodeError,
    GrammarParseError,
    GroupNameError,
    NameValidityError,
    RuleShapeError,
    RuleValidationError,
    StructuralPositionError,
    TemplateSyntaxError,
)
from .injector import MatcherInjector, inject_matchers
from .logql import parse_logql
from .models import Matcher, MatchType
from .placeholders import PlaceholderCodec, PlaceholderTable
from .promql import parse_promql
from .rules import RuleValidationResult

__all__ = [
    'Checker',
    'ConfigError',
    'CosToolError',
    'DecodeError',
    'GrammarParseError',
    'GroupNameError',
    'LogQLChecker',
    'MatchType',
    'Matcher',
    'MatcherInjector',
    'NameValidityError',
    'PlaceholderCodec',
    'PlaceholderTable',
    'PromQLChecker',
    'RuleShapeError',
    'RuleValidationError',
    'RuleValidationResult',
    'StructuralPositionError',
    'TemplateSyntaxError',
    'get_checker',
    'get_label_matchers',
    'inject_matchers',
    'parse_logql',
    'parse_promql',
]
