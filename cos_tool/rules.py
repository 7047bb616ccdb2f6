"""
Alerting and recording rule file validation.

A rule file is decoded strictly into pydantic models, then every group and
rule is checked. Decoding failures are fatal for the file; every other
violation is collected so a single run reports them all.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .durations import DurationError, parse_duration
from .errors import (
    CosToolError,
    DecodeError,
    GrammarParseError,
    GroupNameError,
    NameValidityError,
    RuleShapeError,
    RuleValidationError,
    TemplateSyntaxError,
    format_validation_error,
)
from .templates import check_alert_template

logger = logging.getLogger(__name__)

METRIC_NAME_RE = re.compile(r'^[a-zA-Z_:][a-zA-Z0-9_:]*$')
LABEL_NAME_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')
METRIC_NAME_LABEL = '__name__'


def _to_string(value: Any) -> Any:
    """Coerce a YAML scalar to the text it was written as."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return ""
    return value


def duration_millis(value: Optional[str]) -> int:
    """Parse a rule file duration; ``None`` and ``"0"`` are zero."""
    if value is None or value == "0":
        return 0
    return parse_duration(value)


def _check_duration(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = _to_string(value)
    try:
        duration_millis(value)
    except DurationError as exc:
        raise ValueError(str(exc)) from exc
    return value


class RuleNode(BaseModel):
    """A single recording or alerting rule.

    Attributes:
        record: Name of the series a recording rule produces
        alert: Name of an alerting rule
        expr: The query expression
        for_: Pending period of an alert (``for`` in YAML)
        keep_firing_for: How long an alert keeps firing once resolved
        labels: Labels added to the result
        annotations: Alert annotations
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    record: Optional[str] = None
    alert: Optional[str] = None
    expr: Optional[str] = None
    for_: Optional[str] = Field(default=None, alias="for")
    keep_firing_for: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)

    @field_validator('record', 'alert', 'expr', mode='before')
    @classmethod
    def _scalar(cls, value: Any) -> Any:
        return None if value is None else _to_string(value)

    @field_validator('labels', 'annotations', mode='before')
    @classmethod
    def _scalar_values(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): _to_string(v) for k, v in value.items()}
        return value

    @field_validator('for_', 'keep_firing_for', mode='before')
    @classmethod
    def _duration(cls, value: Any) -> Optional[str]:
        return _check_duration(value)

    @property
    def kind(self) -> str:
        return "alert" if self.alert else "record"

    @property
    def name(self) -> str:
        return self.record or self.alert or ""

    @property
    def for_duration(self) -> int:
        """The ``for`` period in milliseconds."""
        return duration_millis(self.for_)


class RuleGroup(BaseModel):
    """A named group of rules evaluated together."""
    model_config = ConfigDict(extra="forbid")

    name: str = ""
    interval: Optional[str] = None
    query_offset: Optional[str] = None
    limit: int = 0
    labels: Dict[str, str] = Field(default_factory=dict)
    rules: List[RuleNode] = Field(default_factory=list)

    @field_validator('name', mode='before')
    @classmethod
    def _scalar(cls, value: Any) -> Any:
        return _to_string(value)

    @field_validator('labels', mode='before')
    @classmethod
    def _scalar_values(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): _to_string(v) for k, v in value.items()}
        return value

    @field_validator('interval', 'query_offset', mode='before')
    @classmethod
    def _duration(cls, value: Any) -> Optional[str]:
        return _check_duration(value)

    @field_validator('rules', mode='before')
    @classmethod
    def _rules(cls, value: Any) -> Any:
        return [] if value is None else value


class RuleGroups(BaseModel):
    """Top level of a rule file."""
    model_config = ConfigDict(extra="forbid")

    groups: List[RuleGroup] = Field(default_factory=list)

    @field_validator('groups', mode='before')
    @classmethod
    def _groups(cls, value: Any) -> Any:
        return [] if value is None else value


@dataclass
class RuleValidationResult:
    """Outcome of validating one rule file.

    Attributes:
        filename: The validated file
        groups: The decoded groups, or None when decoding failed
        errors: Every violation found, in discovery order
    """
    filename: str
    groups: Optional[RuleGroups] = None
    errors: List[CosToolError] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def error(self) -> Optional[RuleValidationError]:
        """All violations folded into one error, or None when valid."""
        if not self.errors:
            return None
        return RuleValidationError(self.filename, self.errors)

    def raise_for_errors(self) -> None:
        if self.errors:
            raise RuleValidationError(self.filename, self.errors)


def decode_rule_groups(data: Union[bytes, str]) -> RuleGroups:
    """Strictly decode a rule file.

    Raises:
        DecodeError: On malformed YAML, unknown fields or invalid values
    """
    if isinstance(data, bytes):
        try:
            data = data.decode('utf-8')
        except UnicodeDecodeError as exc:
            raise DecodeError(f"invalid UTF-8: {exc}") from exc
    try:
        document = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise DecodeError(str(exc)) from exc

    if document is None:
        return RuleGroups()
    if not isinstance(document, dict):
        raise DecodeError(f"rule file must be a mapping, got {type(document).__name__}")
    try:
        return RuleGroups.model_validate(document)
    except ValidationError as exc:
        raise DecodeError(format_validation_error(exc)) from exc


def _check_rule(rule: RuleNode, group_name: str, prefix: str,
                parse: Callable[[str], Any]) -> List[CosToolError]:
    """Return every violation of ``rule``, in check order."""
    errors: List[CosToolError] = []
    if rule.record and rule.alert:
        errors.append(RuleShapeError(f"{prefix}only one of 'record' and 'alert' must be set"))
    if not rule.record and not rule.alert:
        errors.append(RuleShapeError(f"{prefix}one of 'record' or 'alert' must be set"))

    if not rule.expr:
        errors.append(RuleShapeError(f"{prefix}field 'expr' must be set in rule"))
    else:
        try:
            parse(rule.expr)
        except GrammarParseError as exc:
            errors.append(exc.with_context(
                f"{prefix}could not parse expression for {rule.kind} '{rule.name}' "
                f"in group '{group_name}'"))

    if rule.record:
        if rule.annotations:
            errors.append(RuleShapeError(f"{prefix}invalid field 'annotations' in recording rule"))
        if rule.for_duration:
            errors.append(RuleShapeError(f"{prefix}invalid field 'for' in recording rule"))
        if duration_millis(rule.keep_firing_for):
            errors.append(RuleShapeError(
                f"{prefix}invalid field 'keep_firing_for' in recording rule"))
        if not METRIC_NAME_RE.match(rule.record):
            errors.append(NameValidityError(f"{prefix}invalid recording rule name: {rule.record}"))

    for key in sorted(rule.labels):
        if not LABEL_NAME_RE.match(key) or key == METRIC_NAME_LABEL:
            errors.append(NameValidityError(f"{prefix}invalid label name: {key}"))
        try:
            rule.labels[key].encode('utf-8')
        except UnicodeEncodeError:
            errors.append(NameValidityError(f"{prefix}invalid label value: {rule.labels[key]!r}"))

    for key in sorted(rule.annotations):
        if not LABEL_NAME_RE.match(key):
            errors.append(NameValidityError(f"{prefix}invalid annotation name: {key}"))

    if rule.alert:
        errors.extend(_check_templates(rule, prefix))
    return errors


def _check_templates(rule: RuleNode, prefix: str) -> List[TemplateSyntaxError]:
    errors = []
    for section, values in (('label', rule.labels), ('annotation', rule.annotations)):
        for key in sorted(values):
            try:
                check_alert_template(values[key], rule.alert)
            except TemplateSyntaxError as exc:
                errors.append(TemplateSyntaxError(f'{prefix}{section} "{key}": {exc}', key=key))
    return errors


def validate_groups(groups: RuleGroups, parse: Callable[[str], Any]) -> List[CosToolError]:
    """Check group names and every rule of every group."""
    errors: List[CosToolError] = []
    seen = set()
    for index, group in enumerate(groups.groups):
        if not group.name:
            errors.append(GroupNameError(f"group {index}: Groupname must not be empty"))
        if group.name in seen:
            errors.append(GroupNameError(
                f'groupname: "{group.name}" is repeated in the same file'))
        seen.add(group.name)

        for number, rule in enumerate(group.rules, start=1):
            prefix = f'group "{group.name}", rule {number}, "{rule.name}": '
            errors.extend(_check_rule(rule, group.name, prefix, parse))
    return errors


def validate_rules(filename: str, data: Union[bytes, str],
                   parse: Callable[[str], Any]) -> RuleValidationResult:
    """Decode and validate one rule file.

    Args:
        filename: Name reported in the aggregate error
        data: The file content
        parse: Dialect parse function used to check each ``expr``

    Returns:
        RuleValidationResult holding the groups and every violation
    """
    result = RuleValidationResult(filename=filename)
    try:
        result.groups = decode_rule_groups(data)
    except DecodeError as exc:
        result.errors.append(exc)
        logger.debug("Failed to decode %s: %s", filename, exc)
        return result

    result.errors.extend(validate_groups(result.groups, parse))
    logger.debug("Validated %s: %d group(s), %d error(s)",
                 filename, len(result.groups.groups), len(result.errors))
    return result
