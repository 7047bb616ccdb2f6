"""
Error taxonomy for query transformation and rule validation.

Every error raised by the package derives from CosToolError so callers can
handle the whole family at once; the CLI and the API translate them into
exit codes and HTTP statuses respectively.
"""

from typing import List, Optional


class CosToolError(Exception):
    """Base class for all errors raised by cos_tool."""


class StructuralPositionError(CosToolError):
    """A template variable sits in a slot the grammar cannot stand in for.

    Attributes:
        query: The untouched query the variable was found in
        variable: The offending variable text
        position: Offset of the variable in the query
    """

    def __init__(self, message: str, query: str = "", variable: str = "",
                 position: int = -1):
        super().__init__(message)
        self.query = query
        self.variable = variable
        self.position = position


class GrammarParseError(CosToolError, SyntaxError):
    """Text does not conform to a dialect grammar.

    The message is rendered as ``parse error at line L, col C: <msg>``.
    ``query`` holds the text the caller passed in, which may differ from the
    text that was actually parsed when placeholders were substituted.
    """

    def __init__(self, msg: str, line: int = 0, column: int = 0,
                 query: str = ""):
        if line:
            message = f"parse error at line {line}, col {column}: {msg}"
        else:
            message = f"parse error: {msg}"
        super().__init__(message)
        # SyntaxError.__init__ stores its argument in ``msg``; keep the bare one.
        self.msg = msg
        self.line = line
        self.column = column
        self.query = query

    def __str__(self) -> str:
        return self.args[0]

    @classmethod
    def at(cls, msg: str, text: str, position: int) -> 'GrammarParseError':
        """Build an error located at a character offset of ``text``."""
        position = max(0, min(position, len(text)))
        line = text.count("\n", 0, position) + 1
        column = position - (text.rfind("\n", 0, position) + 1) + 1
        return cls(msg, line=line, column=column, query=text)

    def with_query(self, query: str) -> 'GrammarParseError':
        """Return a copy of this error that carries a different query."""
        return GrammarParseError(self.msg, self.line, self.column, query=query)

    def with_context(self, context: str) -> 'GrammarParseError':
        """Return a copy whose message reads ``<context>: <message>``."""
        err = GrammarParseError(self.msg, self.line, self.column, query=self.query)
        err.args = (f"{context}: {self}",)
        return err


class DecodeError(CosToolError):
    """A rule file could not be decoded into rule groups."""


class GroupNameError(CosToolError):
    """A rule group has an empty or duplicated name."""


class RuleShapeError(CosToolError):
    """A rule sets a conflicting or missing combination of fields."""


class NameValidityError(CosToolError):
    """An invalid label, annotation or record name or label value."""


class TemplateSyntaxError(CosToolError):
    """A label or annotation value is not a well-formed template.

    Attributes:
        key: The label or annotation key the value belongs to, if known
    """

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class ConfigError(CosToolError):
    """A configuration file failed validation."""


class RuleValidationError(CosToolError):
    """Aggregate of every violation found in one rule file.

    Attributes:
        filename: The validated file
        errors: Each individual violation, in discovery order
    """

    def __init__(self, filename: str, errors: List[CosToolError]):
        self.filename = filename
        self.errors = list(errors)
        details = "; ".join(str(err) for err in self.errors)
        super().__init__(f"error validating {filename}: {details}")


def format_validation_error(exc) -> str:
    """Flatten a pydantic ValidationError into ``loc: msg; loc: msg``."""
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error['loc'])
        details.append(f"{location}: {error['msg']}" if location else error['msg'])
    return "; ".join(details)
