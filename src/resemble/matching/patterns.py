"""Call-site descriptors and method patterns.

A scanned corpus describes each method invocation by the method it calls.
The scan pass renders two strings from it:

- a signature, used for embedding distance ("int foo (String s)")
- a pattern, used for deduplication and matching ("a.B foo(..)")

The confirm pass turns the surviving patterns back into MethodPattern
matchers and only evaluates invocations they match.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase

_GENERICS = re.compile(r"<.*>")
# The declaring type is absent for invocations whose receiver type is unknown
_PATTERN = re.compile(r"^(?:(?P<type>\S+)\s+)?(?P<name>[^\s(]+)\((?P<args>.*)\)$")


def strip_generics(type_name: str) -> str:
    """Remove type arguments: ``java.util.List<String>`` -> ``java.util.List``."""
    return _GENERICS.sub("", type_name)


def simple_name(type_name: str) -> str:
    """Unqualified name: ``java.lang.String`` -> ``String``."""
    return strip_generics(type_name).rsplit(".", 1)[-1]


@dataclass(frozen=True)
class MethodType:
    """The method an invocation resolves to.

    Attributes:
        declaring_type: Fully qualified declaring type, may include generics
        name: Method name
        return_type: Fully qualified return type
        parameter_types: Fully qualified parameter types
        parameter_names: Parameter names, parallel to parameter_types
    """

    declaring_type: str
    name: str
    return_type: str = "void"
    parameter_types: tuple[str, ...] = ()
    parameter_names: tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        """Human-readable rendering scored against the query."""
        params = ", ".join(
            f"{simple_name(t)} {n}"
            for t, n in zip(self.parameter_types, self.parameter_names, strict=False)
        )
        return f"{simple_name(self.return_type)} {self.name} ({params})"

    @property
    def pattern(self) -> str:
        """Deduplication key and matcher source for this method."""
        declaring_type = strip_generics(self.declaring_type)
        if not declaring_type:
            return f"{self.name}(..)"
        return f"{declaring_type} {self.name}(..)"


@dataclass(frozen=True)
class CallSite:
    """One method invocation in a source unit.

    Attributes:
        method: The invoked method
        text: The invocation as printed in source, used for confirmation
    """

    method: MethodType
    text: str


@dataclass(frozen=True)
class MethodPattern:
    """Matcher for invocations, e.g. ``com.example.* parse*(..)``.

    The declaring type and method name accept ``*`` wildcards. A pattern
    without a declaring type (``foo(..)``) only matches methods whose
    declaring type is unknown. An argument list of ``..`` matches any
    arguments; otherwise each comma-separated entry is matched against the
    parameter type, qualified or simple.
    """

    declaring_type: str
    method_name: str
    arguments: tuple[str, ...] = field(default=("..",))

    @classmethod
    def parse(cls, pattern: str) -> MethodPattern:
        """Parse ``"<declaring type> <name>(<args>)"``.

        Raises:
            ValueError: If the pattern is malformed
        """
        match = _PATTERN.match(pattern.strip())
        if match is None:
            raise ValueError(f"Invalid method pattern: {pattern!r}")
        raw_args = match.group("args").strip()
        arguments = tuple(a.strip() for a in raw_args.split(",")) if raw_args else ()
        return cls(match.group("type") or "", match.group("name"), arguments)

    def __str__(self) -> str:
        rendered = f"{self.method_name}({', '.join(self.arguments)})"
        if not self.declaring_type:
            return rendered
        return f"{self.declaring_type} {rendered}"

    def matches(self, method: MethodType) -> bool:
        if not fnmatchcase(strip_generics(method.declaring_type), self.declaring_type):
            return False
        if not fnmatchcase(method.name, self.method_name):
            return False
        if self.arguments == ("..",):
            return True
        if len(self.arguments) != len(method.parameter_types):
            return False
        return all(
            fnmatchcase(strip_generics(actual), expected)
            or fnmatchcase(simple_name(actual), expected)
            for expected, actual in zip(self.arguments, method.parameter_types, strict=True)
        )
