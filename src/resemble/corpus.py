"""Corpus model and JSON-lines loader.

Call-site extraction happens upstream; resemble consumes its output as a
JSON-lines file with one source unit per line:

    {"path": "src/Foo.java",
     "call_sites": [{"method": {"declaring_type": "a.B", "name": "foo",
                                "return_type": "int",
                                "parameter_types": ["java.lang.String"],
                                "parameter_names": ["s"]},
                     "text": "b.foo(input)"}],
     "method_declarations": [{"name": "run", "text": "void run() {...}"}]}
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from resemble.errors import ConfigurationFailure
from resemble.matching.patterns import CallSite, MethodType


class MethodTypeRecord(BaseModel):
    declaring_type: str = ""
    name: str
    return_type: str = "void"
    parameter_types: list[str] = Field(default_factory=list)
    parameter_names: list[str] = Field(default_factory=list)


class CallSiteRecord(BaseModel):
    method: MethodTypeRecord
    text: str


class MethodDeclarationRecord(BaseModel):
    name: str
    text: str


class UnitRecord(BaseModel):
    path: str
    call_sites: list[CallSiteRecord] = Field(default_factory=list)
    method_declarations: list[MethodDeclarationRecord] = Field(default_factory=list)


@dataclass(frozen=True)
class MethodDeclaration:
    name: str
    text: str


@dataclass(frozen=True)
class SourceUnit:
    """A traversal unit: one source file and what it calls and declares."""

    path: str
    call_sites: tuple[CallSite, ...] = ()
    method_declarations: tuple[MethodDeclaration, ...] = field(default=())

    @property
    def used_methods(self) -> list[MethodType]:
        """Distinct invoked methods, in first-use order."""
        return list(dict.fromkeys(site.method for site in self.call_sites))

    @classmethod
    def from_record(cls, record: UnitRecord) -> SourceUnit:
        return cls(
            path=record.path,
            call_sites=tuple(
                CallSite(
                    method=MethodType(
                        declaring_type=site.method.declaring_type,
                        name=site.method.name,
                        return_type=site.method.return_type,
                        parameter_types=tuple(site.method.parameter_types),
                        parameter_names=tuple(site.method.parameter_names),
                    ),
                    text=site.text,
                )
                for site in record.call_sites
            ),
            method_declarations=tuple(
                MethodDeclaration(name=decl.name, text=decl.text)
                for decl in record.method_declarations
            ),
        )


def iter_corpus(path: Path) -> Iterator[SourceUnit]:
    """Yield source units from a JSON-lines corpus file.

    Raises:
        ConfigurationFailure: If a line is not a valid unit record
    """
    with open(path) as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                record = UnitRecord.model_validate_json(line)
            except ValidationError as e:
                raise ConfigurationFailure(
                    f"{path}:{line_number}: invalid unit record: {e}"
                ) from e
            yield SourceUnit.from_record(record)


def load_corpus(path: Path) -> list[SourceUnit]:
    """Load every unit of a JSON-lines corpus file."""
    return list(iter_corpus(path))
