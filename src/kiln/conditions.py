"""Predicate expressions evaluated against a finalized build variant.

Recipes gate dependencies, patches, configure arguments, environment changes
and post-install rules with ``when:`` strings such as ``"head or cocoa"`` or
``"with-x and not cocoa"``. They are parsed once into the tagged variants
below and evaluated against an :class:`~kiln.options.OptionSet`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from kiln.errors import RecipeError

RESERVED_NAMES = frozenset({"head", "release", "true", "false", "and", "or", "not"})

_TOKEN_PATTERN = re.compile(r"\s*(?:(\()|(\))|([A-Za-z0-9][A-Za-z0-9_.+-]*))")


class Variant(Protocol):
    @property
    def head(self) -> bool:
        """Whether the build targets head (version-control) sources."""

    def includes(self, option: str) -> bool:
        """Return whether *option* is selected."""


@dataclass(frozen=True, slots=True)
class Constant:
    value: bool

    def holds(self, variant: Variant) -> bool:
        return self.value

    def options(self) -> frozenset[str]:
        return frozenset()

    def __str__(self) -> str:
        return "true" if self.value else "false"


@dataclass(frozen=True, slots=True)
class OptionSelected:
    name: str

    def holds(self, variant: Variant) -> bool:
        return variant.includes(self.name)

    def options(self) -> frozenset[str]:
        return frozenset({self.name})

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class HeadBuild:
    def holds(self, variant: Variant) -> bool:
        return variant.head

    def options(self) -> frozenset[str]:
        return frozenset()

    def __str__(self) -> str:
        return "head"


@dataclass(frozen=True, slots=True)
class ReleaseBuild:
    def holds(self, variant: Variant) -> bool:
        return not variant.head

    def options(self) -> frozenset[str]:
        return frozenset()

    def __str__(self) -> str:
        return "release"


@dataclass(frozen=True, slots=True)
class Not:
    inner: Condition

    def holds(self, variant: Variant) -> bool:
        return not self.inner.holds(variant)

    def options(self) -> frozenset[str]:
        return self.inner.options()

    def __str__(self) -> str:
        return f"not {_grouped(self.inner)}"


@dataclass(frozen=True, slots=True)
class AllOf:
    items: tuple[Condition, ...]

    def holds(self, variant: Variant) -> bool:
        return all(item.holds(variant) for item in self.items)

    def options(self) -> frozenset[str]:
        return frozenset().union(*(item.options() for item in self.items))

    def __str__(self) -> str:
        return " and ".join(_grouped(item) for item in self.items)


@dataclass(frozen=True, slots=True)
class AnyOf:
    items: tuple[Condition, ...]

    def holds(self, variant: Variant) -> bool:
        return any(item.holds(variant) for item in self.items)

    def options(self) -> frozenset[str]:
        return frozenset().union(*(item.options() for item in self.items))

    def __str__(self) -> str:
        return " or ".join(_grouped(item) for item in self.items)


Condition = Constant | OptionSelected | HeadBuild | ReleaseBuild | Not | AllOf | AnyOf

ALWAYS = Constant(True)
NEVER = Constant(False)


def parse_condition(expression: str | bool | None) -> Condition:
    """Parse a ``when:`` expression. ``None`` means unconditional."""
    if expression is None:
        return ALWAYS
    if isinstance(expression, bool):
        return ALWAYS if expression else NEVER
    if not isinstance(expression, str):
        raise RecipeError(
            "Condition must be a string expression.",
            context={"expression": repr(expression)},
        )
    tokens = _tokenize(expression)
    if not tokens:
        return ALWAYS
    parser = _Parser(tokens=tokens, source=expression)
    result = parser.expression()
    if parser.position != len(tokens):
        raise RecipeError(
            "Unexpected trailing token in condition.",
            context={"expression": expression, "token": tokens[parser.position]},
        )
    return result


def _tokenize(expression: str) -> list[str]:
    tokens: list[str] = []
    position = 0
    stripped = expression.rstrip()
    while position < len(stripped):
        match = _TOKEN_PATTERN.match(stripped, position)
        if match is None:
            raise RecipeError(
                "Invalid character in condition.",
                context={"expression": expression, "offset": str(position)},
            )
        tokens.append(match.group(1) or match.group(2) or match.group(3))
        position = match.end()
    return tokens


@dataclass(slots=True)
class _Parser:
    tokens: list[str]
    source: str
    position: int = 0

    def expression(self) -> Condition:
        items = [self.conjunction()]
        while self._accept("or"):
            items.append(self.conjunction())
        return items[0] if len(items) == 1 else AnyOf(tuple(items))

    def conjunction(self) -> Condition:
        items = [self.unary()]
        while self._accept("and"):
            items.append(self.unary())
        return items[0] if len(items) == 1 else AllOf(tuple(items))

    def unary(self) -> Condition:
        if self._accept("not"):
            return Not(self.unary())
        if self._accept("("):
            inner = self.expression()
            if not self._accept(")"):
                raise RecipeError(
                    "Unbalanced parenthesis in condition.",
                    context={"expression": self.source},
                )
            return inner
        token = self._next()
        if token in ("and", "or", ")"):
            raise RecipeError(
                "Expected an option name in condition.",
                context={"expression": self.source, "token": token},
            )
        if token == "head":
            return HeadBuild()
        if token == "release":
            return ReleaseBuild()
        if token == "true":
            return ALWAYS
        if token == "false":
            return NEVER
        return OptionSelected(token)

    def _accept(self, token: str) -> bool:
        if self.position < len(self.tokens) and self.tokens[self.position] == token:
            self.position += 1
            return True
        return False

    def _next(self) -> str:
        if self.position >= len(self.tokens):
            raise RecipeError(
                "Condition ended unexpectedly.",
                context={"expression": self.source},
            )
        token = self.tokens[self.position]
        self.position += 1
        return token


def _grouped(condition: Condition) -> str:
    if isinstance(condition, AllOf | AnyOf):
        return f"({condition})"
    return str(condition)


__all__ = [
    "ALWAYS",
    "NEVER",
    "AllOf",
    "AnyOf",
    "Condition",
    "Constant",
    "HeadBuild",
    "Not",
    "OptionSelected",
    "RESERVED_NAMES",
    "ReleaseBuild",
    "Variant",
    "parse_condition",
]
