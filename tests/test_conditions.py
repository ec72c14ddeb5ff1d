from dataclasses import dataclass

import pytest

from kiln.conditions import (
    ALWAYS,
    NEVER,
    AllOf,
    AnyOf,
    HeadBuild,
    Not,
    OptionSelected,
    parse_condition,
)
from kiln.errors import RecipeError


def test_parse_condition_builds_tagged_expression() -> None:
    condition = parse_condition("with-x and not cocoa")

    assert condition == AllOf((OptionSelected("with-x"), Not(OptionSelected("cocoa"))))
    assert condition.options() == frozenset({"with-x", "cocoa"})


def test_parse_condition_respects_precedence_and_parentheses() -> None:
    assert parse_condition("head or cocoa and srgb") == AnyOf(
        (HeadBuild(), AllOf((OptionSelected("cocoa"), OptionSelected("srgb"))))
    )
    assert parse_condition("(head or cocoa) and srgb") == AllOf(
        (AnyOf((HeadBuild(), OptionSelected("cocoa"))), OptionSelected("srgb"))
    )


def test_parse_condition_defaults_to_always() -> None:
    assert parse_condition(None) == ALWAYS
    assert parse_condition("") == ALWAYS
    assert parse_condition(True) == ALWAYS
    assert parse_condition(False) == NEVER


def test_condition_holds_against_variant() -> None:
    condition = parse_condition("not (with-x or cocoa)")

    assert condition.holds(_Variant(selected=frozenset()))
    assert not condition.holds(_Variant(selected=frozenset({"with-x"})))
    assert parse_condition("head").holds(_Variant(selected=frozenset(), head=True))
    assert parse_condition("release").holds(_Variant(selected=frozenset(), head=False))


def test_condition_str_round_trips_through_parser() -> None:
    text = "(head or cocoa) and not keep-ctags"
    condition = parse_condition(text)

    assert str(condition) == text
    assert parse_condition(str(condition)) == condition


@pytest.mark.parametrize(
    "expression",
    ["cocoa and", "(cocoa", "cocoa)", "and cocoa", "cocoa && srgb"],
)
def test_parse_condition_rejects_malformed_expressions(expression: str) -> None:
    with pytest.raises(RecipeError):
        parse_condition(expression)


@dataclass(frozen=True)
class _Variant:
    selected: frozenset[str]
    head: bool = False

    def includes(self, option: str) -> bool:
        return option in self.selected
