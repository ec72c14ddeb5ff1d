"""Option/variant resolution: recipe-declared options merged with requested flags."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from kiln.errors import UnknownOptionError, UnsupportedVariantError
from kiln.models import BuildMode, HeadSource, Recipe


@dataclass(frozen=True, slots=True)
class OptionState:
    description: str
    selected: bool


@dataclass(frozen=True, slots=True)
class OptionSet:
    """Finalized option selection for one build.

    ``states`` follows the recipe's declaration order. ``ignored`` lists
    requested options that were dropped: sub-options whose parent is not
    selected and head selectors that lost to a higher-priority selector.
    """

    states: Mapping[str, OptionState] = field(default_factory=dict)
    mode: BuildMode = "release"
    ignored: tuple[str, ...] = ()
    head_source: HeadSource | None = None

    @property
    def head(self) -> bool:
        return self.mode == "head"

    @property
    def selected(self) -> tuple[str, ...]:
        return tuple(name for name, state in self.states.items() if state.selected)

    def includes(self, option: str) -> bool:
        state = self.states.get(option)
        return state is not None and state.selected

    def variant_key(self) -> str:
        return f"{self.mode}:{','.join(self.selected)}"


def normalize_option_name(flag: str) -> str:
    return flag[2:] if flag.startswith("--") else flag


def resolve_options(
    recipe: Recipe,
    requested: Iterable[str] = (),
    *,
    mode: BuildMode = "release",
) -> OptionSet:
    """Merge recipe defaults with *requested* flags into a finalized :class:`OptionSet`."""
    flags = tuple(dict.fromkeys(normalize_option_name(flag) for flag in requested))
    declared = {decl.name: decl for decl in recipe.options}
    for flag in flags:
        if flag not in declared:
            raise UnknownOptionError(
                f"Unknown option `{flag}` requested.",
                option=flag,
                hint=_known_options_hint(recipe),
                context={"recipe": recipe.name},
            )

    selected = {decl.name for decl in recipe.options if decl.default}
    selected.update(flags)
    ignored: list[str] = []

    changed = True
    while changed:
        changed = False
        for decl in recipe.options:
            parent = decl.requires
            if decl.name in selected and parent is not None and parent not in selected:
                selected.discard(decl.name)
                ignored.append(decl.name)
                changed = True

    for group in recipe.conflicts:
        chosen = [name for name in group if name in selected]
        if len(chosen) > 1:
            raise UnsupportedVariantError(
                "Mutually exclusive options were requested together.",
                hint=f"Select at most one of: {', '.join(group)}.",
                context={"recipe": recipe.name, "options": ", ".join(chosen)},
            )

    head_source: HeadSource | None = None
    if mode == "head":
        head_source, losers = _select_head_source(recipe, selected)
        for name in losers:
            selected.discard(name)
            ignored.append(name)
    elif recipe.url is None:
        raise UnsupportedVariantError(
            "Recipe has no release source; only head builds are possible.",
            hint="Request a head build.",
            context={"recipe": recipe.name, "mode": mode},
        )

    states = {
        decl.name: OptionState(description=decl.description, selected=decl.name in selected)
        for decl in recipe.options
    }
    return OptionSet(states=states, mode=mode, ignored=tuple(ignored), head_source=head_source)


def _select_head_source(recipe: Recipe, selected: set[str]) -> tuple[HeadSource, tuple[str, ...]]:
    if not recipe.head.sources:
        raise UnsupportedVariantError(
            "Recipe does not declare a head source.",
            hint="Build the pinned release instead.",
            context={"recipe": recipe.name, "mode": "head"},
        )
    requested = [
        source
        for source in recipe.head.sources
        if source.selector is not None and source.selector in selected
    ]
    if len(requested) > 1 and recipe.head.selection == "strict":
        raise UnsupportedVariantError(
            "Conflicting head source selectors were requested.",
            hint="Request exactly one head source selector.",
            context={
                "recipe": recipe.name,
                "selectors": ", ".join(str(source.selector) for source in requested),
            },
        )
    if requested:
        losers = tuple(str(source.selector) for source in requested[1:])
        return requested[0], losers
    default = recipe.head.default
    if default is None:
        raise UnsupportedVariantError(
            "No head source selector was requested and the recipe has no default head source.",
            hint="Request one of the head source selector options.",
            context={"recipe": recipe.name},
        )
    return default, ()


def _known_options_hint(recipe: Recipe) -> str:
    if not recipe.options:
        return "This recipe declares no options."
    return f"Declared options: {', '.join(decl.name for decl in recipe.options)}."


__all__ = ["OptionSet", "OptionState", "normalize_option_name", "resolve_options"]
