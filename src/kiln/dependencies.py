"""Dependency evaluation and known-incompatible toolchain checks."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from kiln.errors import IncompatibleToolchainError, RecipeError
from kiln.models import Dependency, DependencyKind, Recipe, Toolchain
from kiln.options import OptionSet

DependencyProbe = Callable[[str], bool]

# Lower rank wins when the same dependency is declared with several kinds.
_KIND_RANK: dict[DependencyKind, int] = {"required": 0, "build": 1, "optional": 2}


@dataclass(frozen=True, slots=True)
class ResolvedDependency:
    name: str
    kind: DependencyKind
    version: str | None = None
    present: bool = True


@dataclass(frozen=True, slots=True)
class DependencyPlan:
    dependencies: tuple[ResolvedDependency, ...] = ()
    configure_args: tuple[str, ...] = ()

    @property
    def install_list(self) -> tuple[str, ...]:
        """Names to satisfy before building, in declaration order."""
        return tuple(dep.name for dep in self.dependencies if dep.present)

    @property
    def build_only(self) -> tuple[str, ...]:
        return tuple(dep.name for dep in self.dependencies if dep.kind == "build")

    @property
    def runtime(self) -> tuple[str, ...]:
        return tuple(dep.name for dep in self.dependencies if dep.kind == "required")

    @property
    def optional_present(self) -> tuple[str, ...]:
        return tuple(
            dep.name for dep in self.dependencies if dep.kind == "optional" and dep.present
        )

    @property
    def optional_absent(self) -> tuple[str, ...]:
        return tuple(
            dep.name for dep in self.dependencies if dep.kind == "optional" and not dep.present
        )


def resolve_dependencies(
    recipe: Recipe,
    options: OptionSet,
    *,
    probe: DependencyProbe,
) -> DependencyPlan:
    """Evaluate dependency conditions into an ordered, deduplicated plan.

    Optional dependencies never fail resolution: *probe* decides whether each
    one is present, which selects its ``present_args`` or ``absent_args``.
    """
    merged: dict[str, Dependency] = {}
    for dep in recipe.dependencies:
        if not dep.condition.holds(options):
            continue
        existing = merged.get(dep.name)
        if existing is None:
            merged[dep.name] = dep
            continue
        merged[dep.name] = _merge(recipe, existing, dep)

    resolved: list[ResolvedDependency] = []
    configure_args: list[str] = []
    for dep in merged.values():
        present = True
        if dep.kind == "optional":
            present = probe(dep.name)
            configure_args.extend(dep.present_args if present else dep.absent_args)
        resolved.append(
            ResolvedDependency(name=dep.name, kind=dep.kind, version=dep.version, present=present)
        )
    return DependencyPlan(dependencies=tuple(resolved), configure_args=tuple(configure_args))


def check_toolchain(recipe: Recipe, toolchain: Toolchain) -> None:
    for rule in recipe.fails_with:
        if rule.matches(toolchain):
            raise IncompatibleToolchainError(
                f"{recipe.name} cannot be built with {toolchain}: {rule.cause}",
                hint="Select a different compiler (for example by setting CC) and retry.",
                context={
                    "recipe": recipe.name,
                    "stage": "plan",
                    "toolchain": str(toolchain),
                    "cause": rule.cause,
                },
            )


def _merge(recipe: Recipe, first: Dependency, second: Dependency) -> Dependency:
    if first.version and second.version and first.version != second.version:
        raise RecipeError(
            "Conflicting version requirements for dependency.",
            hint="Declare a single version requirement per dependency.",
            context={
                "recipe": recipe.name,
                "dependency": first.name,
                "versions": f"{first.version}, {second.version}",
            },
        )
    winner = first if _KIND_RANK[first.kind] <= _KIND_RANK[second.kind] else second
    version = first.version or second.version
    return Dependency(
        name=winner.name,
        kind=winner.kind,
        condition=winner.condition,
        version=version,
        present_args=winner.present_args,
        absent_args=winner.absent_args,
    )


__all__ = [
    "DependencyPlan",
    "DependencyProbe",
    "ResolvedDependency",
    "check_toolchain",
    "resolve_dependencies",
]
