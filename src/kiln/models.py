"""Core typed dataclasses for recipes, build requests, and install receipts."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from kiln.conditions import ALWAYS, Condition

BuildMode = Literal["release", "head"]
DependencyKind = Literal["required", "build", "optional"]
HeadSelection = Literal["priority", "strict"]
Vcs = Literal["git", "bzr", "hg"]

HEAD_VERSION = "HEAD"


@dataclass(frozen=True, slots=True)
class Checksum:
    algorithm: str
    digest: str

    def matches(self, actual: str) -> bool:
        return self.digest.lower() == actual.lower()

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.digest}"


@dataclass(frozen=True, slots=True)
class OptionDecl:
    name: str
    description: str = ""
    default: bool = False
    requires: str | None = None


@dataclass(frozen=True, slots=True)
class HeadSource:
    url: str
    vcs: Vcs = "git"
    selector: str | None = None


@dataclass(frozen=True, slots=True)
class HeadSpec:
    sources: tuple[HeadSource, ...] = ()
    selection: HeadSelection = "priority"

    @property
    def default(self) -> HeadSource | None:
        for source in self.sources:
            if source.selector is None:
                return source
        return None


@dataclass(frozen=True, slots=True)
class Dependency:
    name: str
    kind: DependencyKind = "required"
    condition: Condition = ALWAYS
    version: str | None = None
    present_args: tuple[str, ...] = ()
    absent_args: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PatchSpec:
    index: int
    strip: int = 1
    content: str | None = None
    url: str | None = None
    condition: Condition = ALWAYS

    @property
    def remote(self) -> bool:
        return self.url is not None

    @property
    def label(self) -> str:
        return self.url if self.url is not None else f"inline#{self.index}"


@dataclass(frozen=True, slots=True)
class PatchSet:
    items: tuple[PatchSpec, ...] = ()
    release_only: bool = True


@dataclass(frozen=True, slots=True)
class Inreplace:
    path: str
    before: str
    after: str
    condition: Condition = ALWAYS


@dataclass(frozen=True, slots=True)
class ToolchainRule:
    compiler: str
    cause: str
    build: int | None = None

    def matches(self, toolchain: Toolchain) -> bool:
        if toolchain.name != self.compiler:
            return False
        if self.build is None or toolchain.build is None:
            return True
        return toolchain.build <= self.build


@dataclass(frozen=True, slots=True)
class ArgRule:
    condition: Condition
    args: tuple[str, ...] = ()
    otherwise: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class EnvRule:
    condition: Condition
    variable: str
    value: str


@dataclass(frozen=True, slots=True)
class BootstrapStep:
    command: tuple[str, ...]
    condition: Condition


@dataclass(frozen=True, slots=True)
class BuildSteps:
    configure: tuple[str, ...] = ("./configure",)
    args: tuple[str, ...] = ("--prefix={prefix}",)
    variant_args: tuple[ArgRule, ...] = ()
    env: tuple[EnvRule, ...] = ()
    bootstrap: BootstrapStep | None = None
    serial_when: Condition | None = None


@dataclass(frozen=True, slots=True)
class RemoveFiles:
    paths: tuple[str, ...]
    condition: Condition = ALWAYS


@dataclass(frozen=True, slots=True)
class InstallBundle:
    source: str
    condition: Condition = ALWAYS


@dataclass(frozen=True, slots=True)
class WrapperScript:
    path: str
    target: str
    args: tuple[str, ...] = ()
    condition: Condition = ALWAYS


FinalizeRule = RemoveFiles | InstallBundle | WrapperScript


@dataclass(frozen=True, slots=True)
class Caveat:
    text: str
    condition: Condition = ALWAYS


@dataclass(frozen=True, slots=True)
class Recipe:
    """Immutable descriptor of how to obtain, configure, and build one package."""

    name: str
    version: str = HEAD_VERSION
    homepage: str | None = None
    url: str | None = None
    mirrors: tuple[str, ...] = ()
    checksum: Checksum | None = None
    head: HeadSpec = field(default_factory=HeadSpec)
    options: tuple[OptionDecl, ...] = ()
    conflicts: tuple[tuple[str, ...], ...] = ()
    dependencies: tuple[Dependency, ...] = ()
    fails_with: tuple[ToolchainRule, ...] = ()
    patches: PatchSet = field(default_factory=PatchSet)
    inreplace: tuple[Inreplace, ...] = ()
    build: BuildSteps = field(default_factory=BuildSteps)
    skip_clean: tuple[str, ...] = ()
    finalize: tuple[FinalizeRule, ...] = ()
    caveats: tuple[Caveat, ...] = ()
    origin: str | None = None

    @property
    def urls(self) -> tuple[str, ...]:
        if self.url is None:
            return ()
        return (self.url, *self.mirrors)

    def option(self, name: str) -> OptionDecl | None:
        for decl in self.options:
            if decl.name == name:
                return decl
        return None


@dataclass(frozen=True, slots=True)
class Toolchain:
    name: str
    version: str | None = None
    build: int | None = None

    def __str__(self) -> str:
        parts = [self.name]
        if self.version:
            parts.append(self.version)
        if self.build is not None:
            parts.append(f"build {self.build}")
        return " ".join(parts)


@dataclass(frozen=True, slots=True)
class BuildRequest:
    options: tuple[str, ...] = ()
    mode: BuildMode = "release"
    jobs: int | None = None


@dataclass(frozen=True, slots=True)
class InstallReceipt:
    name: str
    version: str
    mode: BuildMode
    prefix: Path
    options: tuple[str, ...]
    dependencies: tuple[str, ...]
    recipe_digest: str
    files: tuple[str, ...] = ()
    wrapper: str | None = None
    caveats: str = ""
    source: Mapping[str, str] = field(default_factory=dict)


__all__ = [
    "ArgRule",
    "BootstrapStep",
    "BuildMode",
    "BuildRequest",
    "BuildSteps",
    "Caveat",
    "Checksum",
    "Dependency",
    "DependencyKind",
    "EnvRule",
    "FinalizeRule",
    "HEAD_VERSION",
    "HeadSelection",
    "HeadSource",
    "HeadSpec",
    "Inreplace",
    "InstallBundle",
    "InstallReceipt",
    "OptionDecl",
    "PatchSet",
    "PatchSpec",
    "Recipe",
    "RemoveFiles",
    "Toolchain",
    "ToolchainRule",
    "Vcs",
    "WrapperScript",
]
