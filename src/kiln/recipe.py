"""Recipe file loader, validator, and canonical digest."""

from __future__ import annotations

import hashlib
import re
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, TypeVar

import cbor2
import yaml

from kiln.conditions import RESERVED_NAMES, Condition, parse_condition
from kiln.errors import RecipeError
from kiln.models import (
    HEAD_VERSION,
    ArgRule,
    BootstrapStep,
    BuildSteps,
    Caveat,
    Checksum,
    Dependency,
    EnvRule,
    FinalizeRule,
    HeadSource,
    HeadSpec,
    Inreplace,
    InstallBundle,
    OptionDecl,
    PatchSet,
    PatchSpec,
    Recipe,
    RemoveFiles,
    ToolchainRule,
    Vcs,
    WrapperScript,
)

DEPENDENCY_KINDS = ("required", "build", "optional")
FINALIZE_ACTIONS = ("remove", "install_bundle", "wrapper")
_HEX_DIGEST = re.compile(r"[0-9a-fA-F]+")

T = TypeVar("T")


def load_recipe(path: str | Path) -> Recipe:
    recipe_path = Path(path)
    try:
        raw = recipe_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise RecipeError(
            "Recipe file does not exist.",
            context={"path": str(recipe_path)},
        ) from exc
    try:
        payload = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise RecipeError(
            "Recipe file is not valid YAML.",
            hint=str(exc),
            context={"path": str(recipe_path)},
        ) from exc
    if not isinstance(payload, dict):
        raise RecipeError(
            "Recipe file must contain a mapping at the top level.",
            context={"path": str(recipe_path)},
        )
    return parse_recipe(payload, origin=str(recipe_path))


def parse_recipe(payload: Mapping[str, Any], *, origin: str | None = None) -> Recipe:
    """Build a validated :class:`Recipe` from a decoded recipe mapping."""
    name = _required_str(payload, "name", where="recipe")
    options = _parse_options(payload.get("options", []))
    declared = {decl.name for decl in options}
    head = _parse_head(payload.get("head"))
    url = _optional_str(payload, "url", where="recipe")
    if url is None and not head.sources:
        raise RecipeError(
            "Recipe declares neither a release url nor a head source.",
            context={"recipe": name},
        )
    version_value = payload.get("version")
    version = str(version_value) if version_value is not None else HEAD_VERSION

    recipe = Recipe(
        name=name,
        version=version,
        homepage=_optional_str(payload, "homepage", where="recipe"),
        url=url,
        mirrors=_str_tuple(payload.get("mirrors", []), where="mirrors"),
        checksum=_parse_checksum(payload.get("checksum")),
        head=head,
        options=options,
        conflicts=_parse_each(payload, "conflicts", _parse_conflict_group),
        dependencies=_parse_each(payload, "dependencies", _parse_dependency),
        fails_with=_parse_each(payload, "fails_with", _parse_toolchain_rule),
        patches=_parse_patches(payload.get("patches")),
        inreplace=_parse_each(payload, "inreplace", _parse_inreplace),
        build=_parse_build(payload.get("build")),
        skip_clean=_str_tuple(payload.get("skip_clean", []), where="skip_clean"),
        finalize=_parse_each(payload, "finalize", _parse_finalize_rule),
        caveats=_parse_each(payload, "caveats", _parse_caveat),
        origin=origin,
    )
    _validate_references(recipe, declared=declared)
    return recipe


def recipe_digest(recipe: Recipe) -> str:
    """Return a stable digest over the canonical CBOR encoding of *recipe*."""
    encoded = cbor2.dumps(recipe_payload(recipe), canonical=True)
    return hashlib.sha256(encoded).hexdigest()


def recipe_payload(recipe: Recipe) -> dict[str, Any]:
    return {
        "name": recipe.name,
        "version": recipe.version,
        "homepage": recipe.homepage,
        "url": recipe.url,
        "mirrors": list(recipe.mirrors),
        "checksum": str(recipe.checksum) if recipe.checksum is not None else None,
        "head": {
            "selection": recipe.head.selection,
            "sources": [
                {"url": source.url, "vcs": source.vcs, "selector": source.selector}
                for source in recipe.head.sources
            ],
        },
        "options": [
            {
                "name": decl.name,
                "description": decl.description,
                "default": decl.default,
                "requires": decl.requires,
            }
            for decl in recipe.options
        ],
        "conflicts": [list(group) for group in recipe.conflicts],
        "dependencies": [
            {
                "name": dep.name,
                "kind": dep.kind,
                "when": str(dep.condition),
                "version": dep.version,
                "present_args": list(dep.present_args),
                "absent_args": list(dep.absent_args),
            }
            for dep in recipe.dependencies
        ],
        "fails_with": [
            {"compiler": rule.compiler, "build": rule.build, "cause": rule.cause}
            for rule in recipe.fails_with
        ],
        "patches": {
            "release_only": recipe.patches.release_only,
            "items": [
                {
                    "strip": patch.strip,
                    "content": patch.content,
                    "url": patch.url,
                    "when": str(patch.condition),
                }
                for patch in recipe.patches.items
            ],
        },
        "inreplace": [
            {
                "path": edit.path,
                "before": edit.before,
                "after": edit.after,
                "when": str(edit.condition),
            }
            for edit in recipe.inreplace
        ],
        "build": _build_payload(recipe.build),
        "skip_clean": list(recipe.skip_clean),
        "finalize": [_finalize_payload(rule) for rule in recipe.finalize],
        "caveats": [
            {"when": str(caveat.condition), "text": caveat.text} for caveat in recipe.caveats
        ],
    }


def _build_payload(build: BuildSteps) -> dict[str, Any]:
    return {
        "configure": list(build.configure),
        "args": list(build.args),
        "variant_args": [
            {
                "when": str(rule.condition),
                "args": list(rule.args),
                "otherwise": list(rule.otherwise),
            }
            for rule in build.variant_args
        ],
        "env": [
            {"when": str(rule.condition), "variable": rule.variable, "value": rule.value}
            for rule in build.env
        ],
        "bootstrap": (
            {"command": list(build.bootstrap.command), "when": str(build.bootstrap.condition)}
            if build.bootstrap is not None
            else None
        ),
        "serial_when": str(build.serial_when) if build.serial_when is not None else None,
    }


def _finalize_payload(rule: FinalizeRule) -> dict[str, Any]:
    if isinstance(rule, RemoveFiles):
        return {"action": "remove", "when": str(rule.condition), "paths": list(rule.paths)}
    if isinstance(rule, InstallBundle):
        return {"action": "install_bundle", "when": str(rule.condition), "source": rule.source}
    return {
        "action": "wrapper",
        "when": str(rule.condition),
        "path": rule.path,
        "target": rule.target,
        "args": list(rule.args),
    }


def _parse_options(raw: Any) -> tuple[OptionDecl, ...]:
    options: list[OptionDecl] = []
    seen: set[str] = set()
    for item in _list(raw, where="options"):
        entry = _mapping(item, where="options")
        name = _required_str(entry, "name", where="option")
        if name in RESERVED_NAMES:
            raise RecipeError(
                "Option name is reserved.",
                hint="Rename the option; head/release/true/false and operators are keywords.",
                context={"option": name},
            )
        if name in seen:
            raise RecipeError("Option is declared more than once.", context={"option": name})
        seen.add(name)
        options.append(
            OptionDecl(
                name=name,
                description=str(entry.get("description", "")),
                default=bool(entry.get("default", False)),
                requires=_optional_str(entry, "requires", where="option"),
            )
        )
    return tuple(options)


def _parse_head(raw: Any) -> HeadSpec:
    if raw is None:
        return HeadSpec()
    if isinstance(raw, str):
        return HeadSpec(sources=(HeadSource(url=raw, vcs=_infer_vcs(raw)),))
    entry = _mapping(raw, where="head")
    selection = entry.get("selection", "priority")
    if selection not in ("priority", "strict"):
        raise RecipeError(
            "Unsupported head selection mode.",
            hint="Use `priority` or `strict`.",
            context={"selection": str(selection)},
        )
    sources: list[HeadSource] = []
    for item in _list(entry.get("sources", []), where="head.sources"):
        source = _mapping(item, where="head.sources")
        url = _required_str(source, "url", where="head source")
        vcs = source.get("vcs") or _infer_vcs(url)
        if vcs not in ("git", "bzr", "hg"):
            raise RecipeError(
                "Unsupported version-control system.",
                context={"vcs": str(vcs), "url": url},
            )
        selector = _optional_str(source, "selector", where="head source")
        sources.append(HeadSource(url=url, vcs=vcs, selector=selector))
    if sum(1 for source in sources if source.selector is None) > 1:
        raise RecipeError(
            "Only one head source may omit a selector.",
            hint="Gate alternative head sources behind selector options.",
        )
    return HeadSpec(sources=tuple(sources), selection=selection)


def _infer_vcs(url: str) -> Vcs:
    if url.startswith("bzr://") or url.startswith("lp:"):
        return "bzr"
    if url.startswith("hg://") or url.startswith("hg+"):
        return "hg"
    return "git"


def _parse_checksum(raw: Any) -> Checksum | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        algorithm, _, digest = raw.rpartition(":")
        checksum = Checksum(algorithm=algorithm or "sha256", digest=digest)
    else:
        entry = _mapping(raw, where="checksum")
        checksum = Checksum(
            algorithm=str(entry.get("algorithm", "sha256")),
            digest=_required_str(entry, "digest", where="checksum"),
        )
    algorithm = checksum.algorithm.lower()
    # shake_* digests are variable-length and need an explicit size.
    if algorithm not in hashlib.algorithms_available or algorithm.startswith("shake_"):
        raise RecipeError(
            "Unsupported checksum algorithm.",
            context={"algorithm": checksum.algorithm},
        )
    if not _HEX_DIGEST.fullmatch(checksum.digest):
        raise RecipeError(
            "Checksum digest must be hexadecimal.",
            context={"digest": checksum.digest},
        )
    expected = hashlib.new(algorithm).digest_size * 2
    if len(checksum.digest) != expected:
        raise RecipeError(
            "Checksum digest has the wrong length for its algorithm.",
            context={
                "algorithm": checksum.algorithm,
                "digest": checksum.digest,
                "expected_length": str(expected),
            },
        )
    return checksum


def _parse_dependency(raw: Any) -> Dependency:
    if isinstance(raw, str):
        return Dependency(name=raw)
    entry = _mapping(raw, where="dependencies")
    name = _required_str(entry, "name", where="dependency")
    kind = entry.get("kind", "required")
    if kind not in DEPENDENCY_KINDS:
        raise RecipeError(
            "Unsupported dependency kind.",
            hint="Use one of: required, build, optional.",
            context={"dependency": name, "kind": str(kind)},
        )
    present_args = _str_tuple(entry.get("present_args", []), where="present_args")
    absent_args = _str_tuple(entry.get("absent_args", []), where="absent_args")
    if kind != "optional" and (present_args or absent_args):
        raise RecipeError(
            "Only optional dependencies may toggle configure arguments.",
            context={"dependency": name},
        )
    version = entry.get("version")
    return Dependency(
        name=name,
        kind=kind,
        condition=parse_condition(entry.get("when")),
        version=str(version) if version is not None else None,
        present_args=present_args,
        absent_args=absent_args,
    )


def _parse_conflict_group(raw: Any) -> tuple[str, ...]:
    return _str_tuple(raw, where="conflicts")


def _parse_toolchain_rule(raw: Any) -> ToolchainRule:
    entry = _mapping(raw, where="fails_with")
    build = entry.get("build")
    if build is not None and not isinstance(build, int):
        raise RecipeError("fails_with `build` must be an integer.", context={"build": str(build)})
    return ToolchainRule(
        compiler=_required_str(entry, "compiler", where="fails_with"),
        cause=_required_str(entry, "cause", where="fails_with"),
        build=build,
    )


def _parse_patches(raw: Any) -> PatchSet:
    if raw is None:
        return PatchSet()
    if isinstance(raw, list):
        entry: Mapping[str, Any] = {"items": raw}
    else:
        entry = _mapping(raw, where="patches")
    items: list[PatchSpec] = []
    for index, item in enumerate(_list(entry.get("items", []), where="patches.items")):
        patch = _mapping(item, where="patches.items")
        content = patch.get("content")
        url = _optional_str(patch, "url", where="patch")
        if (content is None) == (url is None):
            raise RecipeError(
                "Patch requires exactly one of content= or url=.",
                context={"patch_index": str(index)},
            )
        strip = patch.get("strip", 1)
        if not isinstance(strip, int) or strip < 0:
            raise RecipeError(
                "Patch strip level must be a non-negative integer.",
                context={"patch_index": str(index)},
            )
        items.append(
            PatchSpec(
                index=index,
                strip=strip,
                content=str(content) if content is not None else None,
                url=url,
                condition=parse_condition(patch.get("when")),
            )
        )
    return PatchSet(items=tuple(items), release_only=bool(entry.get("release_only", True)))


def _parse_inreplace(raw: Any) -> Inreplace:
    entry = _mapping(raw, where="inreplace")
    return Inreplace(
        path=_required_str(entry, "path", where="inreplace"),
        before=_required_str(entry, "before", where="inreplace"),
        after=str(entry.get("after", "")),
        condition=parse_condition(entry.get("when")),
    )


def _parse_build(raw: Any) -> BuildSteps:
    if raw is None:
        return BuildSteps()
    entry = _mapping(raw, where="build")
    defaults = BuildSteps()
    bootstrap: BootstrapStep | None = None
    if entry.get("bootstrap") is not None:
        step = _mapping(entry["bootstrap"], where="build.bootstrap")
        bootstrap = BootstrapStep(
            command=_str_tuple(step.get("command", []), where="build.bootstrap.command"),
            condition=parse_condition(step.get("when", "head")),
        )
        if not bootstrap.command:
            raise RecipeError("Bootstrap step requires a command.")
    variant_args: list[ArgRule] = []
    for item in _list(entry.get("variant_args", []), where="build.variant_args"):
        rule = _mapping(item, where="build.variant_args")
        variant_args.append(
            ArgRule(
                condition=parse_condition(rule.get("when")),
                args=_str_tuple(rule.get("args", []), where="build.variant_args.args"),
                otherwise=_str_tuple(
                    rule.get("otherwise", []), where="build.variant_args.otherwise"
                ),
            )
        )
    env_rules: list[EnvRule] = []
    for item in _list(entry.get("env", []), where="build.env"):
        rule = _mapping(item, where="build.env")
        env_rules.append(
            EnvRule(
                condition=parse_condition(rule.get("when")),
                variable=_required_str(rule, "variable", where="build.env"),
                value=_required_str(rule, "value", where="build.env"),
            )
        )
    serial_when: Condition | None = None
    if entry.get("serial_when") is not None:
        serial_when = parse_condition(entry["serial_when"])
    return BuildSteps(
        configure=_str_tuple(
            entry.get("configure", list(defaults.configure)), where="build.configure"
        ),
        args=_str_tuple(entry.get("args", list(defaults.args)), where="build.args"),
        variant_args=tuple(variant_args),
        env=tuple(env_rules),
        bootstrap=bootstrap,
        serial_when=serial_when,
    )


def _parse_finalize_rule(raw: Any) -> FinalizeRule:
    entry = _mapping(raw, where="finalize")
    action = entry.get("action")
    condition = parse_condition(entry.get("when"))
    if action == "remove":
        paths = _str_tuple(entry.get("paths", []), where="finalize.paths")
        return RemoveFiles(paths=paths, condition=condition)
    if action == "install_bundle":
        source = _required_str(entry, "source", where="finalize")
        return InstallBundle(source=source, condition=condition)
    if action == "wrapper":
        return WrapperScript(
            path=_required_str(entry, "path", where="finalize"),
            target=_required_str(entry, "target", where="finalize"),
            args=_str_tuple(entry.get("args", []), where="finalize.args"),
            condition=condition,
        )
    raise RecipeError(
        "Unsupported finalize action.",
        hint=f"Use one of: {', '.join(FINALIZE_ACTIONS)}.",
        context={"action": str(action)},
    )


def _parse_caveat(raw: Any) -> Caveat:
    if isinstance(raw, str):
        return Caveat(text=raw)
    entry = _mapping(raw, where="caveats")
    return Caveat(
        text=_required_str(entry, "text", where="caveat"),
        condition=parse_condition(entry.get("when")),
    )


def _validate_references(recipe: Recipe, *, declared: set[str]) -> None:
    referenced: list[tuple[str, str]] = []
    for decl in recipe.options:
        if decl.requires is not None:
            referenced.append((decl.requires, f"option {decl.name}"))
    for source in recipe.head.sources:
        if source.selector is not None:
            referenced.append((source.selector, f"head source {source.url}"))
    for group in recipe.conflicts:
        referenced.extend((name, "conflicts") for name in group)
    conditions: list[tuple[Condition, str]] = []
    conditions.extend((dep.condition, f"dependency {dep.name}") for dep in recipe.dependencies)
    conditions.extend((patch.condition, f"patch {patch.index}") for patch in recipe.patches.items)
    conditions.extend((edit.condition, f"inreplace {edit.path}") for edit in recipe.inreplace)
    conditions.extend((rule.condition, "build.variant_args") for rule in recipe.build.variant_args)
    conditions.extend((rule.condition, "build.env") for rule in recipe.build.env)
    if recipe.build.bootstrap is not None:
        conditions.append((recipe.build.bootstrap.condition, "build.bootstrap"))
    if recipe.build.serial_when is not None:
        conditions.append((recipe.build.serial_when, "build.serial_when"))
    conditions.extend((rule.condition, "finalize") for rule in recipe.finalize)
    conditions.extend((caveat.condition, "caveats") for caveat in recipe.caveats)
    for condition, where in conditions:
        referenced.extend((name, where) for name in sorted(condition.options()))

    for name, where in referenced:
        if name not in declared:
            raise RecipeError(
                "Recipe references an undeclared option.",
                hint="Declare the option under `options:` before using it.",
                context={"recipe": recipe.name, "option": name, "where": where},
            )


def _parse_each(payload: Mapping[str, Any], key: str, parse: Callable[[Any], T]) -> tuple[T, ...]:
    return tuple(parse(item) for item in _list(payload.get(key, []), where=key))


def _list(value: Any, *, where: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise RecipeError(f"Invalid recipe `{where}` value; expected a list.")
    return value


def _mapping(value: Any, *, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise RecipeError(f"Invalid recipe `{where}` entry; expected a mapping.")
    return value


def _str_tuple(value: Any, *, where: str) -> tuple[str, ...]:
    items = _list(value, where=where)
    if not all(isinstance(item, str) for item in items):
        raise RecipeError(f"Invalid recipe `{where}` value; expected a list of strings.")
    return tuple(items)


def _required_str(payload: Mapping[str, Any], key: str, *, where: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise RecipeError(f"Invalid {where} `{key}` value.")
    return value


def _optional_str(payload: Mapping[str, Any], key: str, *, where: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise RecipeError(f"Invalid {where} `{key}` value.")
    return value


__all__ = ["load_recipe", "parse_recipe", "recipe_digest", "recipe_payload"]
