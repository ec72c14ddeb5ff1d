"""Install-tree finalizer.

Post-install work is a declarative list of (condition, action) rules from the
recipe, evaluated once in declared order against the finalized options:

* ``remove`` deletes files that would shadow a preferred copy elsewhere;
* ``install_bundle`` moves a self-contained bundle from the build tree into
  the prefix;
* ``wrapper`` replaces a launcher symlink with a small exec script.

After the rules run, the cleaner prunes libtool archives and empty
directories, then the receipt is assembled from what remains.
"""

from __future__ import annotations

import os
import shlex
import shutil
from collections.abc import Iterable
from pathlib import Path

from kiln.errors import ValidationError
from kiln.models import InstallBundle, InstallReceipt, Recipe, RemoveFiles, WrapperScript
from kiln.observability import StructuredLogger
from kiln.options import OptionSet
from kiln.pipeline import BuildContext, render_template
from kiln.recipe import recipe_digest

RECEIPT_NAME = "INSTALL_RECEIPT.json"


def finalize(
    context: BuildContext,
    recipe: Recipe,
    options: OptionSet,
    *,
    logger: StructuredLogger | None = None,
) -> InstallReceipt:
    logger = logger or StructuredLogger()
    prefix = context.prefix
    if not prefix.is_dir():
        raise ValidationError(
            "Install step did not create the prefix directory.",
            hint="Check that the build's install target honours --prefix.",
            context={"recipe": recipe.name, "stage": "finalize", "prefix": str(prefix)},
        )

    wrapper: str | None = None
    for rule in recipe.finalize:
        if not rule.condition.holds(options):
            continue
        if isinstance(rule, InstallBundle):
            _install_bundle(context, rule, logger=logger)
        elif isinstance(rule, RemoveFiles):
            _remove_files(context, rule, logger=logger)
        elif isinstance(rule, WrapperScript):
            wrapper = str(_write_wrapper(context, rule, logger=logger).relative_to(prefix))

    removed = clean_tree(prefix, skip=recipe.skip_clean)
    if removed:
        logger.log(
            operation="clean",
            recipe=recipe.name,
            stage="finalize",
            message="Pruned libtool archives and empty directories.",
            extra={"removed": removed},
        )

    caveats = render_caveats(recipe, options, context.placeholders())
    return InstallReceipt(
        name=recipe.name,
        version=context.version,
        mode=options.mode,
        prefix=prefix,
        options=options.selected,
        dependencies=context.dependencies.install_list,
        recipe_digest=recipe_digest(recipe),
        files=installed_files(prefix),
        wrapper=wrapper,
        caveats=caveats,
        source=dict(context.source),
    )


def render_caveats(
    recipe: Recipe,
    options: OptionSet,
    values: dict[str, str],
) -> str:
    """Join the caveat paragraphs whose conditions hold; advisory text only."""
    paragraphs = [
        render_template(caveat.text, values, recipe=recipe.name).strip()
        for caveat in recipe.caveats
        if caveat.condition.holds(options)
    ]
    return "\n\n".join(paragraph for paragraph in paragraphs if paragraph)


def clean_tree(prefix: Path, *, skip: Iterable[str] = ()) -> list[str]:
    """Remove ``*.la`` files and empty directories below *prefix*, except under *skip*."""
    kept = tuple(Path(entry.strip("/")) for entry in skip)
    removed: list[str] = []
    for dirpath, dirnames, filenames in os.walk(prefix, topdown=False):
        directory = Path(dirpath)
        relative_dir = directory.relative_to(prefix)
        if _is_kept(relative_dir, kept):
            continue
        for filename in filenames:
            if filename.endswith(".la"):
                (directory / filename).unlink()
                removed.append((relative_dir / filename).as_posix())
        if directory != prefix and not any(directory.iterdir()):
            directory.rmdir()
            removed.append(relative_dir.as_posix() + "/")
    return removed


def installed_files(prefix: Path) -> tuple[str, ...]:
    files: list[str] = []
    for dirpath, dirnames, filenames in os.walk(prefix):
        directory = Path(dirpath)
        for name in filenames + [d for d in dirnames if (directory / d).is_symlink()]:
            relative = (directory / name).relative_to(prefix).as_posix()
            if relative != RECEIPT_NAME:
                files.append(relative)
    return tuple(sorted(files))


def _install_bundle(
    context: BuildContext, rule: InstallBundle, *, logger: StructuredLogger
) -> None:
    source = context.workdir / context.render(rule.source)
    if not source.exists():
        raise ValidationError(
            "Bundle to install was not produced by the build.",
            hint="Check the build options that produce this bundle.",
            context={"recipe": context.recipe.name, "stage": "finalize", "bundle": str(source)},
        )
    destination = context.prefix / source.name
    if destination.exists():
        if destination.is_dir() and not destination.is_symlink():
            shutil.rmtree(destination)
        else:
            destination.unlink()
    shutil.move(str(source), str(destination))
    logger.log(
        operation="install_bundle",
        recipe=context.recipe.name,
        stage="finalize",
        message="Installed bundle into prefix.",
        extra={"bundle": source.name},
    )


def _remove_files(context: BuildContext, rule: RemoveFiles, *, logger: StructuredLogger) -> None:
    for template in rule.paths:
        relative = context.render(template)
        path = _inside_prefix(context, relative)
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
        else:
            logger.log(
                operation="remove_missing",
                recipe=context.recipe.name,
                stage="finalize",
                message="File scheduled for removal was not installed.",
                level="warning",
                extra={"path": relative},
            )
            continue
        logger.log(
            operation="remove",
            recipe=context.recipe.name,
            stage="finalize",
            message="Removed conflicting file.",
            extra={"path": relative},
        )


def _write_wrapper(context: BuildContext, rule: WrapperScript, *, logger: StructuredLogger) -> Path:
    path = _inside_prefix(context, context.render(rule.path))
    target = context.prefix / context.render(rule.target)
    if path.is_symlink() or path.exists():
        path.unlink()
    path.parent.mkdir(parents=True, exist_ok=True)
    words = [shlex.quote(str(target)), *(shlex.quote(context.render(arg)) for arg in rule.args)]
    command = f"exec {' '.join(words)} \"$@\""
    path.write_text(f"#!/bin/bash\n{command}\n", encoding="utf-8")
    path.chmod(0o755)
    logger.log(
        operation="wrapper",
        recipe=context.recipe.name,
        stage="finalize",
        message="Replaced launcher with wrapper script.",
        extra={"path": str(path), "target": str(target)},
    )
    return path


def _inside_prefix(context: BuildContext, relative: str) -> Path:
    path = context.prefix / relative
    if not os.path.normpath(path).startswith(os.path.normpath(context.prefix) + os.sep):
        raise ValidationError(
            "Finalize rule points outside the install prefix.",
            context={"recipe": context.recipe.name, "stage": "finalize", "path": relative},
        )
    return path


def _is_kept(relative: Path, kept: tuple[Path, ...]) -> bool:
    return any(relative == entry or entry in relative.parents for entry in kept)


__all__ = ["RECEIPT_NAME", "clean_tree", "finalize", "installed_files", "render_caveats"]
