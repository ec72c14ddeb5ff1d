"""Deterministic scratch directories and their advisory build lock."""

from __future__ import annotations

import fcntl
import hashlib
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from kiln.errors import ScratchLockedError
from kiln.models import Recipe
from kiln.options import OptionSet


def scratch_path(root: str | Path, recipe: Recipe, options: OptionSet) -> Path:
    """Return the scratch directory owned by one recipe/variant combination."""
    variant = hashlib.sha256(options.variant_key().encode("utf-8")).hexdigest()[:12]
    return Path(root) / f"{recipe.name}-{recipe.version}-{variant}"


@contextmanager
def scratch_lock(path: str | Path) -> Iterator[Path]:
    """Hold an exclusive, non-blocking ``flock`` on ``<path>.lock``.

    A second build of the same variant fails fast instead of waiting.
    """
    scratch = Path(path)
    lock_path = scratch.with_name(f"{scratch.name}.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise ScratchLockedError(
                "Another build is using this scratch directory.",
                hint="Wait for the other build to finish.",
                context={"path": str(scratch), "lock": str(lock_path)},
            ) from exc
        try:
            yield scratch
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


__all__ = ["scratch_lock", "scratch_path"]
