"""Engine configuration."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from kiln.errors import ValidationError
from kiln.policy import Policy, RetryPolicy


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Filesystem roots and defaults shared by every build.

    ``root`` is the installation root that recipes reference as ``{root}``;
    each package is installed into ``cellar/<name>/<version>``.
    """

    root: Path
    cellar: Path
    scratch_root: Path
    cache_dir: Path
    jobs: int = field(default_factory=lambda: os.cpu_count() or 1)
    make_tool: str = "make"
    policy: Policy = field(default_factory=Policy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def at(cls, root: str | Path, **overrides: object) -> EngineConfig:
        base = Path(root)
        values: dict[str, object] = {
            "root": base,
            "cellar": base / "Cellar",
            "scratch_root": base / "var" / "kiln" / "build",
            "cache_dir": base / "var" / "kiln" / "cache",
        }
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        env = os.environ if environ is None else environ
        overrides: dict[str, object] = {}
        if env.get("KILN_JOBS"):
            try:
                overrides["jobs"] = int(env["KILN_JOBS"])
            except ValueError as exc:
                raise ValidationError(
                    "KILN_JOBS must be an integer.",
                    context={"KILN_JOBS": env["KILN_JOBS"]},
                ) from exc
        if env.get("KILN_MAKE"):
            overrides["make_tool"] = env["KILN_MAKE"]
        if env.get("KILN_OFFLINE", "").lower() in ("1", "true", "yes"):
            overrides["policy"] = Policy(network_mode="offline")
        return cls.at(env.get("KILN_ROOT", "/usr/local"), **overrides)

    def prefix_for(self, name: str, version: str) -> Path:
        return self.cellar / name / version


__all__ = ["EngineConfig"]
