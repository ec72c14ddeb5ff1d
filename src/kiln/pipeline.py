"""Build pipeline executor: bootstrap, configure, compile and install."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from kiln.dependencies import DependencyPlan
from kiln.errors import ExternalProcessError, RecipeError
from kiln.models import Recipe
from kiln.observability import StructuredLogger
from kiln.options import OptionSet

STDERR_TAIL = 2000


@dataclass(slots=True)
class BuildContext:
    """Mutable scratch state owned by one build.

    The context is kept after a failed or interrupted step so callers can
    inspect ``workdir``, ``log_dir`` and ``completed`` for diagnosis.
    """

    recipe: Recipe
    options: OptionSet
    version: str
    workdir: Path
    prefix: Path
    root: Path
    log_dir: Path
    jobs: int = 1
    dependencies: DependencyPlan = field(default_factory=DependencyPlan)
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    source: dict[str, str] = field(default_factory=dict)
    completed: list[str] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        recipe: Recipe,
        options: OptionSet,
        *,
        workdir: str | Path,
        prefix: str | Path,
        root: str | Path,
        log_dir: str | Path | None = None,
        version: str | None = None,
        dependencies: DependencyPlan | None = None,
        jobs: int | None = None,
    ) -> BuildContext:
        deps = dependencies or DependencyPlan()
        context = cls(
            recipe=recipe,
            options=options,
            version=version or recipe.version,
            workdir=Path(workdir),
            prefix=Path(prefix),
            root=Path(root),
            log_dir=Path(log_dir) if log_dir is not None else Path(workdir).parent / "logs",
            jobs=effective_jobs(recipe, options, jobs),
            dependencies=deps,
        )
        values = context.placeholders()
        context.args = list(configure_arguments(recipe, options, values, dependencies=deps))
        context.env = environment_overlay(recipe, options, values)
        return context

    def placeholders(self) -> dict[str, str]:
        return placeholders(self.recipe, version=self.version, prefix=self.prefix, root=self.root)

    def render(self, template: str) -> str:
        return render_template(template, self.placeholders(), recipe=self.recipe.name)


@dataclass(frozen=True, slots=True)
class BuildStep:
    stage: str
    argv: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StepResult:
    stage: str
    argv: tuple[str, ...]
    returncode: int
    log_path: Path


def placeholders(recipe: Recipe, *, version: str, prefix: Path, root: Path) -> dict[str, str]:
    """Values for the `{prefix}`-style placeholders in recipe strings."""
    return {
        "prefix": str(prefix),
        "root": str(root),
        "name": recipe.name,
        "version": version,
        "bin": str(prefix / "bin"),
        "share": str(prefix / "share"),
        "info": str(prefix / "share" / "info"),
    }


def render_template(template: str, values: Mapping[str, str], *, recipe: str | None = None) -> str:
    try:
        return template.format_map(values)
    except (KeyError, IndexError, ValueError) as exc:
        raise RecipeError(
            "Recipe string uses an unknown placeholder.",
            hint=f"Available placeholders: {', '.join(sorted(values))}.",
            context={"recipe": recipe or "", "template": template, "error": str(exc)},
        ) from exc


def configure_arguments(
    recipe: Recipe,
    options: OptionSet,
    values: Mapping[str, str],
    *,
    dependencies: DependencyPlan | None = None,
) -> tuple[str, ...]:
    """Baseline args, then variant args in declared order, then dependency toggles."""
    args: list[str] = [*recipe.build.args]
    for rule in recipe.build.variant_args:
        args.extend(rule.args if rule.condition.holds(options) else rule.otherwise)
    if dependencies is not None:
        args.extend(dependencies.configure_args)
    return tuple(render_template(arg, values, recipe=recipe.name) for arg in args)


def environment_overlay(
    recipe: Recipe,
    options: OptionSet,
    values: Mapping[str, str],
) -> dict[str, str]:
    overlay: dict[str, str] = {}
    for rule in recipe.build.env:
        if not rule.condition.holds(options):
            continue
        value = render_template(rule.value, values, recipe=recipe.name)
        overlay[rule.variable] = _append(overlay.get(rule.variable), value)
    return overlay


def merge_environment(base: Mapping[str, str], overlay: Mapping[str, str]) -> dict[str, str]:
    """Extend *base* with *overlay*; inherited values are appended to, never replaced."""
    merged = dict(base)
    for variable, value in overlay.items():
        merged[variable] = _append(merged.get(variable), value)
    return merged


def effective_jobs(recipe: Recipe, options: OptionSet, requested: int | None) -> int:
    serial = recipe.build.serial_when
    if serial is not None and serial.holds(options):
        return 1
    return max(1, requested or 1)


class BuildPipeline:
    """Runs the build steps for a :class:`BuildContext` in order, stopping at the first failure."""

    def __init__(
        self,
        *,
        make_tool: str = "make",
        logger: StructuredLogger | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.make_tool = make_tool
        self.logger = logger or StructuredLogger()
        self.environ = environ

    def steps(self, context: BuildContext) -> list[BuildStep]:
        build = context.recipe.build
        steps: list[BuildStep] = []
        if build.bootstrap is not None and build.bootstrap.condition.holds(context.options):
            steps.append(
                BuildStep(
                    stage="bootstrap",
                    argv=tuple(context.render(part) for part in build.bootstrap.command),
                )
            )
        steps.append(
            BuildStep(
                stage="configure",
                argv=(*(context.render(part) for part in build.configure), *context.args),
            )
        )
        # Every make invocation carries the job count, install included.
        jobs_flag = f"-j{context.jobs}"
        make_env = {"MAKEFLAGS": jobs_flag}
        steps.append(BuildStep(stage="compile", argv=(self.make_tool, jobs_flag), env=make_env))
        steps.append(BuildStep(stage="install", argv=(self.make_tool, "install"), env=make_env))
        return steps

    def run(self, context: BuildContext) -> list[StepResult]:
        base = os.environ if self.environ is None else self.environ
        environment = merge_environment(base, context.env)
        context.log_dir.mkdir(parents=True, exist_ok=True)
        results: list[StepResult] = []
        for index, step in enumerate(self.steps(context), start=1):
            step_env = {**environment, **step.env}
            log_path = context.log_dir / f"{index:02d}.{step.stage}.log"
            results.append(self._run_step(context, step, step_env, log_path))
            context.completed.append(step.stage)
        return results

    def _run_step(
        self,
        context: BuildContext,
        step: BuildStep,
        env: Mapping[str, str],
        log_path: Path,
    ) -> StepResult:
        recipe = context.recipe.name
        self.logger.log(
            operation="step_start",
            recipe=recipe,
            stage=step.stage,
            message=f"Running {step.stage} step.",
            extra={"argv": list(step.argv), "jobs": context.jobs},
        )
        with log_path.open("w", encoding="utf-8") as log:
            try:
                process = subprocess.Popen(
                    step.argv,
                    cwd=context.workdir,
                    env=dict(env),
                    stdout=log,
                    stderr=subprocess.PIPE,
                    text=True,
                    errors="replace",
                )
            except OSError as exc:
                raise ExternalProcessError(
                    f"Could not start the {step.stage} step.",
                    stage=step.stage,
                    hint="Check that the build tool exists and is executable.",
                    context={"recipe": recipe, "argv": " ".join(step.argv), "error": str(exc)},
                ) from exc
            with process:
                try:
                    _, stderr = process.communicate()
                except KeyboardInterrupt:
                    process.terminate()
                    process.wait()
                    self.logger.log(
                        operation="step_interrupted",
                        recipe=recipe,
                        stage=step.stage,
                        message="Build interrupted; scratch directory left for inspection.",
                        level="warning",
                        extra={"workdir": str(context.workdir)},
                    )
                    raise
            log.write(stderr)

        if process.returncode != 0:
            self.logger.log(
                operation="step_failed",
                recipe=recipe,
                stage=step.stage,
                message=f"{step.stage} step failed.",
                level="error",
                extra={"returncode": process.returncode, "log": str(log_path)},
            )
            raise ExternalProcessError(
                f"The {step.stage} step exited with status {process.returncode}.",
                stage=step.stage,
                returncode=process.returncode,
                hint=f"See {log_path} and the scratch directory for details.",
                context={
                    "recipe": recipe,
                    "argv": " ".join(step.argv),
                    "stderr": stderr.strip()[-STDERR_TAIL:],
                },
            )
        self.logger.log(
            operation="step_complete",
            recipe=recipe,
            stage=step.stage,
            message=f"{step.stage} step completed.",
        )
        return StepResult(
            stage=step.stage,
            argv=step.argv,
            returncode=process.returncode,
            log_path=log_path,
        )


def _append(existing: str | None, value: str) -> str:
    return f"{existing} {value}" if existing else value


__all__ = [
    "BuildContext",
    "BuildPipeline",
    "BuildStep",
    "StepResult",
    "configure_arguments",
    "effective_jobs",
    "environment_overlay",
    "merge_environment",
    "placeholders",
    "render_template",
]
