"""Build orchestration: plan a variant, then fetch, patch, build, and finalize it."""

from __future__ import annotations

import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from kiln.config import EngineConfig
from kiln.dependencies import DependencyPlan, DependencyProbe, check_toolchain, resolve_dependencies
from kiln.fetch import checkout_head, download, extract_archive, url_filename
from kiln.finalize import RECEIPT_NAME, finalize
from kiln.models import HEAD_VERSION, BuildRequest, InstallReceipt, Recipe, Toolchain
from kiln.observability import StructuredLogger
from kiln.options import OptionSet, resolve_options
from kiln.patches import AppliedPatch, apply_inreplace, apply_patches
from kiln.pipeline import (
    BuildContext,
    BuildPipeline,
    StepResult,
    configure_arguments,
    effective_jobs,
    environment_overlay,
    placeholders,
)
from kiln.receipt import write_receipt
from kiln.scratch import scratch_lock, scratch_path
from kiln.toolchain import detect_toolchain

BUILD_LOG_NAME = "kiln-build.jsonl"


@dataclass(frozen=True, slots=True)
class BuildPlan:
    """Everything decided before the first byte is fetched."""

    recipe: Recipe
    options: OptionSet
    dependencies: DependencyPlan
    toolchain: Toolchain | None
    version: str
    jobs: int
    prefix: Path
    scratch: Path
    configure_args: tuple[str, ...]
    environment: Mapping[str, str] = field(default_factory=dict)

    @property
    def source_url(self) -> str | None:
        if self.options.head_source is not None:
            return self.options.head_source.url
        return self.recipe.url


@dataclass(frozen=True, slots=True)
class BuildResult:
    plan: BuildPlan
    receipt: InstallReceipt
    receipt_path: Path
    log_path: Path
    patches: tuple[AppliedPatch, ...] = ()
    steps: tuple[StepResult, ...] = ()


def default_probe(root: str | Path) -> DependencyProbe:
    """Treat an optional dependency as present when it is on PATH or installed under *root*."""
    opt = Path(root) / "opt"

    def probe(name: str) -> bool:
        return shutil.which(name) is not None or (opt / name).exists()

    return probe


class Engine:
    def __init__(
        self,
        config: EngineConfig,
        *,
        logger: StructuredLogger | None = None,
        probe: DependencyProbe | None = None,
        toolchain: Toolchain | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or StructuredLogger()
        self.probe = probe or default_probe(config.root)
        self.toolchain = toolchain
        self.environ = environ
        self.last_context: BuildContext | None = None

    def plan(self, recipe: Recipe, request: BuildRequest | None = None) -> BuildPlan:
        """Resolve options, dependencies, and toolchain rules without any network access."""
        request = request or BuildRequest()
        options = resolve_options(recipe, request.options, mode=request.mode)
        if options.ignored:
            self.logger.log(
                operation="options_ignored",
                recipe=recipe.name,
                stage="plan",
                message="Some requested options do not apply to this variant.",
                level="warning",
                extra={"ignored": list(options.ignored)},
            )
        dependencies = resolve_dependencies(recipe, options, probe=self.probe)
        toolchain = self._toolchain_for(recipe)
        if toolchain is not None:
            check_toolchain(recipe, toolchain)

        version = HEAD_VERSION if options.head else recipe.version
        prefix = self.config.prefix_for(recipe.name, version)
        values = placeholders(recipe, version=version, prefix=prefix, root=self.config.root)
        plan = BuildPlan(
            recipe=recipe,
            options=options,
            dependencies=dependencies,
            toolchain=toolchain,
            version=version,
            jobs=effective_jobs(recipe, options, request.jobs or self.config.jobs),
            prefix=prefix,
            scratch=scratch_path(self.config.scratch_root, recipe, options),
            configure_args=configure_arguments(recipe, options, values, dependencies=dependencies),
            environment=environment_overlay(recipe, options, values),
        )
        self.logger.log(
            operation="plan",
            recipe=recipe.name,
            stage="plan",
            message="Resolved build plan.",
            extra={
                "mode": options.mode,
                "options": list(options.selected),
                "dependencies": list(dependencies.install_list),
                "jobs": plan.jobs,
            },
        )
        return plan

    def build(self, recipe: Recipe, request: BuildRequest | None = None) -> BuildResult:
        """Run the whole build for one variant.

        Failures propagate unchanged and leave the scratch directory and
        :attr:`last_context` in place for inspection; the log records are
        written to ``<scratch>/kiln-build.jsonl`` either way.
        """
        first_record = len(self.logger.records)
        plan = self.plan(recipe, request)
        self.last_context = None
        log_path = plan.scratch / BUILD_LOG_NAME
        with scratch_lock(plan.scratch):
            try:
                return self._build_locked(plan, log_path)
            finally:
                self.logger.to_json_lines(log_path, start=first_record)

    def _build_locked(self, plan: BuildPlan, log_path: Path) -> BuildResult:
        recipe = plan.recipe
        plan.scratch.mkdir(parents=True, exist_ok=True)

        self._stage(recipe, "fetch", "start")
        workdir, source = self._fetch(plan)
        self._stage(recipe, "fetch", "complete")

        self._stage(recipe, "patch", "start")
        applied = apply_patches(
            workdir,
            recipe.patches,
            options=plan.options,
            retry=self.config.retry,
            policy=self.config.policy,
            logger=self.logger,
            recipe=recipe.name,
        )
        apply_inreplace(
            workdir,
            recipe.inreplace,
            options=plan.options,
            logger=self.logger,
            recipe=recipe.name,
        )
        self._stage(recipe, "patch", "complete")

        previous = self._set_aside_prefix(plan)
        try:
            result = self._install(plan, log_path, workdir, source, applied)
        except BaseException:
            if previous is not None:
                self._restore_prefix(plan, previous)
            raise
        if previous is not None:
            shutil.rmtree(previous)
            self.logger.log(
                operation="prefix_replaced",
                recipe=recipe.name,
                stage="install",
                message="Replaced previous install of this version.",
                extra={"prefix": str(plan.prefix)},
            )
        return result

    def _install(
        self,
        plan: BuildPlan,
        log_path: Path,
        workdir: Path,
        source: dict[str, str],
        applied: list[AppliedPatch],
    ) -> BuildResult:
        recipe = plan.recipe
        context = BuildContext.create(
            recipe,
            plan.options,
            workdir=workdir,
            prefix=plan.prefix,
            root=self.config.root,
            log_dir=plan.scratch / "logs",
            version=plan.version,
            dependencies=plan.dependencies,
            jobs=plan.jobs,
        )
        context.source.update(source)
        self.last_context = context
        pipeline = BuildPipeline(
            make_tool=self.config.make_tool,
            logger=self.logger,
            environ=self.environ,
        )
        steps = pipeline.run(context)

        self._stage(recipe, "finalize", "start")
        receipt = finalize(context, recipe, plan.options, logger=self.logger)
        receipt_path = write_receipt(receipt, plan.prefix / RECEIPT_NAME)
        self._stage(recipe, "finalize", "complete")
        return BuildResult(
            plan=plan,
            receipt=receipt,
            receipt_path=receipt_path,
            log_path=log_path,
            patches=tuple(applied),
            steps=tuple(steps),
        )

    def _fetch(self, plan: BuildPlan) -> tuple[Path, dict[str, str]]:
        recipe = plan.recipe
        destination = plan.scratch / "src"
        head_source = plan.options.head_source
        if head_source is not None:
            checkout = checkout_head(
                head_source,
                destination,
                retry=self.config.retry,
                policy=self.config.policy,
                logger=self.logger,
                recipe=recipe.name,
            )
            source = {"url": checkout.url, "vcs": checkout.vcs}
            if checkout.revision:
                source["revision"] = checkout.revision
            return checkout.path, source

        archive = download(
            recipe.urls,
            checksum=recipe.checksum,
            cache_dir=self.config.cache_dir,
            retry=self.config.retry,
            policy=self.config.policy,
            logger=self.logger,
            recipe=recipe.name,
        )
        workdir = extract_archive(archive, destination, filename=url_filename(recipe.url or ""))
        source = {"url": recipe.url or ""}
        if recipe.checksum is not None:
            source["checksum"] = str(recipe.checksum)
        return workdir, source

    def _toolchain_for(self, recipe: Recipe) -> Toolchain | None:
        if self.toolchain is not None:
            return self.toolchain
        if not recipe.fails_with:
            return None
        self.toolchain = detect_toolchain()
        return self.toolchain

    def _set_aside_prefix(self, plan: BuildPlan) -> Path | None:
        """Move an existing install of this version out of the way until the new one is done."""
        if not plan.prefix.exists():
            return None
        previous = plan.prefix.with_name(f"{plan.prefix.name}.previous")
        if previous.exists():
            shutil.rmtree(previous)
        plan.prefix.rename(previous)
        return previous

    def _restore_prefix(self, plan: BuildPlan, previous: Path) -> None:
        if plan.prefix.exists():
            shutil.rmtree(plan.prefix)
        previous.rename(plan.prefix)
        self.logger.log(
            operation="prefix_restored",
            recipe=plan.recipe.name,
            stage="install",
            message="Build failed; restored previous install of this version.",
            level="warning",
            extra={"prefix": str(plan.prefix)},
        )

    def _stage(self, recipe: Recipe, stage: str, event: str) -> None:
        self.logger.log(
            operation=f"stage_{event}",
            recipe=recipe.name,
            stage=stage,
            message=f"{stage} stage {event}.",
        )


__all__ = ["BUILD_LOG_NAME", "BuildPlan", "BuildResult", "Engine", "default_probe"]
