import signal
import subprocess
from pathlib import Path
from typing import Any

import pytest

from kiln.dependencies import DependencyPlan
from kiln.errors import ExternalProcessError, RecipeError
from kiln.observability import StructuredLogger
from kiln.options import resolve_options
from kiln.pipeline import (
    BuildContext,
    BuildPipeline,
    configure_arguments,
    effective_jobs,
    merge_environment,
    render_template,
)
from kiln.recipe import parse_recipe


def test_configure_arguments_follow_declared_order() -> None:
    recipe = parse_recipe(_payload())
    options = resolve_options(recipe, ["with-x"])
    values = {"prefix": "/opt/demo", "name": "demo", "info": "/opt/demo/share/info"}
    deps = DependencyPlan(configure_args=("--without-gnutls",))

    args = configure_arguments(recipe, options, values, dependencies=deps)

    assert args == (
        "--prefix=/opt/demo",
        "--infodir=/opt/demo/share/info/demo",
        "--with-x",
        "--with-gif=no",
        "--without-gnutls",
    )


def test_variant_arguments_use_otherwise_branch() -> None:
    recipe = parse_recipe(_payload())
    values = {"prefix": "/p", "name": "demo", "info": "/p/share/info"}

    args = configure_arguments(recipe, resolve_options(recipe), values)

    assert args[-1] == "--without-x"


def test_unknown_placeholder_is_a_recipe_error() -> None:
    with pytest.raises(RecipeError) as excinfo:
        render_template("--with={missing}", {"prefix": "/p"}, recipe="demo")

    assert excinfo.value.context["template"] == "--with={missing}"


def test_environment_overlay_appends_to_inherited_values(tmp_path: Path) -> None:
    recipe = parse_recipe(_payload())
    context = _context(tmp_path, recipe, ["with-x"])

    merged = merge_environment({"LDFLAGS": "-L/usr/local/lib", "PATH": "/bin"}, context.env)

    assert context.env == {"LDFLAGS": "-lfreetype -lfontconfig"}
    assert merged["LDFLAGS"] == "-L/usr/local/lib -lfreetype -lfontconfig"
    assert merged["PATH"] == "/bin"
    assert merge_environment({}, context.env) == context.env


def test_head_builds_are_forced_serial() -> None:
    recipe = parse_recipe(_payload())

    assert effective_jobs(recipe, resolve_options(recipe), 8) == 8
    assert effective_jobs(recipe, resolve_options(recipe, mode="head"), 8) == 1
    assert effective_jobs(recipe, resolve_options(recipe), None) == 1


def test_steps_include_bootstrap_only_for_head(tmp_path: Path) -> None:
    recipe = parse_recipe(_payload())
    pipeline = BuildPipeline(make_tool="gmake")

    release = pipeline.steps(_context(tmp_path, recipe, jobs=4))
    head = pipeline.steps(_context(tmp_path, recipe, mode="head", jobs=4))

    assert [step.stage for step in release] == ["configure", "compile", "install"]
    assert [step.stage for step in head] == ["bootstrap", "configure", "compile", "install"]
    assert release[1].argv == ("gmake", "-j4")
    assert release[1].env == {"MAKEFLAGS": "-j4"}
    assert head[2].argv == ("gmake", "-j1")
    assert head[3].env == {"MAKEFLAGS": "-j1"}
    assert release[0].argv[0] == "./configure"
    assert release[0].argv[1] == f"--prefix={tmp_path / 'prefix'}"


def test_run_executes_steps_and_writes_logs(
    tmp_path: Path,
    fake_make: Path,
    source_tree: Any,
) -> None:
    recipe = parse_recipe(_payload())
    workdir = source_tree()
    context = _context(tmp_path, recipe, ["with-x"], workdir=workdir, jobs=3)
    logger = StructuredLogger()

    results = BuildPipeline(
        make_tool=str(fake_make),
        logger=logger,
        environ={"PATH": "/usr/bin:/bin", "LDFLAGS": "-L/inherited"},
    ).run(context)

    assert [result.stage for result in results] == ["configure", "compile", "install"]
    assert context.completed == ["configure", "compile", "install"]
    assert (workdir / "configure.ldflags").read_text(encoding="utf-8") == (
        "-L/inherited -lfreetype -lfontconfig\n"
    )
    assert (workdir / "make.flags").read_text(encoding="utf-8") == "-j3\n"
    assert (context.prefix / "bin" / "demo").is_file()
    assert results[0].log_path == context.log_dir / "01.configure.log"
    assert len(logger.records_for_operation("step_complete")) == 3


def test_serial_variant_overrides_inherited_makeflags_for_every_make_step(
    tmp_path: Path,
    fake_make: Path,
    source_tree: Any,
) -> None:
    recipe = parse_recipe(_payload())
    workdir = source_tree()
    context = _context(tmp_path, recipe, mode="head", workdir=workdir, jobs=8)

    BuildPipeline(
        make_tool=str(fake_make),
        environ={"PATH": "/usr/bin:/bin", "MAKEFLAGS": "-j8"},
    ).run(context)

    assert context.completed == ["bootstrap", "configure", "compile", "install"]
    assert (workdir / "make.flags").read_text(encoding="utf-8") == "-j1\n"
    assert (workdir / "install.flags").read_text(encoding="utf-8") == "-j1\n"


def test_failed_step_stops_pipeline_with_stderr_tail(
    tmp_path: Path,
    fake_make: Path,
    source_tree: Any,
) -> None:
    recipe = parse_recipe(_payload())
    workdir = source_tree(files={"fail-compile": ""})
    context = _context(tmp_path, recipe, workdir=workdir)
    logger = StructuredLogger()

    with pytest.raises(ExternalProcessError) as excinfo:
        BuildPipeline(make_tool=str(fake_make), logger=logger).run(context)

    assert excinfo.value.stage == "compile"
    assert excinfo.value.returncode == 2
    assert excinfo.value.context["stderr"] == "compile exploded"
    assert context.completed == ["configure"]
    assert not context.prefix.exists()
    assert "compile exploded" in (context.log_dir / "02.compile.log").read_text(encoding="utf-8")
    assert logger.records_for_operation("step_failed")[0]["stage"] == "compile"


def test_interrupt_terminates_running_step_and_keeps_context(
    tmp_path: Path,
    source_tree: Any,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    recipe = parse_recipe(_payload())
    workdir = source_tree()
    slow_make = tmp_path / "tools" / "slow-make"
    slow_make.parent.mkdir(parents=True, exist_ok=True)
    slow_make.write_text("#!/bin/sh\nexec sleep 30\n", encoding="utf-8")
    slow_make.chmod(0o755)
    context = _context(tmp_path, recipe, workdir=workdir)
    logger = StructuredLogger()
    interrupted: list[subprocess.Popen[str]] = []
    communicate = subprocess.Popen.communicate

    def interrupt_make(self: subprocess.Popen[str], *args: Any, **kwargs: Any) -> Any:
        if self.args[0] != str(slow_make):
            return communicate(self, *args, **kwargs)
        interrupted.append(self)
        raise KeyboardInterrupt

    monkeypatch.setattr(subprocess.Popen, "communicate", interrupt_make)

    with pytest.raises(KeyboardInterrupt):
        BuildPipeline(make_tool=str(slow_make), logger=logger).run(context)

    assert interrupted[0].returncode == -signal.SIGTERM
    assert context.completed == ["configure"]
    assert context.workdir == workdir
    assert (workdir / "configure.args").is_file()
    record = logger.records_for_operation("step_interrupted")[0]
    assert record["stage"] == "compile"
    assert record["extra"]["workdir"] == str(workdir)


def test_missing_build_tool_is_reported(tmp_path: Path, source_tree: Any) -> None:
    recipe = parse_recipe(_payload())
    context = _context(tmp_path, recipe, workdir=source_tree())

    with pytest.raises(ExternalProcessError) as excinfo:
        BuildPipeline(make_tool=str(tmp_path / "no-such-make")).run(context)

    assert excinfo.value.stage == "compile"
    assert context.completed == ["configure"]


def _context(
    tmp_path: Path,
    recipe: Any,
    requested: list[str] | None = None,
    *,
    mode: str = "release",
    workdir: Path | None = None,
    jobs: int | None = None,
) -> BuildContext:
    options = resolve_options(recipe, requested or [], mode=mode)  # type: ignore[arg-type]
    return BuildContext.create(
        recipe,
        options,
        workdir=workdir or tmp_path / "work",
        prefix=tmp_path / "prefix",
        root=tmp_path,
        log_dir=tmp_path / "logs",
        jobs=jobs,
    )


def _payload() -> dict[str, Any]:
    return {
        "name": "demo",
        "version": "1.0",
        "url": "https://example.com/demo-1.0.tar.gz",
        "checksum": "sha256:" + "0" * 64,
        "head": "https://example.com/demo.git",
        "options": [
            {"name": "cocoa", "description": "Build a Cocoa version"},
            {"name": "with-x", "description": "Include X11 support"},
        ],
        "build": {
            "bootstrap": {"command": ["./autogen.sh"], "when": "head"},
            "serial_when": "head",
            "args": ["--prefix={prefix}", "--infodir={info}/{name}"],
            "variant_args": [
                {"when": "cocoa", "args": ["--with-ns"]},
                {"when": "with-x and not cocoa", "args": ["--with-x", "--with-gif=no"]},
                {"when": "not (with-x or cocoa)", "args": ["--without-x"]},
            ],
            "env": [
                {
                    "when": "with-x and not cocoa",
                    "variable": "LDFLAGS",
                    "value": "-lfreetype -lfontconfig",
                }
            ],
        },
    }
