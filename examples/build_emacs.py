"""Plan and build the emacs recipe into a local root."""

from pathlib import Path

from kiln import BuildRequest, Engine, EngineConfig, KilnError, load_recipe


def build_emacs(root: Path, *options: str, head: bool = False) -> None:
    recipe = load_recipe(Path(__file__).with_name("emacs.yaml"))
    engine = Engine(EngineConfig.at(root))
    request = BuildRequest(options=options, mode="head" if head else "release")

    plan = engine.plan(recipe, request)
    print(f"configure {' '.join(plan.configure_args)}")
    print(f"dependencies: {', '.join(plan.dependencies.install_list)}")
    print(f"jobs: {plan.jobs}")

    try:
        result = engine.build(recipe, request)
    except KilnError as exc:
        print(exc)
        if engine.last_context is not None:
            print(f"build tree kept at {engine.last_context.workdir}")
        raise SystemExit(1) from exc

    print(f"installed {len(result.receipt.files)} files into {result.receipt.prefix}")
    if result.receipt.caveats:
        print(result.receipt.caveats)


if __name__ == "__main__":
    build_emacs(Path.home() / ".kiln", "with-x")
