"""Head checkouts from version control.

Head sources are live branches, so there is no digest to verify against; the
resolved revision is recorded instead so a receipt can say what was built.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from kiln.errors import NetworkFetchError, ValidationError
from kiln.models import HeadSource, Vcs
from kiln.observability import StructuredLogger
from kiln.policy import Policy, RetryPolicy, ensure_network_allowed

_URL_PREFIXES: dict[Vcs, tuple[str, ...]] = {
    "git": ("git+",),
    "bzr": ("bzr://",),
    "hg": ("hg://", "hg+"),
}


@dataclass(frozen=True, slots=True)
class HeadCheckout:
    path: Path
    vcs: Vcs
    url: str
    revision: str | None


def checkout_head(
    source: HeadSource,
    destination: str | Path,
    *,
    retry: RetryPolicy | None = None,
    policy: Policy | None = None,
    logger: StructuredLogger | None = None,
    recipe: str | None = None,
) -> HeadCheckout:
    """Check out *source* into a fresh *destination*, retrying transient failures."""
    ensure_network_allowed(policy=policy or Policy(), operation="checkout_head")
    retry = retry or RetryPolicy()
    logger = logger or StructuredLogger()
    target = Path(destination)
    if shutil.which(source.vcs) is None:
        raise ValidationError(
            f"Head builds from this source require `{source.vcs}` in PATH.",
            hint=f"Install {source.vcs} or select a different head source.",
            context={"recipe": recipe or "", "url": source.url},
        )
    url = vcs_url(source)

    def attempt() -> None:
        if target.exists():
            shutil.rmtree(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        _run_vcs(_checkout_command(source.vcs, url, target), recipe=recipe)

    def on_retry(attempt_number: int, exc: BaseException, delay: float) -> None:
        logger.log(
            operation="checkout_retry",
            recipe=recipe,
            stage="fetch",
            message="Retrying head checkout after failure.",
            level="warning",
            extra={"url": url, "attempt": attempt_number, "delay": delay, "error": str(exc)},
        )

    logger.log(
        operation="checkout_head",
        recipe=recipe,
        stage="fetch",
        message="Checking out head source; no checksum verification is possible.",
        extra={"url": url, "vcs": source.vcs},
    )
    retry.call(attempt, retry_on=(NetworkFetchError,), on_retry=on_retry)
    revision = None
    if source.vcs == "git":
        revision = _run_vcs(["git", "rev-parse", "HEAD"], cwd=target, recipe=recipe)
    return HeadCheckout(path=target, vcs=source.vcs, url=url, revision=revision)


def vcs_url(source: HeadSource) -> str:
    for prefix in _URL_PREFIXES[source.vcs]:
        if source.url.startswith(prefix):
            return source.url[len(prefix):]
    return source.url


def _checkout_command(vcs: Vcs, url: str, target: Path) -> list[str]:
    if vcs == "git":
        return ["git", "clone", "--quiet", "--depth", "1", url, str(target)]
    if vcs == "bzr":
        return ["bzr", "checkout", "--lightweight", url, str(target)]
    return ["hg", "clone", "--quiet", url, str(target)]


def _run_vcs(command: list[str], *, cwd: Path | None = None, recipe: str | None) -> str:
    completed = subprocess.run(
        command,
        cwd=cwd,
        check=False,
        text=True,
        capture_output=True,
    )
    if completed.returncode != 0:
        raise NetworkFetchError(
            "Version-control command failed.",
            hint="Inspect the head source URL and the version-control installation.",
            context={
                "recipe": recipe or "",
                "stage": "fetch",
                "argv": " ".join(command),
                "stderr": completed.stderr.strip()[-2000:],
            },
        )
    return completed.stdout.strip()


__all__ = ["HeadCheckout", "checkout_head", "vcs_url"]
