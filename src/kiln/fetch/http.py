"""Integrity-enforced release artifact download with mirror fallback."""

from __future__ import annotations

import hashlib
import os
import shutil
import tarfile
import zipfile
from collections.abc import Sequence
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import urlopen

from kiln.errors import ChecksumMismatchError, NetworkFetchError, ValidationError
from kiln.models import Checksum
from kiln.observability import StructuredLogger
from kiln.policy import Policy, RetryPolicy, ensure_network_allowed

CHUNK_SIZE = 1 << 16


def download(
    urls: Sequence[str],
    *,
    checksum: Checksum | None,
    cache_dir: str | Path,
    retry: RetryPolicy | None = None,
    policy: Policy | None = None,
    logger: StructuredLogger | None = None,
    recipe: str | None = None,
    timeout: float = 60.0,
) -> Path:
    """Download the first reachable URL and return a content-addressed cached path.

    Each URL gets the full retry budget before the next mirror is tried. A
    digest mismatch is fatal and is never retried against another mirror.
    """
    if not urls:
        raise ValidationError(
            "download() requires at least one URL.",
            context={"recipe": recipe or ""},
        )
    policy = policy or Policy()
    retry = retry or RetryPolicy()
    logger = logger or StructuredLogger()
    ensure_network_allowed(policy=policy, operation="download")
    if checksum is None and policy.require_integrity:
        raise ValidationError(
            "Release download requires a checksum.",
            hint="Declare `checksum:` in the recipe or relax policy.require_integrity.",
            context={"recipe": recipe or "", "url": urls[0]},
        )

    cache_path = Path(cache_dir)
    cache_path.mkdir(parents=True, exist_ok=True)
    algorithm = checksum.algorithm.lower() if checksum is not None else "sha256"

    if checksum is not None:
        artifact_path = cache_path / f"{algorithm}-{checksum.digest.lower()}"
        if artifact_path.exists():
            if checksum.matches(_file_digest(artifact_path, algorithm)):
                logger.log(
                    operation="cache_hit",
                    recipe=recipe,
                    stage="fetch",
                    message="Using cached artifact.",
                    extra={"path": str(artifact_path)},
                )
                return artifact_path
            artifact_path.unlink()
            logger.log(
                operation="cache_discard",
                recipe=recipe,
                stage="fetch",
                message="Discarded cached artifact with mismatching digest.",
                level="warning",
                extra={"path": str(artifact_path)},
            )

    temp_path = cache_path / f".{recipe or 'download'}-{os.getpid()}.part"
    failures: list[str] = []
    try:
        for index, url in enumerate(urls):
            logger.log(
                operation="download_attempt",
                recipe=recipe,
                stage="fetch",
                message="Downloading source artifact.",
                extra={"url": url, "mirror": index > 0},
            )

            def on_retry(attempt: int, exc: BaseException, delay: float, url: str = url) -> None:
                logger.log(
                    operation="download_retry",
                    recipe=recipe,
                    stage="fetch",
                    message="Retrying download after network failure.",
                    level="warning",
                    extra={"url": url, "attempt": attempt, "delay": delay, "error": str(exc)},
                )

            try:
                actual = retry.call(
                    lambda url=url: _download_to(
                        url, temp_path, algorithm=algorithm, timeout=timeout
                    ),
                    retry_on=(OSError,),
                    on_retry=on_retry,
                )
            except OSError as exc:
                failures.append(f"{url}: {exc}")
                if index + 1 < len(urls):
                    logger.log(
                        operation="mirror_fallback",
                        recipe=recipe,
                        stage="fetch",
                        message="Source unreachable; falling back to next mirror.",
                        level="warning",
                        extra={"failed": url, "next": urls[index + 1]},
                    )
                continue

            if checksum is not None and not checksum.matches(actual):
                temp_path.unlink(missing_ok=True)
                raise ChecksumMismatchError(
                    "Fetched content hash mismatch.",
                    hint="Update the expected hash or source URL to a trusted immutable artifact.",
                    context={
                        "recipe": recipe or "",
                        "stage": "fetch",
                        "url": url,
                        "algorithm": algorithm,
                        "expected": checksum.digest,
                        "actual": actual,
                    },
                )
            artifact_path = cache_path / f"{algorithm}-{actual.lower()}"
            os.replace(temp_path, artifact_path)
            logger.log(
                operation="download_complete",
                recipe=recipe,
                stage="fetch",
                message="Downloaded and verified source artifact.",
                extra={"url": url, "digest": actual},
            )
            return artifact_path
    finally:
        temp_path.unlink(missing_ok=True)

    raise NetworkFetchError(
        "All source URLs and mirrors are unreachable.",
        hint="Check network connectivity or add a reachable mirror to the recipe.",
        context={"recipe": recipe or "", "stage": "fetch", "errors": "; ".join(failures)},
    )


def extract_archive(
    archive: str | Path,
    destination: str | Path,
    *,
    filename: str | None = None,
) -> Path:
    """Extract *archive* into a fresh *destination* and return the source root.

    Any previous content at *destination* is removed first. When the archive
    holds a single top-level directory, that directory is the source root.
    """
    archive_path = Path(archive)
    target = Path(destination)
    if target.exists():
        shutil.rmtree(target)
    target.mkdir(parents=True)

    if tarfile.is_tarfile(archive_path):
        with tarfile.open(archive_path, "r:*") as tar:
            tar.extractall(target, filter="data")
    elif zipfile.is_zipfile(archive_path):
        with zipfile.ZipFile(archive_path) as bundle:
            bundle.extractall(target)
    else:
        shutil.copy2(archive_path, target / (filename or archive_path.name))
        return target

    entries = list(target.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return target


def url_filename(url: str) -> str:
    name = Path(urlparse(url).path).name
    return name or "download"


def _download_to(url: str, path: Path, *, algorithm: str, timeout: float) -> str:
    hasher = hashlib.new(algorithm)
    try:
        response = urlopen(url, timeout=timeout)  # noqa: S310
    except ValueError as exc:
        raise ValidationError("Unsupported source URL.", context={"url": url}) from exc
    with response, path.open("wb") as handle:
        while chunk := response.read(CHUNK_SIZE):
            hasher.update(chunk)
            handle.write(chunk)
    return hasher.hexdigest()


def _file_digest(path: Path, algorithm: str) -> str:
    hasher = hashlib.new(algorithm)
    with path.open("rb") as handle:
        while chunk := handle.read(CHUNK_SIZE):
            hasher.update(chunk)
    return hasher.hexdigest()


__all__ = ["download", "extract_archive", "url_filename"]
