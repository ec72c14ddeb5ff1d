import hashlib
import subprocess
import tarfile
from pathlib import Path

import pytest

from kiln.errors import ChecksumMismatchError, NetworkFetchError, PolicyError, ValidationError
from kiln.fetch import checkout_head, download, extract_archive, vcs_url
from kiln.models import Checksum, HeadSource
from kiln.observability import StructuredLogger
from kiln.policy import Policy, RetryPolicy


def test_download_requires_checksum_by_default(tmp_path: Path) -> None:
    source = tmp_path / "source.txt"
    source.write_text("payload", encoding="utf-8")

    with pytest.raises(ValidationError):
        download([source.as_uri()], checksum=None, cache_dir=tmp_path / "cache")

    relaxed = Policy(require_integrity=False)
    path = download([source.as_uri()], checksum=None, cache_dir=tmp_path / "cache", policy=relaxed)
    assert path.read_text(encoding="utf-8") == "payload"


def test_download_caches_by_content_hash(tmp_path: Path) -> None:
    source = tmp_path / "source.txt"
    payload = b"hello kiln"
    source.write_bytes(payload)
    checksum = _sha256(payload)
    logger = StructuredLogger()

    first = download([source.as_uri()], checksum=checksum, cache_dir=tmp_path / "cache")
    source.write_bytes(b"mutated source content")
    second = download(
        [source.as_uri()],
        checksum=checksum,
        cache_dir=tmp_path / "cache",
        logger=logger,
    )

    assert first == second
    assert second.read_bytes() == payload
    assert logger.records_for_operation("cache_hit")


def test_checksum_comparison_is_case_insensitive(tmp_path: Path) -> None:
    source = tmp_path / "source.txt"
    source.write_bytes(b"case")
    upper = Checksum("sha256", hashlib.sha256(b"case").hexdigest().upper())

    path = download([source.as_uri()], checksum=upper, cache_dir=tmp_path / "cache")

    assert path.read_bytes() == b"case"


def test_download_raises_on_hash_mismatch_and_discards_artifact(tmp_path: Path) -> None:
    source = tmp_path / "source.txt"
    source.write_bytes(b"mismatch")
    mirror = tmp_path / "mirror.txt"
    mirror.write_bytes(b"mismatch")
    logger = StructuredLogger()
    cache_dir = tmp_path / "cache"

    with pytest.raises(ChecksumMismatchError) as excinfo:
        download(
            [source.as_uri(), mirror.as_uri()],
            checksum=Checksum("sha256", "0" * 64),
            cache_dir=cache_dir,
            logger=logger,
            recipe="demo",
        )

    assert excinfo.value.context["actual"] == hashlib.sha256(b"mismatch").hexdigest()
    assert list(cache_dir.iterdir()) == []
    assert len(logger.records_for_operation("download_attempt")) == 1


def test_download_falls_back_to_mirror_once(tmp_path: Path, fast_retry: RetryPolicy) -> None:
    mirror = tmp_path / "mirror.txt"
    mirror.write_bytes(b"artifact")
    logger = StructuredLogger()

    path = download(
        [(tmp_path / "missing.txt").as_uri(), mirror.as_uri()],
        checksum=_sha256(b"artifact"),
        cache_dir=tmp_path / "cache",
        retry=fast_retry,
        logger=logger,
        recipe="demo",
    )

    assert path.read_bytes() == b"artifact"
    assert len(logger.records_for_operation("mirror_fallback")) == 1
    assert len(logger.records_for_operation("download_retry")) == 1


def test_download_reports_every_failed_mirror(tmp_path: Path) -> None:
    urls = [(tmp_path / "a.txt").as_uri(), (tmp_path / "b.txt").as_uri()]

    with pytest.raises(NetworkFetchError) as excinfo:
        download(
            urls,
            checksum=_sha256(b"never"),
            cache_dir=tmp_path / "cache",
            retry=RetryPolicy(retries=0),
        )

    failures = excinfo.value.context["errors"]
    assert "a.txt" in failures
    assert "b.txt" in failures


def test_retry_policy_backs_off_exponentially() -> None:
    slept: list[float] = []
    attempts: list[int] = []
    policy = RetryPolicy(retries=2, backoff=1.0, factor=2.0, sleep=slept.append)

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise OSError("unreachable")
        return "ok"

    assert policy.call(flaky) == "ok"
    assert slept == [1.0, 2.0]

    with pytest.raises(OSError):
        RetryPolicy(retries=1, backoff=0.0).call(_always_fails)


def test_offline_policy_blocks_network_operations(tmp_path: Path) -> None:
    source = tmp_path / "source.txt"
    source.write_bytes(b"payload")
    policy = Policy(network_mode="offline")

    with pytest.raises(PolicyError):
        download(
            [source.as_uri()],
            checksum=_sha256(b"payload"),
            cache_dir=tmp_path / "cache",
            policy=policy,
        )
    with pytest.raises(PolicyError):
        checkout_head(HeadSource(url=str(tmp_path)), tmp_path / "checkout", policy=policy)


def test_extract_archive_replaces_previous_tree(tmp_path: Path) -> None:
    tree = tmp_path / "pkg-1.0"
    tree.mkdir()
    (tree / "README").write_text("fresh\n", encoding="utf-8")
    archive = tmp_path / "pkg-1.0.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(tree, arcname="pkg-1.0")
    destination = tmp_path / "scratch" / "src"
    destination.mkdir(parents=True)
    (destination / "stale.o").write_text("old", encoding="utf-8")

    root = extract_archive(archive, destination)

    assert root == destination / "pkg-1.0"
    assert (root / "README").read_text(encoding="utf-8") == "fresh\n"
    assert not (destination / "stale.o").exists()


def test_checkout_head_clones_git_and_records_revision(tmp_path: Path) -> None:
    repo, commit = _create_repo(tmp_path / "repo")
    logger = StructuredLogger()

    checkout = checkout_head(
        HeadSource(url=f"git+{repo.as_uri()}", vcs="git"),
        tmp_path / "checkout",
        logger=logger,
        recipe="demo",
    )

    assert checkout.revision == commit
    assert checkout.url == repo.as_uri()
    assert (checkout.path / "README.md").read_text(encoding="utf-8") == "hello repo\n"
    assert logger.records_for_operation("checkout_head")


def test_checkout_head_retries_then_fails(tmp_path: Path) -> None:
    logger = StructuredLogger()

    with pytest.raises(NetworkFetchError) as excinfo:
        checkout_head(
            HeadSource(url=(tmp_path / "missing-repo").as_uri()),
            tmp_path / "checkout",
            retry=RetryPolicy(retries=1, backoff=0.0),
            logger=logger,
            recipe="demo",
        )

    assert excinfo.value.context["stage"] == "fetch"
    assert len(logger.records_for_operation("checkout_retry")) == 1


def test_vcs_url_strips_scheme_prefixes() -> None:
    assert vcs_url(HeadSource(url="bzr://http://bzr.example.com/trunk", vcs="bzr")) == (
        "http://bzr.example.com/trunk"
    )
    assert vcs_url(HeadSource(url="hg+https://hg.example.com/repo", vcs="hg")) == (
        "https://hg.example.com/repo"
    )
    assert vcs_url(HeadSource(url="https://git.example.com/repo.git")) == (
        "https://git.example.com/repo.git"
    )


def _always_fails() -> None:
    raise OSError("unreachable")


def _sha256(payload: bytes) -> Checksum:
    return Checksum("sha256", hashlib.sha256(payload).hexdigest())


def _create_repo(path: Path) -> tuple[Path, str]:
    path.mkdir(parents=True, exist_ok=True)
    _run_git(["init"], cwd=path)
    _run_git(["checkout", "-b", "main"], cwd=path)
    _run_git(["config", "user.email", "kiln@example.com"], cwd=path)
    _run_git(["config", "user.name", "Kiln Test"], cwd=path)

    (path / "README.md").write_text("hello repo\n", encoding="utf-8")
    _run_git(["add", "README.md"], cwd=path)
    _run_git(["commit", "-m", "initial"], cwd=path)
    return path, _run_git(["rev-parse", "HEAD"], cwd=path)


def _run_git(argv: list[str], *, cwd: Path) -> str:
    completed = subprocess.run(
        ["git", *argv],
        cwd=cwd,
        check=False,
        text=True,
        capture_output=True,
    )
    if completed.returncode != 0:
        raise RuntimeError(f"git {' '.join(argv)} failed: {completed.stderr.strip()}")
    return completed.stdout.strip()
