from pathlib import Path

import pytest

from kiln.errors import PolicyError
from kiln.models import PatchSet, PatchSpec
from kiln.options import OptionSet
from kiln.patches import apply_patches
from kiln.policy import Policy, RetryPolicy, ensure_network_allowed


def test_offline_policy_blocks_remote_patches(tmp_path: Path) -> None:
    remote = tmp_path / "fix.patch"
    remote.write_text("--- a/x\n+++ b/x\n@@ -0,0 +1 @@\n+x\n", encoding="utf-8")

    with pytest.raises(PolicyError) as excinfo:
        apply_patches(
            tmp_path,
            PatchSet(items=(PatchSpec(index=0, url=remote.as_uri()),)),
            options=OptionSet(),
            policy=Policy(network_mode="offline"),
        )

    assert excinfo.value.context["operation"] == "fetch_patch"


def test_online_policy_allows_network() -> None:
    ensure_network_allowed(policy=Policy(), operation="download")


def test_retry_delays_follow_backoff_factor() -> None:
    assert RetryPolicy().delays() == (1.0, 2.0)
    assert RetryPolicy(retries=3, backoff=0.5, factor=3.0).delays() == (0.5, 1.5, 4.5)
    assert RetryPolicy(retries=0).delays() == ()


def test_retry_only_catches_requested_errors() -> None:
    calls: list[int] = []

    def broken() -> None:
        calls.append(1)
        raise ValueError("not transient")

    with pytest.raises(ValueError):
        RetryPolicy(retries=3, backoff=0.0).call(broken, retry_on=(OSError,))

    assert calls == [1]
