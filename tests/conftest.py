"""Shared test fixtures."""

from __future__ import annotations

import hashlib
import tarfile
from collections.abc import Callable
from pathlib import Path

import pytest

from kiln.policy import RetryPolicy

# Records its arguments and the inherited LDFLAGS, then remembers the prefix
# for the fake make's install target.
FAKE_CONFIGURE = """#!/bin/sh
printf '%s\\n' "$@" > configure.args
printf '%s\\n' "${LDFLAGS-}" > configure.ldflags
for arg in "$@"; do
  case "$arg" in
    --prefix=*) printf '%s\\n' "${arg#--prefix=}" > config.prefix ;;
  esac
done
"""

FAKE_AUTOGEN = """#!/bin/sh
touch autogen.ran
"""

FAKE_MAKE = """#!/bin/sh
if [ "$1" = "install" ]; then
  printf '%s\\n' "$MAKEFLAGS" > install.flags
  prefix=$(cat config.prefix)
  mkdir -p "$prefix/bin" "$prefix/share/man/man1" "$prefix/lib"
  mkdir -p "$prefix/share/info" "$prefix/share/doc"
  cp src/main.c "$prefix/share/main.c"
  echo demo > "$prefix/bin/demo"
  echo ctags > "$prefix/bin/ctags"
  echo manpage > "$prefix/share/man/man1/ctags.1.gz"
  echo libtool > "$prefix/lib/libdemo.la"
  if [ -d nextstep/Demo.app ]; then
    ln -s ../Demo.app/Contents/MacOS/Demo "$prefix/bin/launcher"
  fi
  exit 0
fi
printf '%s\\n' "$@" > make.args
printf '%s\\n' "$MAKEFLAGS" > make.flags
if [ -f fail-compile ]; then
  echo "compile exploded" >&2
  exit 2
fi
"""

MAIN_C = """#include <stdio.h>

int main(void)
{
  puts("hello");
  return 0;
}
"""

SourceTree = Callable[..., Path]
SourceTarball = Callable[..., tuple[Path, str]]


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry once without sleeping."""
    return RetryPolicy(retries=1, backoff=0.0)


@pytest.fixture
def fake_make(tmp_path: Path) -> Path:
    path = tmp_path / "tools" / "make"
    _write_script(path, FAKE_MAKE)
    return path


@pytest.fixture
def source_tree(tmp_path: Path) -> SourceTree:
    """Write a buildable source tree with a fake configure script."""

    def build(path: Path | None = None, files: dict[str, str] | None = None) -> Path:
        tree = path or tmp_path / "upstream" / "demo-1.0"
        tree.mkdir(parents=True, exist_ok=True)
        _write_script(tree / "configure", FAKE_CONFIGURE)
        _write_script(tree / "autogen.sh", FAKE_AUTOGEN)
        (tree / "src").mkdir(exist_ok=True)
        (tree / "src" / "main.c").write_text(MAIN_C, encoding="utf-8")
        for relative, content in (files or {}).items():
            target = tree / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        return tree

    return build


@pytest.fixture
def source_tarball(tmp_path: Path, source_tree: SourceTree) -> SourceTarball:
    """Pack a source tree into ``demo-1.0.tar.gz`` and return it with its sha256."""

    def build(files: dict[str, str] | None = None) -> tuple[Path, str]:
        tree = source_tree(tmp_path / "upstream" / "demo-1.0", files)
        archive = tmp_path / "dist" / "demo-1.0.tar.gz"
        archive.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(tree, arcname="demo-1.0")
        return archive, hashlib.sha256(archive.read_bytes()).hexdigest()

    return build


def _write_script(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(0o755)
