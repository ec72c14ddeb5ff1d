"""Active compiler identification."""

from __future__ import annotations

import os
import re
import shutil
import subprocess

from kiln.models import Toolchain

_LLVM_BUILD = re.compile(r"LLVM build (\d+)")
_APPLE_CLANG = re.compile(r"Apple (?:LLVM|clang) version ([\d.]+)")
_CLANG = re.compile(r"clang version ([\d.]+)")
_CLANG_BUILD = re.compile(r"clang-(\d+)")
_GCC_MARKER = re.compile(r"\b(?:gcc|GCC)\b")
_GCC_VERSION = re.compile(r"(?:\)|version) (\d+\.\d+(?:\.\d+)?)")


def parse_compiler_banner(text: str) -> Toolchain:
    """Identify a compiler from its ``--version`` banner."""
    llvm_build = _LLVM_BUILD.search(text)
    if llvm_build is not None:
        gcc = _GCC_VERSION.search(text)
        return Toolchain(
            name="llvm",
            version=gcc.group(1) if gcc else None,
            build=int(llvm_build.group(1)),
        )
    apple = _APPLE_CLANG.search(text)
    clang = apple or _CLANG.search(text)
    if clang is not None:
        build = _CLANG_BUILD.search(text)
        return Toolchain(
            name="clang",
            version=clang.group(1),
            build=int(build.group(1)) if build else None,
        )
    if _GCC_MARKER.search(text) is not None:
        gcc = _GCC_VERSION.search(text)
        return Toolchain(name="gcc", version=gcc.group(1) if gcc else None)
    return Toolchain(name="unknown")


def detect_toolchain(cc: str | None = None) -> Toolchain:
    compiler = cc or os.environ.get("CC") or "cc"
    if shutil.which(compiler) is None:
        return Toolchain(name="unknown")
    completed = subprocess.run(
        [compiler, "--version"],
        check=False,
        text=True,
        capture_output=True,
    )
    return parse_compiler_banner(completed.stdout + completed.stderr)


__all__ = ["detect_toolchain", "parse_compiler_banner"]
