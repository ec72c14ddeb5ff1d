from pathlib import Path

from kiln.models import Toolchain
from kiln.toolchain import detect_toolchain, parse_compiler_banner


def test_parse_llvm_gcc_banner_reports_build() -> None:
    banner = (
        "i686-apple-darwin11-llvm-gcc-4.2 (GCC) 4.2.1 "
        "(Based on Apple Inc. build 5658) (LLVM build 2336.11.00)\n"
    )

    assert parse_compiler_banner(banner) == Toolchain(name="llvm", version="4.2.1", build=2336)


def test_parse_clang_banners() -> None:
    apple = "Apple LLVM version 5.0 (clang-500.2.79) (based on LLVM 3.3svn)\n"
    upstream = "clang version 17.0.6\nTarget: x86_64-pc-linux-gnu\n"

    assert parse_compiler_banner(apple) == Toolchain(name="clang", version="5.0", build=500)
    assert parse_compiler_banner(upstream) == Toolchain(name="clang", version="17.0.6")


def test_parse_gcc_banner() -> None:
    banner = "gcc (Ubuntu 13.2.0-23ubuntu4) 13.2.0\nCopyright (C) 2023 Free Software Foundation\n"

    assert parse_compiler_banner(banner) == Toolchain(name="gcc", version="13.2.0")


def test_unrecognised_banner_is_unknown() -> None:
    assert parse_compiler_banner("tcc version 0.9.27\n").name == "unknown"


def test_detect_toolchain_runs_compiler(tmp_path: Path) -> None:
    compiler = tmp_path / "fakecc"
    compiler.write_text("#!/bin/sh\necho 'clang version 16.0.0'\n", encoding="utf-8")
    compiler.chmod(0o755)

    assert detect_toolchain(str(compiler)) == Toolchain(name="clang", version="16.0.0")
    assert detect_toolchain(str(tmp_path / "missing-cc")).name == "unknown"
