"""Unified-diff application against an extracted source tree.

Each patch is applied strictly first (exact context, any offset). When that
fails it is retried with fuzz: up to two context lines may be dropped from
either end of a hunk and whitespace differences are ignored. A patch is
written only after every hunk of every file in it has been placed, so a
rejected patch leaves the tree as the previous patch left it.

This is not GNU ``patch``, and it differs from ``patch -p<N> --fuzz=2`` in
these ways:

* Fuzz is a second pass over the whole patch rather than a per-hunk
  fallback, and that pass also compares lines with whitespace collapsed,
  which GNU ``patch`` only does under ``--ignore-whitespace``.
* Context is trimmed symmetrically up to ``FUZZ_LIMIT`` lines, but never past
  the context a hunk actually carries, so a hunk whose changed lines sit at
  the edge of the file is never fuzzed at that edge.
* The offset search spans the whole file after the previous hunk, with no
  maximum displacement.
* No ``.orig`` or ``.rej`` files are written; a rejection is reported as a
  :class:`~kiln.errors.PatchApplicationError` naming the file and hunk.
* Renames, mode changes and binary diffs in git-style patches are ignored;
  only the text hunks are applied.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from urllib.request import urlopen

from kiln.errors import NetworkFetchError, PatchApplicationError
from kiln.models import Inreplace, PatchSet, PatchSpec
from kiln.observability import StructuredLogger
from kiln.options import OptionSet
from kiln.policy import Policy, RetryPolicy, ensure_network_allowed

FUZZ_LIMIT = 2

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_DEV_NULL = "/dev/null"


@dataclass(frozen=True, slots=True)
class Hunk:
    old_start: int
    old_length: int
    new_start: int
    new_length: int
    lines: tuple[tuple[str, str], ...]
    old_eof_newline: bool = True
    new_eof_newline: bool = True

    @property
    def old_lines(self) -> list[str]:
        return [text for tag, text in self.lines if tag in " -"]

    @property
    def new_lines(self) -> list[str]:
        return [text for tag, text in self.lines if tag in " +"]

    def context_bounds(self) -> tuple[int, int]:
        """Return the number of leading and trailing context lines."""
        leading = 0
        for tag, _ in self.lines:
            if tag != " ":
                break
            leading += 1
        trailing = 0
        for tag, _ in reversed(self.lines):
            if tag != " ":
                break
            trailing += 1
        return leading, trailing


@dataclass(frozen=True, slots=True)
class FilePatch:
    old_path: str | None
    new_path: str | None
    hunks: tuple[Hunk, ...]


@dataclass(frozen=True, slots=True)
class AppliedPatch:
    index: int
    label: str
    fuzzy: bool
    files: tuple[str, ...]


def parse_unified_diff(text: str) -> list[FilePatch]:
    """Parse one or more concatenated unified diffs.

    Lines outside ``---``/``+++``/``@@`` sections (``diff --git``, ``index``,
    commentary) are ignored.
    """
    lines = [line.removesuffix("\r") for line in _split_lines(text)]
    files: list[FilePatch] = []
    i = 0
    while i < len(lines):
        has_header = i + 1 < len(lines) and lines[i + 1].startswith("+++ ")
        if not (lines[i].startswith("--- ") and has_header):
            i += 1
            continue
        old_path = _header_path(lines[i][4:])
        new_path = _header_path(lines[i + 1][4:])
        i += 2
        hunks: list[Hunk] = []
        while i < len(lines) and lines[i].startswith("@@"):
            hunk, i = _parse_hunk(lines, i)
            hunks.append(hunk)
        if not hunks:
            raise PatchApplicationError(
                "Diff section has no hunks.",
                context={"file": new_path or old_path or ""},
            )
        files.append(FilePatch(old_path=old_path, new_path=new_path, hunks=tuple(hunks)))
    return files


def apply_diff(
    tree: str | Path,
    text: str,
    *,
    strip: int = 1,
    fuzz: int = 0,
    loose_whitespace: bool = False,
) -> tuple[str, ...]:
    """Apply diff *text* under *tree*; return the relative paths written."""
    root = Path(tree).resolve()
    file_patches = parse_unified_diff(text)
    if not file_patches:
        raise PatchApplicationError("Patch contains no file changes.")

    staged: dict[Path, str | None] = {}
    for file_patch in file_patches:
        target = _resolve_target(root, file_patch, strip=strip)
        if target in staged:
            original = staged[target]
        elif target.is_file():
            original = target.read_bytes().decode("utf-8", errors="surrogateescape")
        else:
            original = None
        staged[target] = _patch_text(
            original,
            file_patch,
            fuzz=fuzz,
            loose_whitespace=loose_whitespace,
            display=str(target.relative_to(root)),
        )

    for target, content in staged.items():
        if content is None:
            target.unlink(missing_ok=True)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content.encode("utf-8", errors="surrogateescape"))
    return tuple(str(target.relative_to(root)) for target in staged)


def apply_patches(
    tree: str | Path,
    patches: PatchSet,
    *,
    options: OptionSet,
    retry: RetryPolicy | None = None,
    policy: Policy | None = None,
    logger: StructuredLogger | None = None,
    recipe: str | None = None,
) -> list[AppliedPatch]:
    """Apply the recipe's ordered patch list, aborting on the first rejection."""
    logger = logger or StructuredLogger()
    if options.head and patches.release_only:
        if patches.items:
            logger.log(
                operation="patches_skipped",
                recipe=recipe,
                stage="patch",
                message="Skipping release-only patches for head build.",
                extra={"count": len(patches.items)},
            )
        return []

    applied: list[AppliedPatch] = []
    for patch in patches.items:
        if not patch.condition.holds(options):
            continue
        text = resolve_patch_text(patch, retry=retry, policy=policy, recipe=recipe)
        fuzzy = False
        try:
            files = apply_diff(tree, text, strip=patch.strip)
        except PatchApplicationError as strict_exc:
            logger.log(
                operation="patch_strict_failed",
                recipe=recipe,
                stage="patch",
                message="Strict application failed; retrying with fuzz.",
                level="warning",
                extra={"index": patch.index, "reason": str(strict_exc)},
            )
            try:
                files = apply_diff(
                    tree,
                    text,
                    strip=patch.strip,
                    fuzz=FUZZ_LIMIT,
                    loose_whitespace=True,
                )
            except PatchApplicationError as exc:
                raise PatchApplicationError(
                    f"Patch {patch.index} ({patch.label}) does not apply.",
                    index=patch.index,
                    hint="The source tree is in an undefined state; refresh the patch.",
                    context={
                        "recipe": recipe or "",
                        "stage": "patch",
                        "reason": exc.args[0] if exc.args else "",
                        **{k: v for k, v in exc.context.items() if k != "patch_index"},
                    },
                ) from exc
            fuzzy = True
        applied.append(AppliedPatch(index=patch.index, label=patch.label, fuzzy=fuzzy, files=files))
        logger.log(
            operation="patch_applied",
            recipe=recipe,
            stage="patch",
            message="Applied patch.",
            extra={"index": patch.index, "fuzzy": fuzzy, "files": list(files)},
        )
    return applied


def resolve_patch_text(
    patch: PatchSpec,
    *,
    retry: RetryPolicy | None = None,
    policy: Policy | None = None,
    recipe: str | None = None,
    timeout: float = 60.0,
) -> str:
    if patch.content is not None:
        return patch.content
    url = patch.url or ""
    ensure_network_allowed(policy=policy or Policy(), operation="fetch_patch")

    def read() -> str:
        with urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.read().decode("utf-8", errors="surrogateescape")

    try:
        return (retry or RetryPolicy()).call(read, retry_on=(OSError,))
    except OSError as exc:
        raise NetworkFetchError(
            "Remote patch could not be retrieved.",
            hint="Check the patch URL or inline the patch in the recipe.",
            context={
                "recipe": recipe or "",
                "stage": "patch",
                "patch_index": str(patch.index),
                "url": url,
                "error": str(exc),
            },
        ) from exc


def apply_inreplace(
    tree: str | Path,
    edits: tuple[Inreplace, ...],
    *,
    options: OptionSet,
    logger: StructuredLogger | None = None,
    recipe: str | None = None,
) -> list[str]:
    """Replace literal text in source files; a missing pattern is a patch failure."""
    logger = logger or StructuredLogger()
    root = Path(tree)
    changed: list[str] = []
    for edit in edits:
        if not edit.condition.holds(options):
            continue
        path = root / edit.path
        if not path.is_file():
            raise PatchApplicationError(
                "In-place replacement target does not exist.",
                context={"recipe": recipe or "", "stage": "patch", "file": edit.path},
            )
        content = path.read_text(encoding="utf-8", errors="surrogateescape")
        if edit.before not in content:
            raise PatchApplicationError(
                "In-place replacement pattern was not found.",
                hint="The upstream source changed; update the replacement in the recipe.",
                context={"recipe": recipe or "", "stage": "patch", "file": edit.path},
            )
        path.write_text(
            content.replace(edit.before, edit.after),
            encoding="utf-8",
            errors="surrogateescape",
        )
        changed.append(edit.path)
        logger.log(
            operation="inreplace",
            recipe=recipe,
            stage="patch",
            message="Replaced text in source file.",
            extra={"file": edit.path},
        )
    return changed


def _parse_hunk(lines: list[str], start: int) -> tuple[Hunk, int]:
    match = _HUNK_HEADER.match(lines[start])
    if match is None:
        raise PatchApplicationError("Malformed hunk header.", context={"line": lines[start]})
    old_start = int(match.group(1))
    old_length = int(match.group(2)) if match.group(2) is not None else 1
    new_start = int(match.group(3))
    new_length = int(match.group(4)) if match.group(4) is not None else 1

    body: list[tuple[str, str]] = []
    old_eof_newline = True
    new_eof_newline = True
    old_seen = 0
    new_seen = 0
    i = start + 1
    while old_seen < old_length or new_seen < new_length or _marker_at(lines, i):
        if i >= len(lines):
            raise PatchApplicationError("Hunk is truncated.", context={"hunk": lines[start]})
        raw = lines[i]
        i += 1
        if raw.startswith("\\"):
            # "\ No newline at end of file" applies to the line before it.
            last_tag = body[-1][0] if body else " "
            if last_tag in " -":
                old_eof_newline = False
            if last_tag in " +":
                new_eof_newline = False
            continue
        tag, text = (raw[0], raw[1:]) if raw else (" ", "")
        if tag not in " -+":
            raise PatchApplicationError(
                "Malformed hunk line.",
                context={"hunk": lines[start], "line": raw},
            )
        body.append((tag, text))
        if tag in " -":
            old_seen += 1
        if tag in " +":
            new_seen += 1
    hunk = Hunk(
        old_start=old_start,
        old_length=old_length,
        new_start=new_start,
        new_length=new_length,
        lines=tuple(body),
        old_eof_newline=old_eof_newline,
        new_eof_newline=new_eof_newline,
    )
    return hunk, i


def _marker_at(lines: list[str], i: int) -> bool:
    return i < len(lines) and lines[i].startswith("\\")


def _header_path(header: str) -> str | None:
    path = header.split("\t", 1)[0].strip()
    if path == _DEV_NULL:
        return None
    return path


def _strip_path(path: str, strip: int) -> str:
    parts = [part for part in path.split("/") if part]
    if strip >= len(parts):
        raise PatchApplicationError(
            "Strip level removes the whole file path.",
            context={"path": path, "strip": str(strip)},
        )
    return "/".join(parts[strip:])


def _resolve_target(root: Path, file_patch: FilePatch, *, strip: int) -> Path:
    candidates = [
        root / _strip_path(path, strip)
        for path in (file_patch.old_path, file_patch.new_path)
        if path is not None
    ]
    for candidate in candidates:
        if not candidate.resolve().is_relative_to(root):
            raise PatchApplicationError(
                "Patch escapes the source tree.",
                context={"path": str(candidate)},
            )
    if not candidates:
        raise PatchApplicationError("Diff section names no file.")
    if file_patch.old_path is None:
        return candidates[-1]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    raise PatchApplicationError(
        "File to patch does not exist.",
        context={"file": file_patch.new_path or file_patch.old_path or ""},
    )


def _patch_text(
    original: str | None,
    file_patch: FilePatch,
    *,
    fuzz: int,
    loose_whitespace: bool,
    display: str,
) -> str | None:
    if original is None:
        if file_patch.old_path is not None:
            raise PatchApplicationError("File to patch does not exist.", context={"file": display})
        original = ""
    elif file_patch.old_path is None and original:
        raise PatchApplicationError(
            "File to create already exists; the patch may already be applied.",
            context={"file": display},
        )
    newline = "\r\n" if "\r\n" in original else "\n"
    lines = [line.removesuffix("\r") for line in _split_lines(original)]
    trailing_newline = original.endswith("\n") or not original

    delta = 0
    floor = 0
    for number, hunk in enumerate(file_patch.hunks, start=1):
        placed = _place_hunk(
            lines, hunk, delta=delta, floor=floor, fuzz=fuzz, loose=loose_whitespace
        )
        if placed is None:
            raise PatchApplicationError(
                f"Hunk #{number} does not match the source.",
                context={"file": display, "hunk": str(number), "at": str(hunk.old_start)},
            )
        position, head, tail = placed
        old = hunk.old_lines[head : len(hunk.old_lines) - tail]
        body = hunk.lines[head : len(hunk.lines) - tail]
        new = _replacement(lines[position : position + len(old)], body)
        touches_end = position + len(old) == len(lines)
        lines[position : position + len(old)] = new
        base = hunk.old_start if hunk.old_length == 0 else hunk.old_start - 1
        delta = (position - head) - base + len(new) - len(old)
        floor = position + len(new)
        if touches_end and tail == 0:
            if not hunk.new_eof_newline:
                trailing_newline = False
            elif not hunk.old_eof_newline:
                trailing_newline = True

    if file_patch.new_path is None and not lines:
        return None
    text = newline.join(lines)
    if lines and trailing_newline:
        text += newline
    return text


def _place_hunk(
    lines: list[str],
    hunk: Hunk,
    *,
    delta: int,
    floor: int,
    fuzz: int,
    loose: bool,
) -> tuple[int, int, int] | None:
    leading, trailing = hunk.context_bounds()
    old_lines = hunk.old_lines
    attempts: list[tuple[int, int]] = []
    for level in range(fuzz + 1):
        pair = (min(level, leading), min(level, trailing))
        if pair not in attempts:
            attempts.append(pair)
    for head, tail in attempts:
        expected_old = old_lines[head : len(old_lines) - tail]
        base = hunk.old_start if hunk.old_length == 0 else hunk.old_start - 1
        expected = base + delta + head
        position = _search(lines, expected_old, expected=expected, floor=floor, loose=loose)
        if position is not None:
            return position, head, tail
    return None


def _replacement(matched: list[str], body: tuple[tuple[str, str], ...]) -> list[str]:
    """Splice added lines into *matched*, keeping the file's own context lines."""
    result: list[str] = []
    cursor = 0
    for tag, text in body:
        if tag == "+":
            result.append(text)
            continue
        if tag == " ":
            result.append(matched[cursor])
        cursor += 1
    return result


def _search(
    lines: list[str],
    needle: list[str],
    *,
    expected: int,
    floor: int,
    loose: bool,
) -> int | None:
    last = len(lines) - len(needle)
    if last < floor:
        return None
    expected = min(max(expected, floor), last)
    if not needle:
        return expected
    span = max(expected - floor, last - expected)
    for distance in range(span + 1):
        for candidate in (expected + distance, expected - distance):
            if floor <= candidate <= last and _matches(lines, needle, candidate, loose=loose):
                return candidate
            if distance == 0:
                break
    return None


def _split_lines(text: str) -> list[str]:
    """Split on LF only; form feeds and other separators stay inside lines."""
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def _matches(lines: list[str], needle: list[str], at: int, *, loose: bool) -> bool:
    for offset, wanted in enumerate(needle):
        actual = lines[at + offset]
        if loose:
            if actual.split() != wanted.split():
                return False
        elif actual != wanted:
            return False
    return True


__all__ = [
    "AppliedPatch",
    "FUZZ_LIMIT",
    "FilePatch",
    "Hunk",
    "apply_diff",
    "apply_inreplace",
    "apply_patches",
    "parse_unified_diff",
    "resolve_patch_text",
]
