"""Install receipt parser and serializer."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from kiln.errors import ValidationError
from kiln.models import InstallReceipt

RECEIPT_FORMAT = 1


def serialize_receipt(receipt: InstallReceipt) -> str:
    payload = {
        "format": RECEIPT_FORMAT,
        "name": receipt.name,
        "version": receipt.version,
        "mode": receipt.mode,
        "prefix": str(receipt.prefix),
        "options": list(receipt.options),
        "dependencies": list(receipt.dependencies),
        "recipe_digest": receipt.recipe_digest,
        "files": list(receipt.files),
        "wrapper": receipt.wrapper,
        "caveats": receipt.caveats,
        "source": dict(receipt.source),
    }
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def parse_receipt(raw: str) -> InstallReceipt:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError("Invalid install receipt JSON.", hint=str(exc)) from exc

    if not isinstance(payload, dict):
        raise ValidationError("Invalid install receipt payload type.")
    if payload.get("format") != RECEIPT_FORMAT:
        raise ValidationError(
            "Unsupported install receipt format.",
            context={"format": str(payload.get("format"))},
        )

    mode = _required_str(payload, "mode")
    if mode not in ("release", "head"):
        raise ValidationError("Invalid install receipt `mode` value.", context={"mode": mode})
    wrapper = payload.get("wrapper")
    if wrapper is not None and not isinstance(wrapper, str):
        raise ValidationError("Invalid install receipt `wrapper` value.")
    caveats = payload.get("caveats", "")
    if not isinstance(caveats, str):
        raise ValidationError("Invalid install receipt `caveats` value.")
    source = payload.get("source", {})
    if not isinstance(source, dict) or not all(
        isinstance(key, str) and isinstance(value, str) for key, value in source.items()
    ):
        raise ValidationError("Invalid install receipt `source` value.")

    return InstallReceipt(
        name=_required_str(payload, "name"),
        version=_required_str(payload, "version"),
        mode=mode,  # type: ignore[arg-type]
        prefix=Path(_required_str(payload, "prefix")),
        options=_str_list(payload, "options"),
        dependencies=_str_list(payload, "dependencies"),
        recipe_digest=_required_str(payload, "recipe_digest"),
        files=_str_list(payload, "files"),
        wrapper=wrapper,
        caveats=caveats,
        source=source,
    )


def read_receipt(path: str | Path) -> InstallReceipt:
    receipt_path = Path(path)
    try:
        raw = receipt_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ValidationError(
            "Install receipt does not exist.",
            hint="The package was not installed by a completed build.",
            context={"path": str(receipt_path)},
        ) from exc
    return parse_receipt(raw)


def write_receipt(receipt: InstallReceipt, path: str | Path) -> Path:
    receipt_path = Path(path)
    receipt_path.parent.mkdir(parents=True, exist_ok=True)
    receipt_path.write_text(serialize_receipt(receipt), encoding="utf-8")
    return receipt_path


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Invalid install receipt `{key}` value.")
    return value


def _str_list(payload: dict[str, Any], key: str) -> tuple[str, ...]:
    value = payload.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"Invalid install receipt `{key}` value.")
    return tuple(value)


__all__ = ["parse_receipt", "read_receipt", "serialize_receipt", "write_receipt"]
