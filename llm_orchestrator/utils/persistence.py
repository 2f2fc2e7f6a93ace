from __future__ import annotations

import contextlib
import json
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml


class StateFile:
    """Mapping persisted to disk with atomic temp-file replace.

    ``fmt`` selects the on-disk encoding: ``"yaml"`` for small operator-facing
    state, ``"json"`` for machine-written payloads such as cached responses.
    """

    def __init__(self, path: str | Path, *, fmt: str = "yaml"):
        if fmt not in {"yaml", "json"}:
            raise ValueError(f"Unsupported state file format '{fmt}'.")
        self.path = Path(path)
        self.fmt = fmt

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as handle:
            if self.fmt == "json":
                text = handle.read()
                payload = json.loads(text) if text.strip() else None
            else:
                payload = yaml.safe_load(handle)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ValueError(f"Expected a mapping in state file '{self.path}'.")
        return payload

    def write(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._temp_path()
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                if self.fmt == "json":
                    json.dump(
                        payload,
                        handle,
                        ensure_ascii=True,
                        separators=(",", ":"),
                        default=str,
                    )
                else:
                    yaml.safe_dump(payload, handle, sort_keys=True)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(OSError):
                temp_path.unlink(missing_ok=True)
            raise

    def _temp_path(self) -> Path:
        token = uuid4().hex
        return self.path.with_name(f".{self.path.name}.{token}.tmp")
