import json
import os
from pathlib import Path
from typing import Any

import yaml

YAML_SUFFIXES = {".yaml", ".yml"}


class DocumentError(ValueError):
    pass


def load_json(path: str | Path) -> Any | None:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError:
        return None


def load_document(path: str | Path) -> Any:
    """Read a JSON or YAML document, chosen by file suffix.

    Unlike ``load_json`` this raises ``DocumentError`` for missing or
    unparsable files so import commands can report the reason.
    """
    target = Path(path)
    try:
        raw = target.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise DocumentError(f"File not found: {target}") from e
    try:
        if target.suffix.lower() in YAML_SUFFIXES:
            return yaml.safe_load(raw)
        return json.loads(raw)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise DocumentError(f"Could not parse {target.name}: {e}") from e


def atomic_write_json(path: str | Path, data: Any) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(f"{target.suffix}.tmp")
    payload = json.dumps(data, indent=2, ensure_ascii=False)
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(payload + "\n")
    os.replace(tmp_path, target)
    return target
