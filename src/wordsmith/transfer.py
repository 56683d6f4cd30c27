"""Export and import of sessions, templates and themes.

Export documents are plain JSON objects. Import accepts a single object, a
list of objects, or an object holding a ``sessions``/``templates``/``themes``
list, read from JSON or YAML. Imported sessions never overwrite existing ones
(their names are de-duplicated); templates and themes are upserted by name.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from common.jsonio import atomic_write_json, load_document
from wordsmith.errors import ValidationError
from wordsmith.models import TemplateRecord, ThemeRecord, WritingSession

logger = logging.getLogger(__name__)


def _int_or(value: Any, fallback: int) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return fallback


def _bool_or(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def extract_items(document: Any, key: str) -> list[Any]:
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        nested = document.get(key)
        if isinstance(nested, list):
            return nested
        return [document]
    return []


def resolve_import_name(base: str, existing: set[str]) -> str:
    if base not in existing:
        return base
    candidate = f"{base} (imported)"
    idx = 1
    while candidate in existing:
        idx += 1
        candidate = f"{base} (imported {idx})"
    return candidate


def session_document(session: WritingSession) -> dict[str, Any]:
    return {
        "name": session.name,
        "payload": session.payload,
        "schema_version": session.schema_version,
    }


def template_document(template: TemplateRecord) -> dict[str, Any]:
    return {
        "name": template.name,
        "payload": template.payload,
        "schema_version": template.schema_version,
        "is_default": template.is_default,
    }


def theme_document(theme: ThemeRecord) -> dict[str, Any]:
    return {
        "name": theme.name,
        "class_name": theme.class_name,
        "css": theme.css,
        "schema_version": theme.schema_version,
        "is_default": theme.is_default,
        "order": theme.order,
    }


def write_document(path: str | Path, document: Any) -> Path:
    return atomic_write_json(path, document)


def read_document(path: str | Path) -> Any:
    return load_document(path)


async def import_sessions(
    client,
    document: Any,
    existing_names: set[str],
    clock=time.time,
) -> list[WritingSession]:
    items = extract_items(document, "sessions")
    if not items:
        raise ValidationError("No sessions found in file.")
    names = set(existing_names)
    created: list[WritingSession] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        raw_name = str(item.get("name") or item.get("title") or "").strip()
        name = resolve_import_name(raw_name or f"Imported session {int(clock() * 1000)}", names)
        names.add(name)
        payload = item.get("payload")
        if not isinstance(payload, dict):
            payload = item.get("payload_json")
        if not isinstance(payload, dict):
            payload = {}
        session = await client.create_session(
            name, payload, schema_version=_int_or(item.get("schema_version"), 1)
        )
        created.append(session)
    logger.info(f"Imported {len(created)} session(s)")
    return created


async def import_templates(
    client, document: Any, existing: list[TemplateRecord]
) -> list[TemplateRecord]:
    items = extract_items(document, "templates")
    if not items:
        raise ValidationError("No templates found in file.")
    by_name = {template.name: template for template in existing}
    saved: list[TemplateRecord] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = item.get("name").strip() if isinstance(item.get("name"), str) else ""
        if not name:
            continue
        payload = item.get("payload") if isinstance(item.get("payload"), dict) else {}
        schema_version = _int_or(item.get("schema_version"), _int_or(item.get("schemaVersion"), 1))
        is_default = _bool_or(item.get("is_default"), _bool_or(item.get("isDefault"), False))
        current = by_name.get(name)
        if current is not None:
            record = await client.update_template(
                current.name,
                {
                    "name": name,
                    "payload": payload,
                    "schema_version": schema_version,
                    "is_default": is_default,
                },
                current.version,
            )
        else:
            record = await client.create_template(
                name, payload, schema_version=schema_version, is_default=is_default
            )
        by_name[name] = record
        saved.append(record)
    logger.info(f"Imported {len(saved)} template(s)")
    return saved


async def import_themes(client, document: Any, existing: list[ThemeRecord]) -> list[ThemeRecord]:
    items = extract_items(document, "themes")
    if not items:
        raise ValidationError("No themes found in file.")
    by_name = {theme.name: theme for theme in existing}
    saved: list[ThemeRecord] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        if not name:
            continue
        class_name = item.get("class_name", item.get("className"))
        css = item.get("css")
        fields = {
            "class_name": class_name if isinstance(class_name, str) else None,
            "css": css if isinstance(css, str) else None,
            "schema_version": _int_or(item.get("schema_version"), 1),
            "is_default": _bool_or(item.get("is_default", item.get("isDefault")), False),
            "order": _int_or(item.get("order"), 0),
        }
        current = by_name.get(name)
        if current is not None:
            record = await client.update_theme(current.name, fields, current.version)
        else:
            record = await client.create_theme(name, fields)
        by_name[name] = record
        saved.append(record)
    logger.info(f"Imported {len(saved)} theme(s)")
    return saved
