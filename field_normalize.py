"""Field normalization for explicit field records and JSON-Schema forms."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping

logger = logging.getLogger("relay.fields")

INPUT = "input"
TEXTAREA = "textarea"
SELECT = "select"
CHECKBOX = "checkbox"

FIELD_TYPES = (INPUT, TEXTAREA, SELECT, CHECKBOX)

DEFAULT_TEXTAREA_ROWS = 4
TEXTAREA_MIN_LENGTH = 100


@dataclass
class FieldModel:
    id: str
    label: str
    type: str = INPUT
    order: int | None = None
    config: Dict[str, Any] = field(default_factory=dict)
    declared_type: str | None = None

    def to_dict(self) -> dict:
        item = {
            "id": self.id,
            "label": self.label,
            "type": self.type,
            "order": self.order,
            "config": dict(self.config),
        }
        if self.declared_type and self.declared_type != self.type:
            item["declared_type"] = self.declared_type
        return item


def coerce_field_type(value: Any) -> str:
    if isinstance(value, str) and value in FIELD_TYPES:
        return value
    return INPUT


def dispatch_field(field_model: FieldModel, handlers: Mapping[str, Callable[[FieldModel], Any]]) -> Any:
    """Route a field to the handler for its type.

    ``handlers`` must cover every member of ``FIELD_TYPES``; a missing entry
    raises ``KeyError`` even if the field at hand would not need it.
    """
    missing = [kind for kind in FIELD_TYPES if kind not in handlers]
    if missing:
        raise KeyError(f"Missing field handlers: {', '.join(missing)}")
    return handlers[coerce_field_type(field_model.type)](field_model)


def _capitalize(value: str) -> str:
    return value[:1].upper() + value[1:] if value else value


def _order_value(field_model: FieldModel) -> int | float:
    order = field_model.order
    if isinstance(order, bool) or not isinstance(order, (int, float)):
        return 0
    return order


def sort_fields(fields: List[FieldModel]) -> List[FieldModel]:
    # sorted() is stable: equal (or missing) orders keep their source position.
    return sorted(fields, key=_order_value)


def field_key(field_model: FieldModel) -> str:
    conf = field_model.config or {}
    name = conf.get("name")
    if isinstance(name, str) and name:
        return name
    return field_model.label or field_model.id


def field_placeholder(field_model: FieldModel) -> str:
    value = (field_model.config or {}).get("placeholder")
    return value if isinstance(value, str) else ""


def field_required(field_model: FieldModel) -> bool:
    return bool((field_model.config or {}).get("required"))


def field_options(field_model: FieldModel) -> list[str]:
    options = (field_model.config or {}).get("options")
    if not isinstance(options, (list, tuple)):
        return []
    return [str(opt) for opt in options]


def field_rows(field_model: FieldModel) -> int:
    rows = (field_model.config or {}).get("rows")
    if isinstance(rows, int) and not isinstance(rows, bool) and rows > 0:
        return rows
    return DEFAULT_TEXTAREA_ROWS


def _property_type(prop: dict) -> str:
    ptype = prop.get("type")
    max_length = prop.get("maxLength")
    if ptype == "string" and prop.get("format") == "email":
        return INPUT
    if ptype == "string" and isinstance(max_length, (int, float)) and not isinstance(max_length, bool) and max_length > TEXTAREA_MIN_LENGTH:
        return TEXTAREA
    if ptype == "boolean":
        return CHECKBOX
    if prop.get("enum") is not None:
        return SELECT
    return INPUT


def _from_records(records: list) -> List[FieldModel]:
    fields: List[FieldModel] = []
    for idx, rec in enumerate(records):
        if not isinstance(rec, dict):
            continue
        fid = rec.get("id")
        fid = str(fid) if fid not in (None, "") else f"field_{idx}"
        label = rec.get("label") if isinstance(rec.get("label"), str) else ""
        declared = rec.get("type") if isinstance(rec.get("type"), str) else None
        config = dict(rec.get("config")) if isinstance(rec.get("config"), dict) else {}
        name = config.get("name")
        if isinstance(name, (int, float)) and not isinstance(name, bool):
            config["name"] = str(name)
        elif not isinstance(name, str) or not name:
            if not label:
                logger.warning("field_missing_name_and_label id=%s", fid)
            config["name"] = label or fid
        fields.append(
            FieldModel(
                id=fid,
                label=label,
                type=coerce_field_type(declared),
                order=rec.get("order"),
                config=config,
                declared_type=declared,
            )
        )
    return fields


def _from_properties(properties: dict, required: Any) -> List[FieldModel]:
    required_keys = {r for r in required if isinstance(r, str)} if isinstance(required, (list, tuple)) else set()
    fields: List[FieldModel] = []
    for index, (key, prop) in enumerate(properties.items()):
        if not isinstance(prop, dict):
            prop = {}
        title = prop.get("title")
        label = title if isinstance(title, str) and title else _capitalize(str(key))
        ftype = _property_type(prop)
        description = prop.get("description")
        config: Dict[str, Any] = {
            "name": str(key),
            "placeholder": description if isinstance(description, str) else "",
            "required": key in required_keys,
        }
        if ftype == SELECT:
            config["options"] = list(prop.get("enum") or [])
        if ftype == TEXTAREA:
            config["rows"] = DEFAULT_TEXTAREA_ROWS
        fields.append(
            FieldModel(
                id=f"field_{index}",
                label=label,
                type=ftype,
                order=index,
                config=config,
                declared_type=prop.get("type") if isinstance(prop.get("type"), str) else None,
            )
        )
    return fields


def _dedupe_names(fields: List[FieldModel]) -> List[FieldModel]:
    seen: Dict[str, int] = {}
    for item in fields:
        name = field_key(item)
        count = seen.get(name, 0) + 1
        seen[name] = count
        if count > 1:
            renamed = f"{name}_{count}"
            while renamed in seen:
                count += 1
                renamed = f"{name}_{count}"
            seen[renamed] = 1
            logger.warning("field_name_duplicate id=%s name=%s renamed=%s", item.id, name, renamed)
            item.config["name"] = renamed
    return fields


def normalize(schema: Any) -> List[FieldModel]:
    """Turn a form schema into an ordered list of ``FieldModel``.

    Explicit ``fields`` records take precedence; when that list is empty the
    JSON-Schema ``properties``/``required`` pair is used. Anything else yields
    an empty list.
    """
    if not isinstance(schema, dict):
        return []

    records = schema.get("fields")
    fields: List[FieldModel] = []
    if isinstance(records, list) and records:
        fields = _from_records(records)
    else:
        source = schema
        if not isinstance(schema.get("properties"), dict) and isinstance(schema.get("schema"), dict):
            # Form DTOs wrap the JSON-Schema under "schema".
            source = schema["schema"]
        properties = source.get("properties")
        if isinstance(properties, dict):
            fields = _from_properties(properties, source.get("required"))

    return _dedupe_names(sort_fields(fields))
