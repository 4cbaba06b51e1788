"""
Mapping documents: where each field, checkbox and rule line lands on the template.

Two on-disk schemas are in circulation. The canonical one::

    {"meta": {...},
     "text": {"name": [{"page": 1, "x": 120, "y": 300, "size": 10, "font": "embedded"}]},
     "checkbox": {"gender.male": [{"page": 1, "x": 80, "y": 410}]},
     "lines": [{"page": 1, "x1": 0, "y1": 0, "x2": 10, "y2": 0, "width": 1}]}

and the legacy one written by the first mapping editor::

    {"fields": {"name": {"source": ["name"], "page": 1, "x": 120, "y": 300}},
     "vmap": {"gender:male": {"page": 1, "x": 80, "y": 410}},
     "lines": [{"p": 1, "x1": 0, "y1": 0, "x2": 10, "y2": 0, "w": 1}],
     "fixed_flags": {"intl_roaming_block": [{"label": "intl", "x": 50, "y": 60}]}}

normalize() accepts either and returns a MappingDocument with every default
filled in, so nothing downstream has to second-guess a missing key.
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from types import MappingProxyType
from typing import Annotated, Any, Literal, Mapping

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from form_errors import ConfigurationError, MappingParseError

logger = logging.getLogger(__name__)

DEFAULT_PDF_PATH = "template.pdf"
DEFAULT_CHECK_CHAR = "V"


def _number(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        n = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(n) or math.isinf(n):
        return default
    return n


def _coerced(default: float, positive: bool = False) -> BeforeValidator:
    def convert(value: Any) -> float:
        n = _number(value, default)
        if positive and n <= 0:
            return default
        return n

    return BeforeValidator(convert)


def _page_number(value: Any) -> int:
    n = _number(value, 1.0)
    if n < 1 or n != int(n):
        return 1
    return int(n)


def _choice(default: str, allowed: tuple[str, ...]) -> BeforeValidator:
    def convert(value: Any) -> str:
        s = str(value).strip().lower() if value is not None else ""
        for option in allowed:
            if s == option.lower():
                return option
        return default

    return BeforeValidator(convert)


def _font_choice(value: Any) -> str:
    # Older mappings name the Korean font directly ("malgun", "MalgunGothic").
    s = str(value or "").strip().lower()
    if s == "embedded" or "malgun" in s:
        return "embedded"
    return "default"


def normalize_compound_key(key: str) -> str:
    """Return ``field.expected`` for a checkbox key written with ``.`` or ``:``."""
    key = str(key)
    return key if "." in key else key.replace(":", ".", 1)


Coord = Annotated[float, _coerced(0.0)]
PageNumber = Annotated[int, BeforeValidator(_page_number)]
FontChoice = Annotated[Literal["default", "embedded"], BeforeValidator(_font_choice)]


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class MappingMeta(_Model):
    pdf_path: str = Field(DEFAULT_PDF_PATH, validation_alias=AliasChoices("pdfPath", "pdf", "pdf_path"))
    units: Annotated[Literal["px", "pt"], _choice("px", ("px", "pt"))] = "px"
    y_origin: Annotated[Literal["top", "bottom"], _choice("top", ("top", "bottom"))] = "top"
    preview_width: Annotated[float, _coerced(0.0, positive=True)] = 0.0
    preview_height: Annotated[float, _coerced(0.0, positive=True)] = 0.0
    nudge_x: Coord = 0.0
    nudge_y: Coord = 0.0
    scale_x: Annotated[float, _coerced(1.0, positive=True)] = 1.0
    scale_y: Annotated[float, _coerced(1.0, positive=True)] = 1.0

    @field_validator("pdf_path", mode="before")
    @classmethod
    def _pdf_path(cls, value: Any) -> str:
        text = "" if value is None else str(value).strip()
        return text or DEFAULT_PDF_PATH


class TextSpot(_Model):
    page: PageNumber = Field(1, validation_alias=AliasChoices("page", "p"))
    x: Coord = 0.0
    y: Coord = 0.0
    size: Annotated[float, _coerced(10.0, positive=True)] = 10.0
    font: FontChoice = "default"
    wrap_key: str | None = Field(None, validation_alias=AliasChoices("wrapKey", "wrap_key"))

    @field_validator("wrap_key", mode="before")
    @classmethod
    def _wrap_key(cls, value: Any) -> str | None:
        return str(value) if value else None


class CheckSpot(_Model):
    page: PageNumber = Field(1, validation_alias=AliasChoices("page", "p"))
    x: Coord = 0.0
    y: Coord = 0.0
    size: Annotated[float, _coerced(12.0, positive=True)] = 12.0
    char: str = DEFAULT_CHECK_CHAR

    @field_validator("char", mode="before")
    @classmethod
    def _char(cls, value: Any) -> str:
        return str(value) if value not in (None, "") else DEFAULT_CHECK_CHAR


class LineSpot(_Model):
    page: PageNumber = Field(1, validation_alias=AliasChoices("page", "p"))
    x1: Coord = 0.0
    y1: Coord = 0.0
    x2: Coord = 0.0
    y2: Coord = 0.0
    width: Annotated[float, _coerced(1.0, positive=True)] = Field(1.0, validation_alias=AliasChoices("width", "w"))


class WrapBox(_Model):
    """A text box in mapping units; line_height 0 means 1.2 x font size."""

    max_width: Annotated[float, _coerced(0.0, positive=True)] = 0.0
    max_lines: int = 2
    line_height: Annotated[float, _coerced(0.0, positive=True)] = 0.0

    @field_validator("max_lines", mode="before")
    @classmethod
    def _max_lines(cls, value: Any) -> int:
        return max(1, int(_number(value, 2.0)))


# Fields on the TOP form whose values routinely overflow a single line.
DEFAULT_WRAP_BOXES: Mapping[str, WrapBox] = MappingProxyType(
    {
        "address": WrapBox(max_width=330, max_lines=2),
    }
)


def _spot_lists(value: Any) -> dict[str, list[dict]]:
    if not isinstance(value, dict):
        return {}
    out: dict[str, list[dict]] = {}
    for key, spots in value.items():
        if isinstance(spots, (dict, BaseModel)):
            spots = [spots]
        if not isinstance(spots, list):
            continue
        out[str(key)] = [s for s in spots if isinstance(s, (dict, BaseModel))]
    return out


class MappingDocument(_Model):
    meta: MappingMeta = Field(default_factory=MappingMeta)
    text: dict[str, list[TextSpot]] = Field(default_factory=dict)
    checkbox: dict[str, list[CheckSpot]] = Field(default_factory=dict)
    lines: list[LineSpot] = Field(default_factory=list)
    wrap: dict[str, WrapBox] = Field(default_factory=dict)
    defaults: dict[str, str] = Field(default_factory=dict)

    @field_validator("meta", mode="before")
    @classmethod
    def _meta(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, MappingMeta)) else {}

    @field_validator("text", mode="before")
    @classmethod
    def _text(cls, value: Any) -> dict:
        return _spot_lists(value)

    @field_validator("checkbox", mode="before")
    @classmethod
    def _checkbox(cls, value: Any) -> dict:
        merged: dict[str, list] = {}
        for key, spots in _spot_lists(value).items():
            merged.setdefault(normalize_compound_key(key), []).extend(spots)
        return merged

    @field_validator("lines", mode="before")
    @classmethod
    def _lines(cls, value: Any) -> list:
        if not isinstance(value, list):
            return []
        return [line for line in value if isinstance(line, (dict, BaseModel))]

    @field_validator("wrap", mode="before")
    @classmethod
    def _wrap(cls, value: Any) -> dict:
        if not isinstance(value, dict):
            return {}
        return {str(k): v for k, v in value.items() if isinstance(v, (dict, BaseModel))}

    @field_validator("defaults", mode="before")
    @classmethod
    def _defaults(cls, value: Any) -> dict:
        if not isinstance(value, dict):
            return {}
        return {str(k): str(v) for k, v in value.items() if v is not None}

    @property
    def is_empty(self) -> bool:
        return not (self.text or self.checkbox or self.lines)

    def wrap_boxes(self) -> dict[str, WrapBox]:
        """Built-in wrap registry overlaid with the document's own boxes."""
        boxes = dict(DEFAULT_WRAP_BOXES)
        boxes.update(self.wrap)
        return boxes


def _is_canonical(raw: dict) -> bool:
    if "text" in raw or "checkbox" in raw:
        return True
    return "lines" in raw and "fields" not in raw and "vmap" not in raw


def _from_legacy(raw: dict) -> dict:
    text: dict[str, list] = {}
    checkbox: dict[str, list] = {}
    defaults: dict[str, str] = {}

    fields = raw.get("fields")
    if isinstance(fields, dict):
        for name, entry in fields.items():
            if not isinstance(entry, dict):
                continue
            source = entry.get("source")
            key = source[0] if isinstance(source, list) and source and source[0] else name
            text.setdefault(str(key), []).append(entry)

    vmap = raw.get("vmap")
    if isinstance(vmap, dict):
        for compound, entry in vmap.items():
            if isinstance(entry, dict):
                checkbox.setdefault(normalize_compound_key(compound), []).append(entry)

    flags = raw.get("fixed_flags")
    block = flags.get("intl_roaming_block") if isinstance(flags, dict) else None
    if isinstance(block, list):
        for flag in block:
            if not isinstance(flag, dict):
                continue
            key = f"fixed_{flag.get('label') or 'intl'}"
            text.setdefault(key, []).append(flag)
            if flag.get("value") is not None:
                defaults[key] = str(flag["value"])

    return {
        "meta": raw.get("meta"),
        "text": text,
        "checkbox": checkbox,
        "lines": raw.get("lines"),
        "wrap": raw.get("wrap"),
        "defaults": defaults,
    }


def normalize(raw: Any) -> MappingDocument:
    """Turn a canonical or legacy mapping (or an existing document) into a MappingDocument.

    Malformed optional entries fall back to defaults. Only a top level that is
    not a JSON object raises MappingParseError.
    """
    if isinstance(raw, MappingDocument):
        raw = raw.model_dump(by_alias=True)
    if raw is None or (isinstance(raw, (dict, list, str)) and len(raw) == 0):
        return MappingDocument()
    if not isinstance(raw, dict):
        raise MappingParseError(f"Mapping must be a JSON object, got {type(raw).__name__}.")

    data = raw if _is_canonical(raw) else _from_legacy(raw)
    try:
        return MappingDocument.model_validate(data)
    except ValidationError as exc:
        raise MappingParseError(f"Mapping could not be normalized: {exc}") from exc


def load_mapping_file(path: Path, strict: bool = False) -> MappingDocument:
    """Read and normalize the mapping at ``path``.

    A missing file always yields an empty document. When ``strict``, a file
    that cannot be read raises ConfigurationError and one that cannot be parsed
    raises MappingParseError; otherwise the problem is logged and an empty
    document is returned.
    """
    if not path.is_file():
        logger.warning("Mapping not found at %s, using empty mapping.", path)
        return MappingDocument()
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        if strict:
            raise ConfigurationError(f"Mapping {path} could not be read: {exc}") from exc
        logger.warning("Mapping %s could not be read, using empty mapping: %s", path, exc)
        return MappingDocument()
    try:
        return normalize(json.loads(text))
    except (json.JSONDecodeError, MappingParseError) as exc:
        if strict:
            raise MappingParseError(f"Mapping {path} could not be parsed: {exc}") from exc
        logger.warning("Mapping JSON parse error in %s, using empty mapping: %s", path, exc)
        return MappingDocument()
