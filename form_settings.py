"""
Configuration for the TOP form generator.

Settings are read from TOPFORM_* environment variables (a .env file next to
this module is loaded first) and frozen into a Settings value.

Environment variables:
    TOPFORM_ROOT              Directory holding template.pdf, mappings/ and fonts
    TOPFORM_MAPPING_PATH      Mapping JSON (default: <root>/mappings/TOP.json)
    TOPFORM_FONT_PATH         Preferred TTF used for non-ASCII glyphs
    TOPFORM_STRICT_MAPPING    1 to fail requests on an unparsable mapping
    TOPFORM_EXPOSE_TRACEBACK  1 to include tracebacks in 500 responses
    TOPFORM_CORS_ORIGINS      Comma separated list (default: *)
    TOPFORM_OUTPUT_FILENAME   Inline filename of the generated PDF
    TOPFORM_LOG_LEVEL         Logging level name (default: INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Settings:
    """Immutable process-wide configuration."""

    root_dir: Path
    mapping_path: Path
    font_path: Optional[Path] = None
    strict_mapping: bool = False
    expose_traceback: bool = False
    cors_origins: tuple[str, ...] = ("*",)
    output_filename: str = "THE_ONE.pdf"
    log_level: str = "INFO"
    font_file_name: str = "malgun.ttf"

    def template_candidates(self, pdf_path: str) -> list[Path]:
        """Ordered locations tried for the template PDF named by the mapping."""
        rel = pdf_path or "template.pdf"
        return [
            self.root_dir / rel,
            self.mapping_path.parent / rel,
            self.root_dir / "template.pdf",
            Path.cwd() / rel,
        ]

    def font_candidates(self) -> list[Path]:
        candidates = [self.font_path] if self.font_path else []
        candidates += [
            self.root_dir / self.font_file_name,
            self.root_dir / "fonts" / self.font_file_name,
            Path.cwd() / self.font_file_name,
        ]
        return candidates


def first_existing_path(candidates: list[Optional[Path]]) -> Optional[Path]:
    for path in candidates:
        if path and path.is_file():
            return path
    return None


def load_settings() -> Settings:
    """Build Settings from the environment."""
    root_dir = Path(os.environ.get("TOPFORM_ROOT", str(ROOT_DIR)))
    mapping_path = Path(
        os.environ.get("TOPFORM_MAPPING_PATH", str(root_dir / "mappings" / "TOP.json"))
    )
    font_path = os.environ.get("TOPFORM_FONT_PATH") or None
    origins = os.environ.get("TOPFORM_CORS_ORIGINS", "*")

    return Settings(
        root_dir=root_dir,
        mapping_path=mapping_path,
        font_path=Path(font_path) if font_path else None,
        strict_mapping=_env_flag("TOPFORM_STRICT_MAPPING"),
        expose_traceback=_env_flag("TOPFORM_EXPOSE_TRACEBACK"),
        cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()) or ("*",),
        output_filename=os.environ.get("TOPFORM_OUTPUT_FILENAME", "THE_ONE.pdf"),
        log_level=os.environ.get("TOPFORM_LOG_LEVEL", "INFO").upper(),
    )


def load_settings_from_dotenv(dotenv_path: Optional[Path] = None) -> Settings:
    """Read .env (default: next to this module) and then build Settings."""
    load_dotenv(dotenv_path or ROOT_DIR / ".env")
    return load_settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
