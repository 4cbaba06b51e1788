import json
from pathlib import Path

import pytest
import reportlab
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from form_settings import Settings

PAGE_W, PAGE_H = letter  # 612 x 792 points


def build_template(path: Path, pages: int = 1) -> Path:
    c = canvas.Canvas(str(path), pagesize=letter)
    for number in range(1, pages + 1):
        c.setFont("Helvetica", 8)
        c.drawString(36, 36, f"template page {number}")
        c.showPage()
    c.save()
    return path


@pytest.fixture
def template_bytes(tmp_path: Path) -> bytes:
    return build_template(tmp_path / "template.pdf").read_bytes()


@pytest.fixture
def form_root(tmp_path: Path) -> Path:
    """A root directory laid out like a deployment: template.pdf plus mappings/."""
    build_template(tmp_path / "template.pdf", pages=2)
    (tmp_path / "mappings").mkdir()
    return tmp_path


def write_mapping(root: Path, mapping: object) -> Path:
    path = root / "mappings" / "TOP.json"
    path.write_text(json.dumps(mapping, ensure_ascii=False), encoding="utf-8")
    return path


@pytest.fixture
def settings(form_root: Path) -> Settings:
    return Settings(root_dir=form_root, mapping_path=form_root / "mappings" / "TOP.json")


@pytest.fixture
def vera_font() -> Path:
    path = Path(reportlab.__file__).parent / "fonts" / "Vera.ttf"
    if not path.is_file():
        pytest.skip("reportlab's bundled Vera.ttf is not available")
    return path
