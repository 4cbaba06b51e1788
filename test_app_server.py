import json
from dataclasses import replace

import fitz
import pytest
from fastapi.testclient import TestClient

from app_server import BASELINE_PATH, GENERATE_PATH, create_app
from conftest import write_mapping

MAPPING = {
    "meta": {"units": "pt", "yOrigin": "top"},
    "text": {"customer_name": [{"x": 100, "y": 100, "size": 12}], "autopay_org": [{"x": 100, "y": 150}]},
    "checkbox": {"autopay_method.card": [{"x": 60, "y": 200}]},
}


@pytest.fixture
def client(settings, form_root):
    write_mapping(form_root, MAPPING)
    return TestClient(create_app(settings))


def page_text(pdf_bytes: bytes) -> str:
    return fitz.open(stream=pdf_bytes, filetype="pdf")[0].get_text()


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_post_json_returns_inline_pdf(client):
    response = client.post(
        GENERATE_PATH,
        json={"data": {"customer_name": "ALICE", "autopay_method": "card", "card_company": "Shinhan"}},
    )
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.headers["content-disposition"] == 'inline; filename="THE_ONE.pdf"'
    assert response.headers["cache-control"] == "no-store"
    text = page_text(response.content)
    assert "ALICE" in text
    assert "Shinhan" in text


def test_post_flat_json_body(client):
    response = client.post(GENERATE_PATH, json={"customer_name": "FLAT"})
    assert response.status_code == 200
    assert "FLAT" in page_text(response.content)


def test_post_urlencoded_with_json_data_field(client):
    response = client.post(GENERATE_PATH, data={"data": json.dumps({"customer_name": "FORMDATA"})})
    assert response.status_code == 200
    assert "FORMDATA" in page_text(response.content)


def test_post_raw_data_prefix(client):
    body = "data=" + json.dumps({"customer_name": "RAWTEXT"})
    response = client.post(GENERATE_PATH, content=body, headers={"content-type": "text/plain"})
    assert response.status_code == 200
    assert "RAWTEXT" in page_text(response.content)


def test_get_with_query_renders(client):
    response = client.get(GENERATE_PATH, params={"customer_name": "QUERY"})
    assert response.status_code == 200
    assert "QUERY" in page_text(response.content)


def test_empty_get_redirects_to_baseline(client, form_root):
    response = client.get(GENERATE_PATH, follow_redirects=False)
    assert response.status_code == 307
    assert response.headers["location"] == BASELINE_PATH

    baseline = client.get(BASELINE_PATH)
    assert baseline.status_code == 200
    assert baseline.content == (form_root / "template.pdf").read_bytes()


def test_debug_returns_diagnostics(client, form_root):
    response = client.get(GENERATE_PATH, params={"debug": "1"})
    assert response.status_code == 200
    info = response.json()
    assert info["templatePath"] == str(form_root / "template.pdf")
    assert info["meta"]["units"] == "pt"
    assert info["counts"]["checkbox"] == 1
    assert len(info["pages"]) == 2


def test_debug_flag_in_json_body(client):
    response = client.post(GENERATE_PATH, json={"data": {"customer_name": "X"}, "debug": True})
    assert response.headers["content-type"].startswith("application/json")


def test_options_preflight(client):
    response = client.options(GENERATE_PATH)
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"


def test_other_methods_not_allowed(client):
    assert client.put(GENERATE_PATH, json={}).status_code == 405


def test_invalid_json_body_is_400(client):
    response = client.post(GENERATE_PATH, content="{broken", headers={"content-type": "application/json"})
    assert response.status_code == 400


def test_missing_template_is_400(client, form_root):
    (form_root / "template.pdf").unlink()
    response = client.post(GENERATE_PATH, json={"customer_name": "X"})
    assert response.status_code == 400
    assert "Base PDF not found" in response.json()["message"]


def test_broken_mapping_falls_back_to_bare_template(client, form_root):
    (form_root / "mappings" / "TOP.json").write_text("{ nope", encoding="utf-8")
    response = client.post(GENERATE_PATH, json={"customer_name": "X"})
    assert response.status_code == 200
    assert response.content == (form_root / "template.pdf").read_bytes()


def test_broken_mapping_fails_when_strict(settings, form_root):
    (form_root / "mappings" / "TOP.json").write_text("{ nope", encoding="utf-8")
    strict_client = TestClient(create_app(replace(settings, strict_mapping=True)))
    response = strict_client.post(GENERATE_PATH, json={"customer_name": "X"})
    assert response.status_code == 500
    assert response.json()["message"] == "Mapping could not be parsed."


def test_render_error_is_reported_with_traceback(settings, form_root):
    write_mapping(form_root, {"text": {"customer_name": [{"page": 9}]}})
    debug_client = TestClient(create_app(replace(settings, expose_traceback=True)))
    response = debug_client.post(GENERATE_PATH, json={"customer_name": "X"})
    assert response.status_code == 500
    body = response.json()
    assert "Page 9 out of range" in body["detail"]
    assert body["traceback"]


def test_unreadable_mapping_is_400_when_strict(settings, form_root):
    (form_root / "mappings" / "TOP.json").write_bytes(b"\xff\xfe{ not utf-8")
    strict_client = TestClient(create_app(replace(settings, strict_mapping=True)))
    response = strict_client.post(GENERATE_PATH, json={"customer_name": "X"})
    assert response.status_code == 400
    assert "could not be read" in response.json()["message"]


def test_baseline_reports_broken_mapping_as_server_error(settings, form_root):
    (form_root / "mappings" / "TOP.json").write_text("{ nope", encoding="utf-8")
    strict_client = TestClient(create_app(replace(settings, strict_mapping=True)))
    response = strict_client.get(BASELINE_PATH)
    assert response.status_code == 500
    assert response.json()["message"] == "Mapping could not be parsed."


def test_baseline_missing_template_is_404(client, form_root):
    (form_root / "template.pdf").unlink()
    assert client.get(BASELINE_PATH).status_code == 404
