"""
Pytest configuration and fixtures for Template Assets Backend tests.
"""

import copy
import json
import os
import shutil
import tempfile

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["TEMPLATE_ASSETS_DATA_DIR"] = tempfile.mkdtemp(prefix="template_assets_test_")
os.environ["TEMPLATE_ASSETS_MASTER_KEY"] = "test-master-key-12345"
os.environ["TEMPLATE_ASSETS_STORAGE"] = "local"

from template_assets_backend.archive import build_archive
from template_assets_backend.configuration import make_runtime_config
from template_assets_backend.database import Database
from template_assets_backend.entities import CurrentUser
from template_assets_backend.importer import TemplateAssetService
from template_assets_backend.main import app
from template_assets_backend.storage import LocalStorage

MANIFEST = {
    "theme": {
        "name": "Corporate",
        "colors": {"primaryColor": "#112233", "secondaryColor": "#445566", "bodyColor": "#000000"},
        "fonts": [
            {"fontName": "Roboto", "filePath": "theme/Roboto-Regular.ttf"},
            {"fontName": "Roboto", "filePath": "theme/Roboto-Bold.ttf"},
        ],
    },
    "layout": {
        "name": "A4 Letter",
        "slug": "a4-letter",
        "description": "Letter layout",
        "meta": {"margins": "2cm"},
        "engine": "pandoc/latex",
        "slug_file": "layout/a4-letter.pdf",
    },
    "flow": {"name": "Review", "controlled": False},
    "frame": {"name": "Letterhead", "description": "Company letterhead", "type": "latex"},
    "variant": {
        "name": "Offer Letter",
        "prefix": "OFL",
        "description": "Offer letters for new hires",
        "color": "#ff0000",
        "fields": [
            {"name": "employee", "type": "string", "description": "Employee name"},
            {"name": "start_date", "type": "date", "description": "First working day"},
        ],
    },
    "data_template": {"title": "Standard Offer", "title_template": "Offer for [employee]"},
}

TEMPLATE_DOCUMENT = {
    "type": "doc",
    "content": [
        {"type": "heading", "attrs": {"level": 1}, "content": [{"type": "text", "text": "Offer"}]},
        {
            "type": "paragraph",
            "content": [{"type": "text", "text": "Dear "}, {"type": "holder", "attrs": {"name": "employee"}}],
        },
    ],
}

BUNDLE_FILES = {
    "theme/Roboto-Regular.ttf": b"font-regular",
    "theme/Roboto-Bold.ttf": b"font-bold",
    "layout/a4-letter.pdf": b"%PDF-1.4 layout",
    "frame/letterhead.tex": b"\\documentclass{article}",
}


def build_bundle(manifest=None, files=None, template=None, drop=()):
    """Zip bytes of a template asset; ``drop`` removes entries by name."""
    entries = {
        "manifest.json": json.dumps(MANIFEST if manifest is None else manifest).encode("utf-8"),
        "template.json": json.dumps({"data": json.dumps(template or TEMPLATE_DOCUMENT)}).encode("utf-8"),
        **BUNDLE_FILES,
        **(files or {}),
    }
    for name in drop:
        entries.pop(name, None)
    return build_archive(entries)


@pytest.fixture(scope="session", autouse=True)
def test_data_dir():
    """Remove the shared data directory after the session."""
    data_dir = os.environ["TEMPLATE_ASSETS_DATA_DIR"]
    yield data_dir
    shutil.rmtree(data_dir, ignore_errors=True)


@pytest.fixture
def manifest():
    """A fresh copy of the full sample manifest."""
    return copy.deepcopy(MANIFEST)


@pytest.fixture
def make_bundle():
    return build_bundle


@pytest.fixture
def bundle():
    """Zip bytes of the full sample template asset."""
    return build_bundle()


@pytest.fixture
def settings(tmp_path):
    return make_runtime_config({"app": {"data_dir": str(tmp_path)}})


@pytest.fixture
def importer_settings(settings):
    return settings.importer


@pytest.fixture
def database(tmp_path):
    return Database(tmp_path / "test.db")


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "storage")


@pytest.fixture
def service(database, storage, importer_settings):
    return TemplateAssetService(database, storage, importer_settings)


@pytest.fixture
def user():
    return CurrentUser(id="user-1", organisation_id="org-1")


@pytest.fixture
def other_user():
    return CurrentUser(id="user-2", organisation_id="org-2")


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def master_key():
    """Return the master API key for admin operations."""
    return "test-master-key-12345"


@pytest.fixture
def api_key(client, master_key):
    """Create a test API key for a fresh organisation."""
    response = client.post(
        "/admin/keys",
        json={"owner": f"test-user-{os.urandom(4).hex()}", "organisation_id": f"org-{os.urandom(4).hex()}", "max_imports": 10},
        headers={"X-API-Key": master_key},
    )
    assert response.status_code == 201
    return response.json()["api_key"]
