from pathlib import Path
import shutil

import pytest
from fastapi.testclient import TestClient

from app import create_app
from settings import Settings

ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture
def site_dirs(tmp_path):
    templates = tmp_path / "templates"
    assets = tmp_path / "assets"
    shutil.copytree(ROOT / "templates", templates)
    shutil.copytree(ROOT / "assets", assets)
    return templates, assets


@pytest.fixture
def settings(site_dirs):
    templates, assets = site_dirs
    return Settings(templates_dir=templates, assets_dir=assets, live_reload=False)


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as client:
        yield client
