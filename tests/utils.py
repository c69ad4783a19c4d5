import json

import pytest
from PIL import Image

pytest.importorskip('fastapi')
from fastapi.testclient import TestClient

CORPUS = {
    "wisdoms": [
        "Never give up.",
        ["A", "B"],
        ["A", "B", "C"],
    ]
}


def fake_measurer_factory(family, size, style):
    return lambda text: len(text) * 10.0


def write_background(path, size=(200, 100), color="navy"):
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path)
    return path


def prepare_app(tmp_path, monkeypatch, corpus=None):
    """Point corpus, image root and background set at tmp fixtures and return (APP, app_module)."""
    corpus_file = tmp_path / "wisdoms.json"
    corpus_file.write_text(json.dumps(corpus or CORPUS), encoding="utf-8")
    write_background(tmp_path / "images" / "bg.png")

    import api.app as app_module
    import caption_engine
    import param_resolver
    import wisdom_sources

    monkeypatch.setattr(wisdom_sources, "WISDOM_CORPUS_PATH", str(corpus_file))
    monkeypatch.setattr(wisdom_sources, "SETTINGS_STORE_URL", "")
    monkeypatch.setattr(param_resolver, "BACKGROUND_IMAGES", ("images/bg.png",))
    monkeypatch.setattr(caption_engine, "IMAGES_ROOT", tmp_path)
    monkeypatch.setattr(app_module, "API_KEY", None)

    return app_module.APP, app_module


def get_test_client(app):
    return TestClient(app)
