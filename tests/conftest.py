"""Shared fakes: a stand-in for genai.Client that never touches the network."""

import io
import json
from types import SimpleNamespace

import pytest
from PIL import Image

from main import GAIC


def png_bytes(color: str = "white") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (6, 8), color).save(buf, format="PNG")
    return buf.getvalue()


def text_response(obj) -> SimpleNamespace:
    text = obj if isinstance(obj, str) else json.dumps(obj)
    return SimpleNamespace(text=text, candidates=[])


def image_response(data: bytes) -> SimpleNamespace:
    parts = [
        SimpleNamespace(text="Here is your page.", inline_data=None),
        SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type="image/png")),
    ]
    return SimpleNamespace(text=None, candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])


def text_only_response() -> SimpleNamespace:
    parts = [SimpleNamespace(text="I cannot draw that.", inline_data=None)]
    return SimpleNamespace(text=None, candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])


def storyboard_json(num_pages: int, panels: int, title: str = "The Bottle") -> dict:
    return {
        "title": title,
        "characters": [
            {"id": "keeper", "name": "Silhouette A", "appearance": "featureless mannequin with a cap"},
            {"id": "ghost", "name": "Silhouette B", "appearance": "tall thin silhouette"},
        ],
        "pages": [
            {
                "id": f"page-{p}",
                "pageNumber": p,
                "pageLayoutDescription": "even grid",
                "scenes": [
                    {
                        "id": f"p{p}s{s}",
                        "sceneNumber": s,
                        "location": "lighthouse",
                        "timeOfDay": "dusk",
                        "action": f"beat {p}.{s}",
                        "visualPrompt": f"visual p{p} s{s}",
                    }
                    for s in range(1, panels + 1)
                ],
            }
            for p in range(1, num_pages + 1)
        ],
    }


class FakeModels:
    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def generate_content(self, model, contents, config=None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        return self.handler(model, contents, config)


class FakeClient:
    def __init__(self, handler):
        self.models = FakeModels(handler)


def scripted(*responses):
    """Handler that returns (or raises) the given responses in order."""
    pending = list(responses)

    def handler(model, contents, config):
        r = pending.pop(0)
        if isinstance(r, Exception):
            raise r
        return r
    return handler


def is_text_call(config) -> bool:
    return bool(config) and "response_schema" in config


@pytest.fixture
def fake_gaic():
    def make(handler):
        return GAIC(client=FakeClient(handler), image_backend="gemini")
    return make
