"""HTTP routes, driven through Flask's test client."""

import threading

import pytest

import server
from orchestrator import Orchestrator
from conftest import image_response, is_text_call, png_bytes, storyboard_json, text_response


def handler(model, contents, config):
    if is_text_call(config):
        return text_response(storyboard_json(2, 4))
    return image_response(png_bytes())


@pytest.fixture
def client(fake_gaic, monkeypatch):
    orch = Orchestrator(g=fake_gaic(handler), pause_s=0)
    monkeypatch.setattr(server.state, "orchestrator", orch)
    monkeypatch.setattr(server.state, "thread", None)
    server.app.config["TESTING"] = True
    with server.app.test_client() as c:
        yield c
    orch.close()


def settle():
    if server.state.thread is not None:
        server.state.thread.join(5)
    server.state.orchestrator.wait_idle()


def start_quick(client):
    client.post("/api/config", json={"numPages": 2, "numPanelsPerPage": 4, "mode": "quick"})
    resp = client.post("/api/start", json={"idea": "A lighthouse keeper finds a message in a bottle"})
    assert resp.status_code == 202
    settle()


def test_index(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert b"Director's Matrix Draft" in resp.data


def test_state_and_config(client):
    data = client.get("/api/state").get_json()
    assert data["step"] == "input"
    assert data["bounds"] == {"pages": [1, 15], "panelsPerPage": [4, 10]}

    data = client.post("/api/config", json={"numPages": 99, "numPanelsPerPage": 6, "mode": "quick"}).get_json()
    assert data["numPages"] == 15
    assert data["numPanelsPerPage"] == 6
    assert data["mode"] == "quick"
    assert data["totalPanels"] == 90


def test_bad_mode(client):
    assert client.post("/api/config", json={"mode": "turbo"}).status_code == 400


def test_start_requires_idea(client):
    resp = client.post("/api/start", json={"idea": "  "})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Seed idea required"


def test_quick_run_illustrates_every_page(client):
    start_quick(client)
    data = client.get("/api/state").get_json()
    assert data["step"] == "storyboard"
    pages = data["storyboard"]["pages"]
    assert len(pages) == 2
    assert [p["illustration"]["status"] for p in pages] == ["illustrated", "illustrated"]
    assert pages[0]["illustration"]["image"].startswith("data:image/png;base64,")


def test_build_without_development(client):
    assert client.post("/api/build").status_code == 400


def test_config_is_locked_after_start(client):
    start_quick(client)
    resp = client.post("/api/config", json={"numPages": 5})
    assert resp.status_code == 409
    assert client.get("/api/state").get_json()["numPages"] == 2


def test_second_start_is_rejected(client):
    start_quick(client)
    assert client.post("/api/start", json={"idea": "Another idea"}).status_code == 409
    settle()
    data = client.get("/api/state").get_json()
    assert data["idea"] == "A lighthouse keeper finds a message in a bottle"
    image_calls = [c for c in server.state.orchestrator.g.client.models.calls if not is_text_call(c["config"])]
    assert len(image_calls) == 2


def test_launch_refuses_while_a_step_is_running(client):
    release = threading.Event()
    running = threading.Thread(target=release.wait, args=(5,), daemon=True)
    running.start()
    server.state.thread = running
    try:
        assert server.launch(lambda: None) is False
        assert client.post("/api/start", json={"idea": "idea"}).status_code == 409
        assert server.state.thread is running
    finally:
        release.set()
        running.join(5)


@pytest.mark.parametrize("path", ["/api/config", "/api/start", "/api/scenes/p1s1/action"])
@pytest.mark.parametrize("body", [[1, 2], "x", 3])
def test_non_object_json_body(client, path, body):
    resp = client.post(path, json=body)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "JSON object body required"


def test_edit_scene(client):
    start_quick(client)
    resp = client.post("/api/scenes/p1s2/action", json={"action": "He reads the note."})
    assert resp.get_json() == {"updated": 1}
    scenes = client.get("/api/state").get_json()["storyboard"]["pages"][0]["scenes"]
    assert scenes[1]["action"] == "He reads the note."
    assert scenes[0]["action"] == "beat 1.1"

    assert client.post("/api/scenes/nope/action", json={"action": "x"}).status_code == 404
    assert client.post("/api/scenes/p1s2/action", json={}).status_code == 400


def test_edit_before_storyboard(client):
    assert client.post("/api/scenes/p1s1/action", json={"action": "x"}).status_code == 400


def test_illustrate_page(client):
    start_quick(client)
    resp = client.post("/api/pages/page-1/illustrate")
    assert resp.status_code == 202
    settle()
    assert client.post("/api/pages/page-9/illustrate").status_code == 404


def test_restart(client):
    start_quick(client)
    data = client.post("/api/restart").get_json()
    assert data["step"] == "input"
    assert data["storyboard"] is None


def test_surfaced_error(client, fake_gaic, monkeypatch):
    def broken(model, contents, config):
        raise ConnectionError("service unreachable")

    monkeypatch.setattr(server.state.orchestrator, "_g", fake_gaic(broken))
    client.post("/api/config", json={"mode": "creative"})
    assert client.post("/api/start", json={"idea": "idea"}).status_code == 202
    settle()
    data = client.get("/api/state").get_json()
    assert data["step"] == "input"
    assert "service unreachable" in data["error"]
