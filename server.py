import os
import json
import queue
import threading
from pathlib import Path
from typing import Optional, Dict, Any, Generator

from flask import Flask, request, Response, jsonify
from dotenv import load_dotenv

from main import MIN_PAGES, MAX_PAGES, MIN_PANELS_PER_PAGE, MAX_PANELS_PER_PAGE
from orchestrator import Orchestrator, StepError

# Load environment variables
load_dotenv()


app = Flask(__name__, static_folder=None)


ROOT = Path(__file__).parent


class RunState:
    def __init__(self):
        self.orchestrator = Orchestrator()
        # background thread running the current text-generation step
        self.thread: Optional[threading.Thread] = None
        self.lock = threading.Lock()

    def busy(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


state = RunState()


def state_payload() -> Dict[str, Any]:
    s = state.orchestrator.state
    payload = s.model_dump(mode="json")
    payload["totalPanels"] = s.totalPanels
    payload["bounds"] = {
        "pages": [MIN_PAGES, MAX_PAGES],
        "panelsPerPage": [MIN_PANELS_PER_PAGE, MAX_PANELS_PER_PAGE],
    }
    return payload


def launch(target, *args) -> bool:
    """Start target on the background thread unless a step is already running."""
    with state.lock:
        if state.busy():
            return False
        t = threading.Thread(target=target, args=args, daemon=True)
        t.start()
        state.thread = t
    return True


def json_body() -> Optional[Dict[str, Any]]:
    data = request.get_json(force=True, silent=True)
    if data is None:
        return {}
    return data if isinstance(data, dict) else None


@app.route("/")
def index() -> Response:
    html = (ROOT / "web" / "index.html").read_text(encoding="utf-8")
    return Response(html, mimetype="text/html")


@app.route("/api/state")
def api_state():
    return jsonify(state_payload())


@app.route("/api/config", methods=["POST"])
def api_config():
    data = json_body()
    if data is None:
        return jsonify({"error": "JSON object body required"}), 400
    try:
        state.orchestrator.configure(
            num_pages=data.get("numPages"),
            num_panels_per_page=data.get("numPanelsPerPage"),
            mode=data.get("mode"),
        )
    except StepError as e:
        return jsonify({"error": str(e)}), 409
    except (TypeError, ValueError) as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(state_payload())


@app.route("/api/start", methods=["POST"])
def api_start():
    data = json_body()
    if data is None:
        return jsonify({"error": "JSON object body required"}), 400
    idea = data.get("idea")
    idea = idea.strip() if isinstance(idea, str) else ""
    if not idea:
        return jsonify({"error": "Seed idea required"}), 400
    s = state.orchestrator.state
    if s.step != "input" or s.loading:
        return jsonify({"error": "A production is already under way; restart first"}), 409

    if not launch(state.orchestrator.start_production, idea):
        return jsonify({"error": "A generation step is already running"}), 409
    return jsonify({"accepted": True}), 202


@app.route("/api/build", methods=["POST"])
def api_build():
    s = state.orchestrator.state
    if s.step != "development" or s.developedStory is None:
        return jsonify({"error": "No developed story to build from"}), 400
    if not launch(state.orchestrator.build_storyboard):
        return jsonify({"error": "A generation step is already running"}), 409
    return jsonify({"accepted": True}), 202


@app.route("/api/back", methods=["POST"])
def api_back():
    state.orchestrator.back_to_input()
    return jsonify(state_payload())


@app.route("/api/restart", methods=["POST"])
def api_restart():
    state.orchestrator.restart()
    return jsonify(state_payload())


@app.route("/api/pages/<page_id>/illustrate", methods=["POST"])
def api_illustrate_page(page_id: str):
    try:
        state.orchestrator.illustrate_page(page_id)
    except KeyError:
        return jsonify({"error": f"Page '{page_id}' not found"}), 404
    return jsonify({"queued": page_id}), 202


@app.route("/api/scenes/<scene_id>/action", methods=["POST"])
def api_edit_scene(scene_id: str):
    data = json_body()
    if data is None:
        return jsonify({"error": "JSON object body required"}), 400
    action = data.get("action")
    if not isinstance(action, str):
        return jsonify({"error": "Action text required"}), 400
    try:
        changed = state.orchestrator.edit_scene_action(scene_id, action)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    if not changed:
        return jsonify({"error": f"Scene '{scene_id}' not found"}), 404
    return jsonify({"updated": changed})


@app.route("/api/stream")
def api_stream() -> Response:
    events = state.orchestrator.subscribe()

    def gen() -> Generator[str, None, None]:
        try:
            yield "event: ping\n" "data: {}\n\n"
            while True:
                try:
                    evt = events.get(timeout=30)
                except queue.Empty:
                    yield "event: ping\n" "data: {}\n\n"
                    continue
                yield f"data: {json.dumps(evt)}\n\n"
        finally:
            state.orchestrator.unsubscribe(events)
    return Response(gen(), mimetype="text/event-stream")


if __name__ == "__main__":
    app.run(host="127.0.0.1", port=int(os.getenv("PORT", "5000")), debug=True, threaded=True)
