# orchestrator.py
import os
import time
import queue
import threading
from typing import Literal, Optional, Dict, Any, List, Tuple

from pydantic import BaseModel

from main import (
    GAIC, PromptLogger, DevelopedStory, StoryboardData, Page,
    Unillustrated, InProgress, Illustrated, Failed,
    develop_story_concept, generate_storyboard_from_text, generate_page_image,
    MIN_PAGES, MAX_PAGES, MIN_PANELS_PER_PAGE, MAX_PANELS_PER_PAGE,
    DEFAULT_PAGES, DEFAULT_PANELS_PER_PAGE,
)

# pause before each page illustration call, keeps the UI responsive
ILLUSTRATION_PAUSE_S = float(os.getenv("ILLUSTRATION_PAUSE_S", "0.1"))

Step = Literal["input", "development", "storyboard"]
Mode = Literal["creative", "quick"]


class AppState(BaseModel):
    step: Step = "input"
    mode: Mode = "creative"
    idea: str = ""
    numPages: int = DEFAULT_PAGES
    numPanelsPerPage: int = DEFAULT_PANELS_PER_PAGE
    loading: bool = False
    developedStory: Optional[DevelopedStory] = None
    storyboard: Optional[StoryboardData] = None
    error: Optional[str] = None
    # bumped on restart; work started under an older run is discarded
    runId: int = 0

    @property
    def totalPanels(self) -> int:
        return self.numPages * self.numPanelsPerPage


class StepError(ValueError):
    """The requested operation is not allowed in the current step."""


def clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, int(value)))


class IllustrationWorker:
    """Single consumer of a FIFO of (run id, page id) illustration tasks."""

    def __init__(self, handler, pause_s: float = ILLUSTRATION_PAUSE_S):
        self.tasks: "queue.Queue[Optional[Tuple[int, str]]]" = queue.Queue()
        self.pause_s = pause_s
        self._handler = handler
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()

    def submit(self, run_id: int, page_id: str) -> None:
        self.tasks.put((run_id, page_id))

    def join(self) -> None:
        self.tasks.join()

    def stop(self) -> None:
        self.tasks.put(None)

    def _run(self) -> None:
        while True:
            task = self.tasks.get()
            try:
                if task is None:
                    return
                time.sleep(self.pause_s)
                self._handler(*task)
            except Exception as e:
                print(f"[ERROR] Illustration task {task} crashed: {e}")
            finally:
                self.tasks.task_done()


class Orchestrator:
    """
    Owns the application state and sequences the generation steps.

    The state is never mutated in place: every transition swaps in a new
    AppState under the lock and is published to subscribers as an event.
    """

    def __init__(self, g: Optional[GAIC] = None, log: Optional[PromptLogger] = None,
                 pause_s: float = ILLUSTRATION_PAUSE_S):
        self._g = g
        self.log = log or PromptLogger()
        self._state = AppState()
        self._lock = threading.RLock()
        self._listeners: List["queue.Queue[Dict[str, Any]]"] = []
        self.worker = IllustrationWorker(self._illustrate, pause_s)

    @property
    def g(self) -> GAIC:
        if self._g is None:
            self._g = GAIC()
        return self._g

    @property
    def state(self) -> AppState:
        with self._lock:
            return self._state

    # ---- events ----

    def subscribe(self) -> "queue.Queue[Dict[str, Any]]":
        q: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        with self._lock:
            self._listeners.append(q)
        return q

    def unsubscribe(self, q) -> None:
        with self._lock:
            if q in self._listeners:
                self._listeners.remove(q)

    def _apply(self, event: str, run_id: Optional[int] = None, **changes) -> bool:
        with self._lock:
            if run_id is not None and run_id != self._state.runId:
                return False
            self._state = self._state.model_copy(update=changes)
            payload = {"type": event, "step": self._state.step, "runId": self._state.runId}
            for q in self._listeners:
                q.put(payload)
        return True

    # ---- configuration ----

    def configure(self, num_pages: Optional[int] = None, num_panels_per_page: Optional[int] = None,
                  mode: Optional[Mode] = None) -> AppState:
        changes: Dict[str, Any] = {}
        if num_pages is not None:
            changes["numPages"] = clamp(num_pages, MIN_PAGES, MAX_PAGES)
        if num_panels_per_page is not None:
            changes["numPanelsPerPage"] = clamp(num_panels_per_page, MIN_PANELS_PER_PAGE, MAX_PANELS_PER_PAGE)
        if mode is not None:
            if mode not in ("creative", "quick"):
                raise ValueError(f"Unknown mode: {mode}")
            changes["mode"] = mode
        with self._lock:
            if self._state.step != "input" or self._state.loading:
                raise StepError("Page and panel counts can only change before production starts")
            self._apply("config", **changes)
            return self._state

    # ---- production steps ----

    def start_production(self, idea: str) -> AppState:
        idea = (idea or "").strip()
        if not idea:
            raise ValueError("Seed idea required")

        with self._lock:
            state = self._state
            if state.step != "input" or state.loading:
                raise StepError("A production is already under way; restart first")
            run_id = state.runId
            self._apply("loading", idea=idea, loading=True, error=None)
        try:
            if state.mode == "creative":
                story = develop_story_concept(self.g, idea, state.totalPanels, self.log)
                self._apply("development", run_id=run_id, step="development", developedStory=story)
            else:
                board = generate_storyboard_from_text(
                    self.g, idea, state.numPages, state.numPanelsPerPage, self.log)
                self._enter_storyboard(run_id, board)
        except RuntimeError as e:
            print(f"[ERROR] Production failed: {e}")
            self._apply("error", run_id=run_id,
                        error=str(e) or "Production failed. Please refine your vision.")
        finally:
            self._apply("loaded", run_id=run_id, loading=False)
        return self.state

    def build_storyboard(self) -> AppState:
        with self._lock:
            state = self._state
            if state.step != "development" or state.developedStory is None or state.loading:
                raise StepError("No developed story to build from")
            run_id = state.runId
            self._apply("loading", loading=True, error=None)
        try:
            board = generate_storyboard_from_text(
                self.g, state.developedStory.screenplay, state.numPages, state.numPanelsPerPage, self.log)
            self._enter_storyboard(run_id, board)
        except RuntimeError as e:
            print(f"[ERROR] Storyboard build failed: {e}")
            self._apply("error", run_id=run_id,
                        error=str(e) or "Critical logic error in sequence generation.")
        finally:
            self._apply("loaded", run_id=run_id, loading=False)
        return self.state

    def _enter_storyboard(self, run_id: int, board: StoryboardData) -> None:
        if not self._apply("storyboard", run_id=run_id, step="storyboard", storyboard=board):
            return
        for page in board.pages:
            self.worker.submit(run_id, page.id)

    def back_to_input(self) -> AppState:
        self._apply("input", step="input", error=None)
        return self.state

    def restart(self) -> AppState:
        """Drop every generated artifact; idea, mode and page config are kept."""
        with self._lock:
            self._apply("restart", step="input", loading=False, developedStory=None,
                        storyboard=None, error=None, runId=self._state.runId + 1)
            return self._state

    def wait_idle(self) -> None:
        self.worker.join()

    def close(self) -> None:
        self.worker.stop()

    # ---- illustration ----

    def illustrate_page(self, page_id: str) -> None:
        state = self.state
        if state.storyboard is None or find_page(state.storyboard, page_id) is None:
            raise KeyError(page_id)
        self.worker.submit(state.runId, page_id)

    def _illustrate(self, run_id: int, page_id: str) -> None:
        state = self.state
        if state.runId != run_id or state.storyboard is None:
            return
        page = find_page(state.storyboard, page_id)
        if page is None:
            return

        self._set_page_status(run_id, page_id, InProgress(), InProgress())
        # re-read so an action edit made while queued is drawn
        current = self.state.storyboard
        page = (find_page(current, page_id) if current is not None else None) or page
        try:
            image = generate_page_image(self.g, page, state.storyboard.characters, self.log)
        except Exception as e:
            print(f"[ERROR] Page {page.pageNumber} illustration failed: {e}")
            self._set_page_status(run_id, page_id, Failed(error=str(e) or "Drafting system error."),
                                  Unillustrated())
            return
        self._set_page_status(run_id, page_id, Illustrated(image=image), Unillustrated())

    def _set_page_status(self, run_id: int, page_id: str, page_status, scene_status) -> bool:
        def update(p: Page) -> Page:
            if p.id != page_id:
                return p
            scenes = [s.model_copy(update={"illustration": scene_status}) for s in p.scenes]
            return p.model_copy(update={"illustration": page_status, "scenes": scenes})

        with self._lock:
            board = self._state.storyboard
            if run_id != self._state.runId or board is None:
                return False
            board = board.model_copy(update={"pages": [update(p) for p in board.pages]})
            return self._apply(f"page_{page_status.status}", run_id=run_id, storyboard=board)

    # ---- editing ----

    def edit_scene_action(self, scene_id: str, action: str) -> int:
        """Replace the action text of every panel keyed scene_id; returns how many changed."""
        with self._lock:
            board = self._state.storyboard
            if board is None:
                raise ValueError("No storyboard to edit")

            changed = 0
            pages = []
            for p in board.pages:
                scenes = []
                for s in p.scenes:
                    if s.id == scene_id:
                        s = s.model_copy(update={"action": action})
                        changed += 1
                    scenes.append(s)
                pages.append(p.model_copy(update={"scenes": scenes}))
            if changed:
                self._apply("scene_edited", storyboard=board.model_copy(update={"pages": pages}))
            return changed


def find_page(board: StoryboardData, page_id: str) -> Optional[Page]:
    for p in board.pages:
        if p.id == page_id:
            return p
    return None
