# main.py
from typing import Annotated, Literal, Union
import os
import io
import re
import sys
import json
import math
import base64
import random
import string
import argparse
from pathlib import Path
from typing import List, Optional, Dict, Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError
from PIL import Image

# Google AI SDK (text planning + page images)
from google import genai

# Fal AI SDK, alternative image backend
import fal_client
import requests

# ------------------ ENV & CONFIG ------------------
load_dotenv()

# text planning
LLM_MODEL = os.getenv("PLANNING_MODEL", "gemini-3-pro-preview")
# page illustration
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image")
# "gemini" or "fal"
IMAGE_BACKEND = os.getenv("IMAGE_BACKEND", "gemini").strip().lower()
FAL_IMAGE_ENDPOINT = os.getenv("FAL_IMAGE_ENDPOINT", "fal-ai/nano-banana")
PAGE_ASPECT_RATIO = os.getenv("PAGE_ASPECT_RATIO", "3:4")
PRINT_PROMPTS = os.getenv("PRINT_PROMPTS", "1") == "1"
# degrade unparseable text responses to empty results instead of raising
LENIENT_RESPONSES = os.getenv("LENIENT_RESPONSES", "0") == "1"

MIN_PAGES, MAX_PAGES = 1, 15
MIN_PANELS_PER_PAGE, MAX_PANELS_PER_PAGE = 4, 10
DEFAULT_PAGES = int(os.getenv("DEFAULT_PAGES", "5"))
DEFAULT_PANELS_PER_PAGE = int(os.getenv("DEFAULT_PANELS_PER_PAGE", "10"))

STYLE_PRESET = ("Rough director's ink sketch. Stark black lines on white paper. "
                "No colors, no gray tones. High technical contrast.")

# ------------------ PROMPTS -----------------------
PROMPTS_DIR = Path(__file__).parent / "prompts"


def load_prompt(name: str) -> str:
    p = PROMPTS_DIR / f"{name}.txt"
    if not p.exists():
        raise FileNotFoundError(f"Prompt file not found: {p}")
    return p.read_text(encoding="utf-8")


CONCEPT_PROMPT_TEMPLATE = load_prompt("concept_development")
STORYBOARD_PROMPT_TEMPLATE = load_prompt("storyboard_structure")
PAGE_PROMPT_TEMPLATE = load_prompt("page_illustration")

# ------------------ ERRORS ------------------------


class StoryboardError(RuntimeError):
    """Base class for every failure surfaced to the user."""


class GenerationServiceError(StoryboardError):
    """The generation service could not be reached or rejected the call."""


class InvalidResponseShape(StoryboardError):
    """The service answered, but not with the shape that was requested."""


class StoryboardShapeError(InvalidResponseShape):
    """The structured storyboard does not fit the requested page/panel grid."""


class NoImageDataError(StoryboardError):
    """The image response carried no inline image part."""

# ------------------ DATA MODELS -------------------


class Character(BaseModel):
    id: str
    name: str
    appearance: str


class Unillustrated(BaseModel):
    status: Literal["unillustrated"] = "unillustrated"


class InProgress(BaseModel):
    status: Literal["in_progress"] = "in_progress"


class Illustrated(BaseModel):
    status: Literal["illustrated"] = "illustrated"
    image: str  # data URI


class Failed(BaseModel):
    status: Literal["failed"] = "failed"
    error: str


Illustration = Annotated[
    Union[Unillustrated, InProgress, Illustrated, Failed],
    Field(discriminator="status"),
]


class SceneDraft(BaseModel):
    id: str
    sceneNumber: int
    location: str
    timeOfDay: str = ""
    action: str
    dialogue: Optional[str] = None
    visualPrompt: str


class PageDraft(BaseModel):
    id: str
    pageNumber: int
    pageLayoutDescription: str
    scenes: List[SceneDraft]


class Scene(SceneDraft):
    illustration: Illustration = Field(default_factory=Unillustrated)


class Page(BaseModel):
    id: str
    pageNumber: int
    pageLayoutDescription: str
    scenes: List[Scene]
    illustration: Illustration = Field(default_factory=Unillustrated)


class StoryboardData(BaseModel):
    title: str
    characters: List[Character] = Field(default_factory=list)
    pages: List[Page] = Field(default_factory=list)


class DevelopedStory(BaseModel):
    story: str
    screenplay: str


# Response schemas handed to Gemini (no client-side state fields)
class StoryboardResponse(BaseModel):
    title: str
    characters: List[Character]
    pages: List[PageDraft]

# ------------------ UTILITIES ---------------------


def fill(template: str, **kv):
    """Replace only specific placeholders, leaving JSON braces alone."""
    out = template
    for k, v in kv.items():
        out = out.replace(f"{{{k}}}", str(v))
    return out


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def slugify(text: str, fallback: str = "item") -> str:
    text = text.strip().lower()
    text = re.sub(r"[^a-z0-9]+", "-", text).strip("-")
    return text or fallback


def strip_json_fences(s: str) -> str:
    s = s.strip()
    m = re.match(r"^```(?:json)?\s*(.*?)\s*```$", s, re.DOTALL)
    return m.group(1) if m else s


def image_bytes_to_pil(b: bytes) -> Image.Image:
    return Image.open(io.BytesIO(b))


def pil_to_png_bytes(img: Image.Image) -> bytes:
    """Converts a PIL Image object to PNG bytes."""
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def to_png_data_uri(img_bytes: bytes) -> str:
    """Re-encode raw image bytes as a displayable PNG data URI."""
    try:
        img = image_bytes_to_pil(img_bytes)
        img.load()
    except OSError as e:
        raise InvalidResponseShape(f"Image data could not be decoded: {e}") from e
    print(f"[DEBUG] Page image decoded: {img.size}, {img.mode}")
    png = pil_to_png_bytes(img)
    return "data:image/png;base64," + base64.b64encode(png).decode("utf-8")


def data_uri_to_bytes(uri: str) -> bytes:
    _, _, payload = uri.partition("base64,")
    return base64.b64decode(payload)


def parse_response(text: str, response_model, what: str):
    if not text or not text.strip():
        raise InvalidResponseShape(f"{what}: empty response")
    try:
        return response_model.model_validate_json(strip_json_fences(text))
    except ValidationError as e:
        raise InvalidResponseShape(
            f"{what}: invalid response shape ({e.error_count()} problems)") from e


def grid_columns(panel_count: int) -> int:
    """Column count of the grid a page with this many panels is drawn on."""
    return 2 if panel_count <= 6 else 3


def grid_position(index: int, columns: int) -> tuple:
    """Map a 1-based panel index to its 1-based (row, column) cell.

    Panels fill a row left to right before moving down to the next row.
    """
    if index < 1 or columns < 1:
        raise ValueError("index and columns must be >= 1")
    return math.ceil(index / columns), ((index - 1) % columns) + 1

# --- Simple prompt logger (stdout + file) ---


class PromptLogger:
    def __init__(self, out_file: Optional[Path] = None):
        self.out_file = out_file
        self.lines: List[str] = []

    def log(self, title: str, content: str):
        block = f"\n===== {title} =====\n{content.strip()}\n"
        self.lines.append(block)
        if PRINT_PROMPTS:
            print(block)

    def flush(self):
        if self.out_file is None:
            return
        self.out_file.write_text("".join(self.lines), encoding="utf-8")

# ------------------ GENAI WRAPPER ----------------


class GAIC:
    def __init__(self, api_key: Optional[str] = None, client=None, image_backend: str = IMAGE_BACKEND):
        if client is None:
            api_key = api_key or os.getenv("GEMINI_API_KEY")
            if not api_key:
                raise RuntimeError("Missing GEMINI_API_KEY in .env")
            client = genai.Client(api_key=api_key)
        self.client = client
        self.image_backend = image_backend

    # Structured output generation, returns the raw JSON text
    def generate_structured(self, prompt: str, response_schema, model: str = LLM_MODEL) -> str:
        try:
            resp = self.client.models.generate_content(
                model=model,
                contents=prompt,
                config={
                    "response_mime_type": "application/json",
                    "response_schema": response_schema,
                }
            )
        except Exception as e:
            print(f"[ERROR] Gemini text call failed: {e}")
            raise GenerationServiceError(f"Text generation failed: {e}") from e
        return getattr(resp, "text", None) or ""

    def generate_image(self, prompt: str, aspect_ratio: str = PAGE_ASPECT_RATIO) -> bytes:
        """
        Generate one image for the prompt with the configured backend.
        Returns the raw image bytes; raises NoImageDataError if none came back.
        """
        if self.image_backend == "fal":
            return self.generate_image_with_fal(prompt, aspect_ratio)
        return self.generate_image_with_gemini(prompt, aspect_ratio)

    def generate_image_with_gemini(self, prompt: str, aspect_ratio: str, model: str = IMAGE_MODEL) -> bytes:
        try:
            resp = self.client.models.generate_content(
                model=model,
                contents=prompt,
                config={"image_config": {"aspect_ratio": aspect_ratio}},
            )
        except Exception as e:
            print(f"[ERROR] Gemini image call failed: {e}")
            raise GenerationServiceError(f"Image generation failed: {e}") from e

        data = first_inline_image(resp)
        if data is None:
            raise NoImageDataError("No image data in the illustration response")
        return data

    def generate_image_with_fal(self, prompt: str, aspect_ratio: str) -> bytes:
        fal_key = os.getenv("FAL_API_KEY")
        if not fal_key:
            raise RuntimeError("Missing FAL_API_KEY in .env")
        os.environ["FAL_KEY"] = fal_key
        try:
            result = fal_client.subscribe(
                FAL_IMAGE_ENDPOINT,
                arguments={
                    "prompt": prompt,
                    "num_images": 1,
                    "aspect_ratio": aspect_ratio,
                    "output_format": "png"
                },
                with_logs=True,
            )
        except Exception as e:
            print(f"[ERROR] Fal API call failed: {e}")
            raise GenerationServiceError(f"Fal image generation failed: {e}") from e

        images = (result or {}).get("images") or []
        if not images or not images[0].get("url"):
            raise NoImageDataError("Fal API returned no images")

        try:
            response = requests.get(images[0]["url"], timeout=120)
        except requests.RequestException as e:
            raise GenerationServiceError(f"Failed to download image from Fal: {e}") from e
        if response.status_code != 200:
            raise GenerationServiceError(
                f"Failed to download image from Fal: {response.status_code}")
        if not response.content:
            raise NoImageDataError("Fal image download was empty")
        return response.content


def first_inline_image(resp) -> Optional[bytes]:
    """Return the bytes of the first inline image part of a Gemini response."""
    for c in getattr(resp, "candidates", None) or []:
        content = getattr(c, "content", None)
        for p in getattr(content, "parts", None) or []:
            data = getattr(getattr(p, "inline_data", None), "data", None)
            if data:
                if isinstance(data, str):
                    data = base64.b64decode(data)
                return data
    return None

# ------------------ PIPELINE STEPS ---------------


def develop_story_concept(g: GAIC, idea: str, target_panels: int,
                          log: Optional[PromptLogger] = None) -> DevelopedStory:
    """Expand a seed idea into a summary and a screenplay of target_panels beats."""
    log = log or PromptLogger()
    prompt = fill(CONCEPT_PROMPT_TEMPLATE, idea=idea, target_panels=target_panels)
    log.log("CONCEPT_DEVELOPMENT_PROMPT", prompt)
    raw = g.generate_structured(prompt, DevelopedStory)
    log.log("CONCEPT_DEVELOPMENT_RESPONSE", raw)

    try:
        return parse_response(raw, DevelopedStory, "Story development")
    except InvalidResponseShape as e:
        if not LENIENT_RESPONSES:
            raise
        print(f"[ERROR] {e}; continuing with an empty story")
        return DevelopedStory(story="", screenplay="")


def generate_storyboard_from_text(g: GAIC, text: str, num_pages: int, num_panels_per_page: int,
                                  log: Optional[PromptLogger] = None) -> StoryboardData:
    """Group a screenplay into num_pages pages of num_panels_per_page panels each."""
    log = log or PromptLogger()
    prompt = fill(STORYBOARD_PROMPT_TEMPLATE, text=text, num_pages=num_pages,
                  num_panels_per_page=num_panels_per_page)
    log.log("STORYBOARD_STRUCTURE_PROMPT", prompt)
    raw = g.generate_structured(prompt, StoryboardResponse)
    log.log("STORYBOARD_STRUCTURE_RESPONSE", raw)

    try:
        response = parse_response(raw, StoryboardResponse, "Storyboard structure")
    except InvalidResponseShape as e:
        if not LENIENT_RESPONSES:
            raise
        print(f"[ERROR] {e}; continuing with an empty storyboard")
        return StoryboardData(title="")

    return normalize_storyboard(response, num_pages, num_panels_per_page)


def normalize_storyboard(response: StoryboardResponse, num_pages: int,
                         num_panels_per_page: int) -> StoryboardData:
    # Dedup characters by id
    seen, characters = set(), []
    for i, c in enumerate(response.characters):
        cid = c.id.strip() or f"char-{i + 1}"
        if cid in seen:
            continue
        seen.add(cid)
        characters.append(c.model_copy(update={"id": cid}))

    drafts = sorted(response.pages, key=lambda p: p.pageNumber)
    check_grid(drafts, num_pages, num_panels_per_page)

    page_ids, scene_ids = set(), set()
    pages = []
    for page in drafts:
        pid = page.id.strip()
        if not pid or pid in page_ids:
            pid = f"page-{page.pageNumber}"
        page_ids.add(pid)

        scenes = []
        for s in sorted(page.scenes, key=lambda s: s.sceneNumber):
            sid = s.id.strip()
            if not sid or sid in scene_ids:
                sid = f"p{page.pageNumber}-s{s.sceneNumber}"
            scene_ids.add(sid)
            scenes.append(Scene(**s.model_dump(exclude={"id"}), id=sid))

        pages.append(Page(id=pid, pageNumber=page.pageNumber,
                          pageLayoutDescription=page.pageLayoutDescription, scenes=scenes))

    return StoryboardData(title=response.title, characters=characters, pages=pages)


def check_grid(pages: List[PageDraft], num_pages: int, num_panels_per_page: int) -> None:
    """Raise StoryboardShapeError unless pages form the exact requested grid."""
    problems = []
    if len(pages) != num_pages:
        problems.append(f"expected {num_pages} pages, got {len(pages)}")
    for i, page in enumerate(pages, start=1):
        if page.pageNumber != i:
            problems.append(f"page numbers are not contiguous at page {page.pageNumber}")
        if len(page.scenes) != num_panels_per_page:
            problems.append(
                f"page {page.pageNumber} has {len(page.scenes)} panels, expected {num_panels_per_page}")
        numbers = sorted(s.sceneNumber for s in page.scenes)
        if numbers != list(range(1, len(page.scenes) + 1)):
            problems.append(f"page {page.pageNumber} panel numbers are not 1..{len(page.scenes)}")
    if problems:
        raise StoryboardShapeError("Storyboard does not fit the requested grid: " + "; ".join(problems))


def build_page_prompt(page: Page, characters: List[Character],
                      aspect_ratio: str = PAGE_ASPECT_RATIO) -> str:
    columns = grid_columns(len(page.scenes))
    rows = math.ceil(len(page.scenes) / columns) if page.scenes else 0

    character_context = ". ".join(f"{c.name}: {c.appearance}" for c in characters)

    panel_lines = []
    for s in page.scenes:
        row, col = grid_position(s.sceneNumber, columns)
        panel_lines.append(
            f"Panel {s.sceneNumber} (row {row}, column {col}): {s.visualPrompt}. Beat: {s.action}")

    return fill(PAGE_PROMPT_TEMPLATE,
                aspect_ratio=aspect_ratio,
                panel_count=len(page.scenes),
                rows=rows,
                columns=columns,
                characters=character_context,
                panels="\n".join(panel_lines),
                style=STYLE_PRESET)


def generate_page_image(g: GAIC, page: Page, characters: List[Character],
                        log: Optional[PromptLogger] = None) -> str:
    """Render one technical grid sketch for the whole page; returns a data URI."""
    log = log or PromptLogger()
    prompt = build_page_prompt(page, characters)
    log.log(f"PAGE_ILLUSTRATION_PROMPT [#{page.pageNumber}]", prompt)
    raw = g.generate_image(prompt, PAGE_ASPECT_RATIO)
    return to_png_data_uri(raw)

# ------------------ OUTPUT -----------------------


def write_manifest(board: StoryboardData, out_root: Path) -> Dict[str, Any]:
    """Save illustrated pages as PNG files and the storyboard as manifest.json."""
    pages_dir = out_root / "pages"
    ensure_dir(pages_dir)

    pages = []
    for page in board.pages:
        entry = page.model_dump(mode="json", exclude={"illustration"})
        for scene in entry["scenes"]:
            scene.pop("illustration", None)
        entry["status"] = page.illustration.status
        entry["file"] = None
        if page.illustration.status == "illustrated":
            fname = f"page-{page.pageNumber:02d}.png"
            (pages_dir / fname).write_bytes(data_uri_to_bytes(page.illustration.image))
            entry["file"] = f"pages/{fname}"
        elif page.illustration.status == "failed":
            entry["error"] = page.illustration.error
        pages.append(entry)

    manifest = {
        "meta": {"aspect_ratio": PAGE_ASPECT_RATIO, "style": STYLE_PRESET},
        "title": board.title,
        "characters": [c.model_dump() for c in board.characters],
        "pages": pages,
    }
    (out_root / "manifest.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    return manifest


# ------------------ CLI -------------------------
def cli(argv: Optional[List[str]] = None) -> int:
    from orchestrator import Orchestrator

    ap = argparse.ArgumentParser(description="Draft a paginated storyboard from an idea.")
    ap.add_argument("idea", help="seed idea, or a path to a text file holding it")
    ap.add_argument("--pages", type=int, default=DEFAULT_PAGES)
    ap.add_argument("--panels", type=int, default=DEFAULT_PANELS_PER_PAGE, help="panels per page")
    ap.add_argument("--quick", action="store_true", help="structure the idea directly, skip development")
    ap.add_argument("--out", default="output", help="output root directory")
    args = ap.parse_args(argv)

    idea = args.idea
    if Path(idea).is_file():
        idea = Path(idea).read_text(encoding="utf-8")
    if not idea.strip():
        ap.error("idea must not be empty")

    run_id = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    slug = slugify(idea.strip().splitlines()[0], "storyboard")[:40].strip("-")
    out_root = Path(args.out) / f"{slug}-{run_id}"
    ensure_dir(out_root)
    logger = PromptLogger(out_root / "prompts_used.txt")

    orch = Orchestrator(log=logger)
    orch.configure(num_pages=args.pages, num_panels_per_page=args.panels,
                   mode="quick" if args.quick else "creative")
    try:
        if args.quick:
            print(">> Structuring storyboard...")
        else:
            print(">> Developing story concept...")
        state = orch.start_production(idea)
        if state.step == "development":
            print(f"   Story: {len(state.developedStory.story)} characters")
            print(">> Structuring storyboard...")
            state = orch.build_storyboard()
        if state.error:
            print(f"[ERROR] {state.error}")
            return 1

        print(f"   Title: {state.storyboard.title}")
        print(f"   Pages: {len(state.storyboard.pages)}")
        print(">> Illustrating pages...")
        orch.wait_idle()
        state = orch.state
        write_manifest(state.storyboard, out_root)
        for page in state.storyboard.pages:
            mark = "✓" if page.illustration.status == "illustrated" else "✗"
            print(f"   {mark} Page {page.pageNumber} -> {page.illustration.status}")
    finally:
        logger.flush()
        orch.close()

    print(f">> Done. Output at: {out_root}")
    return 0


if __name__ == "__main__":
    sys.exit(cli())
