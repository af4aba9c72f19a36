# portraitbook/slides.py
"""
Storybook session state.

SlideStore holds one SlideRecord per page of the loaded story and is the only
thing allowed to mutate them. Generation runs get a per-slide request token;
a completion carrying an older token than the slide's latest is dropped, so a
slow superseded run can not overwrite a newer result.

StoryGenerator drives the pipeline for one slide or for the whole story,
strictly one slide at a time.
"""
import logging
import os
import re
import uuid
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from portraitbook.compositor import ComposeOptions, compose_bytes
from portraitbook.errors import NotFoundError, ValidationError
from portraitbook.pdfio import decode_data_url, encode_data_url, is_data_url
from portraitbook.pipeline import GenerationStage, GenerationStrategy, SlideRequest

logger = logging.getLogger(__name__)

DEFAULT_PAGE_COUNT = 16
DEFAULT_GENERATE_COUNT = 3

STAGE_MESSAGES = {
    GenerationStage.ANALYZING_SCENE: "Analyzing slide with Gemini...",
    GenerationStage.GENERATING_MASK: "Finding the character to replace...",
    GenerationStage.INPAINTING: "Painting your character into the scene...",
    GenerationStage.GENERATING_CHARACTER: "Generating character with AI model...",
    GenerationStage.REMOVING_BACKGROUND: "Removing background...",
    GenerationStage.COMPOSITING: "Compositing final image...",
    GenerationStage.DONE: "Done",
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_public(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class SlideStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class StorySlide(_CamelModel):
    id: str
    title: str
    description: Optional[str] = None
    pdf_page: int


class StoryManifest(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    name: str
    pdf_path: str
    slides: List[StorySlide]

    @classmethod
    def from_file(cls, filename: str, page_count: int = DEFAULT_PAGE_COUNT) -> "StoryManifest":
        stem = os.path.splitext(os.path.basename(filename or "story.pdf"))[0] or "story"
        slug = re.sub(r"[^a-z0-9]+", "-", stem.lower()).strip("-") or "story"
        story_id = f"{slug}-{uuid.uuid4().hex[:8]}"
        return cls(
            id=story_id,
            name=stem,
            pdf_path=filename,
            slides=[
                StorySlide(id=f"{story_id}-slide-{i}", title=f"Slide {i}", pdf_page=i)
                for i in range(1, page_count + 1)
            ],
        )


class SlideRecord(_CamelModel):
    slide_id: str
    title: str
    description: Optional[str] = None
    pdf_page: int
    base_image: Optional[str] = None
    result_image: Optional[str] = None
    user_image: Optional[str] = None
    character_image: Optional[str] = None
    status: SlideStatus = SlideStatus.IDLE
    stage: Optional[GenerationStage] = None
    prompt: Optional[str] = None
    rationale: Optional[str] = None
    loading_message: Optional[str] = None
    error: Optional[str] = None


# fields set_status may not touch
_PROTECTED_FIELDS = {"slide_id", "base_image", "pdf_page", "status"}


class SlideStore:
    def __init__(self):
        self.story: Optional[StoryManifest] = None
        self.slides: Dict[str, SlideRecord] = {}
        self.current_slide_id: Optional[str] = None
        self._tokens: Dict[str, int] = {}

    def load_story(self, manifest: StoryManifest, base_images: Dict[str, str]) -> None:
        """Replace everything with the new story; slides with an image start ready."""
        slides = {}
        for slide in manifest.slides:
            base = base_images.get(slide.id)
            slides[slide.id] = SlideRecord(
                slide_id=slide.id,
                title=slide.title,
                description=slide.description,
                pdf_page=slide.pdf_page,
                base_image=base,
                result_image=base,
                status=SlideStatus.READY if base else SlideStatus.IDLE,
            )
        self.story = manifest
        self.slides = slides
        self._tokens = {}
        self.current_slide_id = manifest.slides[0].id if manifest.slides else None
        logger.info("Loaded story %s with %d slides", manifest.id, len(slides))

    def get(self, slide_id: str) -> SlideRecord:
        record = self.slides.get(slide_id)
        if record is None:
            raise NotFoundError(f"Slide not found: {slide_id}")
        return record

    def select_slide(self, slide_id: str) -> None:
        self.get(slide_id)
        self.current_slide_id = slide_id

    def set_user_portrait(self, slide_id: str, image: str) -> SlideRecord:
        current = self.get(slide_id)
        updated = current.model_copy(update={
            "user_image": image,
            "status": SlideStatus.IDLE,
            "stage": None,
            "error": None,
            "loading_message": None,
            "result_image": current.base_image,
            "character_image": None,
            "prompt": None,
            "rationale": None,
        })
        self.slides[slide_id] = updated
        return updated

    def set_status(self, slide_id: str, status: SlideStatus, **fields) -> SlideRecord:
        """Merge fields and set status; last write wins."""
        current = self.get(slide_id)
        protected = _PROTECTED_FIELDS & set(fields)
        if protected:
            raise ValueError(f"Cannot change {sorted(protected)} through set_status")
        updated = current.model_copy(update={**fields, "status": status})
        if updated.status == SlideStatus.READY and not updated.result_image:
            raise ValueError("A ready slide needs a result image")
        if updated.status == SlideStatus.ERROR and not updated.error:
            raise ValueError("An errored slide needs an error message")
        self.slides[slide_id] = updated
        return updated

    # ---------- request fencing ----------
    def begin_request(self, slide_id: str) -> int:
        self.get(slide_id)
        token = self._tokens.get(slide_id, 0) + 1
        self._tokens[slide_id] = token
        self.set_status(slide_id, SlideStatus.LOADING, prompt=None, rationale=None, error=None,
                        stage=None, loading_message=None)
        return token

    def is_current(self, slide_id: str, token: int) -> bool:
        return self._tokens.get(slide_id) == token

    def publish_stage(self, slide_id: str, token: int, stage: GenerationStage) -> bool:
        if not self.is_current(slide_id, token):
            return False
        self.set_status(slide_id, SlideStatus.LOADING, stage=stage, loading_message=STAGE_MESSAGES[stage])
        return True

    def complete_request(self, slide_id: str, token: int, **fields) -> bool:
        if not self.is_current(slide_id, token):
            logger.info("[%s] dropping stale result (request %d)", slide_id, token)
            return False
        self.set_status(slide_id, SlideStatus.READY, stage=GenerationStage.DONE, loading_message=None, **fields)
        return True

    def fail_request(self, slide_id: str, token: int, message: str) -> bool:
        if not self.is_current(slide_id, token):
            logger.info("[%s] dropping stale failure (request %d)", slide_id, token)
            return False
        self.set_status(slide_id, SlideStatus.ERROR, stage=None, loading_message=None, error=message or "Generation failed")
        return True

    def clear(self) -> None:
        self.story = None
        self.slides = {}
        self.current_slide_id = None
        self._tokens = {}

    def ordered(self) -> List[SlideRecord]:
        if self.story is None:
            return []
        return [self.slides[s.id] for s in self.story.slides if s.id in self.slides]

    def snapshot(self) -> dict:
        return {
            "story": self.story.to_public() if self.story else None,
            "currentSlideId": self.current_slide_id,
            "slides": [s.to_public() for s in self.ordered()],
        }


FetchBytes = Callable[[str], Awaitable[bytes]]


async def load_image_bytes(ref: str, fetch: FetchBytes) -> bytes:
    if is_data_url(ref):
        return decode_data_url(ref)[1]
    return await fetch(ref)


class StoryGenerator:
    def __init__(self, store: SlideStore, strategy: GenerationStrategy, fetch: FetchBytes,
                 compose_options: ComposeOptions = ComposeOptions()):
        self.store = store
        self.strategy = strategy
        self.fetch = fetch
        self.compose_options = compose_options

    async def generate_slide(self, slide_id: str, model_version: str, trigger_word: str,
                             story_context: Optional[str] = None) -> bool:
        record = self.store.get(slide_id)
        if not record.base_image:
            logger.info("[%s] no base image, skipping", slide_id)
            return False

        token = self.store.begin_request(slide_id)
        try:
            result = await self.strategy.generate(
                SlideRequest(slide_id=slide_id, title=record.title, description=record.description),
                record.base_image,
                model_version,
                trigger_word,
                story_context,
                on_progress=lambda stage: self.store.publish_stage(slide_id, token, stage),
            )
            if result.composited_image:
                result_image, character_image = result.composited_image, None
            else:
                if not result.cleaned_image:
                    raise ValidationError("No cleaned image returned from generation")
                self.store.publish_stage(slide_id, token, GenerationStage.COMPOSITING)
                base_bytes = await load_image_bytes(record.base_image, self.fetch)
                character_bytes = await load_image_bytes(result.cleaned_image, self.fetch)
                composed = compose_bytes(base_bytes, character_bytes, self.compose_options)
                result_image, character_image = encode_data_url(composed), result.cleaned_image
        except Exception as e:
            logger.exception("[%s] generation failed: %s", slide_id, e)
            self.store.fail_request(slide_id, token, str(e))
            return False

        return self.store.complete_request(
            slide_id,
            token,
            result_image=result_image,
            character_image=character_image,
            prompt=result.prompt,
            rationale=result.rationale,
        )

    async def generate_all(self, model_version: str, trigger_word: str, slide_count: Optional[int] = None,
                           story_context: Optional[str] = None) -> int:
        """Sequential over the first slide_count slides; a failed slide does not stop the rest."""
        if self.store.story is None:
            raise ValidationError("No story loaded")
        slides = self.store.story.slides
        if slide_count is not None:
            slides = slides[:slide_count]
        done = 0
        for slide in slides:
            try:
                ok = await self.generate_slide(slide.id, model_version, trigger_word, story_context)
            except NotFoundError:
                logger.info("[%s] story changed, stopping after %d slides", slide.id, done)
                return done
            if ok:
                done += 1
        logger.info("Generated %d of %d slides", done, len(slides))
        return done


async def collect_page_images(store: SlideStore, fetch: FetchBytes) -> List[bytes]:
    """Result image per slide (base image if never generated), in story order."""
    pages = []
    for record in store.ordered():
        ref = record.result_image or record.base_image
        if ref:
            pages.append(await load_image_bytes(ref, fetch))
    return pages
