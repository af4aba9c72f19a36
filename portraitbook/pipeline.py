# portraitbook/pipeline.py
"""
Slide generation pipeline.

Two interchangeable strategies behind one generate() call:

  InpaintingStrategy (default)
    1) prompt from the vision model
    2) segmentation mask of the illustrated character
    3) inpaint the masked area with the trained model
  LegacyStrategy (USE_INPAINTING=false)
    1) prompt from the vision model
    2) text-to-image with the trained model
    3) background removal on the first candidate
    (layering onto the scene happens afterwards, see compositor.py)

Stages run strictly in order and any failure aborts the call; nothing is
cached between stages, so a retry starts again from the prompt.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from portraitbook.errors import NoImagesReturnedError, ResponseShapeError, UnexpectedMaskFormatError
from portraitbook.gateway import ReplicateGateway
from portraitbook.outputs import extract_image_ref, extract_image_refs
from portraitbook.pdfio import decode_data_url
from portraitbook.prompts import PromptSynthesizer

logger = logging.getLogger(__name__)

SEGMENTATION_MODEL = "bytedance/sa2va-8b-image:956baf05a8a81ab47f1d0dac8eab6585b899790f342975a964840c4e9c63c7aa"
REMOVE_BACKGROUND_MODEL = "lucataco/remove-bg:95fcc2a26d3899cd6c2691c900465aaeff466285a65c14638cc5f36f34befaf1"
FACE_SWAP_MODEL = "cdingram/face-swap:d1d6ea8c8be89d664a07a457526f7128109dee7030fdac424788d762c71ed111"

MASK_INSTRUCTION = "segment the child"

INPAINT_PARAMS: Dict[str, Any] = {
    "num_inference_steps": 28,
    "guidance_scale": 3.5,
    "output_format": "png",
    "output_quality": 90,
    "megapixels": "1",
    "prompt_strength": 0.85,
}


class GenerationStage(str, Enum):
    ANALYZING_SCENE = "analyzing_scene"
    GENERATING_MASK = "generating_mask"
    INPAINTING = "inpainting"
    GENERATING_CHARACTER = "generating_character"
    REMOVING_BACKGROUND = "removing_background"
    COMPOSITING = "compositing"
    DONE = "done"


ProgressCallback = Callable[[GenerationStage], None]


@dataclass
class SlideRequest:
    slide_id: str
    title: str
    description: Optional[str] = None

    @property
    def scene_text(self) -> str:
        return self.description or self.title


@dataclass
class GenerationResult:
    prompt: str
    rationale: Optional[str] = None
    composited_image: Optional[str] = None
    generated_images: List[str] = field(default_factory=list)
    cleaned_image: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"prompt": self.prompt, "rationale": self.rationale}
        if self.generated_images:
            body["rawImages"] = self.generated_images
        if self.cleaned_image:
            body["cleanedImage"] = self.cleaned_image
        if self.composited_image:
            body["compositedImage"] = self.composited_image
        return body


class GenerationStrategy(ABC):
    name = "base"

    def __init__(self, gateway: ReplicateGateway, synthesizer: PromptSynthesizer):
        self.gateway = gateway
        self.synthesizer = synthesizer

    @abstractmethod
    async def generate(
        self,
        slide: SlideRequest,
        scene_image: str,
        model_version: str,
        trigger_word: str,
        story_context: Optional[str] = None,
        guidance: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationResult: ...

    async def load_scene(self, scene_image: str) -> Tuple[str, bytes]:
        """(mime, bytes) for a data URL, an http(s) URL, or bare base64."""
        if scene_image.startswith("http://") or scene_image.startswith("https://"):
            return await self.gateway.fetch_image(scene_image)
        return decode_data_url(scene_image)

    def _emit(self, slide: SlideRequest, on_progress: Optional[ProgressCallback], stage: GenerationStage):
        logger.info("[%s] %s: %s", slide.slide_id, self.name, stage.value)
        if on_progress is not None:
            on_progress(stage)


class InpaintingStrategy(GenerationStrategy):
    name = "inpainting"

    async def generate_mask(self, scene_url: str, instruction: str = MASK_INSTRUCTION) -> str:
        output = await self.gateway.run(SEGMENTATION_MODEL, {"image": scene_url, "instruction": instruction})
        try:
            ref = extract_image_ref(output)
        except ResponseShapeError as e:
            logger.error("Segmentation output not usable as a mask: %s", e.message)
            raise UnexpectedMaskFormatError() from e
        return await self.gateway.resolve_image_ref(ref, filename="mask.png")

    async def inpaint(self, model_version: str, prompt: str, scene_url: str, mask_url: str) -> str:
        model_input = {"prompt": prompt, "image": scene_url, "mask": mask_url, **INPAINT_PARAMS}
        output = await self.gateway.run(model_version, model_input)
        return await self.gateway.resolve_image_ref(extract_image_ref(output), filename="inpainted.png")

    async def generate(self, slide, scene_image, model_version, trigger_word, story_context=None,
                       guidance=None, on_progress=None) -> GenerationResult:
        mime, scene_bytes = await self.load_scene(scene_image)

        self._emit(slide, on_progress, GenerationStage.ANALYZING_SCENE)
        synthesized = await self.synthesizer.synthesize(
            slide.scene_text, scene_bytes, trigger_word, story_context, guidance, mime_type=mime
        )

        self._emit(slide, on_progress, GenerationStage.GENERATING_MASK)
        scene_url = await self.gateway.upload_file(scene_bytes, filename="slide.png", content_type=mime)
        mask_url = await self.generate_mask(scene_url)
        logger.info("[%s] mask -> %s", slide.slide_id, mask_url)

        self._emit(slide, on_progress, GenerationStage.INPAINTING)
        image_url = await self.inpaint(model_version, synthesized.prompt, scene_url, mask_url)

        self._emit(slide, on_progress, GenerationStage.DONE)
        return GenerationResult(prompt=synthesized.prompt, rationale=synthesized.rationale, composited_image=image_url)


class LegacyStrategy(GenerationStrategy):
    name = "legacy"

    async def generate(self, slide, scene_image, model_version, trigger_word, story_context=None,
                       guidance=None, on_progress=None) -> GenerationResult:
        mime, scene_bytes = await self.load_scene(scene_image)

        self._emit(slide, on_progress, GenerationStage.ANALYZING_SCENE)
        synthesized = await self.synthesizer.synthesize(
            slide.scene_text, scene_bytes, trigger_word, story_context, guidance, mime_type=mime
        )

        self._emit(slide, on_progress, GenerationStage.GENERATING_CHARACTER)
        output = await self.gateway.run(model_version, {"prompt": synthesized.prompt})
        refs = extract_image_refs(output)
        if not refs:
            raise NoImagesReturnedError()
        images = [await self.gateway.resolve_image_ref(ref, filename=f"candidate-{i}.png") for i, ref in enumerate(refs)]

        self._emit(slide, on_progress, GenerationStage.REMOVING_BACKGROUND)
        cleaned_output = await self.gateway.run(REMOVE_BACKGROUND_MODEL, {"image": images[0]})
        cleaned = await self.gateway.resolve_image_ref(extract_image_ref(cleaned_output), filename="cleaned.png")

        self._emit(slide, on_progress, GenerationStage.DONE)
        return GenerationResult(
            prompt=synthesized.prompt,
            rationale=synthesized.rationale,
            generated_images=images,
            cleaned_image=cleaned,
        )


def build_strategy(use_inpainting: bool, gateway: ReplicateGateway, synthesizer: PromptSynthesizer) -> GenerationStrategy:
    if use_inpainting:
        return InpaintingStrategy(gateway, synthesizer)
    return LegacyStrategy(gateway, synthesizer)


async def face_swap(gateway: ReplicateGateway, slide_image: str, user_image: str) -> str:
    """Swap the portrait's face onto the slide; both inputs are data URLs."""
    slide_mime, slide_bytes = decode_data_url(slide_image)
    user_mime, user_bytes = decode_data_url(user_image)
    slide_url = await gateway.upload_file(slide_bytes, filename="slide.png", content_type=slide_mime)
    user_url = await gateway.upload_file(user_bytes, filename="portrait.png", content_type=user_mime)
    output = await gateway.run(FACE_SWAP_MODEL, {"swap_image": user_url, "input_image": slide_url})
    return await gateway.resolve_image_ref(extract_image_ref(output), filename="face-swap.png")
