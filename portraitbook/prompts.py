# portraitbook/prompts.py
"""
Prompt synthesizer: asks a vision-language model (Gemini) how to render the
trained subject into a storybook scene. Reply is JSON {prompt, rationale?}.
"""
import json
import logging
from typing import NamedTuple, Optional

from google import genai
from google.genai import types
from pydantic import BaseModel, Field

from portraitbook.config import Settings, require
from portraitbook.errors import EmptyResponseError, ResponseParseError

logger = logging.getLogger(__name__)


class PromptReply(BaseModel):
    """Shape requested from the model."""

    prompt: str = Field(description="Image generation prompt referencing the trigger word and matching the slide style")
    rationale: Optional[str] = Field(default=None, description="Brief explanation of how the prompt matches the slide")


_BASE_TEMPLATE = """You are creating a photorealistic image generation prompt for a personalized storybook application.

APPLICATION CONTEXT:
- Users upload photos of a real person (child/adult)
- A custom image model has been trained on those photos using the trigger word "{trigger}"
- The storybook slides show cartoon/illustrated characters in various scenes
- Your task: write a prompt that renders the real person ({trigger}) performing the same action as the illustrated character in the slide

CRITICAL REQUIREMENTS:
1. OUTPUT MUST BE PHOTOREALISTIC - NOT cartoon, NOT illustration, NOT anime, NOT drawing
2. {trigger} is a REAL HUMAN from training photos - describe them as they would appear in a natural photograph
3. Describe the EXACT SAME POSE, ACTION, and EXPRESSION as the character in the slide image
4. Include realistic details: natural skin tones, realistic hair, authentic clothing textures
5. {placement}
6. Use photography terminology: "natural lighting", "realistic", "photographic", "lifelike", "authentic human"
7. Match the character's body language, facial expression, and positioning exactly

WHAT YOU'RE SEEING:
Slide description: "{scene}"
{context}The attached image shows the storybook slide with a cartoon character.

{guidance}
Generate a highly detailed, photorealistic image generation prompt describing {trigger} (the real person) performing the exact same action/pose as the illustrated character. {closing}"""

# inpainting: the subject is painted straight into the scene
_INPAINT_PLACEMENT = (
    "The person replaces the illustrated character inside the existing scene - match the scene's lighting, "
    "perspective, scale and camera angle so the result blends in. Do NOT ask for an isolated subject, a plain, "
    "white or transparent background"
)
_INPAINT_CLOSING = "Describe the person as they appear within this scene so the masked area can be filled seamlessly."

# legacy: subject is generated alone, background removed, then layered
_LAYER_PLACEMENT = (
    "Describe ONLY THE PERSON - no background, no scenery (output must be an isolated character "
    "with a transparent/white background)"
)
_LAYER_CLOSING = "Character only, no background."


def build_instructions(scene_text: str, trigger_word: str, story_context: Optional[str] = None,
                       guidance: Optional[str] = None, inpainting: bool = True) -> str:
    return _BASE_TEMPLATE.format(
        trigger=trigger_word,
        scene=scene_text,
        context=f'Story context: "{story_context}"\n' if story_context else "",
        guidance=f"{guidance}\n" if guidance else "",
        placement=_INPAINT_PLACEMENT if inpainting else _LAYER_PLACEMENT,
        closing=_INPAINT_CLOSING if inpainting else _LAYER_CLOSING,
    )


class SynthesizedPrompt(NamedTuple):
    prompt: str
    rationale: Optional[str] = None


def parse_prompt_reply(text: Optional[str]) -> SynthesizedPrompt:
    if not text or not text.strip():
        raise EmptyResponseError()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Failed to parse Gemini response: {text}") from e
    if not isinstance(parsed, dict):
        raise ResponseParseError(f"Failed to parse Gemini response: {text}")
    prompt = parsed.get("prompt")
    rationale = parsed.get("rationale")
    if not isinstance(prompt, str) or not prompt.strip():
        raise ResponseParseError(f"Gemini response has no prompt: {text}")
    if rationale is not None and not isinstance(rationale, str):
        raise ResponseParseError(f"Gemini response has a non-text rationale: {text}")
    return SynthesizedPrompt(prompt=prompt, rationale=rationale)


class PromptSynthesizer:
    def __init__(self, client: genai.Client, model: str = "gemini-2.5-flash", inpainting: bool = True):
        self.client = client
        self.model = model
        self.inpainting = inpainting

    @classmethod
    def from_settings(cls, settings: Settings) -> "PromptSynthesizer":
        client = genai.Client(api_key=require(settings.gemini_api_key, "GEMINI_API_KEY"))
        return cls(client, model=settings.gemini_model, inpainting=settings.use_inpainting)

    async def synthesize(self, scene_text: str, scene_image: bytes, trigger_word: str,
                         story_context: Optional[str] = None, guidance: Optional[str] = None,
                         mime_type: str = "image/png") -> SynthesizedPrompt:
        instructions = build_instructions(scene_text, trigger_word, story_context, guidance, self.inpainting)
        logger.info("Requesting prompt from %s for trigger %s", self.model, trigger_word)
        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=[instructions, types.Part.from_bytes(data=scene_image, mime_type=mime_type)],
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=PromptReply,
            ),
        )
        return parse_prompt_reply(getattr(response, "text", None))
