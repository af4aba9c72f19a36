# portraitbook/compositor.py
"""Layer a background-free character onto a scene (legacy strategy)."""
from dataclasses import dataclass
from io import BytesIO
from typing import NamedTuple, Tuple

from PIL import Image

from portraitbook.pdfio import image_to_png


@dataclass(frozen=True)
class ComposeOptions:
    character_width_ratio: float = 0.42
    bottom_padding_ratio: float = 0.06
    horizontal_shift_ratio: float = 0.0


class Placement(NamedTuple):
    x: float
    y: float
    width: float
    height: float


def compute_placement(base_size: Tuple[int, int], character_size: Tuple[int, int],
                      options: ComposeOptions = ComposeOptions()) -> Placement:
    """Centered horizontally (plus shift), bottom edge at H - padding*H."""
    base_w, base_h = base_size
    char_w, char_h = character_size
    width = base_w * options.character_width_ratio
    height = width * (char_h / char_w)
    x = (base_w - width) / 2 + base_w * options.horizontal_shift_ratio
    y = base_h - height - base_h * options.bottom_padding_ratio
    return Placement(x, y, width, height)


def compose(base: Image.Image, character: Image.Image, options: ComposeOptions = ComposeOptions()) -> Image.Image:
    canvas = base.convert("RGBA")
    character = character.convert("RGBA")
    p = compute_placement(canvas.size, character.size, options)
    size = (max(1, round(p.width)), max(1, round(p.height)))
    scaled = character.resize(size, Image.LANCZOS)
    # paste clips at the canvas edges, alpha channel as mask
    canvas.paste(scaled, (round(p.x), round(p.y)), scaled)
    return canvas


def compose_bytes(base_data: bytes, character_data: bytes, options: ComposeOptions = ComposeOptions()) -> bytes:
    with Image.open(BytesIO(base_data)) as base, Image.open(BytesIO(character_data)) as character:
        return image_to_png(compose(base, character, options))
