# portraitbook/outputs.py
"""
Normalization of gateway prediction outputs.

Models on the gateway disagree about what "an image" looks like in their
output: a bare URL string, a list of URLs, a list of objects with a url, an
object exposing url (attribute or method), a dict with an inline `img` field
(optionally nested under `output`), or raw bytes / a stream that must be
re-uploaded before it can be referenced. Everything here reduces those shapes
to an ImageRef; anything else raises a ResponseShapeError.
"""
from collections.abc import Mapping
from typing import Any, List, NamedTuple, Optional

from portraitbook.errors import ResponseShapeError


class ImageRef(NamedTuple):
    """Either a URL, or inline bytes that still need uploading."""

    url: Optional[str] = None
    data: Optional[bytes] = None

    @property
    def needs_upload(self) -> bool:
        return self.url is None and self.data is not None


def _is_stream(value: Any) -> bool:
    return isinstance(value, (bytes, bytearray)) or callable(getattr(value, "read", None))


def _read_stream(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    data = value.read()
    if isinstance(data, str):
        data = data.encode("utf-8")
    return bytes(data)


def _url_of(value: Any) -> Optional[str]:
    """url from a mapping key or an attribute; the attribute may be a method."""
    if isinstance(value, Mapping):
        accessor = value.get("url")
    else:
        accessor = getattr(value, "url", None)
    if callable(accessor):
        accessor = accessor()
    if isinstance(accessor, str) and accessor:
        return accessor
    return None


def _from_item(item: Any) -> Optional[ImageRef]:
    if isinstance(item, str):
        return ImageRef(url=item) if item else None
    if _is_stream(item):
        return ImageRef(data=_read_stream(item))

    if isinstance(item, Mapping):
        img = item.get("img")
        nested = item.get("output")
        if isinstance(img, str) and img:
            return ImageRef(url=img)
        if isinstance(nested, Mapping) and isinstance(nested.get("img"), str) and nested["img"]:
            return ImageRef(url=nested["img"])
        stream = img if img is not None else (nested.get("img") if isinstance(nested, Mapping) else None)
        if stream is not None and _is_stream(stream):
            return ImageRef(data=_read_stream(stream))

    url = _url_of(item)
    if url:
        return ImageRef(url=url)
    return None


def extract_image_ref(output: Any) -> ImageRef:
    """Reduce a single-image output to one ImageRef (first element of a list)."""
    if isinstance(output, (list, tuple)):
        ref = _from_item(output[0]) if output else None
    else:
        ref = _from_item(output)
    if ref is None:
        raise ResponseShapeError(f"Unexpected output format: {type(output).__name__}")
    return ref


def extract_image_refs(output: Any) -> List[ImageRef]:
    """Reduce a possibly multi-image output to a list; an empty list stays empty."""
    if output is None:
        return []
    items = list(output) if isinstance(output, (list, tuple)) else [output]
    refs = []
    for item in items:
        ref = _from_item(item)
        if ref is None:
            raise ResponseShapeError(f"Unexpected output item format: {type(item).__name__}")
        refs.append(ref)
    return refs
