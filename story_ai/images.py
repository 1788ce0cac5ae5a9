"""Per-request image registry and placeholder interleaving.

Images are referenced in prompt text by placeholder tokens (``[[IMG:<id>]]``).
Once the prompt is final, ``interleave`` splits it into text and inline-image
parts. Use one ``ImageContextBuilder`` per outbound request so placeholder
ids from concurrent requests never collide.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping

from story_ai.models import ImageRef, InlinePart, Part, TextPart

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\[\[IMG:([^\]]+)\]\]")


def placeholder(image_id: str) -> str:
    return f"[[IMG:{image_id}]]"


def interleave_images(text: str, images: Mapping[str, ImageRef]) -> list[Part]:
    """Replace placeholders in ``text`` with inline parts from ``images``.

    Placeholders whose id is not in ``images`` are dropped without emitting
    a part. Text with no placeholders comes back as a single text part.
    """
    parts: list[Part] = []
    last = 0
    for match in PLACEHOLDER_RE.finditer(text):
        if match.start() > last:
            parts.append(TextPart(text=text[last:match.start()]))
        img = images.get(match.group(1))
        if img is not None:
            parts.append(InlinePart(mime_type=img.mime_type, data=img.base64))
        else:
            logger.debug("No image registered for placeholder %s", match.group(0))
        last = match.end()

    if last < len(text):
        parts.append(TextPart(text=text[last:]))

    if not parts:
        return [TextPart(text=text)]
    return parts


class ImageContextBuilder:
    """Collects the images referenced by one request."""

    def __init__(self) -> None:
        self._images: dict[str, ImageRef] = {}

    def __len__(self) -> int:
        return len(self._images)

    def __contains__(self, image_id: object) -> bool:
        return image_id in self._images

    def register(self, image: ImageRef) -> str:
        """Store ``image`` under its id and return its placeholder token."""
        self._images[image.id] = image
        return placeholder(image.id)

    def register_list(
        self, images: Iterable[ImageRef] | None, label: str = "Reference image"
    ) -> str:
        """Register images and return a standalone annotated line.

        ``[ImageID: ...]`` lets the model cite an image back in structured output.
        """
        images = list(images or [])
        if not images:
            return ""
        entries = []
        for img in images:
            desc = f"(you see: {img.description}) " if img.description else ""
            entries.append(f"{desc}{self.register(img)} [ImageID: {img.id}]")
        return f"\n[{label}]: " + " ".join(entries)

    def register_and_append(
        self, text: str, images: Iterable[ImageRef] | None, label: str = "Attachment"
    ) -> str:
        """Register images and append one annotated line per image to ``text``."""
        images = list(images or [])
        if not images:
            return text
        tags = []
        for img in images:
            desc = f"({label}: {img.description}) " if img.description else ""
            tags.append(f"\n{desc}{self.register(img)} [ImageID: {img.id}]")
        return text + "".join(tags)

    def image_tags(self, images: Iterable[ImageRef] | None) -> str:
        """Register images and return the suffix appended to memory lines."""
        tags = []
        for img in images or []:
            desc = f"(you see: {img.description}) " if img.description else ""
            tags.append(f"\n{desc}{self.register(img)}")
        return "".join(tags)

    def interleave(self, text: str) -> list[Part]:
        return interleave_images(text, self._images)
