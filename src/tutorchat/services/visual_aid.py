"""Visual-aid advisor: decides when to illustrate a turn and requests the image."""

import asyncio
import logging
from typing import Callable, Iterable, Optional

from ..config import settings
from ..models.schemas import GeneratedImage
from .llm_client import ImageClient

logger = logging.getLogger(__name__)

VISUAL_KEYWORDS = (
    # math operations
    "division", "divide", "multiply", "multiplication", "fraction",
    # shapes and geometry
    "geometry", "shape", "triangle", "circle", "square", "graph", "chart", "diagram",
    # generic visual requests
    "visual", "picture", "show me", "draw", "illustrate", "example", "demonstrate",
    "explain with", "how does", "what does", "looks like",
)

ILLUSTRATION_PROMPT_TEMPLATE = (
    "Educational illustration for {subject}: {concept}. "
    "Simple, clear, colorful diagram suitable for learning. "
    "Clean white background, high contrast, easy to understand visual representation."
)

IllustrationPolicy = Callable[[str], bool]


class KeywordIllustrationPolicy:
    """Case-insensitive substring match against a fixed keyword set."""

    def __init__(self, keywords: Iterable[str] = VISUAL_KEYWORDS):
        self.keywords = tuple(k.lower() for k in keywords)

    def __call__(self, text: str) -> bool:
        lowered = (text or "").lower()
        return any(keyword in lowered for keyword in self.keywords)


class VisualAidAdvisor:
    """Generates at most one illustration per turn. Never raises."""

    def __init__(
        self,
        image_client: Optional[ImageClient],
        policy: Optional[IllustrationPolicy] = None,
        enabled: Optional[bool] = None,
        timeout: Optional[float] = None,
    ):
        self.image_client = image_client
        self.policy = policy or KeywordIllustrationPolicy()
        self.enabled = settings.visual_aids_enabled if enabled is None else enabled
        self.timeout = timeout if timeout is not None else settings.image_timeout_seconds

    def should_illustrate(self, text: str) -> bool:
        if not self.enabled or self.image_client is None:
            return False
        return self.policy(text)

    async def illustrate(self, concept: str, subject: str) -> Optional[str]:
        """Request a single square illustration; None on any failure or empty result."""
        if self.image_client is None:
            return None

        prompt = ILLUSTRATION_PROMPT_TEMPLATE.format(subject=subject, concept=concept)
        try:
            urls = await asyncio.wait_for(
                self.image_client.generate(
                    prompt,
                    size=settings.image_size,
                    quality=settings.image_quality,
                    style=settings.image_style,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Educational image generation timed out after {self.timeout}s")
            return None
        except Exception as e:
            logger.warning(f"Failed to generate educational image: {e}")
            return None

        return urls[0] if urls else None

    async def visual_aid_for(self, text: str, subject: str) -> Optional[GeneratedImage]:
        """Run the decision and, when triggered, the generation for one turn."""
        if not self.should_illustrate(text):
            return None

        url = await self.illustrate(text, subject)
        if not url:
            return None

        logger.info(f"Generated visual aid for subject {subject}")
        return GeneratedImage(url=url, description=f"Visual explanation for: {text[:50]}...")
