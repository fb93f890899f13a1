"""Calls out to the vision, language-model and speech providers.

Memory enrichment is best effort: whatever goes wrong, the caller gets the
fixed fallback caption and questions and the memory is still saved. Speech is
requested on demand and has no fallback, so its failures are surfaced.
"""
import logging
import re
from typing import List, Optional, Tuple

import httpx
from openai import AsyncOpenAI

from config import Settings
from errors import ExternalServiceDegraded, SpeechUnavailable

logger = logging.getLogger(__name__)

FALLBACK_CAPTION = "A special moment captured in time."

FALLBACK_QUESTIONS = [
    "Who is with you in this photo?",
    "Where was this special moment?",
    "What were you celebrating or doing?",
    "How did this make you feel?",
    "What else do you remember about this day?"
]

QUESTION_COUNT = 5
MIN_QUESTIONS = 3
MAX_TAGS = 10
TTS_MAX_CHARS = 4000

VISION_API_VERSION = "2024-02-01"
VISION_FEATURES = "caption,tags"

QUESTION_PROMPT = (
    "You are a compassionate dementia care assistant specializing in reminiscence therapy. "
    "Your role is to help elderly patients with memory challenges recall precious moments "
    "from their lives.\n"
    "Generate exactly 5 memory-sparking questions that:\n"
    "1. Use simple, clear language (max 15 words each)\n"
    "2. Focus on emotions, people, and sensory details\n"
    "3. Are specific to this moment, not generic\n"
    "4. Help trigger episodic memories\n"
    "5. Are warm and encouraging in tone\n"
    "Format: Return only the 5 questions, numbered 1-5, one per line."
)

_NUMBERING = re.compile(r"^\s*(?:[-*]\s*)?\d+[.)]\s*")


def parse_numbered_questions(text: str, limit: int = QUESTION_COUNT) -> List[str]:
    """Turn a numbered-list completion into clean question strings."""
    questions = []
    for line in (text or "").splitlines():
        cleaned = _NUMBERING.sub("", line).strip()
        if len(cleaned) > 10:
            questions.append(cleaned)
    return questions[:limit]


def is_public_url(url: str) -> bool:
    return url.startswith("http://") or url.startswith("https://")


class EnrichmentService:
    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        openai_client: Optional[AsyncOpenAI] = None
    ):
        self.settings = settings
        self.http_client = http_client or httpx.AsyncClient()
        self._openai_client = openai_client

    @property
    def openai_client(self) -> Optional[AsyncOpenAI]:
        if self._openai_client is None and self.settings.openai_api_key:
            self._openai_client = AsyncOpenAI(api_key=self.settings.openai_api_key)
        return self._openai_client

    async def aclose(self):
        await self.http_client.aclose()
        if self._openai_client is not None:
            await self._openai_client.close()

    # ---------- vision ----------

    async def _call_vision(self, image_url: str) -> Tuple[str, List[str]]:
        if not self.settings.vision_endpoint or not self.settings.vision_key:
            raise ExternalServiceDegraded("Vision service not configured")
        if not is_public_url(image_url):
            raise ExternalServiceDegraded("Image is not reachable by the vision service")

        try:
            response = await self.http_client.post(
                f"{self.settings.vision_endpoint}/computervision/imageanalysis:analyze",
                params={"api-version": VISION_API_VERSION, "features": VISION_FEATURES},
                json={"url": image_url},
                headers={"Ocp-Apim-Subscription-Key": self.settings.vision_key},
                timeout=self.settings.vision_timeout_seconds
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceDegraded(f"Vision request failed: {exc}") from exc

        caption = (data.get("captionResult") or {}).get("text") or FALLBACK_CAPTION
        values = (data.get("tagsResult") or {}).get("values") or []
        tags = [v["name"] for v in values[:MAX_TAGS] if v.get("name")]
        return caption, tags

    async def analyze_image(self, image_url: str) -> Tuple[str, List[str]]:
        try:
            return await self._call_vision(image_url)
        except Exception as exc:
            logger.warning(f"Image analysis degraded, using fallback caption: {exc}")
            return FALLBACK_CAPTION, []

    # ---------- questions ----------

    async def _call_llm(self, caption: str, tags: List[str], description: str) -> List[str]:
        client = self.openai_client
        if client is None:
            raise ExternalServiceDegraded("Language model not configured")

        photo_context = (
            "Photo Analysis:\n"
            f"- Visual Description: {caption}\n"
            f"- Detected Elements: {', '.join(tags)}\n"
            f"- Patient's Context: {description}"
        )
        completion = await client.chat.completions.create(
            model=self.settings.openai_chat_model,
            temperature=0.7,
            max_tokens=300,
            messages=[
                {"role": "system", "content": QUESTION_PROMPT},
                {"role": "user", "content": photo_context}
            ]
        )
        questions = parse_numbered_questions(completion.choices[0].message.content or "")
        if len(questions) < MIN_QUESTIONS:
            raise ExternalServiceDegraded(f"Only {len(questions)} usable questions returned")
        return questions

    async def generate_questions(self, caption: str, tags: List[str], description: str) -> List[str]:
        try:
            return await self._call_llm(caption, tags, description)
        except Exception as exc:
            logger.warning(f"Question generation degraded, using fallback questions: {exc}")
            return list(FALLBACK_QUESTIONS)

    async def enrich_memory(self, image_url: str, description: Optional[str]) -> dict:
        caption, tags = await self.analyze_image(image_url)
        questions = await self.generate_questions(caption, tags, description or "")
        return {"caption": caption, "tags": tags, "questions": questions}

    # ---------- speech ----------

    async def synthesize_speech(self, text: str) -> bytes:
        """Return mp3 bytes for ``text``; raises SpeechUnavailable on any failure."""
        client = self.openai_client
        if client is None:
            raise SpeechUnavailable("Speech service not configured")
        try:
            response = await client.audio.speech.create(
                model=self.settings.openai_tts_model,
                voice=self.settings.openai_tts_voice,
                input=text[:TTS_MAX_CHARS],
                speed=0.9  # Slightly slower for elderly users
            )
            return response.content
        except Exception as e:
            logger.error(f"TTS error: {e}")
            raise SpeechUnavailable() from e
