"""
Unit tests for the enrichment layer.
These avoid the network: vision calls go through httpx.MockTransport and the
OpenAI client is replaced by a small fake with the same call shape.
"""
import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest

from config import Settings
from enrichment import (
    FALLBACK_CAPTION,
    FALLBACK_QUESTIONS,
    TTS_MAX_CHARS,
    EnrichmentService,
    parse_numbered_questions,
)
from errors import SpeechUnavailable


class FakeEndpoint:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return self.result


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def fake_openai(completions=None, speech=None):
    return SimpleNamespace(
        chat=SimpleNamespace(completions=completions),
        audio=SimpleNamespace(speech=speech)
    )


def vision_service(handler):
    settings = Settings(vision_endpoint="https://vision.example.com", vision_key="secret")
    return EnrichmentService(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


# ---------- question parsing ----------

def test_parse_numbered_questions_strips_numbering():
    text = (
        "1. Who is sitting next to you?\n"
        "2) Where was this picnic held?\n"
        "\n"
        "- 3. What food did you bring along?\n"
        "4. Ok?\n"
    )
    assert parse_numbered_questions(text) == [
        "Who is sitting next to you?",
        "Where was this picnic held?",
        "What food did you bring along?",
    ]


def test_parse_numbered_questions_caps_count():
    text = "\n".join(f"{i}. Question number {i} about the photo?" for i in range(1, 9))
    assert len(parse_numbered_questions(text)) == 5


def test_parse_numbered_questions_handles_empty():
    assert parse_numbered_questions("") == []
    assert parse_numbered_questions(None) == []


# ---------- vision ----------

def test_vision_caption_and_tags():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers["Ocp-Apim-Subscription-Key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "captionResult": {"text": "a family on a beach"},
            "tagsResult": {"values": [{"name": f"tag{i}"} for i in range(12)]}
        })

    caption, tags = asyncio.run(vision_service(handler).analyze_image("https://x/y.jpg"))
    assert caption == "a family on a beach"
    assert tags == [f"tag{i}" for i in range(10)]
    assert "/computervision/imageanalysis:analyze" in seen["url"]
    assert "api-version=2024-02-01" in seen["url"]
    assert seen["key"] == "secret"
    assert seen["body"] == {"url": "https://x/y.jpg"}


def test_vision_missing_caption_uses_fallback_text():
    def handler(request):
        return httpx.Response(200, json={"tagsResult": {"values": [{"name": "cake"}]}})

    caption, tags = asyncio.run(vision_service(handler).analyze_image("https://x/y.jpg"))
    assert caption == FALLBACK_CAPTION
    assert tags == ["cake"]


@pytest.mark.parametrize(
    "handler",
    [
        lambda request: httpx.Response(500, text="boom"),
        lambda request: httpx.Response(200, text="not json"),
    ],
)
def test_vision_errors_fall_back(handler):
    caption, tags = asyncio.run(vision_service(handler).analyze_image("https://x/y.jpg"))
    assert (caption, tags) == (FALLBACK_CAPTION, [])


def test_vision_transport_error_falls_back():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    caption, tags = asyncio.run(vision_service(handler).analyze_image("https://x/y.jpg"))
    assert (caption, tags) == (FALLBACK_CAPTION, [])


def test_vision_skips_uploaded_relative_urls():
    def handler(request):
        raise AssertionError("vision service should not be called")

    caption, tags = asyncio.run(vision_service(handler).analyze_image("/api/files/1_abc.png"))
    assert (caption, tags) == (FALLBACK_CAPTION, [])


def test_vision_unconfigured_falls_back():
    service = EnrichmentService(Settings())
    assert asyncio.run(service.analyze_image("https://x/y.jpg")) == (FALLBACK_CAPTION, [])


# ---------- questions ----------

def test_questions_from_language_model():
    content = "\n".join([
        "1. Who baked the birthday cake that day?",
        "2. How many candles were on the cake?",
        "3. Which song did everyone sing for you?",
        "4. What present made you smile the most?",
        "5. Who travelled the farthest to be there?",
    ])
    completions = FakeEndpoint(result=completion(content))
    service = EnrichmentService(Settings(), openai_client=fake_openai(completions=completions))

    questions = asyncio.run(service.generate_questions("a birthday party", ["cake", "candles"], "my 60th"))
    assert questions[0] == "Who baked the birthday cake that day?"
    assert len(questions) == 5

    call = completions.calls[0]
    assert call["model"] == "gpt-4o-mini"
    user_message = call["messages"][1]["content"]
    assert "a birthday party" in user_message
    assert "cake, candles" in user_message
    assert "my 60th" in user_message


def test_too_few_questions_fall_back():
    completions = FakeEndpoint(result=completion("1. Who is this person here?\n2. Yes."))
    service = EnrichmentService(Settings(), openai_client=fake_openai(completions=completions))
    assert asyncio.run(service.generate_questions("c", [], "")) == FALLBACK_QUESTIONS


def test_language_model_error_falls_back():
    completions = FakeEndpoint(error=RuntimeError("rate limited"))
    service = EnrichmentService(Settings(), openai_client=fake_openai(completions=completions))
    assert asyncio.run(service.generate_questions("c", [], "")) == FALLBACK_QUESTIONS


def test_enrich_memory_never_raises_when_unconfigured():
    service = EnrichmentService(Settings())
    result = asyncio.run(service.enrich_memory("https://x/y.jpg", "birthday"))
    assert result == {"caption": FALLBACK_CAPTION, "tags": [], "questions": FALLBACK_QUESTIONS}


def test_fallback_questions_are_copied():
    service = EnrichmentService(Settings())
    questions = asyncio.run(service.generate_questions("c", [], ""))
    questions.append("mutated")
    assert len(FALLBACK_QUESTIONS) == 5


# ---------- speech ----------

def test_speech_returns_audio_bytes():
    speech = FakeEndpoint(result=SimpleNamespace(content=b"mp3-bytes"))
    service = EnrichmentService(Settings(), openai_client=fake_openai(speech=speech))

    audio = asyncio.run(service.synthesize_speech("x" * (TTS_MAX_CHARS + 500)))
    assert audio == b"mp3-bytes"
    call = speech.calls[0]
    assert len(call["input"]) == TTS_MAX_CHARS
    assert call["model"] == "tts-1"
    assert call["voice"] == "nova"


def test_speech_failure_is_surfaced():
    speech = FakeEndpoint(error=RuntimeError("quota exceeded"))
    service = EnrichmentService(Settings(), openai_client=fake_openai(speech=speech))
    with pytest.raises(SpeechUnavailable):
        asyncio.run(service.synthesize_speech("hello"))


def test_speech_unconfigured_is_surfaced():
    with pytest.raises(SpeechUnavailable) as excinfo:
        asyncio.run(EnrichmentService(Settings()).synthesize_speech("hello"))
    assert excinfo.value.status_code == 500
