from __future__ import annotations

"""Vision-model client used for the alert AI gate, `/ask` questions and bin checks."""

import base64
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import requests

from camwatch.errors import VisionServiceError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "\n".join(
    [
        "You are an expert home security analyst with advanced image recognition capabilities.",
        "You are analyzing security camera images to provide detailed, accurate assessments.",
        "Consider multiple aspects: objects, people, vehicles, activities, security concerns, and environmental factors.",
        "If something is unclear or not visible, explicitly state this rather than making assumptions.",
        "Focus on practical details that help with home security and monitoring decisions.",
    ]
)

GATE_INSTRUCTION = "Start your answer with YES or NO, then give one short sentence of explanation."

BIN_STATUSES = ("street", "driveway", "unknown")
BIN_PROMPT = "\n".join(
    [
        "You are analyzing a security camera snapshot to determine garbage bin location.",
        "Classify into one of:",
        " - street: bins appear at the curb/street for pickup",
        " - driveway: bins appear near house/driveway (not yet at curb)",
        " - unknown: cannot confidently determine or bins not visible",
        'Return a concise JSON object: {"status":"street|driveway|unknown","reasoning":"short"}',
    ]
)

AFFIRMATIVE_KEYWORDS = ("yes", "true", "detected", "present", "awake", "active")
_NEGATIVE_LEADS = {"no", "false", "none", "negative"}
_POSITIVE_LEADS = {"yes", "true", "affirmative"}


@dataclass(frozen=True)
class BinClassification:
    status: str
    reasoning: str


class VisionService(Protocol):
    def query(self, image: bytes, prompt: str) -> str:
        ...

    def classify_bins(self, image: bytes) -> BinClassification:
        ...


def is_affirmative(answer: str) -> bool:
    """Interpret a free-text model answer as a yes/no gate result."""
    text = (answer or "").strip().lower()
    if not text:
        return False
    words = re.findall(r"[a-z]+", text)
    if words:
        if words[0] in _NEGATIVE_LEADS:
            return False
        if words[0] in _POSITIVE_LEADS:
            return True
    return any(re.search(rf"\b{keyword}\b", text) for keyword in AFFIRMATIVE_KEYWORDS)


def gate_prompt(prompt: str) -> str:
    return f"{prompt.strip()}\n\n{GATE_INSTRUCTION}"


def parse_bin_classification(answer: str) -> BinClassification:
    """Read the model's JSON verdict; anything unusable becomes `unknown`."""
    if not answer:
        return BinClassification("unknown", "no response")
    try:
        data = json.loads(answer)
    except ValueError:
        return BinClassification("unknown", "invalid JSON from model")
    if not isinstance(data, dict) or data.get("status") not in BIN_STATUSES:
        return BinClassification("unknown", "invalid classification")
    return BinClassification(data["status"], str(data.get("reasoning") or "").strip())


def _image_content(text: str, image: bytes) -> List[Dict[str, Any]]:
    image_url = "data:image/jpeg;base64," + base64.b64encode(image).decode("ascii")
    return [
        {"type": "text", "text": text},
        {"type": "image_url", "image_url": {"url": image_url}},
    ]


class OpenAIVisionService:
    """OpenAI-compatible chat completions client sending the image as a data URL."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 45.0,
        max_tokens: int = 600,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self._session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _complete(self, messages: List[Dict[str, Any]], temperature: float, **extra: Any) -> str:
        """POST one chat completion and return the stripped answer text."""
        if not self.api_key:
            raise VisionServiceError("Missing OpenAI API key. Set OPENAI_API_KEY in .secrets or environment.")
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": temperature,
        }
        payload.update(extra)
        try:
            response = self._session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as exc:
            raise VisionServiceError(f"Vision request failed: {exc}") from exc
        except ValueError as exc:
            raise VisionServiceError("Vision response was not valid JSON") from exc

        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise VisionServiceError("Vision response had no answer") from exc
        return (content or "").strip()

    def query(self, image: bytes, prompt: str) -> str:
        """Ask one question about one JPEG image and return the text answer."""
        if not image:
            raise VisionServiceError("No image supplied")
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": _image_content(prompt, image)},
        ]
        answer = self._complete(messages, temperature=0.2)
        if not answer:
            raise VisionServiceError("Vision response was empty")
        logger.debug("Vision answer (%d chars) for prompt %r", len(answer), prompt[:60])
        return answer

    def classify_bins(self, image: bytes) -> BinClassification:
        if not image:
            raise VisionServiceError("No image supplied")
        messages = [{"role": "user", "content": _image_content(BIN_PROMPT, image)}]
        answer = self._complete(messages, temperature=0, response_format={"type": "json_object"})
        result = parse_bin_classification(answer)
        logger.info("Bin classification: %s (%s)", result.status, result.reasoning)
        return result

    def close(self) -> None:
        self._session.close()
