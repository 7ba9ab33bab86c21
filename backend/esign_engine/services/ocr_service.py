"""
OCR Service — Google Gemini document extraction and face matching.
Reads the front/back of an ID card, extracts identity fields and scores how
well the live selfie matches the ID portrait.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

import google.generativeai as genai

from esign_engine.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class DocumentAnalysis:
    claims: Dict[str, Optional[str]] = field(default_factory=dict)
    face_match_confidence: float = 0.0
    source: str = "unknown"


@dataclass
class CaptureContent:
    ref: str
    data: bytes
    content_type: str = "image/jpeg"


class DocumentAnalyzer(ABC):
    """Turns ID captures plus a selfie into claims and a face-match score."""

    @abstractmethod
    async def analyze(self, front: str, back: str, selfie: str) -> DocumentAnalysis:
        """Analyze three capture references. Raises ValueError when unreadable."""


# Deterministic extraction prompt
OCR_PROMPT = """You are a deterministic identity document verifier.

You receive three images in order: (1) FRONT of a national ID card, (2) BACK of
the same card, (3) a live SELFIE of the person presenting it.

STRICT RULES:
1. Extract text EXACTLY as written on the document.
2. If a field is not clearly visible, return null for that field.
3. DO NOT guess, infer, or hallucinate any data.
4. Return ONLY raw JSON — no markdown, no explanation.

REQUIRED FIELDS:
- full_name (string): Full name as printed
- id_number (string): Document ID number
- date_of_birth (string): Date of birth in YYYY-MM-DD format
- document_type (string): ID/Passport/DL
- face_match_confidence (number): 0-100, how confident you are that the selfie
  shows the same person as the ID portrait

Return ONLY the JSON object."""


def build_analyzer_model(settings: Settings):
    """Gemini model for the configured key, or None when no key is set."""
    if not settings.GEMINI_API_KEY:
        return None
    genai.configure(api_key=settings.GEMINI_API_KEY)
    return genai.GenerativeModel(
        model_name=settings.GEMINI_MODEL,
        generation_config={
            "temperature": 0,
            "top_p": 1,
            "top_k": 32,
            "max_output_tokens": 1024,
        },
    )


class LocalCaptureStore:
    """Capture refs are paths relative to the capture storage root.

    Refs that resolve outside the root (absolute paths, `..` segments,
    symlinks pointing elsewhere) are refused, so a caller-supplied ref can
    only ever read uploaded captures.
    """

    def __init__(self, root):
        self.root = Path(root).resolve()

    def resolve(self, ref: str) -> Path:
        candidate = (self.root / ref).resolve()
        if candidate == self.root or not candidate.is_relative_to(self.root):
            raise ValueError(f"Capture '{ref}' is outside capture storage")
        return candidate

    def __call__(self, ref: str) -> CaptureContent:
        path = self.resolve(ref)
        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.warning("Capture %s could not be read: %s", ref, exc.strerror)
            raise ValueError(f"Capture '{ref}' could not be read") from exc
        content_type = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
        return CaptureContent(ref=ref, data=data, content_type=content_type)


def parse_model_json(raw_text: str) -> dict:
    """Strip optional markdown fences and parse the model's JSON answer."""
    if not raw_text or not raw_text.strip():
        raise ValueError("AI returned an empty response.")
    cleaned = raw_text.strip()
    if "```json" in cleaned:
        cleaned = cleaned.split("```json")[1].split("```")[0].strip()
    elif "```" in cleaned:
        cleaned = cleaned.split("```")[1].split("```")[0].strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        logger.warning("Analyzer JSON parse failed: %s", cleaned[:200])
        raise ValueError("AI returned invalid format. Please retake clearer photos.")


class GeminiDocumentAnalyzer(DocumentAnalyzer):
    """AI-powered ID extraction and face match using Gemini."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        loader: Optional[Callable[[str], CaptureContent]] = None,
        model=None,
    ):
        self.settings = settings or get_settings()
        self.loader = loader or LocalCaptureStore(self.settings.CAPTURE_STORAGE_DIR)
        self._model = model

    @property
    def model(self):
        if self._model is None:
            self._model = build_analyzer_model(self.settings)
        return self._model

    def _load(self, ref: str) -> CaptureContent:
        try:
            return self.loader(ref)
        except OSError as exc:
            raise ValueError(f"Capture '{ref}' could not be read") from exc

    async def analyze(self, front: str, back: str, selfie: str) -> DocumentAnalysis:
        model = self.model
        if not model:
            raise ValueError(
                "AI document analysis is not available — GEMINI_API_KEY is not configured."
            )

        parts = [OCR_PROMPT]
        for ref in (front, back, selfie):
            capture = self._load(ref)
            parts.append({"mime_type": capture.content_type, "data": capture.data})

        try:
            response = await model.generate_content_async(contents=parts)
        except Exception as e:
            logger.error("Gemini API call failed: %s", e)
            raise ValueError(f"AI processing failed: {e}") from e

        try:
            raw_text = response.text
        except ValueError as e:
            logger.error("response.text failed. Candidates: %s", response.candidates)
            raise ValueError(
                "AI failed to generate readable text. "
                "The images might be too blurry or contain blocked content."
            ) from e

        extracted = parse_model_json(raw_text)
        try:
            confidence = float(extracted.get("face_match_confidence") or 0)
        except (TypeError, ValueError):
            confidence = 0.0

        return DocumentAnalysis(
            claims={
                "name": extracted.get("full_name"),
                "id_number": extracted.get("id_number"),
                "date_of_birth": extracted.get("date_of_birth"),
            },
            face_match_confidence=max(0.0, min(confidence, 100.0)),
            source=f"Gemini ({self.settings.GEMINI_MODEL})",
        )
