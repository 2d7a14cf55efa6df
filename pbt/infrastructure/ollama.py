import base64
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from pbt.config.models import ProviderConfig
from pbt.domain.models import AnalysisResult

DEFAULT_PROMPT = (
    "You are a photo archivist. Analyze the image and answer with a single JSON object "
    "with the keys: \"title\" (max 64 chars), \"headline\", \"caption\" (one sentence), "
    "\"description\" (2-3 sentences), \"keywords\" (list of 5-15 short strings), "
    "\"location\" (if recognizable, else null) and \"confidence\" (0.0-1.0). "
    "Respond with JSON only."
)

logger = logging.getLogger(__name__)


class AnalysisError(Exception):
    """The provider call failed or returned something unusable."""


def _season(month: int) -> str:
    if 3 <= month <= 5:
        return "Spring"
    if 6 <= month <= 8:
        return "Summer"
    if 9 <= month <= 11:
        return "Fall"
    return "Winter"


def _time_of_day(hour: int) -> str:
    if 5 <= hour < 8:
        return "early morning"
    if 8 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 20:
        return "evening"
    if 20 <= hour < 22:
        return "dusk"
    return "night"


def build_metadata_context(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    """Turns a sanitized metadata snapshot into a short prompt preamble."""
    if not metadata:
        return None

    parts: List[str] = []
    camera = " ".join(str(metadata[k]) for k in ("make", "model") if metadata.get(k))
    lens = metadata.get("lens")
    if camera and lens:
        parts.append(f"Camera: {camera} with {lens}")
    elif camera:
        parts.append(f"Camera: {camera}")
    elif lens:
        parts.append(f"Lens: {lens}")

    settings = []
    if metadata.get("iso"):
        settings.append(f"ISO {metadata['iso']}")
    if metadata.get("fNumber"):
        settings.append(f"f/{metadata['fNumber']}")
    if metadata.get("exposureTime"):
        settings.append(f"{metadata['exposureTime']}s")
    if metadata.get("focalLength"):
        settings.append(f"{metadata['focalLength']}mm")
    if settings:
        parts.append(f"Settings: {', '.join(settings)}")

    if metadata.get("latitude") is not None and metadata.get("longitude") is not None:
        parts.append(f"GPS: {metadata['latitude']}, {metadata['longitude']}")

    location = ", ".join(str(metadata[k]) for k in ("city", "state", "country") if metadata.get(k))
    if location:
        parts.append(f"Location: {location}")

    rights = " - ".join(str(metadata[k]) for k in ("creator", "copyright") if metadata.get(k))
    if rights:
        parts.append(f"Rights: {rights}")

    taken = metadata.get("dateTimeOriginal")
    if taken:
        try:
            # ExifTool dates look like 2023:07:14 18:22:05
            dt = datetime.strptime(str(taken)[:19], "%Y:%m:%d %H:%M:%S")
            parts.append(f"Captured: {dt.year} {_season(dt.month)}, {_time_of_day(dt.hour)}")
        except ValueError:
            pass

    if not parts:
        return None
    return "METADATA CONTEXT for analysis:\n" + "\n".join(parts)


def parse_response(text: str) -> AnalysisResult:
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        raise AnalysisError("Provider response contains no JSON object")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise AnalysisError(f"Provider returned invalid JSON: {exc}") from exc

    caption = data.get("caption")
    keywords = data.get("keywords")
    if not caption or not isinstance(keywords, list):
        raise AnalysisError("Provider JSON lacks caption or keywords")

    try:
        return AnalysisResult(
            description=data.get("description") or data.get("headline") or caption,
            caption=caption,
            keywords=[str(k).strip() for k in keywords if str(k).strip()],
            confidence=min(1.0, max(0.0, float(data.get("confidence") or 0.8))),
            title=data.get("title"),
            headline=data.get("headline"),
            instructions=data.get("instructions"),
            location=data.get("location"),
        )
    except (TypeError, ValueError, ValidationError) as exc:
        raise AnalysisError(f"Provider JSON has unexpected types: {exc}") from exc


class OllamaProvider:
    """Vision-language analysis through Ollama's /api/generate endpoint."""

    def __init__(self, config: ProviderConfig, client: Optional[httpx.Client] = None):
        self.config = config
        self._client = client or httpx.Client(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout_s, connect=10.0),
        )

    def analyze(
        self,
        image_path: Path,
        prompt: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AnalysisResult:
        full_prompt = prompt or DEFAULT_PROMPT
        context = build_metadata_context(metadata)
        if context:
            full_prompt = f"{context}\n\n{full_prompt}"

        image_b64 = base64.b64encode(Path(image_path).read_bytes()).decode("ascii")
        payload = {
            "model": self.config.model,
            "prompt": full_prompt,
            "images": [image_b64],
            "stream": False,
            "format": "json",
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.num_predict,
            },
        }

        try:
            response = self._client.post("/api/generate", json=payload)
            response.raise_for_status()
            text = response.json().get("response")
        except httpx.HTTPError as exc:
            raise AnalysisError(f"Ollama request failed: {exc}") from exc
        except ValueError as exc:
            raise AnalysisError(f"Ollama returned a non-JSON body: {exc}") from exc

        if not text:
            raise AnalysisError("No response from Ollama API")
        logger.debug(f"OLLAMA_RESPONSE: {Path(image_path).name} chars={len(text)}")
        return parse_response(text)

    def test_connection(self) -> bool:
        """Checks the server is up and the configured model is pulled."""
        try:
            response = self._client.get("/api/tags", timeout=5.0)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(f"Ollama server not accessible at {self.config.base_url}: {exc}")
            return False

        names = [m.get("name", "") for m in response.json().get("models", [])]
        base = self.config.model.split(":")[0]
        if not any(n == self.config.model or n.startswith(base) for n in names):
            logger.error(f"Model {self.config.model} not found in Ollama. Available: {names}")
            return False
        return True

    def close(self):
        self._client.close()
