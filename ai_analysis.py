"""
Remote vision-AI analysis of test result images.

The store does not depend on this module. It takes an image path and a test
type label and returns free text, or raises AnalysisError with a kind the UI
can turn into a message.
"""

import base64
import logging
from pathlib import Path
from typing import Optional

import requests

import config

logger = logging.getLogger("uvicorn.error")

MISSING_KEY = "missing-key"
INVALID_KEY_FORMAT = "invalid-key-format"
TOO_LARGE = "too-large"
NETWORK = "network"
RATE_LIMITED = "rate-limited"
QUOTA_EXCEEDED = "quota-exceeded"
NO_CONTENT = "no-content"
API_ERROR = "api-error"

PROMPT_TEMPLATE = (
    "You are a medical expert. Analyse this image of a medical test result (type: {test_type}).\n\n"
    "Please give a detailed analysis covering:\n"
    "1. Visible values and measurements\n"
    "2. Normal ranges for comparison\n"
    "3. Deviations or anomalies\n"
    "4. Possible interpretations (note: this is not a medical diagnosis)\n"
    "5. Recommended next steps\n\n"
    "Be precise but easy to understand."
)


class AnalysisError(Exception):
    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


def resolve_api_key(settings: Optional[dict] = None) -> str:
    """Environment key first, then the profile's provider key, then the legacy OpenAI key."""
    if config.OPENAI_API_KEY.strip():
        return config.OPENAI_API_KEY.strip()
    settings = settings or {}
    ai_key = (settings.get("aiApiKey") or "").strip()
    if settings.get("aiProvider") == "openai" and ai_key:
        return ai_key
    legacy = (settings.get("openaiApiKey") or "").strip()
    if legacy:
        return legacy
    # A key without a provider is assumed to be an OpenAI key
    return ai_key


def is_analysis_available(settings: Optional[dict] = None) -> bool:
    return bool(resolve_api_key(settings))


def image_to_data_uri(image_path) -> str:
    path = Path(image_path)
    if not path.is_file():
        raise FileNotFoundError(f"Image file not found: {path}")
    raw = path.read_bytes()
    if not raw:
        raise ValueError(f"Image file is empty: {path}")
    mime = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
    return f"data:{mime};base64," + base64.b64encode(raw).decode("utf-8")


def _error_from_response(resp) -> AnalysisError:
    message = f"API error: {resp.status_code} {resp.reason}"
    code = None
    try:
        body = resp.json()
    except ValueError:
        body = None
        logger.warning("Unparseable error body from vision API: %s", resp.text[:200])
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        message = error.get("message") or message
        code = error.get("code")
    elif isinstance(error, str) and error.strip():
        message = error
    if code == "invalid_api_key":
        return AnalysisError(INVALID_KEY_FORMAT, "The API key was rejected. Check the key in settings.")
    if code == "insufficient_quota":
        return AnalysisError(QUOTA_EXCEEDED, "API quota exhausted. Check your provider account.")
    if code == "rate_limit_exceeded" or resp.status_code == 429:
        return AnalysisError(RATE_LIMITED, "Too many requests. Please try again later.")
    return AnalysisError(API_ERROR, message)


def analyze_test_result_image(image_path, test_type: str, api_key: str) -> str:
    if not api_key or not api_key.strip():
        raise AnalysisError(MISSING_KEY, "No API key configured. Add one in settings.")
    if not api_key.startswith("sk-"):
        raise AnalysisError(INVALID_KEY_FORMAT, "API keys start with 'sk-'. Check the key in settings.")

    data_uri = image_to_data_uri(image_path)
    # base64 is ~4/3 of the original size
    estimated_mb = len(data_uri) / (1024 * 1024) * 0.75
    if estimated_mb > config.AI_MAX_IMAGE_MB:
        raise AnalysisError(TOO_LARGE, f"Image is too large for analysis ({estimated_mb:.1f} MB).")

    body = {
        "model": config.OPENAI_MODEL,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": PROMPT_TEMPLATE.format(test_type=test_type)},
                    {"type": "image_url", "image_url": {"url": data_uri}},
                ],
            }
        ],
        "max_tokens": config.AI_MAX_TOKENS,
    }
    logger.info("Requesting analysis for %s (%.2f MB)", test_type, estimated_mb)
    try:
        resp = requests.post(
            config.OPENAI_API_URL,
            json=body,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=config.AI_TIMEOUT_S,
        )
    except requests.RequestException as exc:
        raise AnalysisError(NETWORK, f"Network error while contacting the analysis service: {exc}") from exc

    if not resp.ok:
        raise _error_from_response(resp)

    try:
        data = resp.json()
    except ValueError as exc:
        raise AnalysisError(API_ERROR, "The analysis service returned an unreadable response.") from exc
    choices = data.get("choices") or []
    analysis = ((choices[0] if choices else {}).get("message") or {}).get("content")
    if not analysis:
        raise AnalysisError(NO_CONTENT, "The analysis service returned no result.")
    return analysis
