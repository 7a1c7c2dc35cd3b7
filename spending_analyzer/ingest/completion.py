"""
Completion Client - JSON-mode calls to the Ollama text/vision service.

Every pipeline stage that needs extraction or classification help goes
through CompletionClient.complete_json / complete_vision_json. Transient
failures are retried with exponential backoff; anything else surfaces as
CompletionError for the caller to convert into "zero results".
"""
import json
import re
import time
import logging
from typing import Dict, Any, Optional, List

import requests

from .config import Config
from .errors import CompletionError, MalformedResponseError


RETRYABLE_STATUS = {429, 500, 502, 503, 504}
JSON_BLOCK = re.compile(r'\{.*\}', re.S)


def parse_json_object(text: str, operation: str) -> Dict[str, Any]:
    """
    Decode a model response into a JSON object.

    Models occasionally wrap JSON in prose or code fences, so the first
    {...} block is tried when the whole body does not decode.
    """
    if not text or not text.strip():
        raise MalformedResponseError(operation, "empty response")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = JSON_BLOCK.search(text)
        if not match:
            raise MalformedResponseError(operation, f"response is not JSON: {text[:200]!r}")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise MalformedResponseError(operation, f"malformed JSON: {e}")
    if not isinstance(parsed, dict):
        raise MalformedResponseError(operation, f"expected a JSON object, got {type(parsed).__name__}")
    return parsed


class CompletionClient:
    """
    Thin client for Ollama's /api/generate endpoint in JSON mode.

    Usage:
        client = CompletionClient()
        data = client.complete_json("Return {\"ok\": true}", operation="Ping")
    """

    def __init__(self, base_url: str = None, model: str = None, vision_model: str = None,
                 timeout: float = None, max_retries: int = None, retry_delay: float = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or Config.OLLAMA_BASE_URL).rstrip('/')
        self.model = model or Config.OLLAMA_MODEL
        self.vision_model = vision_model or Config.OLLAMA_VISION_MODEL
        self.timeout = timeout if timeout is not None else Config.COMPLETION_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else Config.COMPLETION_MAX_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else Config.COMPLETION_RETRY_DELAY
        self.session = session or requests.Session()

    def complete_json(self, prompt: str, system: str = None, operation: str = "Completion",
                      timeout: float = None, max_retries: int = None) -> Dict[str, Any]:
        payload = self._payload(self.model, prompt, system)
        return self._call(payload, operation, timeout, max_retries)

    def complete_vision_json(self, prompt: str, image_b64: str, system: str = None,
                             operation: str = "Vision Completion", timeout: float = None,
                             max_retries: int = None) -> Dict[str, Any]:
        payload = self._payload(self.vision_model, prompt, system, images=[image_b64])
        return self._call(payload, operation, timeout, max_retries)

    def is_configured(self) -> bool:
        return bool(self.base_url and self.model)

    # ─────────────────────────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────────────────────────

    def _payload(self, model: str, prompt: str, system: Optional[str],
                 images: Optional[List[str]] = None) -> Dict[str, Any]:
        payload = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {"temperature": 0.1},
        }
        if system:
            payload["system"] = system
        if images:
            payload["images"] = images
        return payload

    def _call(self, payload: Dict[str, Any], operation: str,
              timeout: Optional[float], max_retries: Optional[int]) -> Dict[str, Any]:
        timeout = timeout if timeout is not None else self.timeout
        attempts = max(1, max_retries if max_retries is not None else self.max_retries)

        for attempt in range(1, attempts + 1):
            logging.info(f"[Completion] {operation} - Attempt {attempt}/{attempts}")
            try:
                text = self._post(payload, operation, timeout)
                result = parse_json_object(text, operation)
                logging.info(f"[Completion] {operation} - Success on attempt {attempt}")
                return result
            except CompletionError as e:
                if not e.retryable or attempt == attempts:
                    logging.error(f"[Completion] {operation} - Failed after {attempt} attempt(s): {e}")
                    raise
                backoff = self.retry_delay * (2 ** (attempt - 1))
                logging.warning(f"[Completion] {operation} - Attempt {attempt} failed ({e}); retrying in {backoff:.1f}s")
                time.sleep(backoff)

        raise CompletionError(operation, "no attempts made")

    def _post(self, payload: Dict[str, Any], operation: str, timeout: float) -> str:
        try:
            r = self.session.post(f"{self.base_url}/api/generate", json=payload, timeout=timeout)
        except requests.exceptions.Timeout:
            raise CompletionError(operation, f"timed out after {timeout}s", retryable=True)
        except requests.exceptions.ConnectionError as e:
            raise CompletionError(operation, f"connection error: {e}", retryable=True)
        except requests.exceptions.RequestException as e:
            raise CompletionError(operation, f"request failed: {e}")

        if r.status_code != 200:
            raise CompletionError(
                operation,
                f"HTTP {r.status_code}: {r.text[:200]}",
                retryable=r.status_code in RETRYABLE_STATUS,
            )
        try:
            body = r.json()
        except ValueError:
            raise CompletionError(operation, "service returned a non-JSON envelope")
        return body.get("response", "")
