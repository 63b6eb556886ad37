"""
Short-title generation through an Ollama-style ``/api/chat`` endpoint.

Title generation is optional: :meth:`TitleGenerator.generate` returns an
empty string instead of raising, so a missing or flaky model server never
blocks adding a reading.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, Iterable

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

logger = logging.getLogger(__name__)

CHAT_PATH = "/api/chat"
DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "llama3"
PROBE_TIMEOUT = 2.0
REQUEST_TIMEOUT = 30.0
MAX_ATTEMPTS = 3
RETRY_DELAY = 2.0

SYSTEM_PROMPT = (
    "You are an expert summarizer with a unique ability to distill complex "
    "information into concise, descriptive titles. Your role is to take any "
    "input text and create a single, clear title that captures its essence. "
    "The title should be informative yet brief, ideally between 3-8 words.\n"
    "Rules:\n"
    "1. Always respond with exactly one title\n"
    "2. Never include additional explanations\n"
    "3. Focus on the main theme or key message\n"
    "4. Use clear, descriptive language\n"
    "5. Avoid unnecessary articles (a, an, the)\n"
    "6. Keep character count under 60"
)

_QUOTES = "\"'“”‘’`"


class TitleGenerationError(Exception):
    """The endpoint answered with something that is not a chat reply."""


###############################################################################
# Endpoint discovery
###############################################################################
def http_probe(url: str, timeout: float = PROBE_TIMEOUT) -> bool:
    """True ⇢ something answered *url* with a non-5xx status in time."""
    try:
        with requests.get(url, timeout=timeout) as resp:
            return resp.status_code < 500
    except requests.RequestException:
        return False


class EndpointResolver:
    """Return the first candidate base URL whose chat endpoint is reachable."""

    def __init__(
        self,
        candidates: Iterable[str | None],
        probe: Callable[[str], bool] = http_probe,
        path: str = CHAT_PATH,
    ):
        self.candidates: list[str] = []
        for base in candidates:
            base = (base or "").strip().rstrip("/")
            if base and base not in self.candidates:
                self.candidates.append(base)
        self.probe = probe
        self.path = path

    def resolve(self) -> str | None:
        for base in self.candidates:
            if self.probe(base + self.path):
                return base
            logger.debug("Title endpoint %s is not reachable", base)
        return None


###############################################################################
# Retry policy
###############################################################################
class RetryPolicy:
    """
    Fixed-delay bounded retry around a single operation.

    • ``retry_on`` exceptions and empty (falsy) results are retried
    • any other exception propagates immediately
    • after the last attempt the last result is returned or its
      exception re-raised
    """

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        delay: float = RETRY_DELAY,
        *,
        retry_on: tuple[type[BaseException], ...] = (requests.RequestException,),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.delay = max(0.0, float(delay))
        self.retry_on = retry_on
        self.sleep = sleep

    def call(self, fn: Callable, *args, **kwargs):
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.delay),
            retry=retry_if_exception_type(self.retry_on) | retry_if_result(_is_empty),
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        return retrying(fn, *args, **kwargs)


def _is_empty(result) -> bool:
    return not result


###############################################################################
# Chat call
###############################################################################
def build_payload(description: str, model: str = DEFAULT_MODEL) -> dict:
    return {
        "model": model,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": description},
        ],
        "stream": False,
    }


def clean_title(text: str) -> str:
    """Trim whitespace and a pair of wrapping quotes the model likes to add."""
    text = (text or "").strip()
    if len(text) >= 2 and text[0] in _QUOTES and text[-1] in _QUOTES:
        text = text[1:-1].strip()
    return text


def parse_chat_reply(body: str) -> str:
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise TitleGenerationError(f"Reply is not JSON – {exc}") from None
    message = data.get("message") if isinstance(data, dict) else None
    if not isinstance(message, dict):
        raise TitleGenerationError("Reply has no 'message' object")
    content = message.get("content") or ""
    if not isinstance(content, str):
        raise TitleGenerationError("Reply 'content' is not a string")
    return clean_title(content)


class TitleGenerator:
    def __init__(
        self,
        resolver: EndpointResolver,
        *,
        model: str = DEFAULT_MODEL,
        policy: RetryPolicy | None = None,
        timeout: float = REQUEST_TIMEOUT,
        session=None,
    ):
        self.resolver = resolver
        self.model = model
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self.session = session or requests.Session()

    def generate(self, description: str | None) -> str:
        """Return a short title for *description*, or "" if none could be made."""
        if not description or not description.strip():
            return ""

        base = self.resolver.resolve()
        if not base:
            logger.warning("No title endpoint reachable – skipping title generation")
            return ""

        url = base + CHAT_PATH
        payload = build_payload(description, self.model)
        logger.info("Generating title via %s", url)
        try:
            return self.policy.call(self._request, url, payload)
        except (requests.RequestException, TitleGenerationError) as exc:
            logger.warning("Title generation failed: %s", exc)
            return ""

    def _request(self, url: str, payload: dict) -> str:
        resp = self.session.post(url, json=payload, timeout=self.timeout)
        resp.raise_for_status()
        return parse_chat_reply(resp.text)


def from_config(config) -> TitleGenerator:
    """Build a generator from a Flask-style config mapping."""
    resolver = EndpointResolver(
        config.get("TITLE_ENDPOINTS") or [DEFAULT_BASE_URL],
        probe=lambda url: http_probe(
            url, timeout=config.get("TITLE_PROBE_TIMEOUT", PROBE_TIMEOUT)
        ),
    )
    policy = RetryPolicy(
        config.get("TITLE_MAX_ATTEMPTS", MAX_ATTEMPTS),
        config.get("TITLE_RETRY_DELAY", RETRY_DELAY),
    )
    return TitleGenerator(
        resolver,
        model=config.get("TITLE_MODEL", DEFAULT_MODEL),
        policy=policy,
        timeout=config.get("TITLE_REQUEST_TIMEOUT", REQUEST_TIMEOUT),
    )
