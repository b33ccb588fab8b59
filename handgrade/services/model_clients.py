"""
Multimodal model clients.

Each client exposes the same call:

    generate(parts, system_instruction=None, generation_config=None, model=None) -> str

where ``parts`` is a list of TextPart / BlobPart from the content sequencer
and ``generation_config`` is a plain dict (temperature, top_p, top_k,
max_output_tokens, response_mime_type). Clients are passed explicitly into
each pipeline stage; nothing here keeps a module-level model object.
"""
import concurrent.futures
import logging
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from handgrade.errors import ModelTimeoutError
from handgrade.services.content_sequencer import BlobPart

logger = logging.getLogger(__name__)

# Fix up logging level for httpx to WARNING to reduce noise
logging.getLogger("httpx").setLevel(logging.WARNING)

DEFAULT_MAX_OUTPUT_TOKENS = 8192

RATE_LIMIT_PATTERNS = [
    re.compile(r'429'),
    re.compile(r'RESOURCE_EXHAUSTED', re.IGNORECASE),
    re.compile(r'quota', re.IGNORECASE),
    re.compile(r'rate.*limit', re.IGNORECASE),
    re.compile(r'too.*many.*requests', re.IGNORECASE),
    re.compile(r'daily.*limit', re.IGNORECASE),
    re.compile(r'requests.*per.*day', re.IGNORECASE),
]

JST = timezone(timedelta(hours=9))


def _wants_json(generation_config):
    return (generation_config or {}).get("response_mime_type") == "application/json"


class GeminiClient:
    """Grade using Google Gemini API."""

    provider = 'gemini'

    def __init__(self, api_key: str, model_name: str):
        if not api_key:
            raise ValueError("GEMINI_API_KEY is not set")
        self.api_key = api_key
        self.model_name = model_name

    def generate(self, parts, system_instruction=None, generation_config=None, model=None) -> str:
        import google.generativeai as genai
        genai.configure(api_key=self.api_key)

        gen_model = genai.GenerativeModel(model or self.model_name, system_instruction=system_instruction)
        contents = []
        for part in parts:
            if isinstance(part, BlobPart):
                contents.append({"mime_type": part.mime_type, "data": part.data})
            else:
                contents.append(part.text)

        config = dict(generation_config or {})
        config.setdefault("max_output_tokens", DEFAULT_MAX_OUTPUT_TOKENS)
        response = gen_model.generate_content(
            contents,
            generation_config=genai.GenerationConfig(**config),
        )
        return (response.text or "").strip()


class OpenAIClient:
    """Grade using OpenAI API."""

    provider = 'openai'

    def __init__(self, api_key: str, model_name: str):
        if not api_key:
            raise ValueError("OPENAI_API_KEY is not set")
        self.api_key = api_key
        self.model_name = model_name

    def generate(self, parts, system_instruction=None, generation_config=None, model=None) -> str:
        from openai import OpenAI
        client = OpenAI(api_key=self.api_key)

        content = []
        for part in parts:
            if isinstance(part, BlobPart):
                content.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{part.mime_type};base64,{part.to_base64()}"},
                })
            else:
                content.append({"type": "text", "text": part.text})

        messages = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": content})

        config = generation_config or {}
        kwargs = {
            "model": model or self.model_name,
            "messages": messages,
            "max_tokens": config.get("max_output_tokens", DEFAULT_MAX_OUTPUT_TOKENS),
            "temperature": config.get("temperature", 0.3),
        }
        if "top_p" in config:
            kwargs["top_p"] = config["top_p"]
        if _wants_json(config):
            kwargs["response_format"] = {"type": "json_object"}

        response = client.chat.completions.create(**kwargs)
        return (response.choices[0].message.content or "").strip()


class AnthropicClient:
    """Grade using Anthropic Claude API."""

    provider = 'anthropic'

    def __init__(self, api_key: str, model_name: str):
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY is not set")
        self.api_key = api_key
        self.model_name = model_name

    def generate(self, parts, system_instruction=None, generation_config=None, model=None) -> str:
        import anthropic
        client = anthropic.Anthropic(api_key=self.api_key)

        content = []
        for part in parts:
            if isinstance(part, BlobPart):
                block_type = "document" if part.mime_type == "application/pdf" else "image"
                content.append({
                    "type": block_type,
                    "source": {
                        "type": "base64",
                        "media_type": part.mime_type,
                        "data": part.to_base64(),
                    },
                })
            else:
                content.append({"type": "text", "text": part.text})

        config = generation_config or {}
        kwargs = {
            "model": model or self.model_name,
            "max_tokens": config.get("max_output_tokens", DEFAULT_MAX_OUTPUT_TOKENS),
            "temperature": config.get("temperature", 0.3),
            "messages": [{"role": "user", "content": content}],
        }
        if system_instruction:
            kwargs["system"] = system_instruction
        if "top_k" in config:
            kwargs["top_k"] = config["top_k"]

        response = client.messages.create(**kwargs)
        return response.content[0].text.strip()


def create_model_client(model_name: str, settings) -> object:
    """
    Build a client for ``model_name``, routing by name prefix.

    Args:
        model_name: e.g. 'gemini-2.5-pro', 'gpt-4o', 'claude-sonnet-4-20250514'
        settings: Config instance holding the API keys

    Returns:
        A client implementing generate()
    """
    if model_name.startswith('claude'):
        return AnthropicClient(settings.anthropic_api_key, model_name)
    if model_name.startswith('gemini'):
        return GeminiClient(settings.gemini_api_key, model_name)
    return OpenAIClient(settings.openai_api_key, model_name)


def is_rate_limit_error(error) -> bool:
    message = str(error)
    return any(pattern.search(message) for pattern in RATE_LIMIT_PATTERNS)


class FallbackModelClient:
    """
    Wraps a client and switches to a fallback model for the rest of the day
    (JST) once the primary model reports a rate-limit or quota error.
    """

    def __init__(self, client, fallback_model: Optional[str], clock=None):
        self.client = client
        self.fallback_model = fallback_model
        self._clock = clock or (lambda: datetime.now(JST))
        self._limited_date = None
        self._lock = threading.Lock()

    def _today(self):
        return self._clock().date().isoformat()

    def mark_rate_limited(self):
        with self._lock:
            self._limited_date = self._today()
        logger.warning("Primary model hit its rate limit (%s); using fallback model %s",
                       self._limited_date, self.fallback_model)

    def is_rate_limited(self) -> bool:
        with self._lock:
            if not self._limited_date:
                return False
            if self._limited_date != self._today():
                logger.info("Date changed since %s; returning to the primary model", self._limited_date)
                self._limited_date = None
                return False
            return True

    def generate(self, parts, system_instruction=None, generation_config=None, model=None) -> str:
        if self.fallback_model and model is None and self.is_rate_limited():
            model = self.fallback_model
        try:
            return self.client.generate(parts, system_instruction=system_instruction,
                                        generation_config=generation_config, model=model)
        except Exception as e:
            if not self.fallback_model or model == self.fallback_model or not is_rate_limit_error(e):
                raise
            self.mark_rate_limited()
            return self.client.generate(parts, system_instruction=system_instruction,
                                        generation_config=generation_config, model=self.fallback_model)


def call_with_timeout(fn, timeout_seconds: float, operation: str):
    """
    Run ``fn()`` and wait at most ``timeout_seconds`` for it.

    The call keeps running in its worker thread after a timeout; only the
    wait is abandoned.
    """
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout_seconds)
    except concurrent.futures.TimeoutError:
        raise ModelTimeoutError(f"{operation} timed out after {timeout_seconds:g} seconds. Please try again.")
    finally:
        executor.shutdown(wait=False)
