"""
Shared test fixtures for Handgrade.
Model clients and the usage store are replaced with in-memory fakes.
Zero network calls.
"""
import io
import json
import threading
import time

import jwt
import pytest

from handgrade.config import Config
from handgrade.services.file_categorizer import UploadedFilePart
from handgrade.services.grading_queue import GradingQueue
from handgrade.services.regrade_tokens import RegradeTokenService
from handgrade.services.usage_quota import QuotaStatus, UsageInfo

JWT_SECRET = "test-supabase-jwt-secret-0123456789abcdef"
TOKEN_SECRET = "test-regrade-token-secret-0123456789abcdef"

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class FakeModelClient:
    """
    Scripted stand-in for a provider client.

    ``responses`` is consumed in order; each entry is a string, an exception
    instance (raised), or a callable taking the prompt text. ``responder``
    answers every call instead when given.
    """

    def __init__(self, responses=None, responder=None):
        self.responses = list(responses or [])
        self.responder = responder
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, parts, system_instruction=None, generation_config=None, model=None):
        prompt = parts[0].text if parts and hasattr(parts[0], "text") else ""
        with self._lock:
            self.calls.append({
                "parts": parts,
                "prompt": prompt,
                "system_instruction": system_instruction,
                "generation_config": generation_config,
                "model": model,
            })
            if self.responder is not None:
                response = self.responder
            elif self.responses:
                response = self.responses.pop(0)
            else:
                raise AssertionError("FakeModelClient ran out of scripted responses")
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(prompt)
        return response


class FakeUsageStore:
    """Records quota checks and increments."""

    def __init__(self, allowed=True, remaining_count=10, usage_limit=20, fail_increment=False):
        self.allowed = allowed
        self.remaining_count = remaining_count
        self.usage_limit = usage_limit
        self.usage_count = 0
        self.fail_increment = fail_increment
        self.can_use_calls = []
        self.increments = []

    def can_use(self, user_id):
        self.can_use_calls.append(user_id)
        return QuotaStatus(
            allowed=self.allowed,
            remaining_count=self.remaining_count,
            usage_limit=self.usage_limit,
            usage_count=self.usage_count,
            plan_name="standard",
            message="" if self.allowed else "Usage limit reached",
        )

    def increment_usage(self, user_id, metadata=None):
        if self.fail_increment:
            raise RuntimeError("increment_usage unavailable")
        self.increments.append((user_id, metadata))
        self.usage_count += 1
        self.remaining_count -= 1
        return UsageInfo(remaining_count=self.remaining_count, usage_count=self.usage_count,
                         usage_limit=self.usage_limit, plan_name="standard")


def grading_json(score=100, deductions=None, recognized_text="The author wants to say that change is hard.",
                 good_point="Clear structure.", improvement_advice="Quote the text.",
                 rewrite_example="Change is hard because habits resist it."):
    """A grading model response in the expected JSON shape."""
    return json.dumps({
        "grading_result": {
            "recognized_text": recognized_text,
            "score": score,
            "deduction_details": deductions or [],
            "feedback_content": {
                "good_point": good_point,
                "improvement_advice": improvement_advice,
                "rewrite_example": rewrite_example,
            },
        }
    })


def ocr_json(text):
    return json.dumps({"text": text})


def make_part(name, mime_type="image/png", role=None, page_number=None, data=PNG_BYTES):
    return UploadedFilePart(buffer=data, mime_type=mime_type, name=name, page_number=page_number,
                            source_file_name=name, role=role)


@pytest.fixture
def standard_files():
    """Student answer, problem, and model answer images, classified by filename."""
    return [make_part("seito_kaitou.jpg", "image/jpeg"),
            make_part("mondai.jpg", "image/jpeg"),
            make_part("mohan.jpg", "image/jpeg")]


@pytest.fixture
def token_service():
    return RegradeTokenService(TOKEN_SECRET, ttl_seconds=3600, max_free_regrades=2)


@pytest.fixture
def usage_store():
    return FakeUsageStore()


@pytest.fixture
def settings(monkeypatch):
    """A Config with test secrets and generous rate limits."""
    for key in ("SUPABASE_URL", "SUPABASE_SERVICE_KEY", "DEBUG"):
        monkeypatch.delenv(key, raising=False)
    s = Config()
    s.update({
        "gemini_api_key": "test-gemini-key",
        "supabase_jwt_secret": JWT_SECRET,
        "regrade_token_secret": TOKEN_SECRET,
        "regrade_token_ttl_seconds": 3600,
        "max_free_regrades": 2,
        "strict_transcription": True,
        "label_concurrency": 1,
        "grading_rate_limit": 100,
        "grading_burst_limit": 100,
        "debug": False,
    })
    return s


@pytest.fixture
def make_app(settings, usage_store):
    """Build an app with fake collaborators. Keyword overrides go to create_app()."""
    from handgrade.app import create_app

    def _make(model_client=None, ocr_client=None, **overrides):
        overrides.setdefault("usage_store", usage_store)
        overrides.setdefault("grading_queue", GradingQueue(2, 3))
        app = create_app(
            settings=overrides.pop("settings", settings),
            model_client=model_client or FakeModelClient(),
            ocr_client=ocr_client or FakeModelClient(),
            **overrides,
        )
        app.config["TESTING"] = True
        return app

    return _make


@pytest.fixture
def make_jwt():
    """Sign a Supabase-style access token."""
    def _make(user_id="user-1", email="teacher@example.com", secret=JWT_SECRET, expires_in=3600,
              audience="authenticated"):
        now = int(time.time())
        payload = {"sub": user_id, "email": email, "aud": audience, "iat": now, "exp": now + expires_in}
        return jwt.encode(payload, secret, algorithm="HS256")
    return _make


@pytest.fixture
def auth_headers(make_jwt):
    def _headers(user_id="user-1", fingerprint="device-1"):
        return {"Authorization": f"Bearer {make_jwt(user_id)}", "X-Device-Fingerprint": fingerprint}
    return _headers


def upload(name, data=PNG_BYTES, mime_type="image/png"):
    """A (stream, filename, content_type) tuple for the Flask test client."""
    return (io.BytesIO(data), name, mime_type)
