"""
Exception types raised by the grading pipeline and its gates.
"""


class HandgradeError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message=""):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"status": "error", "message": self.message}


class ValidationError(HandgradeError):
    """Bad file type, size, name, or label. No model call is made."""

    status_code = 400


class QuotaExceededError(HandgradeError):
    """The quota RPC reported that the user cannot grade right now."""

    status_code = 403

    def __init__(self, message="", usage_info=None):
        super().__init__(message)
        self.usage_info = usage_info

    def to_dict(self):
        data = super().to_dict()
        data["requirePlan"] = True
        if self.usage_info is not None:
            data["usageInfo"] = self.usage_info.to_dict()
        return data


class RateLimitedError(HandgradeError):
    """The in-process rate limiter tripped."""

    status_code = 429

    def __init__(self, message="", retry_after=1):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self):
        data = super().to_dict()
        data["retryAfter"] = self.retry_after
        return data


class QueueFullError(HandgradeError):
    """Too many grading requests are already waiting."""

    status_code = 503


class TranscriptionParseError(HandgradeError):
    """The transcription model did not return the expected JSON."""

    def __init__(self, message="", raw_text=""):
        super().__init__(message)
        self.raw_text = raw_text


class GradingParseError(HandgradeError):
    """The grading model returned non-JSON or incomplete JSON for a label."""

    def __init__(self, label, message="", raw_text="", missing_fields=None):
        super().__init__(message)
        self.label = label
        self.raw_text = raw_text
        self.missing_fields = list(missing_fields or [])


class ModelTimeoutError(HandgradeError):
    """A model call did not finish within its timeout."""

    status_code = 504
