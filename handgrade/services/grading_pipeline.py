"""
Per-request grading orchestration.

One request carries several labels (question ids) and one shared file set:

    rate gate -> regrade tokens -> quota gate -> categorize files once
    -> per label: sequence, transcribe, grade, reconcile
    -> usage increments for paid successes -> fresh regrade tokens

A failing label never aborts the batch; it is reported with an error and
does not consume quota.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from handgrade.errors import (
    GradingParseError,
    HandgradeError,
    ModelTimeoutError,
    QuotaExceededError,
    RateLimitedError,
)
from handgrade.models import GradingResult
from handgrade.services.content_sequencer import build_content_sequence
from handgrade.services.file_categorizer import CategorizedFiles, UploadedFilePart, categorize_files
from handgrade.services.grading_prompts import normalize_strictness
from handgrade.services.grading_service import GradingStage, build_grading_result
from handgrade.services.regrade_tokens import RegradeTokenPayload, RegradeTokenService
from handgrade.services.transcription import TranscriptionStage
from handgrade.services.usage_quota import UsageInfo

logger = logging.getLogger(__name__)

MODE_NEW = "new"
MODE_FREE = "free"
MODE_NONE = "none"

CANCELLED_MESSAGE = "cancelled"
DEADLINE_MESSAGE = "Request time limit reached before this problem was graded. Please try again."


@dataclass
class GradingRequest:
    user_id: str
    labels: List[str]
    files: List[UploadedFilePart]
    pdf_page_info: Dict[str, str] = field(default_factory=dict)
    confirmed_texts: Dict[str, str] = field(default_factory=dict)
    regrade_tokens: Dict[str, str] = field(default_factory=dict)
    strictness: str = "standard"
    model_answer_text: Optional[str] = None
    fingerprint: str = ""


@dataclass
class LabelOutcome:
    label: str
    result: Optional[GradingResult] = None
    error: Optional[str] = None
    strictness: str = "standard"
    regrade_token: Optional[str] = None
    regrade_remaining: Optional[int] = None
    regrade_mode: str = MODE_NONE
    token_covered: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result is not None

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "result": self.result.to_dict() if self.result is not None else None,
            "error": self.error,
            "strictness": self.strictness,
            "regradeToken": self.regrade_token,
            "regradeRemaining": self.regrade_remaining,
            "regradeMode": self.regrade_mode,
        }


@dataclass
class GradingResponse:
    results: List[LabelOutcome]
    usage_info: Optional[UsageInfo] = None

    def to_dict(self) -> dict:
        return {
            "status": "success",
            "results": [outcome.to_dict() for outcome in self.results],
            "usageInfo": self.usage_info.to_dict() if self.usage_info is not None else None,
        }


class GradingPipeline:
    """Wires the stages and gates together for one grading request at a time."""

    def __init__(self, transcriber: TranscriptionStage, grading_stage: GradingStage, usage_store,
                 token_service: RegradeTokenService, rate_gate=None, label_concurrency: int = 1,
                 request_timeout_seconds: Optional[float] = None, clock=time.monotonic):
        self.transcriber = transcriber
        self.grading_stage = grading_stage
        self.usage_store = usage_store
        self.token_service = token_service
        self.rate_gate = rate_gate
        self.label_concurrency = max(1, label_concurrency)
        self.request_timeout_seconds = request_timeout_seconds
        self.clock = clock

    def check_rate_limit(self, identifier: str):
        if self.rate_gate is None:
            return
        result = self.rate_gate.check(identifier)
        if not result.allowed:
            raise RateLimitedError(
                f"Too many requests. Please wait {result.retry_after} seconds and try again.",
                retry_after=result.retry_after,
            )

    def redeem_tokens(self, request: GradingRequest) -> Dict[str, RegradeTokenPayload]:
        """Labels whose presented token grants a free regrade, with the redeemed payload."""
        redeemed = {}
        if not self.token_service.enabled:
            return redeemed
        for label in request.labels:
            token = request.regrade_tokens.get(label)
            if not token:
                continue
            payload = self.token_service.redeem(token, request.user_id, label, request.fingerprint)
            if payload is not None:
                redeemed[label] = payload
        return redeemed

    def check_quota(self, user_id: str) -> UsageInfo:
        status = self.usage_store.can_use(user_id)
        if not status.allowed:
            logger.info("Quota check refused grading for %s: %s", user_id, status.message)
            raise QuotaExceededError(status.message or "Usage limit reached. Please choose a plan.",
                                     usage_info=status.usage_info())
        return status.usage_info()

    def grade(self, request: GradingRequest, cancel_event: Optional[threading.Event] = None) -> GradingResponse:
        """
        Grade every label in ``request``.

        Every model call runs inside the request timeout; labels that have not
        started when it runs out are reported with DEADLINE_MESSAGE, the same
        way cancelled labels are.

        Raises:
            RateLimitedError: before any work when the rate gate trips
            QuotaExceededError: before any model call when an uncovered label
                exists and the user cannot grade
        """
        self.check_rate_limit(request.user_id)

        redeemed = self.redeem_tokens(request)
        usage_info = None
        if any(label not in redeemed for label in request.labels):
            usage_info = self.check_quota(request.user_id)

        strictness = normalize_strictness(request.strictness)
        categorized = categorize_files(request.files, request.pdf_page_info)
        logger.info("Grading %d label(s) for %s: %s (%d free regrade(s))",
                    len(request.labels), request.user_id, categorized.summary(), len(redeemed))

        cancel_event = cancel_event or threading.Event()
        deadline = None
        if self.request_timeout_seconds is not None:
            deadline = self.clock() + self.request_timeout_seconds

        def run(label):
            if cancel_event.is_set():
                return LabelOutcome(label=label, error=CANCELLED_MESSAGE, strictness=strictness,
                                    token_covered=label in redeemed)
            budget = self._budget(deadline)
            if budget is not None and budget <= 0:
                logger.warning("Request time limit reached; skipping %s", label)
                return LabelOutcome(label=label, error=DEADLINE_MESSAGE, strictness=strictness,
                                    token_covered=label in redeemed)
            return self._grade_label(request, label, categorized, strictness, redeemed.get(label), deadline)

        if self.label_concurrency == 1 or len(request.labels) == 1:
            outcomes = [run(label) for label in request.labels]
        else:
            with ThreadPoolExecutor(max_workers=self.label_concurrency) as executor:
                outcomes = list(executor.map(run, request.labels))

        for outcome in outcomes:
            if not outcome.succeeded or outcome.token_covered:
                continue
            try:
                usage_info = self.usage_store.increment_usage(
                    request.user_id, {"label": outcome.label, "strictness": strictness})
            except Exception as e:
                logger.error("Failed to record usage for %s (%s): %s", request.user_id, outcome.label, e)

        return GradingResponse(results=outcomes, usage_info=usage_info)

    def _grade_label(self, request: GradingRequest, label: str, categorized: CategorizedFiles,
                     strictness: str, redeemed: Optional[RegradeTokenPayload], deadline=None) -> LabelOutcome:
        outcome = LabelOutcome(label=label, strictness=strictness, token_covered=redeemed is not None)
        try:
            outcome.result = self._grade(request, label, categorized, strictness, deadline)
        except (GradingParseError, ModelTimeoutError) as e:
            logger.warning("Grading failed for %s: %s", label, e.message)
            outcome.error = e.message
            return outcome
        except HandgradeError as e:
            logger.error("Grading failed for %s: %s", label, e.message)
            outcome.error = e.message
            return outcome
        except Exception as e:
            logger.exception("Unexpected error grading %s", label)
            outcome.error = f"Grading failed: {e}"
            return outcome

        remaining = self.token_service.next_remaining(redeemed)
        token = self.token_service.issue(request.user_id, label, request.fingerprint, remaining)
        if token is not None:
            outcome.regrade_token = token
            outcome.regrade_remaining = remaining
            outcome.regrade_mode = MODE_FREE if redeemed is not None else MODE_NEW
        return outcome

    def _budget(self, deadline) -> Optional[float]:
        """Seconds left before ``deadline``, or None when the request has no time limit."""
        if deadline is None:
            return None
        return deadline - self.clock()

    def _grade(self, request: GradingRequest, label: str, categorized: CategorizedFiles,
               strictness: str, deadline=None) -> GradingResult:
        recognized_text = (request.confirmed_texts.get(label) or "").strip()
        if recognized_text:
            logger.info("Using confirmed text for %s (%d chars)", label, len(recognized_text))
        elif self.transcriber.enabled:
            recognized_text = self.transcriber.transcribe(label, categorized.student_files,
                                                          timeout_seconds=self._budget(deadline))

        budget = self._budget(deadline)
        if budget is not None and budget <= 0:
            raise ModelTimeoutError(DEADLINE_MESSAGE)
        sequence = build_content_sequence(categorized)
        payload = self.grading_stage.grade(
            label,
            sequence,
            recognized_text=recognized_text or None,
            strictness=strictness,
            model_answer_text=request.model_answer_text,
            pdf_page_info=request.pdf_page_info,
            timeout_seconds=budget,
        )
        return build_grading_result(label, payload, recognized_text=recognized_text)
