"""
Grading pass: one model call per label producing score, deductions, and
feedback as JSON, followed by programmatic checks and score reconciliation.
"""
import logging
import re
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from handgrade.errors import GradingParseError
from handgrade.models import DeductionDetail, FeedbackContent, GradingResult
from handgrade.services.content_sequencer import ContentPart, TextPart, has_pdf
from handgrade.services.grading_prompts import (
    REGISTER_MIX_PENALTY,
    REPETITION_PENALTY,
    build_grading_prompt,
    build_grading_system_instruction,
    build_page_hint,
    normalize_strictness,
)
from handgrade.services.model_clients import call_with_timeout
from handgrade.services.response_parsing import extract_json_object
from handgrade.services.score_reconciler import clamp, normalize_score, reconcile, round_to_ten, total_deduction

logger = logging.getLogger(__name__)

GRADING_GENERATION_CONFIG = {
    "temperature": 0.4,
    "top_p": 0.95,
    "max_output_tokens": 8192,
    "response_mime_type": "application/json",
}

FEEDBACK_FIELDS = ("good_point", "improvement_advice", "rewrite_example")

# Polite (です/ます) and plain (だ/である) sentence endings
POLITE_PATTERNS = [
    re.compile(r'です[。、]'),
    re.compile(r'ます[。、]'),
    re.compile(r'でした[。、]'),
    re.compile(r'ました[。、]'),
    re.compile(r'ですか[。、？]'),
    re.compile(r'ますか[。、？]'),
    re.compile(r'ません[。、]'),
    re.compile(r'ですが'),
    re.compile(r'ますが'),
]
PLAIN_PATTERNS = [
    re.compile(r'だ[。、]'),
    re.compile(r'である[。、]'),
    re.compile(r'だった[。、]'),
    re.compile(r'だから'),
    re.compile(r'ないが'),
    re.compile(r'あるが'),
    re.compile(r'思う[。、]'),
    re.compile(r'考える[。、]'),
    re.compile(r'感じる[。、]'),
]
REGISTER_REASON_KEYWORDS = ("文体", "敬体", "常体", "混在", "register", "formal", "informal")

# The same connective repeated within a short span; two ている are natural, three are not
REPETITION_PATTERNS = [
    (re.compile(r'から.{1,15}から'), "から"),
    (re.compile(r'ので.{1,15}ので'), "ので"),
    (re.compile(r'ため.{1,15}ため'), "ため"),
    (re.compile(r'けれ?ど.{1,15}けれ?ど'), "けど/けれど"),
    (re.compile(r'のに.{1,15}のに'), "のに"),
    (re.compile(r'と思[うっ].{1,20}と思[うっ]'), "と思う"),
    (re.compile(r'という.{1,15}という'), "という"),
    (re.compile(r'ている.{1,20}ている.{1,20}ている'), "ている"),
]
REPETITION_REASON_KEYWORDS = ("繰り返し", "重複", "語彙", "反復", "repetition", "repeated", "vocabulary")

# Text the model writes when it could not read the answer
PLACEHOLDER_TEXT_RE = re.compile(r'読み取れませんでした|画像が不鮮明|見つかりません|〓{5,}|取得できませんでした')

_LABEL_STRIP_RE = re.compile(r'[<>\\"\'`]')


def sanitize_label(label: str) -> str:
    return _LABEL_STRIP_RE.sub('', label or '').strip() or "target"


def check_register_consistency(text: str) -> dict:
    """Count polite and plain sentence endings in ``text``."""
    polite_examples, plain_examples = [], []
    polite_count = plain_count = 0

    for pattern in POLITE_PATTERNS:
        matches = pattern.findall(text or "")
        polite_count += len(matches)
        for m in matches[:2]:
            if m not in polite_examples:
                polite_examples.append(m)
    for pattern in PLAIN_PATTERNS:
        matches = pattern.findall(text or "")
        plain_count += len(matches)
        for m in matches[:2]:
            if m not in plain_examples:
                plain_examples.append(m)

    is_mixed = polite_count > 0 and plain_count > 0
    examples = [f"{e} (polite)" for e in polite_examples] + [f"{e} (plain)" for e in plain_examples]
    return {
        "polite_count": polite_count,
        "plain_count": plain_count,
        "is_mixed": is_mixed,
        "examples": examples[:4],
        "deduction": REGISTER_MIX_PENALTY if is_mixed else 0,
    }


def check_vocabulary_repetition(text: str) -> dict:
    """Find connectives repeated awkwardly close together in ``text``."""
    repeated = []
    for pattern, word in REPETITION_PATTERNS:
        matches = pattern.findall(text or "")
        if matches:
            repeated.append({"word": word, "count": len(matches) + 1})
    return {
        "repeated_words": repeated,
        "deduction": REPETITION_PENALTY if repeated else 0,
    }


def _reason_matches(deduction: DeductionDetail, keywords) -> bool:
    reason = deduction.reason.lower()
    return any(keyword in reason for keyword in keywords)


def _has_register_deduction(deductions: List[DeductionDetail]) -> bool:
    return any(_reason_matches(d, REGISTER_REASON_KEYWORDS) for d in deductions)


def apply_programmatic_checks(label: str, text: str, deductions: List[DeductionDetail]):
    """
    Run the register and repetition checks over ``text``.

    Returns the model's deductions with repetition entries replaced by the
    programmatic verdict, the deductions the checks add, and the check
    results for mandatory_checks.
    """
    register = check_register_consistency(text)
    vocabulary = check_vocabulary_repetition(text)

    kept = [d for d in deductions if not _reason_matches(d, REPETITION_REASON_KEYWORDS)]
    if len(kept) != len(deductions) and not vocabulary["repeated_words"]:
        logger.info("Dropping repetition deduction for %s; no repetition found in the text", label)

    added = []
    if register["is_mixed"] and not _has_register_deduction(kept):
        logger.info("Mixed register detected in %s; adding %d%% deduction", label, REGISTER_MIX_PENALTY)
        added.append(DeductionDetail(
            reason=f"Mixed register ({', '.join(register['examples'])})",
            deduction_percentage=REGISTER_MIX_PENALTY,
        ))
    if vocabulary["repeated_words"]:
        repeated = ", ".join(f"{w['word']} x{w['count']}" for w in vocabulary["repeated_words"])
        logger.info("Repetition detected in %s (%s); adding %d%% deduction", label, repeated, REPETITION_PENALTY)
        added.append(DeductionDetail(
            reason=f"Repeated expressions ({repeated})",
            deduction_percentage=REPETITION_PENALTY,
        ))

    checks = {
        "register_check": register,
        "vocabulary_check": vocabulary,
        "programmatic_validation": True,
    }
    return kept, added, checks


def reconcile_with_checks(raw_score, model_deductions: List[DeductionDetail],
                          added: List[DeductionDetail]) -> Optional[int]:
    """
    Reconcile the score after programmatic deductions.

    With itemized model deductions the added ones join the sum. Without
    them the added penalties come off the model's own score, so they can
    only lower it.
    """
    if total_deduction(model_deductions) > 0:
        return reconcile(raw_score, list(model_deductions) + list(added))
    normalized = normalize_score(raw_score)
    if normalized is None:
        return None
    return round_to_ten(clamp(normalized - total_deduction(added)))


def parse_grading_response(label: str, raw_text: str) -> dict:
    """Parse the grading model's response into a dict or raise GradingParseError."""
    parsed = extract_json_object(raw_text)
    if parsed is None:
        raise GradingParseError(label, "Failed to parse AI response.", raw_text=raw_text)
    parsed.pop("debug_info", None)
    if not isinstance(parsed.get("grading_result"), dict):
        raise GradingParseError(label, "AI response is missing grading_result.",
                                raw_text=raw_text, missing_fields=["grading_result"])
    return parsed


class GradingStage:
    """Runs the grading model call for one label."""

    def __init__(self, client, timeout_seconds: float = 150.0, model: str = None):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.model = model or None

    def grade(self, label: str, sequence: List[ContentPart], recognized_text: Optional[str] = None,
              strictness: str = "standard", model_answer_text: Optional[str] = None,
              pdf_page_info: Optional[dict] = None, timeout_seconds: Optional[float] = None) -> dict:
        """
        Call the model and return its parsed JSON.

        ``timeout_seconds`` caps the stage's own timeout for this call.

        Raises:
            GradingParseError: if the response is not JSON or has no grading_result
            ModelTimeoutError: if the call exceeds the timeout
        """
        label = sanitize_label(label)
        page_hint = build_page_hint(pdf_page_info) if has_pdf(sequence) else ""
        prompt = build_grading_prompt(label, recognized_text=recognized_text,
                                      model_answer_text=model_answer_text, page_hint=page_hint)
        parts = [TextPart(prompt)] + list(sequence)
        timeout = self.timeout_seconds if timeout_seconds is None else min(self.timeout_seconds, timeout_seconds)

        logger.info("Grading %s (strictness=%s, transcribed=%s)",
                    label, normalize_strictness(strictness), bool(recognized_text))
        raw = call_with_timeout(
            lambda: self.client.generate(
                parts,
                system_instruction=build_grading_system_instruction(strictness),
                generation_config=GRADING_GENERATION_CONFIG,
                model=self.model,
            ),
            timeout,
            "Grading",
        )
        logger.debug("Grading response for %s: %d chars", label, len(raw or ""))

        try:
            return parse_grading_response(label, raw)
        except GradingParseError:
            logger.error("Could not parse grading response for %s: %.500s", label, raw)
            raise


def build_grading_result(label: str, payload: dict, recognized_text: Optional[str] = None) -> GradingResult:
    """
    Turn the model payload into a reconciled GradingResult.

    ``recognized_text`` from the transcription pass (or confirmed by the
    user) always wins over whatever the model put in recognized_text.

    Raises:
        GradingParseError: when required fields are missing or no score can
            be reconciled
    """
    result = payload.get("grading_result") or {}
    missing = []

    final_text = (recognized_text or "").strip()
    if not final_text:
        model_text = result.get("recognized_text")
        final_text = model_text.strip() if isinstance(model_text, str) else ""
    if not final_text or PLACEHOLDER_TEXT_RE.search(final_text):
        missing.append("recognized_text")

    feedback = result.get("feedback_content")
    if not isinstance(feedback, dict):
        missing.append("feedback_content")
        feedback = {}
    else:
        for key in FEEDBACK_FIELDS:
            value = feedback.get(key)
            if not isinstance(value, str) or not value.strip():
                missing.append(key)

    raw_deductions = result.get("deduction_details")
    deductions = []
    for item in raw_deductions if isinstance(raw_deductions, list) else []:
        if isinstance(item, dict):
            deductions.append(DeductionDetail(**{k: item.get(k) for k in ("reason", "deduction_percentage")}))

    deductions, added, checks = apply_programmatic_checks(label, final_text, deductions)
    score = reconcile_with_checks(result.get("score"), deductions, added)
    deductions = deductions + added
    if score is None:
        missing.append("score")

    if missing:
        raise GradingParseError(label, "Grading result is incomplete: " + ", ".join(missing),
                                missing_fields=missing)

    try:
        return GradingResult(
            recognized_text=final_text,
            score=score,
            deduction_details=deductions,
            mandatory_checks=checks,
            feedback_content=FeedbackContent(**{k: feedback[k].strip() for k in FEEDBACK_FIELDS}),
        )
    except PydanticValidationError as e:
        raise GradingParseError(label, f"Grading result failed validation: {e}")
