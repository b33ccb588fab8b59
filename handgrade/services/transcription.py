"""
Strict transcription of the student's handwriting.

Runs before grading, at temperature 0, with a system instruction that
forbids completing or correcting what the student wrote. The grading pass
then receives this text as ground truth, which keeps it from "fixing" the
answer into something more coherent than what is on the page.

The stage is advisory: any failure yields an empty string and the grading
pass reads the images itself.
"""
import logging
from typing import List, Optional

from handgrade.errors import ModelTimeoutError, TranscriptionParseError
from handgrade.services.content_sequencer import TextPart, build_student_sequence
from handgrade.services.file_categorizer import UploadedFilePart
from handgrade.services.model_clients import call_with_timeout
from handgrade.services.response_parsing import extract_json_object

logger = logging.getLogger(__name__)

ILLEGIBLE_PLACEHOLDER = "〓"

OCR_GENERATION_CONFIG = {
    "temperature": 0,
    "top_p": 0.1,
    "top_k": 16,
    "max_output_tokens": 32768,
    "response_mime_type": "application/json",
}

OCR_SYSTEM_INSTRUCTION = "\n".join([
    "You are a high-precision OCR engine for handwritten exam answers.",
    "Transcribe exactly what is written. Summarizing, completing, or correcting is forbidden.",
    f"Any character you cannot read with certainty must be written as \"{ILLEGIBLE_PLACEHOLDER}\". Never guess.",
    "Vertical writing is read right to left, top to bottom.",
    "Ignore printed text; transcribe only the student's handwriting.",
    'Output JSON only: {"text": "..."}',
])


def build_ocr_prompt(label: str) -> str:
    return "\n".join([
        f"Target: the answer field for \"{label}\" only. Do not transcribe answers to other questions.",
        "Read each cell of the answer grid one at a time. Skip empty cells at the end.",
        f"Write unreadable characters as \"{ILLEGIBLE_PLACEHOLDER}\".",
        'Return {"text": "<transcribed text>"}.',
    ])


def parse_transcription(raw: str) -> str:
    """Return the "text" field of a transcription response or raise."""
    parsed = extract_json_object(raw)
    if parsed is None:
        raise TranscriptionParseError("Transcription response was not JSON", raw_text=raw)
    text = parsed.get("text")
    if not isinstance(text, str):
        raise TranscriptionParseError("Transcription response has no text field", raw_text=raw)
    return text.strip()


class TranscriptionStage:
    """Interface for the transcription pass."""

    enabled = True

    def transcribe(self, label: str, student_files: List[UploadedFilePart],
                   timeout_seconds: Optional[float] = None) -> str:
        raise NotImplementedError


class PassThroughTranscriber(TranscriptionStage):
    """Used when strict transcription is turned off; never calls a model."""

    enabled = False

    def transcribe(self, label, student_files, timeout_seconds=None):
        return ""


class StrictTranscriber(TranscriptionStage):
    """Zero-temperature OCR pass over the student answer files."""

    def __init__(self, client, timeout_seconds: float = 180.0, model: str = None):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.model = model or None

    def run(self, label: str, student_files: List[UploadedFilePart],
            timeout_seconds: Optional[float] = None) -> str:
        """
        Transcribe, raising on timeout, transport, or parse errors.

        ``timeout_seconds`` caps the stage's own timeout for this call.
        """
        if not student_files:
            return ""
        timeout = self.timeout_seconds if timeout_seconds is None else min(self.timeout_seconds, timeout_seconds)
        parts = [TextPart(build_ocr_prompt(label))] + build_student_sequence(student_files)
        raw = call_with_timeout(
            lambda: self.client.generate(
                parts,
                system_instruction=OCR_SYSTEM_INSTRUCTION,
                generation_config=OCR_GENERATION_CONFIG,
                model=self.model,
            ),
            timeout,
            "Transcription",
        )
        return parse_transcription(raw)

    def transcribe(self, label, student_files, timeout_seconds=None):
        try:
            text = self.run(label, student_files, timeout_seconds=timeout_seconds)
        except TranscriptionParseError as e:
            logger.warning("Transcription for %s returned unparsable output, grading without it: %s",
                           label, e.message)
            return ""
        except ModelTimeoutError as e:
            logger.warning("Transcription for %s timed out, grading without it: %s", label, e.message)
            return ""
        except Exception as e:
            logger.warning("Transcription for %s failed, grading without it: %s", label, e)
            return ""

        logger.info("Transcription for %s complete (%d chars)", label, len(text))
        return text
