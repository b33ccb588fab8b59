"""
Builds the ordered multimodal content list sent to the grading model.

Order is fixed: student answer, problem text, model answer, then an
optional supplementary section for anything left unclassified. The model
is sensitive to ordering, so identical input must give an identical
sequence.
"""
import base64
from dataclasses import dataclass
from typing import List, Union

from handgrade.services.file_categorizer import CategorizedFiles, UploadedFilePart

STUDENT_SECTION = "Student answer"
PROBLEM_SECTION = "Problem text"
MODEL_ANSWER_SECTION = "Model answer"
OTHER_SECTION = "Other"
OTHER_SECTION_HEADER = (
    "[Other images] (supplementary material that could not be classified; "
    "reference only if necessary)"
)


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class BlobPart:
    data: bytes
    mime_type: str

    def to_base64(self):
        return base64.b64encode(self.data).decode('utf-8')


ContentPart = Union[TextPart, BlobPart]


def to_blob_part(file: UploadedFilePart) -> BlobPart:
    return BlobPart(data=file.buffer, mime_type=file.mime_type)


def _file_marker(section: str, index: int, file: UploadedFilePart) -> TextPart:
    page_info = f" (page {file.page_number})" if file.page_number else ""
    return TextPart(f"{section} {index}{page_info} - {file.name}")


def _push_files(sequence, section, files):
    for idx, file in enumerate(files, start=1):
        sequence.append(_file_marker(section, idx, file))
        sequence.append(to_blob_part(file))


def build_content_sequence(categorized: CategorizedFiles) -> List[ContentPart]:
    """Return header/marker/blob parts in fixed section order."""
    sequence: List[ContentPart] = []

    for section, files in (
        (STUDENT_SECTION, categorized.student_files),
        (PROBLEM_SECTION, categorized.problem_files),
        (MODEL_ANSWER_SECTION, categorized.model_answer_files),
    ):
        if not files:
            continue
        sequence.append(TextPart(f"[{section} images]"))
        _push_files(sequence, section, files)

    if categorized.other_files:
        sequence.append(TextPart(OTHER_SECTION_HEADER))
        _push_files(sequence, OTHER_SECTION, categorized.other_files)

    return sequence


def build_student_sequence(student_files: List[UploadedFilePart]) -> List[ContentPart]:
    """Content for the transcription pass: student answer files only."""
    sequence: List[ContentPart] = []
    if student_files:
        sequence.append(TextPart(f"[{STUDENT_SECTION} images]"))
        _push_files(sequence, STUDENT_SECTION, student_files)
    return sequence


def has_pdf(sequence: List[ContentPart]) -> bool:
    return any(isinstance(part, BlobPart) and part.mime_type == 'application/pdf' for part in sequence)
