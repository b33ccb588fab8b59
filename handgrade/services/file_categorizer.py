"""
File categorization for grading requests.

Every uploaded file (or PDF page) is placed into one of four buckets:
student answer, problem text, model answer, or other. Classification is an
ordered rule list; the first rule that produces a bucket wins:

1. page_number inside an explicit page range for a role
2. explicit role tag supplied by the caller
3. filename keywords (student, then problem, then model; a name with both
   student and model keywords is a model answer)
4. other

A fallback pass then moves the earliest "other" files into any empty
primary bucket, in student -> problem -> model order.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

STUDENT = 'student'
PROBLEM = 'problem'
MODEL_ANSWER = 'modelAnswer'
OTHER = 'other'

PRIMARY_BUCKETS = (STUDENT, PROBLEM, MODEL_ANSWER)

# Compound roles put one file into several buckets
ROLE_BUCKETS: Dict[str, Tuple[str, ...]] = {
    STUDENT: (STUDENT,),
    PROBLEM: (PROBLEM,),
    MODEL_ANSWER: (MODEL_ANSWER,),
    OTHER: (OTHER,),
    'problem_model': (PROBLEM, MODEL_ANSWER),
    'answer_problem': (STUDENT, PROBLEM),
    'all': (STUDENT, PROBLEM, MODEL_ANSWER),
}

ROLE_ALIASES = {
    'answer': STUDENT,
    'student': STUDENT,
    'problem': PROBLEM,
    'question': PROBLEM,
    'model': MODEL_ANSWER,
    'modelanswer': MODEL_ANSWER,
    'model_answer': MODEL_ANSWER,
    'other': OTHER,
    'problem_model': 'problem_model',
    'answer_problem': 'answer_problem',
    'all': 'all',
}

# Filename keywords, checked in this order
FILE_PATTERNS = [
    (STUDENT, re.compile(r'(answer|ans|student|seito|kaitou|kaito|touan|解答|答案|生徒)', re.IGNORECASE)),
    (PROBLEM, re.compile(r'(problem|question|mondai|setsumon|課題|設問|問題|本文)', re.IGNORECASE)),
    (MODEL_ANSWER, re.compile(r'(model|key|mohan|seikai|模範|解説|正解|解答例)', re.IGNORECASE)),
]


@dataclass(frozen=True)
class UploadedFilePart:
    """One physical file, or one page of a PDF, as received in a request."""
    buffer: bytes
    mime_type: str
    name: str
    page_number: Optional[int] = None
    source_file_name: Optional[str] = None
    role: Optional[str] = None

    @property
    def size(self):
        return len(self.buffer)


@dataclass
class CategorizedFiles:
    student_files: List[UploadedFilePart] = field(default_factory=list)
    problem_files: List[UploadedFilePart] = field(default_factory=list)
    model_answer_files: List[UploadedFilePart] = field(default_factory=list)
    other_files: List[UploadedFilePart] = field(default_factory=list)

    def bucket(self, name):
        return {
            STUDENT: self.student_files,
            PROBLEM: self.problem_files,
            MODEL_ANSWER: self.model_answer_files,
            OTHER: self.other_files,
        }[name]

    def summary(self):
        return {
            STUDENT: [f.name for f in self.student_files],
            PROBLEM: [f.name for f in self.problem_files],
            MODEL_ANSWER: [f.name for f in self.model_answer_files],
            OTHER: [f.name for f in self.other_files],
        }


def normalize_role(value) -> Optional[str]:
    """Map a client-supplied role string to a canonical role, or None."""
    if not value or not isinstance(value, str):
        return None
    return ROLE_ALIASES.get(value.strip().lower())


def parse_page_range(page_str: Optional[str]) -> Set[int]:
    """Parse a page range string like "1,3-5" into {1, 3, 4, 5}."""
    pages = set()
    if not page_str:
        return pages

    for part in re.split(r'[,、]', str(page_str)):
        trimmed = part.strip()
        if not trimmed:
            continue
        if '-' in trimmed:
            start_str, _, end_str = trimmed.partition('-')
            try:
                start, end = int(start_str.strip()), int(end_str.strip())
            except ValueError:
                continue
            pages.update(range(start, end + 1))
        else:
            try:
                pages.add(int(trimmed))
            except ValueError:
                continue
    return pages


def _match_page_range(part: UploadedFilePart, page_ranges) -> Optional[Tuple[str, ...]]:
    if part.page_number is None:
        return None
    for bucket, pages in page_ranges:
        if part.page_number in pages:
            return (bucket,)
    return None


def _match_role_tag(part: UploadedFilePart, page_ranges) -> Optional[Tuple[str, ...]]:
    role = normalize_role(part.role)
    if role is None:
        return None
    return ROLE_BUCKETS[role]


def _match_filename(part: UploadedFilePart, page_ranges) -> Optional[Tuple[str, ...]]:
    name = part.name or ""
    matched = [bucket for bucket, pattern in FILE_PATTERNS if pattern.search(name)]
    if not matched:
        return None
    # "model_answer", "模範解答" name a model answer, not a student answer
    if matched[0] == STUDENT and MODEL_ANSWER in matched:
        return (MODEL_ANSWER,)
    return (matched[0],)


CLASSIFICATION_RULES = [
    _match_page_range,
    _match_role_tag,
    _match_filename,
]


def classify_file(part: UploadedFilePart, page_ranges=()) -> Tuple[str, ...]:
    """Return the bucket(s) for a single file by applying the rule list."""
    for rule in CLASSIFICATION_RULES:
        buckets = rule(part, page_ranges)
        if buckets:
            return buckets
    return (OTHER,)


def categorize_files(files: List[UploadedFilePart], pdf_page_info: Optional[dict] = None) -> CategorizedFiles:
    """
    Bucket uploaded files by role.

    Args:
        files: Uploaded parts in request order
        pdf_page_info: Optional dict with answerPage / problemPage /
            modelAnswerPage page range strings

    Returns:
        CategorizedFiles with each primary bucket filled from "other" files
        when it would otherwise be empty
    """
    pdf_page_info = pdf_page_info or {}
    page_ranges = [
        (STUDENT, parse_page_range(pdf_page_info.get('answerPage'))),
        (PROBLEM, parse_page_range(pdf_page_info.get('problemPage'))),
        (MODEL_ANSWER, parse_page_range(pdf_page_info.get('modelAnswerPage'))),
    ]

    categorized = CategorizedFiles()
    for part in files:
        for bucket in classify_file(part, page_ranges):
            categorized.bucket(bucket).append(part)

    # Fill empty primary buckets from "other", earliest file first
    fallback_pool = list(categorized.other_files)
    for bucket in PRIMARY_BUCKETS:
        target = categorized.bucket(bucket)
        if not target and fallback_pool:
            target.append(fallback_pool.pop(0))
    categorized.other_files = fallback_pool

    return categorized
