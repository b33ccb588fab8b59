"""
Grading API routes for Handgrade.
Handles multipart uploads for grading and transcription, and status polling.
"""
import json
import logging
import re

from flask import Blueprint, g, jsonify, request

from handgrade.config import (
    ALLOWED_MIME_TYPES,
    MAX_FILES_COUNT,
    MAX_LABEL_LENGTH,
    MAX_LABELS_COUNT,
    MAX_SINGLE_FILE_SIZE,
    MAX_TOTAL_SIZE,
)
from handgrade.errors import ValidationError
from handgrade.services.file_categorizer import UploadedFilePart, categorize_files
from handgrade.services.grading_pipeline import GradingRequest

logger = logging.getLogger(__name__)

grading_bp = Blueprint('grading', __name__)

# These will be set by create_app() during initialization
pipeline = None
ocr_transcriber = None
grading_queue = None
token_service = None

DANGEROUS_NAME_PATTERNS = [
    re.compile(r'\.\.'),
    re.compile(r'[/\\]'),
    re.compile(r'[\x00-\x1f]'),
    re.compile(r'^\.+$'),
]
MAX_FILENAME_LENGTH = 255

LABEL_INJECTION_PATTERNS = [
    re.compile(r'ignore\s+previous\s+instructions', re.IGNORECASE),
    re.compile(r'system\s*:\s*', re.IGNORECASE),
    re.compile(r'you\s+are\s+now', re.IGNORECASE),
]


def init_grading_routes(pipeline_ref, transcriber_ref, queue_ref, token_service_ref):
    """Initialize grading routes with the services built by create_app()."""
    global pipeline, ocr_transcriber, grading_queue, token_service
    pipeline = pipeline_ref
    ocr_transcriber = transcriber_ref
    grading_queue = queue_ref
    token_service = token_service_ref


def parse_json_field(name, default, expected_type):
    """Read a JSON-encoded form field; malformed or mistyped values fall back to ``default``."""
    raw = request.form.get(name)
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring malformed %s field", name)
        return default
    if not isinstance(value, expected_type):
        logger.warning("Ignoring %s field of type %s", name, type(value).__name__)
        return default
    return value


def strip_injection_phrases(label):
    for pattern in LABEL_INJECTION_PATTERNS:
        label = pattern.sub('', label)
    return label.strip()


def sanitize_label(label):
    """Strip prompt-injection phrases and enforce the label length limit."""
    if not isinstance(label, str):
        raise ValidationError("Problem labels must be strings.")
    sanitized = strip_injection_phrases(label)

    if len(sanitized) > MAX_LABEL_LENGTH:
        raise ValidationError(f"Problem label is too long (max {MAX_LABEL_LENGTH} characters).")
    if not sanitized:
        raise ValidationError("Please enter a problem label.")
    return sanitized


def validate_filename(name):
    for pattern in DANGEROUS_NAME_PATTERNS:
        if pattern.search(name):
            raise ValidationError("Invalid file name.")
    if len(name) > MAX_FILENAME_LENGTH:
        raise ValidationError("File name is too long.")


def read_uploaded_files(file_roles=None):
    """
    Validate the uploaded files and convert them to UploadedFilePart.

    Raises:
        ValidationError: on missing files, disallowed types, bad names, or size limits
    """
    uploads = [f for f in request.files.getlist('files') if f and f.filename]
    if not uploads:
        raise ValidationError("Please upload at least one file.")
    if len(uploads) > MAX_FILES_COUNT:
        raise ValidationError(f"You can upload at most {MAX_FILES_COUNT} files.")

    file_roles = file_roles or {}
    parts = []
    total_size = 0
    for index, upload in enumerate(uploads):
        name = upload.filename
        mime_type = upload.mimetype
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError(f"File type not allowed: {mime_type}")
        validate_filename(name)

        buffer = upload.read()
        if len(buffer) > MAX_SINGLE_FILE_SIZE:
            raise ValidationError(
                f"File '{name}' is too large ({len(buffer) / 1024 / 1024:.1f}MB). "
                f"Please upload files of {MAX_SINGLE_FILE_SIZE // (1024 * 1024)}MB or less."
            )
        total_size += len(buffer)
        if total_size > MAX_TOTAL_SIZE:
            raise ValidationError("The total size of the uploaded files is too large.")

        role = file_roles.get(str(index))
        logger.debug("File[%d]: %s (%.1fKB) -> role: %s", index, name, len(buffer) / 1024, role or 'auto')
        parts.append(UploadedFilePart(
            buffer=buffer,
            mime_type=mime_type,
            name=name,
            source_file_name=name,
            role=role if isinstance(role, str) else None,
        ))
    return parts


def read_target_labels():
    labels = parse_json_field('targetLabels', None, list)
    if labels is None:
        single = request.form.get('targetLabel')
        labels = [single] if single else []
    if not labels:
        raise ValidationError("Please specify the problem label(s) to grade.")
    if len(labels) > MAX_LABELS_COUNT:
        raise ValidationError(f"You can grade at most {MAX_LABELS_COUNT} problems at once.")

    sanitized = []
    for label in labels:
        clean = sanitize_label(label)
        if clean not in sanitized:
            sanitized.append(clean)
    return sanitized


def _string_map(name):
    """A label-keyed map of strings, with keys cleaned the same way as the labels."""
    mapped = {}
    for key, value in parse_json_field(name, {}, dict).items():
        label = strip_injection_phrases(str(key))
        if isinstance(value, str) and label and len(label) <= MAX_LABEL_LENGTH:
            mapped[label] = value
    return mapped


def read_fingerprint():
    return (request.form.get('deviceFingerprint')
            or request.headers.get('X-Device-Fingerprint')
            or '').strip()


@grading_bp.route('/api/status')
def get_status():
    """Health check and grading queue occupancy."""
    return jsonify({
        "status": "ok",
        "queue": grading_queue.state() if grading_queue is not None else None,
        "regradeTokensEnabled": bool(token_service is not None and token_service.enabled),
    })


@grading_bp.route('/api/grade', methods=['POST'])
def grade():
    """Grade one or more labels against a shared set of uploaded files."""
    labels = read_target_labels()
    file_roles = parse_json_field('fileRoles', {}, dict)
    files = read_uploaded_files(file_roles)

    grading_request = GradingRequest(
        user_id=g.user_id,
        labels=labels,
        files=files,
        pdf_page_info=parse_json_field('pdfPageInfo', {}, dict),
        confirmed_texts=_string_map('confirmedTexts'),
        regrade_tokens=_string_map('regradeTokens'),
        strictness=request.form.get('strictness', 'standard'),
        model_answer_text=(request.form.get('modelAnswerText') or '').strip() or None,
        fingerprint=read_fingerprint(),
    )
    logger.info("Grade request from %s: %d label(s), %d file(s)", g.user_id, len(labels), len(files))

    response = grading_queue.run(pipeline.grade, grading_request)
    return jsonify(response.to_dict())


@grading_bp.route('/api/ocr', methods=['POST'])
def ocr():
    """Transcribe the student's answer only, so it can be confirmed before grading."""
    pipeline.check_rate_limit(g.user_id)

    label = sanitize_label(request.form.get('targetLabel') or '')
    file_roles = parse_json_field('fileRoles', {}, dict)
    files = read_uploaded_files(file_roles)
    categorized = categorize_files(files, parse_json_field('pdfPageInfo', {}, dict))

    text = ocr_transcriber.run(label, categorized.student_files)
    logger.info("OCR complete for %s: %d chars", label, len(text))

    return jsonify({
        "status": "success",
        "ocrResult": {
            "text": text,
            "charCount": len(text),
            "label": label,
        },
    })
