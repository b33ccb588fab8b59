#!/usr/bin/env python3
"""
Handgrade - grading service for handwritten short answers
=========================================================
Run: python3 -m handgrade.app
Then POST to: http://localhost:3000/api/grade
"""
import logging
import re

from flask import Flask, jsonify
from flask_cors import CORS

from handgrade.auth import init_auth
from handgrade.config import HOST, LOG_LEVEL, MAX_TOTAL_SIZE, PORT, Config
from handgrade.errors import HandgradeError, RateLimitedError
from handgrade.routes import register_routes
from handgrade.services.grading_pipeline import GradingPipeline
from handgrade.services.grading_queue import GradingQueue
from handgrade.services.grading_service import GradingStage
from handgrade.services.model_clients import FallbackModelClient, create_model_client
from handgrade.services.rate_limit import GradingRateGate
from handgrade.services.regrade_tokens import RegradeTokenService
from handgrade.services.transcription import PassThroughTranscriber, StrictTranscriber
from handgrade.services.usage_quota import create_usage_store

logger = logging.getLogger(__name__)

# Process-wide, shared by every app built in this process
_grading_queue = None


class SensitiveDataFilter(logging.Filter):
    """Mask token, key, secret, and password values in log messages."""

    PATTERNS = [
        re.compile(r'([?&](?:token|access_token|key|api_key|secret|password)=)[^&\s]+', re.IGNORECASE),
        re.compile(r'(Bearer\s+)[A-Za-z0-9\-_\.]+', re.IGNORECASE),
    ]

    def filter(self, record):
        message = record.getMessage()
        masked = message
        for pattern in self.PATTERNS:
            masked = pattern.sub(r'\1***', masked)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def configure_logging(level=LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    sensitive = SensitiveDataFilter()
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, SensitiveDataFilter) for f in handler.filters):
            handler.addFilter(sensitive)
    logging.getLogger('httpx').setLevel(logging.WARNING)


def get_grading_queue(settings):
    global _grading_queue
    if _grading_queue is None:
        _grading_queue = GradingQueue.from_config(settings)
    return _grading_queue


def create_app(settings=None, model_client=None, ocr_client=None, usage_store=None,
               token_service=None, rate_gate=None, grading_queue=None):
    """
    Build the Flask app.

    Every collaborator can be injected; anything left out is built from
    ``settings`` (a fresh Config read from the environment by default).
    """
    settings = settings or Config.from_env()

    if model_client is None:
        model_client = FallbackModelClient(
            create_model_client(settings.model_name, settings),
            settings.rate_limit_fallback_model,
        )
    if ocr_client is None:
        if settings.ocr_model_name and settings.ocr_model_name != settings.model_name:
            ocr_client = create_model_client(settings.ocr_model_name, settings)
        else:
            ocr_client = model_client

    strict = StrictTranscriber(ocr_client, timeout_seconds=settings.ocr_timeout_seconds)
    transcriber = strict if settings.strict_transcription else PassThroughTranscriber()

    token_service = token_service or RegradeTokenService.from_config(settings)
    pipeline = GradingPipeline(
        transcriber=transcriber,
        grading_stage=GradingStage(model_client, timeout_seconds=settings.grading_timeout_seconds),
        usage_store=usage_store or create_usage_store(settings),
        token_service=token_service,
        rate_gate=rate_gate or GradingRateGate.from_config(settings),
        label_concurrency=settings.label_concurrency,
        request_timeout_seconds=settings.request_timeout_seconds,
    )

    app = Flask(__name__)
    # Hard cap on the request body; per-file limits are checked in the routes
    app.config["MAX_CONTENT_LENGTH"] = 2 * MAX_TOTAL_SIZE
    CORS(app)
    init_auth(app, settings)
    register_routes(app, pipeline, strict, grading_queue or get_grading_queue(settings), token_service)

    @app.errorhandler(HandgradeError)
    def handle_handgrade_error(error):
        response = jsonify(error.to_dict())
        response.status_code = error.status_code
        if isinstance(error, RateLimitedError):
            response.headers['Retry-After'] = str(error.retry_after)
        return response

    @app.errorhandler(413)
    def handle_too_large(error):
        return jsonify({"status": "error", "message": "Upload is too large."}), 413

    app.extensions['handgrade'] = {
        'settings': settings,
        'pipeline': pipeline,
        'ocr_transcriber': strict,
        'token_service': token_service,
    }
    logger.info("Handgrade ready (model=%s, strict transcription=%s, regrade tokens=%s)",
                settings.model_name, settings.strict_transcription, token_service.enabled)
    return app


def main():
    configure_logging()
    app = create_app()
    app.run(host=HOST, port=PORT)


if __name__ == '__main__':
    main()
