"""
Handgrade Services
==================

Business logic for the grading pipeline. Nothing in here imports Flask.

Services:
- file_categorizer: bucket uploaded files into student/problem/model/other
- content_sequencer: ordered multimodal content for the model call
- model_clients: Gemini / OpenAI / Anthropic clients behind one interface
- transcription: strict OCR pass over the student's handwriting
- grading_service: grading prompt, model call, and response parsing
- score_reconciler: canonical 0-100 score from raw score and deductions
- regrade_tokens: signed free-regrade capability tokens
- rate_limit: in-process sliding-window limiter
- usage_quota: Supabase quota RPCs
- grading_queue: process-wide cap on concurrent grading requests
- grading_pipeline: per-request orchestration
"""

# Services are imported directly when needed to avoid circular imports
# Example: from handgrade.services.grading_pipeline import GradingPipeline

__all__ = [
    'file_categorizer',
    'content_sequencer',
    'model_clients',
    'transcription',
    'grading_service',
    'score_reconciler',
    'regrade_tokens',
    'rate_limit',
    'usage_quota',
    'grading_queue',
    'grading_pipeline',
]
