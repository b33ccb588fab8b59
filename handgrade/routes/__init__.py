"""
Handgrade API Routes
====================

Usage:
    from handgrade.routes import register_routes
    register_routes(app, pipeline, transcriber, queue, token_service)
"""
from .grading_routes import grading_bp, init_grading_routes


def register_routes(app, pipeline=None, ocr_transcriber=None, grading_queue=None, token_service=None):
    """Register all route blueprints with the Flask app."""
    init_grading_routes(pipeline, ocr_transcriber, grading_queue, token_service)
    app.register_blueprint(grading_bp)


__all__ = [
    'register_routes',
    'grading_bp',
    'init_grading_routes',
]
