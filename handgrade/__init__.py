"""
Handgrade Backend Package
=========================

Flask-based backend for grading handwritten short-answer exam responses.

Structure:
- routes/: API route blueprints
- services/: Grading pipeline, regrade tokens, quota and rate gates
- config.py: Configuration management
- auth.py: Supabase JWT authentication
"""

from .config import config, Config

__version__ = "1.0.0"

__all__ = ['config', 'Config']
