"""
QuizCache - application cache for the AI quiz generation platform.
"""

__version__ = "1.0.0"
