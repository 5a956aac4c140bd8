"""
GL resolution module.

Maps matched patterns to GL accounts and computes the confidence score
that decides between auto-approval and human review.
"""

from .gl_resolver import GLResolver

__all__ = [
    "GLResolver",
]
