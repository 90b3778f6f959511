"""
SDK for token_meter.

Provides the rewrite collaborator used by the accounting orchestrator.
"""

from .rewrite_client import OpenAIRewriter, RewriteResult

__all__ = ["OpenAIRewriter", "RewriteResult"]
