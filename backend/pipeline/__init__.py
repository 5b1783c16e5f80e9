"""
Media delivery and AI-video generation pipeline package.

This package contains the core components:
- Asset resolution with path and ownership guards
- On-the-fly thumbnail transformation and watermarking
- Storyboard composition for generation prompts
- Generation job orchestration (start/poll)
- Remote persistence relay into the tenant's storage
- Error handling and failure policies
"""

__version__ = "0.1.0"

from .error_handler import PipelineError, ErrorCode, FailurePolicy, Operation, policy_for

__all__ = [
    "PipelineError",
    "ErrorCode",
    "FailurePolicy",
    "Operation",
    "policy_for",
]
