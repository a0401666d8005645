"""
HTTP surface for Quota Guard.

Rate-limit headers, 429 responses and a small usage accounting service.
"""

from .app import create_app
from .responses import add_rate_limit_headers, rate_limit_headers, rate_limit_response

__all__ = ["create_app", "add_rate_limit_headers", "rate_limit_headers", "rate_limit_response"]
