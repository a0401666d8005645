"""
Core modules for Quota Guard.

This package contains the rate limiter, the retry helper and the
limiter factory.
"""
