"""
Core modules for AI Quota Guard.

This package contains credential storage, local quota tracking, response
parsing and tool orchestration.
"""
