"""Logging setup for the access log.

structlog renders every line as JSON on stdout, with the request's trace id
merged in from contextvars.
"""
