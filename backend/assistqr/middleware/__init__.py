"""
AssistQR Backend — Middleware Package
=======================================

Middleware Chain (order matters):
    Request → [Rate Limit] → [Request ID] → [Logging] → [GZip] → [CORS] → Route

    1. Rate Limit first: reject abuse before any database or provider work
    2. Request ID: correlation id for every log line of the request
    3. Logging: one access line per request, with duration
"""
