"""
MistakeBook Backend — Middleware Package
=========================================

Middleware Chain:
    Request → [Request ID] → [Access Log] → [GZip] → [CORS] → Route Handler

    The request id is assigned first so the access log line and every
    provider log line of the same request carry it.
"""
