"""
MistakeBook Backend — Pydantic Schemas
=======================================

What:  Domain and API contract models.

Modules:
    - recognition.py: RecognitionResult, enums, recognize / batch payloads
    - question.py:    Stored question records returned after persistence
    - common.py:      Error and health responses shared by every route
"""
