"""
MistakeBook Backend — Recognition Service Package
==================================================

What: AI question recognition for the mistake notebook: students upload a
      photo of exam questions and get back structured questions (content,
      subject, knowledge point, difficulty, answer, explanation).

Layers:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← /api/ai/recognize[/batch], /health
    ├─────────────────────────────────────┤
    │   Batch Queue  →  Orchestrator      │  ← concurrency, retry, fallback chain
    ├─────────────────────────────────────┤
    │  Provider Adapters  →  Normalizer   │  ← DashScope, Baidu OCR, Gemini
    ├─────────────────────────────────────┤
    │   Question Store (SQLAlchemy)       │  ← optional save of the results
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
