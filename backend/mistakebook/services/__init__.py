"""
MistakeBook Backend — Services Layer
=====================================

Service Inventory:
    - image_service:      decode base64 / data URLs, local format and size checks
    - normalizer:         raw backend output → RecognitionResult, JSON recovery
    - provider_base:      RecognitionProvider interface, HTTP base, CircuitBreaker
    - dashscope_provider: Alibaba DashScope qwen-vl (primary)
    - baidu_provider:     Baidu OCR + keyword heuristics (secondary, terminal)
    - gemini_provider:    Google Gemini (tertiary)
    - orchestrator:       preferred provider + fallback chain
    - batch_queue:        chunked concurrency, per-item retry, progress events
    - question_service:   stores results as mistake-notebook questions

Call direction:
    routes → batch_queue → orchestrator → providers → normalizer
    routes → question_service
"""
