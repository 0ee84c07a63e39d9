"""
MistakeBook Backend — API Routes Package
=========================================

Route Inventory:
    - recognize.py:  POST /api/ai/recognize        (one base64 image)
                     POST /api/ai/recognize/batch  (multipart, batch queue)
    - health.py:     GET  /health                  (database + providers)
    - deps.py:       bearer credential and orchestrator dependencies

Routes stay thin: decode the request, call a service, shape the response.
"""
