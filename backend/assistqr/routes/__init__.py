"""
AssistQR Backend — API Routes Package
=======================================

Route Inventory:
    - accidents.py:  POST /accidents/report          (page and sync client)
                     POST /accidents/report-offline  (cellular-only, SMS fan-out)
                     POST /accidents/sms-webhook     (SMS text commands)
    - qr.py:         GET  /qr/help?v=<token>         (public vehicle identity)
    - files.py:      GET  /uploads/{path}            (stored accident photos)
    - health.py:     GET  /health                    (service health check)

Routes stay thin: they extract form fields and files, call a service, and
pick the response format. Validation and persistence live in services.
"""
