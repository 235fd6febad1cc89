"""
AssistQR — Accident Reporting for QR-Tagged Vehicles
======================================================

Layers:
    ┌─────────────────────────────────────┐
    │  routes/        HTTP surface        │
    ├─────────────────────────────────────┤
    │  services/      ingestion, SMS      │
    │                 commands, fan-out   │
    ├─────────────────────────────────────┤
    │  models/ schemas/  ORM + API shapes │
    ├─────────────────────────────────────┤
    │  database.py    async sessions      │
    └─────────────────────────────────────┘

    offline/ is the bystander-side client: a durable local queue and the
    sync engine that drains it into POST /accidents/report.
"""

__version__ = "1.0.0"
