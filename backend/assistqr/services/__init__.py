"""
AssistQR Backend — Services Layer
===================================

Service Inventory:
    - vehicle_store:   QR token → vehicle and emergency contacts
    - storage_service: photo validation, storage and lookup
    - report_service:  validate → store photos → commit → notify
    - sms_commands:    SMS webhook variants and the REPORT grammar
    - notifications/:  provider chains and the concurrent fan-out

Services never touch HTTP; routes and the offline client both sit on top
of them.
"""
