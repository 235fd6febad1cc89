"""
AssistQR Backend — Notification Fan-out
=========================================

What:  Delivers emergency alerts for a persisted report to every contact
       over email and/or SMS.

Modules:
    - base.py:   provider contract, fallback chain, shared alert types
    - email.py:  Resend → SendGrid → SMTP chain, alert email rendering
    - sms.py:    Fast2SMS / Twilio selection, 160-char message composer
    - fanout.py: concurrent per-(contact, channel) dispatch and aggregation
"""
