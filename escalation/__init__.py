"""Emergency escalation for patient monitoring.

Turns a single "I need help" action into a validated, rate-limited, auditable
notification to a patient's private emergency contact, with optional,
consent-gated location sharing.
"""
