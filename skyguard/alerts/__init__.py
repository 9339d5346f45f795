"""
alerts — Role-based alert fan-out, eligibility and delivery tracking.

Sub-modules:
    channels/       — Per-channel delivery sinks (SMS, push, email, in-app)
    alert_service   — Fan-out engine: validate, rate-limit, persist, resolve
    eligibility     — Pure recipient resolution from roles + preferences
    preferences     — Per-user opt-in flag store
    directory       — User identity, role and contact details
    rate_limiter    — Sliding-window limiter per operation key
    sanitize        — Markup stripping and composition bounds
    tracker         — Read receipts and background channel dispatch
    models          — Data structures shared across the system
"""
