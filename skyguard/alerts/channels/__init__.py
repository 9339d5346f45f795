"""
channels — Per-channel delivery sinks.

Each channel module exposes:
    send(message, recipient) → DeliveryAttempt

Channels are stateless functions. Retry logic lives in tracker.
"""
