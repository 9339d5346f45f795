"""
audit — Security event logging.

Sub-modules:
    monitor — SecurityMonitor: append-only audit log, failed-login counters
"""
