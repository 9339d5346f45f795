"""
weather — Threshold monitoring on live weather readings.

Sub-modules:
    client  — OpenWeatherMap fetch (conditions, advisories, AQI, forecast)
    rules   — admin-managed threshold rules and their evaluation
    monitor — per-location evaluation cycle feeding the alert fan-out
"""
