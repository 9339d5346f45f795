"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON logging
    middleware      — request ids, timing
    errors          — exception hierarchy & handlers
    database        — async SQLAlchemy engine and sessions
    tables          — ORM table mappings
    health          — health check and system self-test
"""
