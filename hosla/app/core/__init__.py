"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON logging
    middleware      — request id, timing and access logging
    errors          — exception hierarchy & handlers
    health          — health check aggregation
    database        — async SQLAlchemy engine and sessions
    cache           — Redis client for shared counters
"""
