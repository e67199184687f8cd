"""
emergency — Emergency alert lifecycle and trust-circle notification fan-out.

Sub-modules:
    models          — Alert record, enums, priority ladder, fan-out structures
    store           — Versioned alert storage (in-memory, SQL)
    tables          — SQLAlchemy tables
    trust_circle    — Circle membership and emergency-contact resolution
    channels/       — Push and SMS delivery backends, method routing, retry
    dispatcher      — Per-round fan-out with at-most-once delivery per contact
    state_machine   — Create / resolve / cancel / auto-resolve transitions
    escalation      — Periodic escalation and auto-resolve sweep
    responses       — Trusted-contact replies and their side effects
    rate_limit      — Per-originator alert creation gate
    collaborators   — Points and in-app notification services
    service         — Facade used by the HTTP layer
"""
