"""Adapters — storage and external integrations for the policy engine.

Contains:
- repositories.py       — SQLAlchemy repositories for the primary DB
- entity_source.py      — Read access to evaluated entities (loans, ...)
- impact_simulation.py  — Impact run repository, service and background scheduler
"""

__all__: list[str] = []
