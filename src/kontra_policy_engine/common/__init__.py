"""Shared service plumbing — errors, logging, database, tenant context.

Contains:
- errors.py         — PolicyEngineError hierarchy rendered by the API layer
- observability.py  — structlog configuration and get_logger()
- database.py       — Declarative base, engine lifecycle, session dependency
- auth.py           — TenantContext and the get_current_user dependency
"""

__all__: list[str] = []
