"""Service settings for kontra-policy-engine.

All settings use the KONTRA_POLICY_ environment prefix and cover:
- Primary database connection
- Logging
- Condition evaluation failure policy
- Entity source table mapping
- Impact simulation execution
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from kontra_policy_engine.core.conditions import ConditionFailurePolicy


class Settings(BaseSettings):
    """Settings for kontra-policy-engine.

    Environment variable prefix: KONTRA_POLICY_
    """

    service_name: str = "kontra-policy-engine"
    api_prefix: str = Field(default="/api/v1/policy", description="Route prefix for the policy API.")

    # -------------------------------------------------------------------------
    # Primary database
    # -------------------------------------------------------------------------

    database_url: str = Field(
        default="postgresql+asyncpg://localhost/kontra",
        description="SQLAlchemy async URL for the primary database.",
    )
    db_pool_size: int | None = Field(
        default=10,
        description="Connection pool size. Set to null for SQLite.",
    )
    db_max_overflow: int | None = Field(
        default=5,
        description="Max overflow connections above db_pool_size. Set to null for SQLite.",
    )
    db_echo: bool = Field(default=False, description="Log every emitted SQL statement.")

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="INFO", description="Root log level.")
    log_json: bool = Field(default=True, description="Render logs as JSON lines.")

    # -------------------------------------------------------------------------
    # Condition evaluation
    # -------------------------------------------------------------------------

    condition_failure_policy: ConditionFailurePolicy = Field(
        default=ConditionFailurePolicy.NEVER_TRIGGER,
        description="How stored conditions with unknown operators or malformed shapes behave "
        "at evaluation time: reject (raise), never_trigger (evaluate false) or "
        "always_trigger (evaluate true). Authoring always rejects malformed conditions.",
    )

    # -------------------------------------------------------------------------
    # Entity source
    # -------------------------------------------------------------------------

    entity_tables: dict[str, str] = Field(
        default_factory=lambda: {"loan": "loans"},
        description="Maps a rule's applies_to entity type to the table holding those entities.",
    )
    entity_tenant_column: str = Field(
        default="org_id",
        description="Column on entity tables holding the owning tenant id.",
    )
    entity_id_column: str = Field(default="id", description="Primary key column on entity tables.")

    # -------------------------------------------------------------------------
    # Impact simulation and findings
    # -------------------------------------------------------------------------

    impact_run_in_background: bool = Field(
        default=True,
        description="Run impact simulations as background tasks polled by run id. "
        "When false the POST /impact/run request blocks until the run is terminal.",
    )
    impact_result_page_size: int = Field(
        default=50,
        description="Maximum number of impact results returned by GET /impact/{run_id}.",
    )
    findings_list_limit: int = Field(default=200, description="Maximum findings returned by GET /findings.")

    model_config = SettingsConfigDict(env_prefix="KONTRA_POLICY_", env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
