"""Impact simulation (dry-run) for candidate rule versions.

Before a version is activated, an impact run evaluates it against every entity
of its rule's type owned by the tenant and records, per entity, whether the
version would trigger and with which severity and due date. Results are
projections only; they never become findings.

Components:
- PolicyImpactRepository   — PolicyImpactRun / PolicyImpactResult persistence
- ImpactSimulationService  — start, execute, cancel and read runs
- ImpactRunScheduler       — asyncio task registry running executions in the
                             background, each with its own session
"""

import asyncio
import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction, async_sessionmaker

from kontra_policy_engine.adapters.entity_source import SqlEntitySource
from kontra_policy_engine.adapters.repositories import RuleRepository, to_date
from kontra_policy_engine.api.schemas import (
    ImpactResultResponse,
    ImpactRunDetailResponse,
    ImpactRunResponse,
    ImpactRunStartResponse,
)
from kontra_policy_engine.common.auth import TenantContext
from kontra_policy_engine.common.database import BaseRepository
from kontra_policy_engine.common.errors import ConflictError
from kontra_policy_engine.common.observability import get_logger
from kontra_policy_engine.core.actions import first_due_date
from kontra_policy_engine.core.conditions import ConditionFailurePolicy, evaluate, parse_condition, snapshot_inputs
from kontra_policy_engine.core.interfaces import IEntitySource, IRuleRepository
from kontra_policy_engine.core.models import (
    RUN_CANCELLED,
    RUN_COMPLETE,
    RUN_FAILED,
    RUN_RUNNING,
    PolicyImpactResult,
    PolicyImpactRun,
    PolicyRuleVersion,
)
from kontra_policy_engine.settings import Settings

logger = get_logger(__name__)

DEFAULT_ENTITY_TYPE = "loan"


class RunNotRunningError(Exception):
    """Raised inside the completion savepoint when the run already left running status."""

    def __init__(self, run_id: uuid.UUID) -> None:
        super().__init__(f"Impact run {run_id} is no longer running")
        self.run_id = run_id


class PolicyImpactRepository(BaseRepository[PolicyImpactRun]):
    """Repository for PolicyImpactRun and PolicyImpactResult persistence.

    Args:
        session: The primary DB async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, PolicyImpactRun)

    async def create_run(
        self,
        tenant: TenantContext,
        pack_id: uuid.UUID | None,
        rule_version_id: uuid.UUID,
        created_by: uuid.UUID | None,
    ) -> PolicyImpactRun:
        """Create a run in running status."""
        run = PolicyImpactRun(
            tenant_id=tenant.tenant_id,
            pack_id=pack_id,
            rule_version_id=rule_version_id,
            status=RUN_RUNNING,
            created_by=created_by,
        )
        return await self.add(run)

    async def get_run(self, run_id: uuid.UUID, tenant: TenantContext, reload: bool = False) -> PolicyImpactRun:
        """Retrieve a run by ID.

        Args:
            run_id: The run UUID.
            tenant: The tenant context.
            reload: Overwrite any copy already in the session with the stored row.

        Raises:
            NotFoundError: If not found.
        """
        if not reload:
            return await self.get_scoped(run_id, tenant.tenant_id)
        stmt = (
            select(PolicyImpactRun)
            .where(PolicyImpactRun.id == run_id, PolicyImpactRun.tenant_id == tenant.tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()

    def savepoint(self) -> AsyncSessionTransaction:
        return self._session.begin_nested()

    async def add_results(self, rows: list[dict[str, Any]]) -> None:
        """Bulk-insert result rows in a single statement."""
        if rows:
            await self._session.execute(insert(PolicyImpactResult), rows)

    async def list_results(self, run_id: uuid.UUID, tenant: TenantContext, limit: int) -> list[PolicyImpactResult]:
        """Return up to ``limit`` results, triggering entities first."""
        stmt = (
            select(PolicyImpactResult)
            .where(
                PolicyImpactResult.impact_run_id == run_id,
                PolicyImpactResult.tenant_id == tenant.tenant_id,
            )
            .order_by(PolicyImpactResult.would_trigger.desc(), PolicyImpactResult.entity_id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def finish_if_running(
        self,
        run_id: uuid.UUID,
        tenant: TenantContext,
        status: str,
        error: str | None = None,
        summary: dict[str, Any] | None = None,
    ) -> bool:
        """Move a run out of running status unless it already left it.

        Returns:
            True if this call changed the run.
        """
        values: dict[str, Any] = {
            "status": status,
            "error": error,
            "completed_at": datetime.now(UTC),
            "updated_at": datetime.now(UTC),
        }
        if summary is not None:
            values["summary"] = summary
        stmt = (
            update(PolicyImpactRun)
            .where(
                PolicyImpactRun.id == run_id,
                PolicyImpactRun.tenant_id == tenant.tenant_id,
                PolicyImpactRun.status == RUN_RUNNING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0


class ImpactSimulationService:
    """Runs candidate rule versions over a tenant's entity population.

    Args:
        impact_repo: Repository for runs and results.
        rule_repo: Repository implementing IRuleRepository.
        entity_source: Source of the entities to simulate against.
        failure_policy: Treatment of malformed conditions during the scan.
        result_page_size: Results returned by get_run.
    """

    def __init__(
        self,
        impact_repo: PolicyImpactRepository,
        rule_repo: IRuleRepository,
        entity_source: IEntitySource,
        failure_policy: ConditionFailurePolicy = ConditionFailurePolicy.NEVER_TRIGGER,
        result_page_size: int = 50,
    ) -> None:
        self._impact_repo = impact_repo
        self._rule_repo = rule_repo
        self._entity_source = entity_source
        self._failure_policy = failure_policy
        self._result_page_size = result_page_size

    async def start_run(
        self,
        tenant: TenantContext,
        rule_version_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
        scheduler: "ImpactRunScheduler | None" = None,
    ) -> ImpactRunStartResponse:
        """Create a running run and hand it to the scheduler.

        With a scheduler the run is committed first so the background session
        can see it, and the call returns while the run is still running.
        Without one the run executes before returning.

        Raises:
            NotFoundError: If the rule version does not exist.
        """
        version = await self._rule_repo.get_version(rule_version_id, tenant)
        run = await self._impact_repo.create_run(
            tenant=tenant,
            pack_id=version.rule.pack_id,
            rule_version_id=version.id,
            created_by=actor_id,
        )
        logger.info(
            "Impact run started",
            tenant_id=str(tenant.tenant_id),
            run_id=str(run.id),
            rule_version_id=str(version.id),
            background=scheduler is not None,
        )

        if scheduler is not None:
            await self._impact_repo.commit()
            scheduler.submit(tenant, run.id)
            return ImpactRunStartResponse(run_id=run.id, status=RUN_RUNNING)

        finished = await self.execute_run(tenant, run.id)
        return ImpactRunStartResponse(run_id=run.id, status=finished.status)

    async def execute_run(
        self,
        tenant: TenantContext,
        run_id: uuid.UUID,
        today: date | None = None,
    ) -> ImpactRunResponse:
        """Scan the population and complete the run.

        The results and the completed status share one savepoint, and the run
        is only completed if it is still running. A run cancelled while the
        scan was in flight keeps its cancelled status and no results. Any
        other error rolls the results back and marks the run failed.

        Args:
            tenant: The tenant context.
            run_id: A run in running status.
            today: Reference date for relative due dates.

        Returns:
            The run in its terminal state.
        """
        run = await self._impact_repo.get_run(run_id, tenant)
        if run.status != RUN_RUNNING:
            logger.info("Impact run no longer running, skipping", run_id=str(run_id), status=run.status)
            return _run_to_response(run)

        version = await self._rule_repo.get_version(run.rule_version_id, tenant)

        try:
            rows, summary = await self._scan(tenant, run.id, version, today)
            async with self._impact_repo.savepoint():
                await self._impact_repo.add_results(rows)
                if not await self._impact_repo.finish_if_running(run_id, tenant, RUN_COMPLETE, summary=summary):
                    raise RunNotRunningError(run_id)
        except RunNotRunningError:
            run = await self._impact_repo.get_run(run_id, tenant, reload=True)
            logger.info(
                "Impact run left running status during the scan, results discarded",
                tenant_id=str(tenant.tenant_id),
                run_id=str(run_id),
                status=run.status,
            )
            return _run_to_response(run)
        except Exception as exc:
            logger.exception(
                "Impact run failed",
                tenant_id=str(tenant.tenant_id),
                run_id=str(run_id),
                error=str(exc),
            )
            await self._impact_repo.finish_if_running(run_id, tenant, RUN_FAILED, error=str(exc))
            run = await self._impact_repo.get_run(run_id, tenant, reload=True)
            return _run_to_response(run)

        run = await self._impact_repo.get_run(run_id, tenant, reload=True)
        logger.info("Impact run complete", tenant_id=str(tenant.tenant_id), run_id=str(run_id), **summary)
        return _run_to_response(run)

    async def _scan(
        self,
        tenant: TenantContext,
        run_id: uuid.UUID,
        version: PolicyRuleVersion,
        today: date | None,
    ) -> tuple[list[dict[str, Any]], dict[str, Any]]:
        """Evaluate ``version`` against every entity; returns result rows and the summary."""
        rule = version.rule
        entity_type = rule.applies_to or DEFAULT_ENTITY_TYPE
        node = parse_condition(version.conditions or {}, self._failure_policy)
        entities = await self._entity_source.list_entities(tenant, entity_type)
        # The projection uses the first set_due_date action only
        due_date = to_date(first_due_date(version.actions, today))

        rows: list[dict[str, Any]] = []
        trigger_count = 0
        for entity in entities:
            context = {entity_type: entity}
            would_trigger = evaluate(node, context)
            if would_trigger:
                trigger_count += 1
            rows.append(
                {
                    "tenant_id": tenant.tenant_id,
                    "impact_run_id": run_id,
                    "entity_type": entity_type,
                    "entity_id": str(entity.get("id")),
                    "would_trigger": would_trigger,
                    "severity": version.severity,
                    "due_date": due_date,
                    "details": {
                        "rule_name": rule.name,
                        "inputs_snapshot": snapshot_inputs(node, context, entity_type),
                    },
                }
            )

        summary = {
            "total_entities": len(rows),
            "would_trigger": trigger_count,
            "no_trigger": len(rows) - trigger_count,
            "severity": version.severity,
        }
        return rows, summary

    async def run_inline(
        self,
        tenant: TenantContext,
        rule_version_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
    ) -> ImpactRunDetailResponse:
        """Start and execute a run in the caller's session, returning its results."""
        started = await self.start_run(tenant, rule_version_id, actor_id)
        return await self.get_run(tenant, started.run_id)

    async def get_run(self, tenant: TenantContext, run_id: uuid.UUID) -> ImpactRunDetailResponse:
        """Return a run and its first page of results.

        Raises:
            NotFoundError: If the run does not exist.
        """
        run = await self._impact_repo.get_run(run_id, tenant)
        results = await self._impact_repo.list_results(run_id, tenant, self._result_page_size)
        return ImpactRunDetailResponse(
            run=_run_to_response(run),
            results=[_result_to_response(r) for r in results],
        )

    async def cancel_run(
        self,
        tenant: TenantContext,
        run_id: uuid.UUID,
        scheduler: "ImpactRunScheduler | None" = None,
    ) -> ImpactRunResponse:
        """Cancel a running run. No results of a cancelled run are kept.

        Raises:
            NotFoundError: If the run does not exist.
            ConflictError: If the run already finished.
        """
        run = await self._impact_repo.get_run(run_id, tenant)
        if run.status != RUN_RUNNING:
            raise ConflictError(
                f"Impact run is {run.status} and cannot be cancelled",
                details={"run_id": str(run_id), "status": run.status},
            )

        if scheduler is not None:
            await scheduler.cancel(run_id)
        await self.mark_cancelled(tenant, run_id)
        run = await self._impact_repo.get_run(run_id, tenant, reload=True)
        return _run_to_response(run)

    async def mark_cancelled(self, tenant: TenantContext, run_id: uuid.UUID) -> bool:
        changed = await self._impact_repo.finish_if_running(run_id, tenant, RUN_CANCELLED)
        if changed:
            logger.info("Impact run cancelled", tenant_id=str(tenant.tenant_id), run_id=str(run_id))
        return changed


ServiceFactory = Callable[[AsyncSession], ImpactSimulationService]


class ImpactRunScheduler:
    """Runs impact executions as background asyncio tasks.

    Every execution gets its own session from ``session_factory`` and commits
    on its own. Cancelling a task rolls back its uncommitted results and marks
    the run cancelled in a fresh session.

    Args:
        session_factory: Produces sessions for background work.
        service_factory: Builds an ImpactSimulationService over a session.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], service_factory: ServiceFactory) -> None:
        self._session_factory = session_factory
        self._service_factory = service_factory
        self._tasks: dict[uuid.UUID, asyncio.Task[None]] = {}

    def submit(self, tenant: TenantContext, run_id: uuid.UUID) -> asyncio.Task[None]:
        task = asyncio.create_task(self._execute(tenant, run_id), name=f"impact-run-{run_id}")
        self._tasks[run_id] = task
        return task

    def is_running(self, run_id: uuid.UUID) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    async def cancel(self, run_id: uuid.UUID) -> bool:
        """Cancel a run's task and wait for it to unwind.

        Returns:
            True if a live task was cancelled.
        """
        task = self._tasks.get(run_id)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait({task})
        return True

    async def shutdown(self) -> None:
        """Cancel every live task and wait for all of them to finish."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Impact run scheduler stopped", cancelled=len(tasks))

    async def _execute(self, tenant: TenantContext, run_id: uuid.UUID) -> None:
        try:
            async with self._session_factory() as session:
                service = self._service_factory(session)
                try:
                    await service.execute_run(tenant, run_id)
                    await session.commit()
                except asyncio.CancelledError:
                    await session.rollback()
                    raise
        except asyncio.CancelledError:
            async with self._session_factory() as session:
                await self._service_factory(session).mark_cancelled(tenant, run_id)
                await session.commit()
            raise
        finally:
            self._tasks.pop(run_id, None)


def build_impact_service(session: AsyncSession, settings: Settings) -> ImpactSimulationService:
    """Wire an ImpactSimulationService over ``session`` from settings."""
    return ImpactSimulationService(
        impact_repo=PolicyImpactRepository(session),
        rule_repo=RuleRepository(session),
        entity_source=SqlEntitySource(
            session,
            entity_tables=settings.entity_tables,
            tenant_column=settings.entity_tenant_column,
            id_column=settings.entity_id_column,
        ),
        failure_policy=settings.condition_failure_policy,
        result_page_size=settings.impact_result_page_size,
    )


def _run_to_response(run: PolicyImpactRun) -> ImpactRunResponse:
    return ImpactRunResponse(
        id=run.id,
        tenant_id=run.tenant_id,
        pack_id=run.pack_id,
        rule_version_id=run.rule_version_id,
        status=run.status,
        summary=run.summary,
        error=run.error,
        created_by=run.created_by,
        created_at=run.created_at,
        completed_at=run.completed_at,
    )


def _result_to_response(result: PolicyImpactResult) -> ImpactResultResponse:
    return ImpactResultResponse(
        entity_type=result.entity_type,
        entity_id=result.entity_id,
        would_trigger=result.would_trigger,
        severity=result.severity,
        due_date=result.due_date,
        details=result.details or {},
    )
