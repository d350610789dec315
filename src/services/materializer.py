"""Occurrence materializer: keeps concrete task rows ahead of recurring templates."""

import logging
from datetime import datetime

from pydantic import BaseModel, Field

from src.core.clock import Clock, utc_now
from src.core.config import settings
from src.core.db_client import DBClient, DuplicateRecordError, sanitize_param
from src.core.logging import span
from src.core.recurrence import generate_occurrences, parse_recurrence_rule
from src.domain.task import GeneratedOccurrence, Task, TaskStatus
from src.services.projection import TaskProjection


logger = logging.getLogger(__name__)


class MaterializationFailure(BaseModel):
    template_id: str
    error: str


class MaterializationReport(BaseModel):
    """Result of materializing every active template."""

    templates_processed: int = Field(default=0, description="Templates examined")
    occurrences_created: int = Field(default=0, description="New occurrence rows")
    failures: list[MaterializationFailure] = Field(default_factory=list, description="Templates that failed")


class OccurrenceMaterializer:
    """Creates occurrence rows for the next N days without duplicating earlier runs.

    ``(source_task_id, recurrence_index)`` identifies an occurrence; rows are
    inserted only when absent and the unique index on that pair is the backstop
    for concurrent runs.
    """

    def __init__(
        self,
        db: DBClient,
        projection: TaskProjection,
        window_days: int | None = None,
        now: Clock = utc_now,
    ) -> None:
        self._db = db
        self._projection = projection
        self._window_days = window_days or settings.materialization_window_days
        self._now = now

    async def materialize(
        self,
        template: Task,
        window_days: int | None = None,
        from_date: datetime | None = None,
    ) -> int:
        """Ensure occurrences exist for one template.

        Returns:
            Number of occurrence rows created

        Raises:
            ValueError: The template's rule cannot be evaluated
            DatabaseError: A store failure other than a duplicate insert
        """
        with span("materializer.materialize"):
            rule = parse_recurrence_rule(template.recurrence_rule)
            if rule is None:
                return 0

            source = sanitize_param(template.id)
            existing_count = await self._db.count_records(
                collection="tasks", filter_query=f'source_task_id = "{source}"'
            )
            occurrences = generate_occurrences(
                template,
                rule,
                from_date or self._now(),
                window_days or self._window_days,
                existing_count,
            )

            created = 0
            for occurrence in occurrences:
                existing = await self._db.get_first_record(
                    collection="tasks",
                    filter_query=f'source_task_id = "{source}" && recurrence_index = "{occurrence.recurrence_index}"',
                )
                if existing is not None:
                    continue
                try:
                    await self._insert(template, occurrence)
                except DuplicateRecordError:
                    logger.info(
                        "Occurrence already materialized",
                        extra={"template_id": template.id, "recurrence_index": occurrence.recurrence_index},
                    )
                    continue
                created += 1

            if created:
                logger.info(
                    "Materialized occurrences",
                    extra={"tenant_id": template.tenant_id, "template_id": template.id, "created_count": created},
                )
            return created

    async def _insert(self, template: Task, occurrence: GeneratedOccurrence) -> None:
        async with self._db.transaction():
            now = self._now()
            row = await self._db.create_record(
                collection="tasks",
                data={
                    **occurrence.model_dump(mode="python"),
                    "type": occurrence.type.value,
                    "priority": occurrence.priority.value,
                    "status": TaskStatus.PENDING.value,
                    "is_recurring": False,
                    "created_at": now,
                    "updated_at": now,
                },
            )
            if template.has_checklist:
                await self._projection.copy_checklist_items(
                    tenant_id=template.tenant_id,
                    source_task_id=template.id,
                    target_task_id=row["id"],
                    now=now,
                )

    async def list_templates(self, tenant_id: str | None = None) -> list[Task]:
        filter_query = f'is_recurring = "true" && status != "{TaskStatus.CANCELLED}"'
        if tenant_id:
            filter_query = f'tenant_id = "{sanitize_param(tenant_id)}" && {filter_query}'
        records = await self._db.list_all_records(collection="tasks", filter_query=filter_query, sort="created_at")
        return [Task(**record) for record in records]

    async def materialize_all(self, tenant_id: str | None = None) -> MaterializationReport:
        """Materialize every active template; a failing template does not stop the others."""
        with span("materializer.materialize_all"):
            report = MaterializationReport()
            for template in await self.list_templates(tenant_id):
                report.templates_processed += 1
                try:
                    report.occurrences_created += await self.materialize(template)
                except Exception as e:
                    logger.error(
                        "Template materialization failed",
                        extra={"tenant_id": template.tenant_id, "template_id": template.id, "error": str(e)},
                    )
                    report.failures.append(MaterializationFailure(template_id=template.id, error=str(e)))

            logger.info(
                "Materialization run finished",
                extra={
                    "tenant_id": tenant_id,
                    "templates_processed": report.templates_processed,
                    "occurrences_created": report.occurrences_created,
                    "failure_count": len(report.failures),
                },
            )
            return report
