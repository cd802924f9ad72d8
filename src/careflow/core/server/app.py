"""Careflow MCP server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastmcp import FastMCP

from careflow.core.audit.logger import AuditLogger
from careflow.core.config.settings import get_settings
from careflow.core.jobs.queue import AsyncioJobQueue, Clock, JobQueue, utc_now
from careflow.core.notify.notifier import LoggingNotifier, Notifier
from careflow.core.storage.database import CarePlanDatabase
from careflow.core.storage.encryption import EncryptionError, FieldEncryptor
from careflow.core.storage.repository import CarePlanRepository

logger = logging.getLogger(__name__)

SERVER_NAME = "Careflow Care Plans"
SERVER_VERSION = "0.1.0"


def create_app(
    *,
    repository_override: CarePlanRepository | None = None,
    job_queue_override: JobQueue | None = None,
    notifier_override: Notifier | None = None,
    clock_override: Clock | None = None,
) -> FastMCP:
    """Create and configure the Careflow MCP server.

    This is the main application factory. It:
    1. Creates the FastMCP server instance
    2. Opens the encrypted care plan store (unless overridden)
    3. Wires the care plan service to the job queue and notifier
    4. Resumes reminder chains for active plans (timers are armed on startup)
    5. Registers all tools
    """
    settings = get_settings()
    clock = clock_override or utc_now
    job_queue: JobQueue = job_queue_override if job_queue_override is not None else AsyncioJobQueue(clock)

    @asynccontextmanager
    async def lifespan(app: FastMCP):
        # Chains resumed below were enqueued before any loop existed.
        if isinstance(job_queue, AsyncioJobQueue):
            job_queue.arm_pending()
        yield {}

    # --- Server instance ---
    server = FastMCP(
        SERVER_NAME,
        lifespan=lifespan,
        instructions=(
            "Care plan scheduling and clinical alerting. Providers sign care plans; "
            "patients answer the tasks due each day; answers outside clinical bounds "
            "raise alerts to the care team."
        ),
    )

    # --- Initialize encrypted storage ---
    repository: CarePlanRepository | None = None
    if repository_override is not None:
        repository = repository_override
    elif settings.encryption_key:
        try:
            previous = [k for k in settings.encryption_previous_keys.split(",") if k.strip()]
            encryptor = FieldEncryptor(settings.encryption_key, previous_keys=previous)
            database = CarePlanDatabase(settings.db_path)
            database.initialize()
            repository = CarePlanRepository(database, encryptor)
            logger.info(
                "Care plan store initialized: %s (schema v%d)",
                settings.db_path,
                database.get_schema_version(),
            )
        except EncryptionError as exc:
            logger.error("Failed to initialize storage: %s", exc)
            logger.warning("Continuing without persistence; care plan tools are disabled")
    else:
        logger.warning(
            "No ENCRYPTION_KEY configured; running without persistence. "
            "Set ENCRYPTION_KEY to enable the care plan tools."
        )

    # --- Register tools ---
    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        status = {
            "status": "ok",
            "server": SERVER_NAME,
            "version": SERVER_VERSION,
            "storage_enabled": repository is not None,
        }
        if repository is not None:
            status["alerts_stored"] = repository.count_alerts()
        return status

    if repository is None:
        return server

    from careflow.domains.careplan.domain_logic.service import CarePlanService
    from careflow.domains.careplan.tools.alert_tools import register_alert_tools
    from careflow.domains.careplan.tools.careplan_tools import register_careplan_tools

    audit_logger = AuditLogger(repository.database)
    service = CarePlanService(
        repository,
        notifier=notifier_override or LoggingNotifier(),
        job_queue=job_queue,
        audit_logger=audit_logger,
        clock=clock,
        default_offset=settings.default_timezone_offset,
        reminder_grace_seconds=settings.reminder_grace_seconds,
    )
    resumed = service.resume_reminders()
    logger.info("Resumed reminder chains for %d active plan(s)", resumed)

    register_careplan_tools(server, service, audit_logger)
    logger.info("Care plan tools registered")
    register_alert_tools(server, service, audit_logger)
    logger.info("Alert tools registered")

    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
