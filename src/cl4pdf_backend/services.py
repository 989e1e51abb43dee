"""
Wiring of the service's collaborators.

``build_services`` assembles every store and the job manager from a
configuration. Any collaborator can be passed in ready-made, which is how
tests substitute in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from omegaconf import DictConfig

from .accounts import AccountStore
from .artifact_store import ArtifactStore, build_artifact_store
from .audit import AuditLog
from .database import JobDatabase
from .job_manager import JobManager, RequestLimits
from .ledger import JobLedger
from .side_effects import BackgroundDispatcher
from .usage_gate import UsageGate
from .utils import utc_now


@dataclass
class Services:
    config: DictConfig
    accounts: AccountStore
    audit_log: AuditLog
    ledger: JobLedger
    gate: UsageGate
    store: ArtifactStore
    dispatcher: BackgroundDispatcher
    job_manager: JobManager

    def close(self) -> None:
        self.dispatcher.shutdown(wait_for_tasks=True)


def build_services(
    config: DictConfig,
    store: Optional[ArtifactStore] = None,
    audit_log: Optional[AuditLog] = None,
    accounts: Optional[AccountStore] = None,
    database: Optional[JobDatabase] = None,
    clock: Callable = utc_now,
) -> Services:
    db_path = Path(config.database.path)
    limits = config.limits

    accounts = accounts or AccountStore(
        db_path,
        free_usage_limit=limits.free_usage_limit,
        unlimited_usage=limits.unlimited_usage,
        clock=clock,
    )
    audit_log = audit_log or AuditLog(db_path, clock=clock)
    ledger = JobLedger(database or JobDatabase(db_path), clock=clock)
    gate = UsageGate(accounts, audit_log, guest_daily_limit=limits.guest_daily_limit, clock=clock)
    store = store or build_artifact_store(config)
    dispatcher = BackgroundDispatcher(max_workers=config.background.max_workers)

    job_manager = JobManager(
        ledger=ledger,
        gate=gate,
        store=store,
        accounts=accounts,
        audit_log=audit_log,
        dispatcher=dispatcher,
        limits=RequestLimits(
            platforms=list(config.app.platforms),
            default_platform=config.app.default_platform,
            max_files_per_job=limits.max_files_per_job,
            max_file_size=limits.max_file_size,
        ),
    )
    return Services(
        config=config,
        accounts=accounts,
        audit_log=audit_log,
        ledger=ledger,
        gate=gate,
        store=store,
        dispatcher=dispatcher,
        job_manager=job_manager,
    )
