"""
Account-Aware Job Runner

Runs background jobs across every account. Each account gets its own
session and its own failure boundary: one account failing does not stop
the others.

Architecture:
- Jobs are registered with the @tenant_job decorator
- Runner lists all accounts and runs the job once per account
- The account id is passed explicitly; jobs build account-scoped services
- Concurrency is bounded by a semaphore

Usage:
    @tenant_job("generate_recurring_invoices")
    async def generate_recurring_invoices(session, account):
        service = RecurringInvoiceService(session, account["id"])
        ...
"""

import logging
import asyncio
from typing import Callable, Dict, List, Optional
from datetime import datetime, timezone
from functools import wraps

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models.tenant import Account

logger = logging.getLogger(__name__)

# Registry of account-aware jobs
_tenant_jobs: Dict[str, Callable] = {}


def tenant_job(name: str):
    """
    Decorator to register an account-aware background job.

    The decorated function receives:
    - session: AsyncSession owned by the runner for this account
    - account: dict with id, name and slug

    Its return value is stored under "result" in the per-account report.
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(session: AsyncSession, account: dict):
            return await func(session, account)

        _tenant_jobs[name] = wrapper
        logger.debug(f"Registered tenant job: {name}")
        return wrapper
    return decorator


def registered_jobs() -> List[str]:
    return list(_tenant_jobs.keys())


class TenantJobRunner:
    """
    Executes background jobs across all accounts.

    Features:
    - Automatic account iteration
    - Error isolation (one account failure doesn't affect others)
    - Execution metrics and logging
    - Configurable concurrency
    """

    def __init__(
        self,
        max_concurrent: int = 5,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        """
        Initialize the job runner.

        Args:
            max_concurrent: Max accounts to process concurrently
            session_factory: Session factory, defaults to the application's
        """
        if session_factory is None:
            from app.database import async_session_factory
            session_factory = async_session_factory

        self.max_concurrent = max_concurrent
        self.session_factory = session_factory
        self._semaphore = asyncio.Semaphore(max_concurrent)

    async def get_accounts(self) -> List[dict]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Account.id, Account.name, Account.slug).order_by(Account.created_at)
            )
            return [
                {"id": row.id, "name": row.name, "slug": row.slug}
                for row in result.all()
            ]

    async def run_job_for_account(
        self,
        job_name: str,
        job_func: Callable,
        account: dict
    ) -> dict:
        """
        Execute a job for a single account.

        Returns:
            Result dictionary with status, job result and metrics
        """
        start_time = datetime.now(timezone.utc)

        result = {
            "account_id": str(account["id"]),
            "slug": account["slug"],
            "job": job_name,
            "status": "pending",
            "started_at": start_time.isoformat(),
            "result": None,
            "error": None,
            "duration_ms": 0
        }

        try:
            async with self._semaphore:
                async with self.session_factory() as session:
                    try:
                        result["result"] = await job_func(session, account)
                        await session.commit()
                        result["status"] = "success"
                    except Exception:
                        await session.rollback()
                        raise

        except Exception as e:
            result["status"] = "failed"
            result["error"] = str(e)
            logger.error(
                f"Job '{job_name}' failed for account '{account['slug']}': {e}"
            )

        end_time = datetime.now(timezone.utc)
        result["duration_ms"] = int((end_time - start_time).total_seconds() * 1000)
        result["completed_at"] = end_time.isoformat()

        return result

    async def run_job(self, job_name: str) -> dict:
        """
        Run a job across all accounts.

        Returns:
            Summary dictionary with results per account
        """
        if job_name not in _tenant_jobs:
            raise ValueError(f"Unknown job: {job_name}. Registered: {registered_jobs()}")

        job_func = _tenant_jobs[job_name]
        start_time = datetime.now(timezone.utc)

        logger.info(f"Starting tenant job: {job_name}")

        accounts = await self.get_accounts()

        if not accounts:
            logger.info(f"No accounts found. Job '{job_name}' skipped.")
            return {
                "job": job_name,
                "status": "skipped",
                "reason": "no_accounts",
                "account_count": 0
            }

        logger.info(f"Running '{job_name}' for {len(accounts)} accounts")

        tasks = [
            self.run_job_for_account(job_name, job_func, account)
            for account in accounts
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        successful = sum(1 for r in results if isinstance(r, dict) and r.get("status") == "success")
        failed = sum(1 for r in results if isinstance(r, dict) and r.get("status") == "failed")

        end_time = datetime.now(timezone.utc)
        total_duration = int((end_time - start_time).total_seconds() * 1000)

        summary = {
            "job": job_name,
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": total_duration,
            "account_count": len(accounts),
            "successful": successful,
            "failed": failed,
            "results": [r for r in results if isinstance(r, dict)]
        }

        logger.info(
            f"Job '{job_name}' completed: {successful}/{len(accounts)} successful "
            f"in {total_duration}ms"
        )

        return summary


# Global runner instance
_runner: Optional[TenantJobRunner] = None


def get_tenant_job_runner() -> TenantJobRunner:
    """Get or create the global tenant job runner."""
    global _runner
    if _runner is None:
        _runner = TenantJobRunner(max_concurrent=settings.JOB_MAX_CONCURRENT_ACCOUNTS)
    return _runner


async def run_tenant_job(job_name: str) -> dict:
    """Convenience function to run a registered job with the global runner."""
    runner = get_tenant_job_runner()
    return await runner.run_job(job_name)
