# settlement/supervisor.py
"""
Background scheduler for the settlement jobs.

Jobs:
- verify_pending_withdrawals / verify_processing_withdrawals  every N minutes
- referral_recompute_daily / _weekly                           cron
- installment_penalty_daily / _weekly / _monthly              cron
- installment_payment_reminders                                cron

Every job body runs inside an application context. `stop()` sets the shared
stop event (job loops check it between records) and waits for running jobs
to finish before returning.
"""
from typing import Dict, List, Optional
import threading
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from settlement.config import parse_schedule
from settlement.installment_penalty import InstallmentPenaltyJob
from settlement.reconciler import Reconciler
from settlement.referral_recompute import ReferralRecomputeJob

logger = logging.getLogger("jobs.supervisor")

job_defaults = {
    'coalesce': True,
    'max_instances': 1,
    'misfire_grace_time': 60,
}


class Supervisor:

    def __init__(self, app=None, reconciler: Optional[Reconciler] = None,
                 referral_job: Optional[ReferralRecomputeJob] = None,
                 penalty_job: Optional[InstallmentPenaltyJob] = None):
        self.stop_event = threading.Event()
        self.reconciler = reconciler or Reconciler(stop_event=self.stop_event)
        self.referral_job = referral_job or ReferralRecomputeJob(stop_event=self.stop_event)
        self.penalty_job = penalty_job or InstallmentPenaltyJob(stop_event=self.stop_event)
        self.scheduler: Optional[BackgroundScheduler] = None
        self.app = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        app.extensions["settlement_supervisor"] = self

    def _run(self, job_name: str, func, *args):
        """Scheduler entry point: run one job body inside the app context."""
        with self.app.app_context():
            try:
                result = func(*args)
                logger.info(f"Job '{job_name}' completed: {result}")
                return result
            except Exception as e:
                logger.error(f"Job '{job_name}' failed: {e}")
                return None

    def _register_jobs(self):
        config = self.app.config

        self.scheduler.add_job(
            self._run, 'interval',
            minutes=int(config.get("RECONCILE_PENDING_MINUTES", 2)),
            args=['verify_pending_withdrawals', self.reconciler.verify_pending_withdrawals],
            id='verify_pending_withdrawals',
            name='Verify Pending Withdrawals',
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._run, 'interval',
            minutes=int(config.get("RECONCILE_PROCESSING_MINUTES", 2)),
            args=['verify_processing_withdrawals', self.reconciler.verify_processing_withdrawals],
            id='verify_processing_withdrawals',
            name='Verify Processing Withdrawals',
            replace_existing=True,
        )

        cron_jobs = [
            ('referral_recompute_daily', 'Referral Recompute (daily)',
             config.get("REFERRAL_DAILY_CRON", "02:00"), self.referral_job.run),
            ('referral_recompute_weekly', 'Referral Recompute (weekly)',
             config.get("REFERRAL_WEEKLY_CRON", "sun 03:00"), self.referral_job.run),
            ('installment_penalty_daily', 'Installment Penalty Check (daily)',
             config.get("INSTALLMENT_DAILY_CRON", "02:00"), self.penalty_job.daily_check),
            ('installment_penalty_weekly', 'Installment Penalty Check (weekly)',
             config.get("INSTALLMENT_WEEKLY_CRON", "sun 03:00"), self.penalty_job.weekly_check),
            ('installment_penalty_monthly', 'Installment Penalty Check (monthly)',
             config.get("INSTALLMENT_MONTHLY_CRON", "1 04:00"), self.penalty_job.monthly_check),
            ('installment_payment_reminders', 'Installment Payment Reminders',
             config.get("INSTALLMENT_REMINDER_CRON", "23 09:00"), self.penalty_job.send_payment_reminders),
        ]
        for job_id, name, schedule, func in cron_jobs:
            self.scheduler.add_job(
                self._run, 'cron',
                args=[job_id, func],
                id=job_id,
                name=name,
                replace_existing=True,
                **parse_schedule(schedule),
            )

    def start(self):
        if self.app is None:
            raise RuntimeError("Supervisor.start() called before init_app()")
        if self.scheduler is not None and self.scheduler.running:
            return

        self.stop_event.clear()
        self.scheduler = BackgroundScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': ThreadPoolExecutor(4)},
            job_defaults=job_defaults,
            timezone=self.app.config.get("SCHEDULER_TIMEZONE", "Africa/Lagos"),
        )
        self._register_jobs()
        self.scheduler.start()
        logger.info("Settlement scheduler started")

        for job in self.scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")

    def stop(self):
        """Ask running jobs to stop between records, then wait for them."""
        self.stop_event.set()
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Settlement scheduler stopped")

    @property
    def running(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    def get_job_status(self) -> List[Dict]:
        if self.scheduler is None:
            return []
        return [
            {
                'id': job.id,
                'name': job.name,
                'next_run_time': str(job.next_run_time) if job.next_run_time else None,
                'trigger': str(job.trigger),
            }
            for job in self.scheduler.get_jobs()
        ]
