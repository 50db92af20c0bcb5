from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .errors import StageBusyError
from .service import AdvisorService
from .settings import settings


class AdvisorScheduler:
    def __init__(self, service: AdvisorService) -> None:
        self.service = service
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def intervals(self) -> dict[str, int]:
        jobs = {
            "discovery": settings.discovery_interval_minutes,
            "recommendations": settings.recommendation_interval_minutes,
            "monitor": settings.monitor_interval_minutes,
        }
        if settings.auto_execute_enabled:
            jobs["auto_execute"] = settings.auto_execute_interval_minutes
        return jobs

    def run_job(self, stage: str) -> None:
        try:
            summary = self.service.run_stage(stage)
            logger.debug("Stage {} finished: {}", stage, summary)
        except StageBusyError:
            logger.info("Stage {} still running; timer run skipped", stage)
        except Exception:
            logger.exception("Stage {} failed", stage)

    def start(self) -> None:
        for stage, minutes in self.intervals().items():
            self.scheduler.add_job(
                self.run_job,
                trigger=IntervalTrigger(minutes=minutes),
                args=[stage],
                id=f"stage_{stage}",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("Scheduled {} every {} min", stage, minutes)
        self.scheduler.start()
        logger.info("Scheduler started ({})", settings.timezone)

    def stop(self, wait: bool = True) -> None:
        self.scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")
