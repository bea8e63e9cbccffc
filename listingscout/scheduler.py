from apscheduler.schedulers.background import BackgroundScheduler
from .utils import logger


def run_all_active(orchestrator_factory):
    result = orchestrator_factory().run()
    logger.info("Scheduled run finished: %s", result.as_dict())


def start_scheduler(settings, orchestrator_factory):
    scheduler = BackgroundScheduler()
    scheduler.add_job(run_all_active, 'interval', hours=settings.schedule_interval_hours,
                      args=[orchestrator_factory], max_instances=1, coalesce=True)
    scheduler.start()
    logger.info("Scheduler started")
    return scheduler
