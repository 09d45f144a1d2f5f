"""Scheduler エントリポイント: python -m freelanceflow.scheduler で起動"""
import signal
import sys
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from freelanceflow.core.config import settings
from freelanceflow.core.logging import setup_logging, get_logger
from freelanceflow.scheduler.period_rollover import roll_over_periods

setup_logging(debug=settings.DEBUG)
logger = get_logger("scheduler")

scheduler = BlockingScheduler(timezone=settings.SCHEDULER_TIMEZONE)


def signal_handler(sig, frame):
    logger.info("Scheduler停止シグナル受信")
    scheduler.shutdown(wait=False)
    sys.exit(0)


def main():
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("Scheduler起動")

    # 5分ごと: 請求期間の終了処理
    scheduler.add_job(
        roll_over_periods,
        CronTrigger(minute="*/5", timezone=settings.SCHEDULER_TIMEZONE),
        id="period_rollover",
        max_instances=1,
    )

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler終了")


if __name__ == "__main__":
    main()
