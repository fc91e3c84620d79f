"""RQ worker process entrypoint for channel audit jobs."""

import logging

from rq import Worker

from config import settings
from services.audit_queue import AUDIT_QUEUE_NAME, get_redis_connection

logger = logging.getLogger(__name__)


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    if not settings.AUDIT_QUEUE_ENABLED:
        logger.warning("AUDIT_QUEUE_ENABLED is off; the API will run audits in-process and not enqueue them")
    worker = Worker([AUDIT_QUEUE_NAME], connection=get_redis_connection())
    logger.info(f"Audit worker listening on '{AUDIT_QUEUE_NAME}'")
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
