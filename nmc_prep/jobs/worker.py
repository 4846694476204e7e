from rq import Worker

from nmc_prep.core.config import settings
from nmc_prep.core.logging import configure_logging
from nmc_prep.jobs.queue import redis

if __name__ == "__main__":
    configure_logging()
    w = Worker([settings.RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)
