import logging
from rq import Worker
from examprep.jobs.queue import queue, redis
from examprep.jobs.cleanup_job import schedule_cleanup
from examprep.core.config import settings

if __name__ == "__main__":
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    schedule_cleanup(queue)
    w = Worker([settings.RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)
