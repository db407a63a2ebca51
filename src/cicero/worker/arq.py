from cicero.worker.routes import worker as sub_worker
from cicero.worker.worker import Worker

worker = Worker()
worker.include_subworker(sub_worker)


class WorkerSettings:
    functions = worker.functions
    cron_jobs = worker.cron_jobs
    redis_settings = worker.redis_settings
    on_startup = worker.on_startup
    on_shutdown = worker.on_shutdown
    retry_jobs = worker.retry_jobs
    job_timeout = worker.job_timeout
    max_jobs = worker.max_jobs

    # Cron expressions are evaluated in local time
    timezone = worker.timezone

    health_check_interval = worker.health_check_interval
    job_completion_wait = worker.job_completion_wait
