# Gunicorn configuration for Burrow
# Only one worker may own the scheduler, otherwise every backup runs once per worker

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('BIND', '0.0.0.0:5000')
workers = int(os.environ.get('WEB_CONCURRENCY', 2))
# Restores run inside the request
timeout = int(os.environ.get('GUNICORN_TIMEOUT', 3600))

# Age of the worker currently running APScheduler, tracked in the master
scheduler_owner_age = None


def pre_fork(server, worker):
    """
    Assign the scheduler to the worker about to be forked if nobody owns it.

    Runs in the master just before forking, so the worker inherits
    SCHEDULER_WORKER before it loads the app. create_app() reads it to
    decide whether to start APScheduler. Gunicorn numbers workers by age
    starting at 1.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (uses 'age' attribute: 1, 2, 3, ...)
    """
    global scheduler_owner_age

    if scheduler_owner_age is None:
        scheduler_owner_age = worker.age
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker age={worker.age}: scheduler owner")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker age={worker.age}: HTTP only")


def child_exit(server, worker):
    """
    Release the scheduler when its owner exits so the replacement takes over.

    Args:
        server: Gunicorn arbiter
        worker: The worker that exited
    """
    global scheduler_owner_age

    if worker.age == scheduler_owner_age:
        scheduler_owner_age = None
        logger.info(f"Scheduler owner age={worker.age} exited; next worker takes over")
