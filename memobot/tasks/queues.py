"""RQ queue definitions and Redis connection."""
from redis import Redis
from rq import Queue

from memobot.config import settings

# Redis connection
redis_conn = Redis(
    host=settings.REDIS_HOST,
    port=settings.REDIS_PORT,
    db=settings.REDIS_DB,
)

# Priority queues
default_queue = Queue("default", connection=redis_conn)  # Chat exchanges
low_queue = Queue("low", connection=redis_conn)  # Summarization


def get_queue(priority: str = "default") -> Queue:
    """Get queue by priority name."""
    queues = {
        "default": default_queue,
        "low": low_queue,
    }
    return queues.get(priority, default_queue)
