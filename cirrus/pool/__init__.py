from cirrus.pool.http import BearerAuth, HttpClient, HttpError
from cirrus.pool.view import CapacityView, HandleFactory
from cirrus.pool.worker import DEFAULT_WORKER_PORT, Alloc, HttpWorkerPool, Labels, WorkerPool

__all__ = [
    "DEFAULT_WORKER_PORT",
    "Alloc",
    "BearerAuth",
    "CapacityView",
    "HandleFactory",
    "HttpClient",
    "HttpError",
    "HttpWorkerPool",
    "Labels",
    "WorkerPool",
]
