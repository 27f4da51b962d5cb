"""Exception hierarchy shared by the crawl engine, job lifecycle and watchdog."""


class ScouterError(Exception):
    """Base scouter exception."""
    pass


class ConfigurationError(ScouterError):
    """Raised when a crawl configuration is missing or invalid. Fatal before any fetch."""
    pass


class RenderError(ScouterError):
    """Raised on rendering service failures (non-200, malformed body, success:false)."""
    pass


class InvalidTransition(ScouterError):
    """Raised when a job status change is not allowed by the lifecycle table."""

    def __init__(self, job_id, from_status, to_status):
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Job {job_id}: transition {from_status} -> {to_status} is not allowed")


class JobNotFound(ScouterError):
    pass


class PersistenceError(ScouterError):
    """Raised when a write still fails after its retries are exhausted."""
    pass


class CrawlStopped(ScouterError):
    """Signals that an operator stop was observed between batches."""
    pass
