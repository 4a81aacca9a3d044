"""Postgres access for connections, sync jobs and synced webinar data."""

from .connection_repository import ConnectionRepository  # noqa: F401
from .sync_job_repository import SyncJobRepository  # noqa: F401
from .webinar_repository import WebinarRepository  # noqa: F401
