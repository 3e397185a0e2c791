"""Server and container adapters.

Provides the ``ServerClient`` Protocol, its SQLAlchemy implementation for
MariaDB, and ``DockerContainer`` for running the server's tools inside its
container.

Usage:
    from mariadb_backup.adapters import AsyncMariaDBAdapter, DockerContainer, ServerClient
"""

from mariadb_backup.adapters.base import ServerClient
from mariadb_backup.adapters.container import DockerContainer, docker_available
from mariadb_backup.adapters.mariadb import AsyncMariaDBAdapter

__all__ = [
    "ServerClient",
    "AsyncMariaDBAdapter",
    "DockerContainer",
    "docker_available",
]
