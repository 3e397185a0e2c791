"""Run MariaDB client tools inside the server's Docker container.

``DockerContainer`` wraps ``docker exec`` and ``docker cp`` with
``asyncio.create_subprocess_exec``.  The server password travels in the
``MYSQL_PWD`` environment variable (``docker exec -e MYSQL_PWD``), so it
never appears on any command line.

Usage:
    container = DockerContainer("mariadb", password="secret")
    databases = await container.exec(["mariadb", "-N", "-e", "SHOW DATABASES"])
    await container.copy_from("/var/lib/mysql/mysql-bin.000005", Path("binlogs/"))
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path

from mariadb_backup.errors import ToolError

logger = logging.getLogger(__name__)

PASSWORD_ENV = "MYSQL_PWD"


class DockerContainer:
    """A running container addressed by name.

    Args:
        name: Container name or id.
        password: Server password exported as ``MYSQL_PWD`` to exec'd tools.
        docker: Docker CLI executable.
    """

    def __init__(self, name: str, password: str | None = None, docker: str = "docker") -> None:
        self.name = name
        self._password = password
        self._docker = docker

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self._password is not None:
            env[PASSWORD_ENV] = self._password
        return env

    def _exec_command(self, argv: list[str], interactive: bool = False) -> list[str]:
        command = [self._docker, "exec"]
        if interactive:
            command.append("-i")
        if self._password is not None:
            command.extend(["-e", PASSWORD_ENV])
        return command + [self.name, *argv]

    async def _run(self, command: list[str], stdin: bytes | None = None) -> bytes:
        logger.debug(f"Running: {' '.join(command)}")
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._env(),
        )
        stdout, stderr = await proc.communicate(stdin)
        if proc.returncode != 0:
            raise ToolError(command, proc.returncode, stderr.decode(errors="replace").strip())
        return stdout

    # ------------------------------------------------------------------
    # docker exec
    # ------------------------------------------------------------------

    async def exec(self, argv: list[str], stdin: bytes | None = None) -> bytes:
        """Run ``argv`` in the container and return its stdout.

        Args:
            argv: Command and arguments inside the container.
            stdin: Bytes fed to the command (``docker exec -i``).

        Raises:
            ToolError: If the command exits non-zero.
        """
        return await self._run(self._exec_command(argv, interactive=stdin is not None), stdin)

    async def exec_to_file(self, argv: list[str], path: Path) -> None:
        """Run ``argv`` in the container, streaming stdout into ``path``.

        The file is removed again if the command fails.

        Raises:
            ToolError: If the command exits non-zero.
        """
        command = self._exec_command(argv)
        logger.debug(f"Running: {' '.join(command)} > {path}")
        with path.open("wb") as out:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=out,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
            _, stderr = await proc.communicate()
        if proc.returncode != 0:
            path.unlink(missing_ok=True)
            raise ToolError(command, proc.returncode, stderr.decode(errors="replace").strip())

    async def which(self, name: str) -> bool:
        """True if ``name`` is on the container's PATH."""
        try:
            await self.exec(["sh", "-c", f'command -v "{name}"'])
        except ToolError:
            return False
        return True

    async def find_tool(self, candidates: tuple[str, ...]) -> str | None:
        """First of ``candidates`` available in the container, or None."""
        for name in candidates:
            if await self.which(name):
                return name
        return None

    async def remove(self, path: str) -> None:
        await self.exec(["rm", "-f", path])

    async def is_running(self) -> bool:
        try:
            state = await self._run(
                [self._docker, "inspect", "-f", "{{.State.Running}}", self.name]
            )
        except ToolError:
            return False
        return state.decode().strip() == "true"

    # ------------------------------------------------------------------
    # docker cp
    # ------------------------------------------------------------------

    async def copy_from(self, source: str, destination: Path) -> None:
        """Copy ``source`` out of the container to a local path."""
        await self._run([self._docker, "cp", f"{self.name}:{source}", str(destination)])

    async def copy_to(self, source: Path, destination: str) -> None:
        """Copy a local file into the container."""
        await self._run([self._docker, "cp", str(source), f"{self.name}:{destination}"])


def docker_available(docker: str = "docker") -> bool:
    """True if the Docker CLI is installed on this host."""
    return shutil.which(docker) is not None
