"""Command trigger: runs a shell command with the container in its environment."""

import asyncio
import json
import logging
import os
from typing import Dict, List

from pydantic import Field

from driftwatch.schemas.container import Container, flatten
from driftwatch.services.triggers.base import Trigger, TriggerConfiguration
from driftwatch.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)


class CommandConfiguration(TriggerConfiguration):
    cmd: str = Field(min_length=1)
    shell: str = "/bin/sh"
    # Milliseconds
    timeout: int = Field(default=60000, gt=0)


class CommandTrigger(Trigger):
    """Run a command for each update.

    Simple mode exports the flattened container fields plus ``container_json``;
    batch mode exports ``containers_json``.
    """

    provider = "command"
    configuration_model = CommandConfiguration

    async def trigger(self, container: Container) -> None:
        env = {key: "" if value is None else str(value) for key, value in flatten(container).items()}
        env["container_json"] = json.dumps(container.to_json_dict())
        await self.run_command(env)

    async def trigger_batch(self, containers: List[Container]) -> None:
        env = {"containers_json": json.dumps([c.to_json_dict() for c in containers])}
        await self.run_command(env)

    async def run_command(self, variables: Dict[str, str]) -> str:
        """Run the configured command and return its stdout.

        Raises:
            RuntimeError: If the command times out or exits non-zero
        """
        process = await asyncio.create_subprocess_exec(
            self.configuration.shell,
            "-c",
            self.configuration.cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **variables},
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.configuration.timeout / 1000
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise RuntimeError(f"Command timed out after {self.configuration.timeout}ms") from None

        output = stdout.decode("utf-8", errors="replace")
        if stderr:
            logger.warning(f"Trigger {self.id} - stderr: {sanitize_log_message(stderr)}")
        if process.returncode != 0:
            raise RuntimeError(f"Command exited with code {process.returncode}")
        logger.info(f"Trigger {self.id} - Command executed ({sanitize_log_message(output)})")
        return output
