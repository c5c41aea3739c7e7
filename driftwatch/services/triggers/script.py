"""Script trigger: runs a local executable to install container updates."""

import asyncio
import logging
from typing import Callable, List, Literal

from pydantic import Field

from driftwatch.exceptions import ScriptExecutionError, ScriptTimeoutError
from driftwatch.schemas.container import Container, full_name
from driftwatch.services.triggers.base import Trigger, TriggerConfiguration
from driftwatch.services.watchers.labels import COMPOSE_PROJECT

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str, str], None]


class ScriptConfiguration(TriggerConfiguration):
    path: str = Field(min_length=1)
    install: bool = False
    mode: Literal["simple"] = "simple"
    # Script timeout in milliseconds
    timeout: int = Field(default=5000, gt=0)
    # Orchestration timings in seconds
    pollinterval: float = Field(default=5.0, gt=0)
    imagetimeout: float = Field(default=300.0, gt=0)
    rescantimeout: float = Field(default=120.0, gt=0)


def script_arguments(container: Container) -> List[str]:
    """Positional arguments passed to the install script.

    name, image name, current value, target value, watcher, compose project.
    """
    update_kind = container.update_kind
    current = update_kind.local_value or container.image.tag.value
    target = update_kind.remote_value or (container.result.tag if container.result else None) or current
    return [
        container.name,
        container.image.name,
        current,
        target,
        container.watcher,
        (container.labels or {}).get(COMPOSE_PROJECT, ""),
    ]


class ScriptTrigger(Trigger):
    """Install updates by running a script.

    The script never runs on plain update reports; it is started by the
    install orchestrator, which also follows the container replacement.
    """

    provider = "script"
    configuration_model = ScriptConfiguration
    orchestrated_install = True

    async def trigger(self, container: Container) -> None:
        logger.debug(f"{full_name(container)} - Trigger {self.id} only runs on install")

    async def run_script(self, container: Container, on_output: OutputCallback) -> int:
        """Run the script for ``container``, streaming each output line.

        Returns:
            The script exit code (always 0)

        Raises:
            ScriptExecutionError: If the script cannot start, exits non-zero
                or is killed by a signal
            ScriptTimeoutError: If the script exceeds the configured timeout
        """
        args = script_arguments(container)
        timeout = self.configuration.timeout / 1000
        logger.info(f"{full_name(container)} - Run {self.configuration.path} {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                self.configuration.path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ScriptExecutionError(f"Cannot run script {self.configuration.path}: {e}") from e

        async def _pump(stream: asyncio.StreamReader, name: str) -> None:
            async for raw in stream:
                on_output(name, raw.decode("utf-8", errors="replace").rstrip("\r\n"))

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    _pump(process.stdout, "stdout"),
                    _pump(process.stderr, "stderr"),
                    process.wait(),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ScriptTimeoutError(timeout, detail=self.configuration.path) from None

        exit_code = process.returncode
        if exit_code < 0:
            raise ScriptExecutionError(f"Script killed by signal {-exit_code}", exit_code)
        if exit_code != 0:
            raise ScriptExecutionError(f"Script exited with code {exit_code}", exit_code)
        return exit_code
