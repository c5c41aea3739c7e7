"""Trigger base class: report filtering, templates and bus registration."""

import logging
import re
from abc import ABC, abstractmethod
from string import Template
from typing import Any, Dict, List, Literal, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from driftwatch.exceptions import ConfigurationError, InstallNotSupportedError
from driftwatch.schemas.container import Container, full_name
from driftwatch.schemas.report import ContainerReport
from driftwatch.services.event_bus import (
    CONTAINER_REPORT,
    CONTAINER_REPORTS,
    EventBus,
    Subscription,
)
from driftwatch.utils.error_handling import log_and_continue
from driftwatch.utils.security import mask_fields

logger = logging.getLogger(__name__)

THRESHOLDS = ("all", "major", "minor", "patch")


class TriggerConfiguration(BaseModel):
    """Options shared by every trigger."""

    model_config = ConfigDict(extra="forbid")

    auto: bool = True
    threshold: Literal["all", "major", "minor", "patch"] = "all"
    mode: Literal["simple", "batch"] = "simple"
    once: bool = True
    simpletitle: str = "New ${kind} found for container ${name}"
    simplebody: str = (
        "Container ${name} running with ${kind} ${local} can be updated to ${kind} ${remote}\n${link}"
    )
    batchtitle: str = "${count} updates available"

    @field_validator("threshold", "mode", mode="before")
    @classmethod
    def _lowercase(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


def is_threshold_reached(container: Container, threshold: str) -> bool:
    """Return True if the update kind of ``container`` passes ``threshold``.

    ``all`` and ``major`` admit everything. ``minor`` rejects major bumps and
    ``patch`` rejects major and minor bumps. Digest updates and unknown semver
    diffs always pass.
    """
    threshold = threshold.lower()
    update_kind = container.update_kind
    if (
        threshold == "all"
        or update_kind.kind != "tag"
        or not update_kind.semver_diff
        or update_kind.semver_diff == "unknown"
    ):
        return True
    if threshold == "minor":
        return update_kind.semver_diff != "major"
    if threshold == "patch":
        return update_kind.semver_diff not in ("major", "minor")
    return True


def parse_trigger_reference(reference: str) -> Tuple[str, str]:
    """Parse ``id[:threshold]`` into (id, threshold); unknown thresholds mean ``all``."""
    parts = re.split(r"\s*:\s*", reference.strip())
    threshold = "all"
    if len(parts) == 2 and parts[1].lower() in THRESHOLDS:
        threshold = parts[1].lower()
    return parts[0], threshold


def render_simple(template: str, container: Container) -> str:
    """Render a per-container template (substitution only)."""
    update_kind = container.update_kind
    values = {
        "id": container.id,
        "name": container.name,
        "watcher": container.watcher,
        "kind": update_kind.kind or "",
        "semver": update_kind.semver_diff or "",
        "local": update_kind.local_value or "",
        "remote": update_kind.remote_value or "",
        "link": (container.result.link if container.result else None) or "",
    }
    return Template(template).safe_substitute(values).rstrip()


def render_batch(template: str, containers: List[Container]) -> str:
    return Template(template).safe_substitute({"count": len(containers)}).rstrip()


class Trigger(ABC):
    """Base class for triggers.

    Args:
        name: Trigger name
        configuration: Raw configuration mapping
        client: Optional httpx client for HTTP based triggers
    """

    provider: str = ""
    configuration_model: type[TriggerConfiguration] = TriggerConfiguration
    secret_fields: tuple = ()

    # Install runs the full script orchestration instead of a single call
    orchestrated_install = False

    def __init__(
        self,
        name: str,
        configuration: Optional[Dict[str, Any]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.name = name.lower()
        self.configuration = self.validate_configuration(configuration or {})
        self.client = client or self._create_client()
        self._subscriptions: List[Subscription] = []

    def _create_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=30.0)

    @property
    def id(self) -> str:
        return f"{self.provider}.{self.name}"

    @property
    def install_enabled(self) -> bool:
        return bool(getattr(self.configuration, "install", False))

    def validate_configuration(self, configuration: Dict[str, Any]) -> TriggerConfiguration:
        """Validate raw configuration merged with the common trigger options.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        try:
            return self.configuration_model.model_validate(configuration)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration for trigger {self.id}: {e}") from e

    def mask_configuration(self) -> Dict[str, Any]:
        return mask_fields(self.configuration.model_dump(exclude_none=True), self.secret_fields)

    # Lifecycle

    async def start(self, event_bus: EventBus) -> None:
        """Subscribe to container reports for the configured mode."""
        if not self.configuration.auto:
            logger.info(f"Trigger {self.id} - Registering for manual execution")
            return
        logger.info(f"Trigger {self.id} - Registering for auto execution ({self.configuration.mode})")
        if self.configuration.mode == "simple":
            self._subscriptions.append(
                event_bus.subscribe(CONTAINER_REPORT, self.handle_container_report)
            )
        else:
            self._subscriptions.append(
                event_bus.subscribe(CONTAINER_REPORTS, self.handle_container_reports)
            )

    async def stop(self, event_bus: EventBus) -> None:
        for subscription in self._subscriptions:
            event_bus.unsubscribe(subscription)
        self._subscriptions.clear()
        await self.client.aclose()

    # Filtering

    def _is_listed(self, container: Container, references: str) -> bool:
        for reference in re.split(r"\s*,\s*", references.strip()):
            trigger_id, threshold = parse_trigger_reference(reference)
            if trigger_id.lower() == self.id:
                return is_threshold_reached(container, threshold)
        return False

    def is_trigger_included(self, container: Container) -> bool:
        if not container.trigger_include:
            return True
        return self._is_listed(container, container.trigger_include)

    def is_trigger_excluded(self, container: Container) -> bool:
        if not container.trigger_exclude:
            return False
        return self._is_listed(container, container.trigger_exclude)

    def must_trigger(self, container: Container) -> bool:
        return self.is_trigger_included(container) and not self.is_trigger_excluded(container)

    def _should_fire(self, report: ContainerReport) -> bool:
        return (
            (report.changed or not self.configuration.once)
            and report.container.update_available
            and is_threshold_reached(report.container, self.configuration.threshold)
            and self.must_trigger(report.container)
        )

    async def handle_container_report(self, report: ContainerReport) -> None:
        """Simple mode: notify for one container when it passes every filter."""
        if not self._should_fire(report):
            return
        container = report.container
        try:
            logger.debug(f"{full_name(container)} - Run trigger {self.id}")
            await self.trigger(container)
        except Exception as e:
            log_and_continue(logger, e, f"{full_name(container)} - Trigger {self.id} failed")

    async def handle_container_reports(self, reports: List[ContainerReport]) -> None:
        """Batch mode: notify once for every container passing the filters."""
        containers = [report.container for report in reports if self._should_fire(report)]
        if not containers:
            return
        try:
            logger.debug(f"Trigger {self.id} - Run batch ({len(containers)} containers)")
            await self.trigger_batch(containers)
        except Exception as e:
            log_and_continue(logger, e, f"Trigger {self.id} - Batch trigger failed")

    # Actions

    @abstractmethod
    async def trigger(self, container: Container) -> None:
        pass

    async def trigger_batch(self, containers: List[Container]) -> None:
        logger.warning(f"Trigger {self.id} - Batch mode is not implemented by this trigger")

    async def install(self, container: Container) -> None:
        raise InstallNotSupportedError(f"Trigger {self.id} cannot install updates")

    # Templates

    def render_simple_title(self, container: Container) -> str:
        return render_simple(self.configuration.simpletitle, container)

    def render_simple_body(self, container: Container) -> str:
        return render_simple(self.configuration.simplebody, container)

    def render_batch_title(self, containers: List[Container]) -> str:
        return render_batch(self.configuration.batchtitle, containers)

    def render_batch_body(self, containers: List[Container]) -> str:
        return "\n".join(f"- {self.render_simple_body(container)}" for container in containers)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(id={self.id})>"
