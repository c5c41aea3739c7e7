"""Pydantic schemas for watched containers.

Documents are serialized in camelCase (``displayName``, ``image.tag.semver``)
and held in snake_case in Python. ``update_available`` and ``update_kind`` are
computed from ``image`` and ``result`` on every validation and are never read
back from input.
"""

import logging
import re
from datetime import datetime, timezone
from string import Template
from typing import Annotated, Any, Dict, Literal, Optional, Union, get_args, get_origin

from pydantic import (
    BaseModel,
    ConfigDict,
    StrictBool,
    StringConstraints,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from driftwatch.exceptions import ContainerValidationError
from driftwatch.utils.version import diff as diff_semver
from driftwatch.utils.version import parse as parse_semver
from driftwatch.utils.version import transform as transform_tag

logger = logging.getLogger(__name__)

NonEmptyStr = Annotated[str, StringConstraints(strict=True, min_length=1)]
StrictStr = Annotated[str, StringConstraints(strict=True)]

_ISO_DATE_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?$"
)

SEMVER_DIFF_COLLAPSE = {
    "major": "major",
    "premajor": "major",
    "minor": "minor",
    "preminor": "minor",
    "patch": "patch",
    "prepatch": "patch",
    "prerelease": "prerelease",
}


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp, tolerating nanosecond precision."""
    normalized = value.strip().replace("Z", "+00:00")
    # Docker reports nanoseconds; datetime supports microseconds
    normalized = re.sub(r"(\.\d{6})\d+", r"\1", normalized)
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


def _check_iso_date(value: Optional[str]) -> Optional[str]:
    if value is not None and not _ISO_DATE_RE.match(value):
        raise ValueError(f"'{value}' is not an ISO 8601 date")
    return value


class ImageRegistry(_Document):
    name: NonEmptyStr = "unknown"
    url: Optional[StrictStr] = None


class ImageTag(_Document):
    value: NonEmptyStr
    semver: StrictBool = False


class ImageDigest(_Document):
    watch: StrictBool = False
    value: Optional[StrictStr] = None
    repo: Optional[StrictStr] = None


class ContainerImage(_Document):
    id: NonEmptyStr
    registry: ImageRegistry
    name: NonEmptyStr
    tag: ImageTag
    digest: ImageDigest
    architecture: NonEmptyStr
    os: NonEmptyStr
    variant: Optional[StrictStr] = None
    created: Optional[StrictStr] = None

    @field_validator("created")
    @classmethod
    def _validate_created(cls, value: Optional[str]) -> Optional[str]:
        return _check_iso_date(value)


class ContainerResult(_Document):
    tag: Optional[NonEmptyStr] = None
    digest: Optional[StrictStr] = None
    created: Optional[StrictStr] = None
    link: Optional[StrictStr] = None

    @field_validator("created")
    @classmethod
    def _validate_created(cls, value: Optional[str]) -> Optional[str]:
        return _check_iso_date(value)


class ContainerError(_Document):
    message: NonEmptyStr


class ContainerNotification(_Document):
    """Install progress attached to a container (info = in progress)."""

    message: NonEmptyStr
    level: Literal["info", "success", "error"] = "info"


class UpdateKind(_Document):
    kind: Literal["tag", "digest", "unknown"] = "unknown"
    local_value: Optional[str] = None
    remote_value: Optional[str] = None
    semver_diff: Optional[Literal["major", "minor", "patch", "prerelease", "unknown"]] = None


class Container(_Document):
    """A watched container and the latest known remote state of its image."""

    id: NonEmptyStr
    name: NonEmptyStr
    display_name: Optional[NonEmptyStr] = None
    display_icon: NonEmptyStr = "mdi:docker"
    status: NonEmptyStr = "unknown"
    watcher: NonEmptyStr
    include_tags: Optional[StrictStr] = None
    exclude_tags: Optional[StrictStr] = None
    transform_tags: Optional[StrictStr] = None
    link_template: Optional[StrictStr] = None
    link: Optional[StrictStr] = None
    trigger_include: Optional[StrictStr] = None
    trigger_exclude: Optional[StrictStr] = None
    labels: Optional[Dict[str, str]] = None
    image: ContainerImage
    result: Optional[ContainerResult] = None
    error: Optional[ContainerError] = None
    notification: Optional[ContainerNotification] = None

    @model_validator(mode="after")
    def _derive_fields(self) -> "Container":
        if self.display_name is None:
            self.display_name = self.name
        if self.link_template:
            self.link = render_link(self, self.image.tag.value)
            if self.result is not None and self.result.tag:
                self.result.link = render_link(self, self.result.tag)
        else:
            self.link = None
            if self.result is not None:
                self.result.link = None
        return self

    @computed_field(alias="updateAvailable")
    @property
    def update_available(self) -> bool:
        if self.result is None:
            return False

        # Digests win when both sides are known
        if (
            self.image.digest.watch
            and self.image.digest.value is not None
            and self.result.digest is not None
        ):
            return self.image.digest.value != self.result.digest

        local_tag = transform_tag(self.transform_tags, self.image.tag.value)
        remote_tag = transform_tag(self.transform_tags, self.result.tag) if self.result.tag else None
        update_available = local_tag != remote_tag

        # Fall back to creation dates (legacy v1 manifests)
        if self.image.created is not None and self.result.created is not None:
            local_created = parse_timestamp(self.image.created)
            remote_created = parse_timestamp(self.result.created)
            update_available = update_available or local_created != remote_created

        return update_available

    @computed_field(alias="updateKind")
    @property
    def update_kind(self) -> UpdateKind:
        if self.result is None or not self.update_available:
            return UpdateKind()

        if self.image.tag.value != self.result.tag:
            semver_diff = "unknown"
            if self.image.tag.semver:
                raw_diff = diff_semver(
                    transform_tag(self.transform_tags, self.image.tag.value),
                    transform_tag(self.transform_tags, self.result.tag or ""),
                )
                semver_diff = SEMVER_DIFF_COLLAPSE.get(raw_diff, "unknown")
            return UpdateKind(
                kind="tag",
                local_value=self.image.tag.value,
                remote_value=self.result.tag,
                semver_diff=semver_diff,
            )

        if self.image.digest.value != self.result.digest:
            return UpdateKind(
                kind="digest",
                local_value=self.image.digest.value,
                remote_value=self.result.digest,
            )
        return UpdateKind()

    def to_document(self) -> Dict[str, Any]:
        """Persistable camelCase document (computed fields excluded)."""
        return self.model_dump(
            by_alias=True,
            exclude_none=True,
            exclude={"update_available", "update_kind"},
        )

    def to_json_dict(self) -> Dict[str, Any]:
        """camelCase document including computed fields (for payloads)."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def render_link(container: Container, tag_value: str) -> Optional[str]:
    """Render the container link template for a tag.

    Placeholders: ``${original}``, ``${raw}``, ``${transformed}``,
    ``${major}``, ``${minor}``, ``${patch}``, ``${prerelease}``.
    """
    if not container.link_template:
        return None

    transformed = transform_tag(container.transform_tags, tag_value)
    values = {
        "original": tag_value,
        "raw": tag_value,
        "transformed": transformed,
        "major": "",
        "minor": "",
        "patch": "",
        "prerelease": "",
    }
    if container.image.tag.semver:
        parsed = parse_semver(transformed)
        if parsed is not None:
            values["major"] = str(parsed.major)
            values["minor"] = str(parsed.minor)
            values["patch"] = str(parsed.patch)
            values["prerelease"] = str(parsed.prerelease[0]) if parsed.prerelease else ""
    return Template(container.link_template).safe_substitute(values)


def validate(data: Union[Container, Dict[str, Any]]) -> Container:
    """Validate a container document and compute derived fields.

    Raises:
        ContainerValidationError: If the document does not match the schema
    """
    if isinstance(data, Container):
        data = data.to_document()
    try:
        return Container.model_validate(data)
    except ValidationError as e:
        raise ContainerValidationError(
            f"Error when validating container properties: {e}"
        ) from e


def full_name(container: Union[Container, Dict[str, Any]]) -> str:
    """Business id of a container: ``<watcher>_<name>``."""
    if isinstance(container, dict):
        return f"{container.get('watcher')}_{container.get('name')}"
    return f"{container.watcher}_{container.name}"


def result_changed(previous: Optional[Container], current: Container) -> bool:
    """Return True if the remote result of ``current`` differs from ``previous``."""
    if previous is None or previous.result is None or current.result is None:
        return True
    return (
        previous.result.tag != current.result.tag
        or previous.result.digest != current.result.digest
        or previous.result.created != current.result.created
    )


def flatten(container: Container) -> Dict[str, Any]:
    """Flatten a container to snake_case ``a_b_c`` keys (key/value integrations)."""
    flat: Dict[str, Any] = {}

    def _walk(prefix: str, value: Any) -> None:
        if isinstance(value, dict):
            for key, item in value.items():
                _walk(f"{prefix}_{key}" if prefix else key, item)
        elif value is not None:
            flat[prefix] = value

    _walk("", container.model_dump(exclude_none=True))
    return flat


def _model_type(annotation: Any) -> Any:
    """Unwrap Optional[...] / Annotated[...] to the inner type."""
    origin = get_origin(annotation)
    if origin is Union:
        inner = [arg for arg in get_args(annotation) if arg is not type(None)]
        return _model_type(inner[0]) if len(inner) == 1 else annotation
    if origin is Annotated:
        return _model_type(get_args(annotation)[0])
    return annotation


def _flat_paths(model: type[BaseModel], prefix: tuple = ()) -> Dict[str, tuple]:
    paths: Dict[str, tuple] = {}
    for name, info in model.model_fields.items():
        inner = _model_type(info.annotation)
        path = prefix + (name,)
        if isinstance(inner, type) and issubclass(inner, BaseModel):
            paths.update(_flat_paths(inner, path))
        else:
            paths["_".join(path)] = path
    return paths


_CONTAINER_PATHS = _flat_paths(Container)
_MAPPING_FIELDS = {
    key: path for key, path in _CONTAINER_PATHS.items()
    if get_origin(_model_type(Container.model_fields[path[0]].annotation)) is dict
}


def unflatten(flat: Dict[str, Any]) -> Dict[str, Any]:
    """Rebuild a nested (snake_case) container document from ``flatten`` output.

    Computed keys (``update_available``, ``update_kind_*``) are dropped.
    """
    nested: Dict[str, Any] = {}

    def _set(path: tuple, value: Any) -> None:
        node = nested
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    for key, value in flat.items():
        if key in _CONTAINER_PATHS:
            _set(_CONTAINER_PATHS[key], value)
            continue
        for field_key, path in _MAPPING_FIELDS.items():
            if key.startswith(f"{field_key}_"):
                _set(path + (key[len(field_key) + 1:],), value)
                break
    return nested
