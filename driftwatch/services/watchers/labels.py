"""Container labels understood by the docker watcher."""

from typing import Optional

# Watch this container (true/false); default comes from watchbydefault
WATCH = "driftwatch.watch"

# Watch the image digest (true/false)
WATCH_DIGEST = "driftwatch.watch.digest"

# Tag filters (regular expressions)
TAG_INCLUDE = "driftwatch.tag.include"
TAG_EXCLUDE = "driftwatch.tag.exclude"

# Tag transformation formula ("regex => $1.$2.$3")
TAG_TRANSFORM = "driftwatch.tag.transform"

LINK_TEMPLATE = "driftwatch.link.template"

DISPLAY_NAME = "driftwatch.display.name"
DISPLAY_ICON = "driftwatch.display.icon"

# Comma separated trigger ids, optionally with a threshold (name:minor)
TRIGGER_INCLUDE = "driftwatch.trigger.include"
TRIGGER_EXCLUDE = "driftwatch.trigger.exclude"

COMPOSE_PROJECT = "com.docker.compose.project"


def _flag(value: Optional[str]) -> Optional[bool]:
    if value is None or value == "":
        return None
    return value.strip().lower() == "true"


def is_container_to_watch(watch_label: Optional[str], watch_by_default: bool) -> bool:
    flag = _flag(watch_label)
    return watch_by_default if flag is None else flag


def is_digest_to_watch(watch_digest_label: Optional[str], is_semver: bool) -> bool:
    """Semver images watch digests only on opt-in; others unless opted out."""
    flag = _flag(watch_digest_label)
    if flag is None:
        return not is_semver
    return flag
