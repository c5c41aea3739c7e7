"""Version comparison utilities for semver-tagged images."""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

# Loose semver: optional "v"/"=" prefix, leading zeros tolerated, optional "-" before prerelease
_SEMVER_RE = re.compile(
    r"^[v=\s]*(\d+)\.(\d+)\.(\d+)"
    r"(?:-?((?:[0-9A-Za-z-]+)(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)

# Coercion keeps the first version-looking run of digits (anything after patch is lost)
_COERCE_RE = re.compile(r"(?:^|[^\d])(\d{1,16})(?:\.(\d{1,16}))?(?:\.(\d{1,16}))?(?:$|[^\d])")

_PLACEHOLDER_RE = re.compile(r"\$(\d+)")


@dataclass(frozen=True)
class SemVer:
    """Parsed semantic version with semver 2.0 precedence ordering."""

    major: int
    minor: int
    patch: int
    prerelease: tuple = field(default_factory=tuple)
    build: tuple = field(default_factory=tuple)

    def compare_main(self, other: "SemVer") -> int:
        mine = (self.major, self.minor, self.patch)
        theirs = (other.major, other.minor, other.patch)
        return (mine > theirs) - (mine < theirs)

    def compare_pre(self, other: "SemVer") -> int:
        if self.prerelease and not other.prerelease:
            return -1
        if not self.prerelease and other.prerelease:
            return 1
        for mine, theirs in zip(self.prerelease, other.prerelease):
            if mine == theirs:
                continue
            mine_num = isinstance(mine, int)
            theirs_num = isinstance(theirs, int)
            if mine_num and not theirs_num:
                return -1
            if theirs_num and not mine_num:
                return 1
            return 1 if mine > theirs else -1
        return (len(self.prerelease) > len(other.prerelease)) - (
            len(self.prerelease) < len(other.prerelease)
        )

    def compare(self, other: "SemVer") -> int:
        return self.compare_main(other) or self.compare_pre(other)

    def __lt__(self, other: "SemVer") -> bool:
        return self.compare(other) < 0

    def __gt__(self, other: "SemVer") -> bool:
        return self.compare(other) > 0

    def __str__(self) -> str:
        version = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            version += "-" + ".".join(str(part) for part in self.prerelease)
        return version


def _identifiers(raw: Optional[str]) -> tuple:
    if not raw:
        return ()
    return tuple(int(part) if part.isdigit() else part for part in raw.split("."))


def parse(version: Optional[str]) -> Optional[SemVer]:
    """Parse a tag as a semantic version.

    Strict (loose-prefixed) semver is tried first; otherwise the first
    ``X[.Y[.Z]]`` run is coerced, e.g. "3.14-alpine" -> 3.14.0.

    Args:
        version: Tag value (e.g. "1.2.3", "v2.0.0-rc.1", "3.14-alpine")

    Returns:
        SemVer or None when no version can be found (e.g. "latest")
    """
    if not version:
        return None

    match = _SEMVER_RE.match(version.strip())
    if match:
        major, minor, patch, pre, build = match.groups()
        return SemVer(int(major), int(minor), int(patch), _identifiers(pre), _identifiers(build))

    coerced = _COERCE_RE.search(version)
    if coerced:
        major, minor, patch = coerced.groups()
        return SemVer(int(major), int(minor or 0), int(patch or 0))

    return None


def is_greater(version1: str, version2: str) -> bool:
    """Return True if version1 is strictly greater than version2.

    Unparsable versions are never greater.
    """
    parsed1 = parse(version1)
    parsed2 = parse(version2)
    if parsed1 is None or parsed2 is None:
        return False
    return parsed1 > parsed2


def diff(version1: str, version2: str) -> Optional[str]:
    """Return the kind of change between two versions.

    Returns:
        One of major, premajor, minor, preminor, patch, prepatch, prerelease,
        or None when the versions are equal or cannot be parsed
    """
    v1 = parse(version1)
    v2 = parse(version2)
    if v1 is None or v2 is None:
        logger.debug(f"Could not parse versions '{version1}' -> '{version2}'")
        return None

    comparison = v1.compare(v2)
    if comparison == 0:
        return None

    high, low = (v1, v2) if comparison > 0 else (v2, v1)
    high_has_pre = bool(high.prerelease)
    low_has_pre = bool(low.prerelease)

    # Going from a prerelease to its release
    if low_has_pre and not high_has_pre:
        if not low.patch and not low.minor:
            return "major"
        if low.compare_main(high) == 0:
            if low.minor and not low.patch:
                return "minor"
            return "patch"

    prefix = "pre" if high_has_pre else ""
    if v1.major != v2.major:
        return prefix + "major"
    if v1.minor != v2.minor:
        return prefix + "minor"
    if v1.patch != v2.patch:
        return prefix + "patch"
    return "prerelease"


def transform(formula: Optional[str], tag: str) -> str:
    """Apply a tag transform formula.

    A formula is ``<regex> => <replacement>`` where ``$N`` refers to capture
    groups, e.g. ``^(\\d+\\.\\d+)-.*$ => $1``.

    Args:
        formula: Transform formula (no-op when empty)
        tag: Original tag value

    Returns:
        Transformed tag, or the original tag when the formula does not apply
    """
    if not formula:
        return tag

    try:
        search, replace = re.split(r"\s*=>\s*", formula, maxsplit=1)
        match = re.search(search, tag)
        if not match:
            return tag
        groups = (match.group(0),) + match.groups()

        def substitute(placeholder: re.Match) -> str:
            index = int(placeholder.group(1))
            return (groups[index] or "") if index < len(groups) else ""

        return _PLACEHOLDER_RE.sub(substitute, replace)
    except (ValueError, re.error) as e:
        logger.debug(f"Invalid tag transform '{formula}' for tag '{tag}': {e}")
        return tag
