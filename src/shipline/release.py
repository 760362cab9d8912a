# release.py
"""
Version computation and release creation.

Version order
-------------
Tags are read as ``[prefix]MAJOR.MINOR.PATCH[-PRERELEASE][+BUILD]``; tags
that do not parse are ignored for versioning.

Precedence follows SemVer 2.0:
  - MAJOR, MINOR, PATCH compare numerically (1.9.10 > 1.9.9)
  - a pre-release sorts before its release (1.0.0-rc.1 < 1.0.0)
  - pre-release identifiers compare left to right, numeric ones
    numerically, numeric before alphanumeric, a shorter list first when
    it is a prefix of the longer one
  - build metadata and the prefix do not affect precedence
Major version zero is ordinary (0.9.0 < 0.10.0 < 1.0.0).

Two tags with equal precedence (``v1.2.0`` and ``1.2.0``) are the same
version; sorting tag strings uses the raw string as the final tie-break so
the order is total.

Next version
------------
The base is the highest final (non-pre-release) tag, or 0.0.0 when there
is none. Bumping ``major`` resets minor and patch; ``minor`` resets patch.
When the highest tag overall is a pre-release of a version above the
bumped candidate, the candidate becomes that version's final release
(1.0.0-rc.2 + patch -> 1.0.0).
"""
from __future__ import annotations

import functools
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from .errors import ConfigurationError, NoOpRelease, StepCancelled
from .git_facts import git
from .model import CallStep, Release, RunOutcome
from .store import Store, StoreError

logger = logging.getLogger(__name__)

BUMPS = ("major", "minor", "patch")
DEFAULT_BUMP = "patch"

_VERSION_RE = re.compile(
    r"^(?P<prefix>[A-Za-z_-]*?)"
    r"(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)"
    r"(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    major: int
    minor: int
    patch: int
    prerelease: Tuple[str, ...] = ()
    build: str = ""
    prefix: str = ""
    raw: str = field(default="", compare=False)

    @classmethod
    def parse(cls, text: str) -> "Version":
        m = _VERSION_RE.match(text.strip())
        if not m:
            raise ValueError(f"not a version: {text!r}")
        pre = m.group("pre")
        return cls(
            major=int(m.group("major")),
            minor=int(m.group("minor")),
            patch=int(m.group("patch")),
            prerelease=tuple(pre.split(".")) if pre else (),
            build=m.group("build") or "",
            prefix=m.group("prefix") or "",
            raw=text.strip(),
        )

    @classmethod
    def try_parse(cls, text: str) -> Optional["Version"]:
        try:
            return cls.parse(text)
        except ValueError:
            return None

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    @property
    def core(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def precedence(self) -> tuple:
        if not self.prerelease:
            pre: tuple = (1,)
        else:
            pre = (0, tuple(
                (0, int(ident), "") if ident.isdigit() else (1, 0, ident)
                for ident in self.prerelease
            ))
        return (self.major, self.minor, self.patch, pre)

    def bump(self, kind: str = DEFAULT_BUMP) -> "Version":
        if kind not in BUMPS:
            raise ConfigurationError(f"unknown bump policy {kind!r}", details={"allowed": list(BUMPS)})
        if kind == "major":
            core = (self.major + 1, 0, 0)
        elif kind == "minor":
            core = (self.major, self.minor + 1, 0)
        else:
            core = (self.major, self.minor, self.patch + 1)
        return Version(*core, prefix=self.prefix)

    def finalized(self) -> "Version":
        return Version(self.major, self.minor, self.patch, prefix=self.prefix)

    def with_prefix(self, prefix: str) -> "Version":
        return Version(self.major, self.minor, self.patch, self.prerelease, self.build, prefix)

    @property
    def tag(self) -> str:
        s = f"{self.prefix}{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            s += "-" + ".".join(self.prerelease)
        if self.build:
            s += "+" + self.build
        return s

    def __str__(self) -> str:
        return self.tag

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.precedence() == other.precedence()

    def __lt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.precedence() < other.precedence()

    def __hash__(self) -> int:
        return hash(self.precedence())


def parse_tags(tags: Iterable[str]) -> List[Version]:
    """Parse the version tags, dropping anything that is not a version."""
    return [v for v in (Version.try_parse(t) for t in tags) if v is not None]


def sort_tags(tags: Iterable[str]) -> List[str]:
    """Version tags in ascending order (total: precedence, then raw string)."""
    versions = parse_tags(tags)
    return [v.raw for v in sorted(versions, key=lambda v: (v.precedence(), v.raw))]


def highest(tags: Iterable[str], *, final_only: bool = False) -> Optional[Version]:
    versions = [v for v in parse_tags(tags) if not (final_only and v.is_prerelease)]
    if not versions:
        return None
    return max(versions, key=lambda v: (v.precedence(), v.raw))


def next_version(tags: Iterable[str], bump: str = DEFAULT_BUMP, prefix: str | None = None) -> Version:
    tags = list(tags)
    base = highest(tags, final_only=True)
    top = highest(tags)
    if prefix is None:
        prefix = (top or base).prefix if (top or base) else "v"

    candidate = (base or Version(0, 0, 0)).bump(bump).with_prefix(prefix)
    if top is not None and top.is_prerelease and candidate < top.finalized():
        candidate = top.finalized().with_prefix(prefix)
    return candidate


# ----------------------------------------------------------------------
# Source control contract
# ----------------------------------------------------------------------

class SourceControl(Protocol):
    def head_commit(self) -> str: ...
    def tags(self) -> List[str]: ...
    def tags_at(self, commit: str) -> List[str]: ...
    def is_shallow(self) -> bool: ...
    def create_tag(self, tag: str, commit: str, message: str) -> None: ...
    def log_subjects(self, since: Optional[str] = None) -> List[str]: ...


class GitSourceControl:
    """SourceControl over the local git checkout (see git_facts/git.py)."""

    def __init__(self, cwd: str | None = None):
        self.cwd = cwd

    def head_commit(self) -> str:
        return git.head_sha(cwd=self.cwd)

    def tags(self) -> List[str]:
        return git.list_tags(cwd=self.cwd)

    def tags_at(self, commit: str) -> List[str]:
        return git.tags_at(commit, cwd=self.cwd)

    def is_shallow(self) -> bool:
        return git.is_shallow(cwd=self.cwd)

    def create_tag(self, tag: str, commit: str, message: str) -> None:
        git.create_tag(tag, commit, message, cwd=self.cwd)

    def log_subjects(self, since: Optional[str] = None) -> List[str]:
        return git.log_subjects(since=since, cwd=self.cwd)


# ----------------------------------------------------------------------
# Release controller
# ----------------------------------------------------------------------

class ReleaseController:
    """
    Tags the current commit with the next version and records the Release.

    Idempotent per commit: a commit that already carries a final release
    tag raises NoOpRelease and leaves tags and the release list untouched.
    The candidate is always above every existing final tag, so a rerun can
    neither duplicate nor regress a version.
    """

    def __init__(
        self,
        source: SourceControl,
        store: Optional[Store] = None,
        *,
        bump: str = DEFAULT_BUMP,
        tag_prefix: str | None = None,
        main_pipeline: str = "main",
    ):
        if bump not in BUMPS:
            raise ConfigurationError(f"unknown bump policy {bump!r}", details={"allowed": list(BUMPS)})
        self.source = source
        self.store = store
        self.bump = bump
        self.tag_prefix = tag_prefix
        self.main_pipeline = main_pipeline

    def _tags(self) -> List[str]:
        if self.source.is_shallow():
            raise ConfigurationError(
                "repository history is shallow; version computation needs every tag "
                "(checkout with fetch_depth=0)"
            )
        tags = list(self.source.tags())
        if self.store is not None:
            tags.extend(r.tag for r in self.store.list_releases())
        return tags

    def plan(self, bump: str | None = None) -> Version:
        return next_version(self._tags(), bump or self.bump, self.tag_prefix)

    def cut_release(
        self,
        bump: str | None = None,
        *,
        notes: str | None = None,
        artifacts: Sequence[str] = (),
    ) -> Release:
        tags = self._tags()
        commit = self.source.head_commit()
        candidate = next_version(tags, bump or self.bump, self.tag_prefix)

        on_commit = parse_tags(self.source.tags_at(commit))
        if self.store is not None:
            on_commit += parse_tags(r.tag for r in self.store.releases_for_commit(commit))
        released = [v for v in on_commit if not v.is_prerelease]
        if released:
            existing = max(released)
            raise NoOpRelease(
                f"commit {commit[:12]} is already released as {existing.raw or existing.tag}",
                details={"commit": commit, "candidate": candidate.tag},
            )

        previous = highest(tags)
        if notes is None:
            notes = self.generate_notes(previous.raw if previous else None)

        release = Release(tag=candidate.tag, commit=commit, notes=notes, artifacts=tuple(artifacts))
        self.source.create_tag(release.tag, commit, notes)
        if self.store is not None:
            try:
                self.store.add_release(release)
            except StoreError as e:
                raise NoOpRelease(str(e), details={"commit": commit}) from e
        logger.info("released %s at %s", release.tag, commit[:12])
        return release

    def generate_notes(self, since: str | None) -> str:
        subjects = self.source.log_subjects(since)
        if not subjects:
            return "No changes."
        return "\n".join(f"- {s}" for s in subjects)

    def release_after_run(self, record, *, bump: str | None = None, artifacts: Sequence[str] = ()) -> Optional[Release]:
        """Cut a release when a run of the main pipeline succeeded."""
        if record.pipeline != self.main_pipeline or record.outcome is not RunOutcome.SUCCEEDED:
            return None
        return self.cut_release(bump, artifacts=artifacts)


def release_step(
    controller: ReleaseController,
    *,
    name: str = "Tag release",
    bump: str | None = None,
    artifacts: Sequence[str] = (),
) -> CallStep:
    """A step that cuts a release when it runs (place it in a job that needs the build/test jobs)."""

    def _run(ctx) -> str:
        # no tag for a cancelled run
        if ctx.cancelled:
            raise StepCancelled("release cancelled before tagging")
        release = controller.cut_release(bump, artifacts=artifacts)
        ctx.log(f"created release {release.tag} at {release.commit}")
        return release.notes

    return CallStep(name=name, fn=_run)
