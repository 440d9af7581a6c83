"""Git-branch-scoped storage of baseline screenshots.

Layout on disk::

    <baseline_dir>/<branch>/<test-name>.png
    <baseline_dir>/<branch>/<test-name>.json   (metadata sidecar)

A branch without its own baseline falls back to the default branch, so a
fresh feature branch compares against ``main`` until it saves its own.
"""

import asyncio
import json
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import structlog

from src.services.git_resolver import GitResolver, VCSResolver
from src.visual_ai.errors import BaselineNotFound
from src.visual_ai.models import BaselineMetadata

logger = structlog.get_logger()

IMAGE_SUFFIX = ".png"
METADATA_SUFFIX = ".json"


def sanitize_name(name: str) -> str:
    """Make a test or branch name safe to use as a single path component."""
    cleaned = re.sub(r"[^a-zA-Z0-9\-_.]", "-", name)
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    # Dot-only names would escape the branch directory
    if not cleaned.strip("."):
        cleaned = cleaned.replace(".", "-") or "unnamed"
    return cleaned


@dataclass
class BaselineLoadResult:
    """Outcome of a baseline lookup across candidate branches."""

    found: bool
    test_name: str
    branches_tried: list[str]
    image: bytes | None = None
    metadata: BaselineMetadata | None = None
    branch: str | None = None
    path: Path | None = None
    error: str | None = None

    def unwrap(self) -> tuple[bytes, BaselineMetadata]:
        """Return (image, metadata) or raise BaselineNotFound."""
        if not self.found or self.image is None or self.metadata is None:
            raise BaselineNotFound(self.test_name, self.branches_tried)
        return self.image, self.metadata


@dataclass
class BaselineSaveResult:
    path: Path
    metadata_path: Path
    metadata: BaselineMetadata


@dataclass
class BaselineInfo:
    exists: bool
    path: Path | None = None
    last_modified: datetime | None = None
    branch: str | None = None
    commit: str | None = None


@dataclass
class BaselineCleanupResult:
    """Result of an age-based sweep; per-file failures do not stop it."""

    deleted_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class BaselineStore:
    """Saves, loads and prunes baseline images per git branch."""

    def __init__(
        self,
        baseline_dir: str | Path,
        vcs: Optional[VCSResolver] = None,
        default_branch: str = "main",
    ):
        self.baseline_dir = Path(baseline_dir)
        self.default_branch = default_branch
        self.vcs = vcs or GitResolver(default_branch=default_branch)
        self.log = logger.bind(component="baseline_store")

    def generate_baseline_path(self, test_name: str, branch: str) -> Path:
        return self.baseline_dir / sanitize_name(branch) / f"{sanitize_name(test_name)}{IMAGE_SUFFIX}"

    def generate_metadata_path(self, test_name: str, branch: str) -> Path:
        return self.baseline_dir / sanitize_name(branch) / f"{sanitize_name(test_name)}{METADATA_SUFFIX}"

    async def save(
        self,
        test_name: str,
        image: bytes,
        metadata: BaselineMetadata | dict[str, Any] | None = None,
    ) -> BaselineSaveResult:
        """Write a baseline and its metadata for the resolved branch.

        Branch and commit come from ``metadata`` when set there, otherwise
        from the VCS resolver. ``saved_at`` is always stamped now.
        """
        if isinstance(metadata, BaselineMetadata):
            fields = metadata.to_dict()
        else:
            fields = dict(metadata or {})

        branch = fields.get("branch") or await self.vcs.get_current_branch()
        commit = fields.get("commit") or await self.vcs.get_current_commit()
        fields.update(
            branch=branch,
            commit=commit,
            saved_at=datetime.now(timezone.utc).isoformat(),
        )
        record = BaselineMetadata.from_dict(fields)

        image_path = self.generate_baseline_path(test_name, branch)
        metadata_path = self.generate_metadata_path(test_name, branch)
        payload = json.dumps(record.to_dict(), indent=2, sort_keys=True).encode("utf-8")

        # Image first so a reader never sees metadata without its image
        await asyncio.to_thread(_atomic_write, image_path, image)
        await asyncio.to_thread(_atomic_write, metadata_path, payload)

        self.log.info("Baseline saved", test_name=test_name, branch=branch, path=str(image_path))
        return BaselineSaveResult(path=image_path, metadata_path=metadata_path, metadata=record)

    async def load(self, test_name: str, branch: Optional[str] = None) -> BaselineLoadResult:
        """Find a baseline on the given/current branch, then the default branch."""
        target = branch or await self.vcs.get_current_branch()
        branches = [target] if target == self.default_branch else [target, self.default_branch]

        for candidate in branches:
            loaded = await asyncio.to_thread(self._read_pair, test_name, candidate)
            if loaded is not None:
                image, metadata, path = loaded
                if candidate != target:
                    self.log.debug("Baseline loaded from fallback branch", test_name=test_name, branch=candidate)
                return BaselineLoadResult(
                    found=True,
                    test_name=test_name,
                    branches_tried=branches,
                    image=image,
                    metadata=metadata,
                    branch=candidate,
                    path=path,
                )

        return BaselineLoadResult(
            found=False,
            test_name=test_name,
            branches_tried=branches,
            error=f"Baseline not found for test '{test_name}' in branches: {', '.join(branches)}",
        )

    def _read_pair(self, test_name: str, branch: str) -> Optional[tuple[bytes, BaselineMetadata, Path]]:
        image_path = self.generate_baseline_path(test_name, branch)
        metadata_path = self.generate_metadata_path(test_name, branch)
        try:
            image = image_path.read_bytes()
            metadata = BaselineMetadata.from_dict(json.loads(metadata_path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            self.log.warning(
                "Baseline metadata is corrupt, treating as missing",
                test_name=test_name,
                branch=branch,
                path=str(metadata_path),
                error=str(e),
            )
            return None
        return image, metadata, image_path

    async def get_info(self, test_name: str, branch: Optional[str] = None) -> BaselineInfo:
        """Describe a baseline without reading its image."""
        target = branch or await self.vcs.get_current_branch()
        return await asyncio.to_thread(self._stat_baseline, test_name, target)

    def _stat_baseline(self, test_name: str, branch: str) -> BaselineInfo:
        image_path = self.generate_baseline_path(test_name, branch)
        try:
            stats = image_path.stat()
        except FileNotFoundError:
            return BaselineInfo(exists=False)

        recorded_branch = recorded_commit = None
        try:
            metadata = json.loads(self.generate_metadata_path(test_name, branch).read_text(encoding="utf-8"))
            recorded_branch = metadata.get("branch")
            recorded_commit = metadata.get("commit")
        except (OSError, ValueError, AttributeError) as e:
            self.log.debug("Baseline metadata unreadable", test_name=test_name, error=str(e))

        return BaselineInfo(
            exists=True,
            path=image_path,
            last_modified=datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc),
            branch=recorded_branch,
            commit=recorded_commit,
        )

    async def delete(self, test_name: str, branch: Optional[str] = None) -> bool:
        """Remove a baseline and its sidecar. Returns False when absent."""
        target = branch or await self.vcs.get_current_branch()
        deleted = await asyncio.to_thread(self._delete_pair, test_name, target)
        if deleted:
            self.log.info("Baseline deleted", test_name=test_name, branch=target)
        return deleted

    def _delete_pair(self, test_name: str, branch: str) -> bool:
        image_path = self.generate_baseline_path(test_name, branch)
        try:
            image_path.unlink()
        except FileNotFoundError:
            return False
        self.generate_metadata_path(test_name, branch).unlink(missing_ok=True)
        return True

    async def list(self, branch: Optional[str] = None) -> list[str]:
        """Sanitized test names that have a baseline on the branch."""
        target = branch or await self.vcs.get_current_branch()
        branch_dir = self.baseline_dir / sanitize_name(target)
        if not branch_dir.is_dir():
            return []
        names = await asyncio.to_thread(lambda: sorted(p.stem for p in branch_dir.glob(f"*{IMAGE_SUFFIX}")))
        return names

    async def cleanup(self, max_age_days: float, branch: Optional[str] = None) -> BaselineCleanupResult:
        """Delete baselines whose image is older than ``max_age_days``.

        Only image files count toward ``deleted_count``. A failure on one
        file is recorded and the sweep continues.
        """
        target = branch or await self.vcs.get_current_branch()
        result = await asyncio.to_thread(self._sweep, target, max_age_days)
        self.log.info(
            "Baseline cleanup finished",
            branch=target,
            deleted=result.deleted_count,
            errors=len(result.errors),
        )
        return result

    def _sweep(self, branch: str, max_age_days: float) -> BaselineCleanupResult:
        result = BaselineCleanupResult()
        branch_dir = self.baseline_dir / sanitize_name(branch)
        if not branch_dir.is_dir():
            return result

        cutoff = time.time() - max_age_days * 86400
        for path in sorted(branch_dir.iterdir()):
            if path.suffix != IMAGE_SUFFIX:
                continue
            try:
                if not path.is_file() or path.stat().st_mtime >= cutoff:
                    continue
                path.unlink()
                path.with_suffix(METADATA_SUFFIX).unlink(missing_ok=True)
                result.deleted_count += 1
            except OSError as e:
                self.log.warning("Baseline cleanup failed for file", path=str(path), error=str(e))
                result.errors.append(f"{path.name}: {e}")
        return result
