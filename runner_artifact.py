"""
Runner release download with checksum verification and atomic extraction.

The expected SHA-256 is not available as a structured API field; it is
extracted from the free-text release notes. When it cannot be located the
fetch fails closed: an unverified tarball is never extracted.
"""

import hashlib
import hmac
import re
import shutil
import tarfile
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple
from urllib.error import HTTPError

from runner_config import (ChecksumMismatch, Config, DownloadError, ExtractError, Interrupted,
                           UpstreamError, logger, normalize_version)
from runner_github import NETWORK_ERRORS, GitHubClient, RetryPolicy

RELEASES_PATH = "repos/actions/runner/releases"
SHA256_PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')
CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class ReleaseArtifact:
    version: str
    tag: str
    filename: str
    download_url: str
    expected_sha256: str

    @property
    def directory_name(self) -> str:
        return self.filename[:-len(".tar.gz")]


def artifact_filename(os_name: str, arch: str, version: str) -> str:
    return f"actions-runner-{os_name}-{arch}-{version}.tar.gz"


def extract_sha256(notes: str, filename: str, os_name: str, arch: str) -> Optional[str]:
    """
    Best-effort extraction of the artifact digest from release notes.

    Prefers the '<!-- BEGIN SHA linux-x64 -->HASH<!-- END SHA ... -->' marker
    the runner releases use, then a 64-hex token on the same line after the
    filename.
    """
    if not notes:
        return None

    marker = re.search(
        rf'<!--\s*BEGIN SHA {re.escape(os_name)}-{re.escape(arch)}\s*-->\s*([0-9a-fA-F]{{64}})\s*<!--',
        notes
    )
    if marker:
        return marker.group(1).lower()

    for match in re.finditer(re.escape(filename), notes):
        line_end = notes.find('\n', match.end())
        tail = notes[match.end():] if line_end == -1 else notes[match.end():line_end]
        found = SHA256_PATTERN.search(tail)
        if found:
            return found.group(1).lower()

    return None


class ArtifactFetcher:
    """
    Resolves, downloads, verifies and unpacks the runner release tarball.
    Stateless apart from configuration.
    """

    def __init__(self, config: Config, github: GitHubClient, checksum_retries: int = 0,
                 interrupted: Optional[Callable[[], bool]] = None):
        self.config = config
        self.github = github
        self.checksum_retries = checksum_retries
        self.interrupted = interrupted or (lambda: False)

    def resolve(self, version: str) -> ReleaseArtifact:
        """Resolves 'latest' or a pinned version to release metadata."""
        if version == "latest":
            url = self.github.endpoint(f"{RELEASES_PATH}/latest")
        else:
            url = self.github.endpoint(f"{RELEASES_PATH}/tags/v{normalize_version(version)}")

        release = self.github.execute_api_call(url, retry=True)
        try:
            tag = release["tag_name"]
        except (KeyError, TypeError):
            raise UpstreamError("Invalid API response: release tag_name missing")

        resolved = normalize_version(tag)
        filename = artifact_filename(self.config.runner_os, self.config.runner_arch, resolved)
        logger.info(f"Runner release: {tag} ({filename})")

        expected = extract_sha256(release.get("body") or "", filename,
                                  self.config.runner_os, self.config.runner_arch)
        if not expected:
            raise ChecksumMismatch(
                f"SHA-256 for {filename} not found in release notes of {tag}; "
                "refusing to install an unverified runner."
            )

        download_url = f"{self.config.server_url}/actions/runner/releases/download/v{resolved}/{filename}"
        return ReleaseArtifact(resolved, tag, filename, download_url, expected)

    @RetryPolicy()
    def _download(self, url: str, destination: Path) -> str:
        """Streams url into destination and returns its hex SHA-256."""
        digest = hashlib.sha256()
        with self.github.open_download(url) as resp, destination.open('wb') as f:
            while chunk := resp.read(CHUNK_SIZE):
                if self.interrupted():
                    raise Interrupted("Download interrupted by signal.")
                digest.update(chunk)
                f.write(chunk)
        return digest.hexdigest()

    def download_verified(self, artifact: ReleaseArtifact, target_dir: Path) -> Path:
        """Downloads to a staging path; removes it unless the digest matches."""
        staging_dir = target_dir / ".staging"
        staging_dir.mkdir(parents=True, exist_ok=True)
        staged = staging_dir / f"{artifact.filename}.part"

        attempts = self.checksum_retries + 1
        for attempt in range(1, attempts + 1):
            logger.info(f"Downloading {artifact.download_url}")
            try:
                actual = self._download(artifact.download_url, staged)
            except Interrupted:
                staged.unlink(missing_ok=True)
                raise
            except HTTPError as e:
                staged.unlink(missing_ok=True)
                raise DownloadError(f"Download failed: {e.code} {e.reason} ({artifact.download_url})")
            except NETWORK_ERRORS as e:
                staged.unlink(missing_ok=True)
                raise DownloadError(f"Download failed: {e} ({artifact.download_url})")
            except OSError as e:
                staged.unlink(missing_ok=True)
                raise DownloadError(f"Could not write {staged}: {e}")

            if hmac.compare_digest(actual.lower(), artifact.expected_sha256.lower()):
                logger.info(f"Checksum verified: {actual}")
                return staged

            staged.unlink(missing_ok=True)
            logger.error(f"Checksum mismatch for {artifact.filename}: expected {artifact.expected_sha256}, got {actual}")
            if attempt < attempts:
                logger.warning(f"Re-downloading as requested (attempt {attempt + 1}/{attempts})")

        raise ChecksumMismatch(
            f"Checksum mismatch for {artifact.filename}: expected {artifact.expected_sha256}"
        )

    def extract(self, tarball: Path, artifact: ReleaseArtifact, target_dir: Path) -> Path:
        """
        Extracts into a temporary sibling directory and renames it into place.
        An existing directory of the same name is never reused.
        """
        final_dir = target_dir / artifact.directory_name
        temp_dir = Path(tempfile.mkdtemp(prefix=".extract-", dir=target_dir))

        try:
            with tarfile.open(tarball, 'r:gz') as tar:
                tar.extractall(temp_dir, filter='data')
        except (tarfile.TarError, OSError, EOFError, TypeError) as e:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise ExtractError(f"Failed to extract {tarball.name}: {e}")

        try:
            if final_dir.exists() or final_dir.is_symlink():
                logger.warning(f"Replacing existing directory {final_dir} (not reused)")
                stale = target_dir / f".stale-{uuid.uuid4().hex}"
                final_dir.rename(stale)
                shutil.rmtree(stale, ignore_errors=True)
            temp_dir.rename(final_dir)
        except OSError as e:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise ExtractError(f"Failed to move extracted runner into {final_dir}: {e}")

        logger.info(f"Runner extracted to {final_dir}")
        return final_dir

    def fetch_and_verify(self, version: str, target_dir: Path) -> Path:
        """Returns the extracted directory only when the digest matched."""
        path, _ = self.fetch(version, target_dir)
        return path

    def fetch(self, version: str, target_dir: Path) -> Tuple[Path, ReleaseArtifact]:
        """Like fetch_and_verify, also returning the resolved release."""
        target_dir = Path(target_dir)
        target_dir.mkdir(parents=True, exist_ok=True)

        artifact = self.resolve(version)
        tarball = self.download_verified(artifact, target_dir)
        try:
            return self.extract(tarball, artifact, target_dir), artifact
        finally:
            tarball.unlink(missing_ok=True)
