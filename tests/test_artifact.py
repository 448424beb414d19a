#!/usr/bin/env python3
import hashlib
import io
import sys
import tarfile
import tempfile
import unittest
from pathlib import Path
from urllib.error import HTTPError
from unittest.mock import MagicMock, patch

# Import from parent directory
sys.path.insert(0, str(Path(__file__).parent.parent))
import runner_artifact
from runner_artifact import ArtifactFetcher
from runner_config import ChecksumMismatch, Config, DownloadError, ExtractError, Interrupted
from runner_github import GitHubClient

VERSION = "2.319.1"
FILENAME = f"actions-runner-linux-x64-{VERSION}.tar.gz"


def build_tarball(files):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w:gz') as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


class TestExtractSha256(unittest.TestCase):

    SHA = "a" * 40 + "0123456789abcdef01234567"

    def test_marker(self):
        notes = f"## Notes\n<!-- BEGIN SHA linux-x64 -->{self.SHA}<!-- END SHA linux-x64 -->\n"
        self.assertEqual(runner_artifact.extract_sha256(notes, FILENAME, "linux", "x64"), self.SHA)

    def test_marker_of_other_platform_ignored(self):
        notes = f"<!-- BEGIN SHA linux-arm64 -->{self.SHA}<!-- END SHA linux-arm64 -->"
        self.assertIsNone(runner_artifact.extract_sha256(notes, FILENAME, "linux", "x64"))

    def test_table_line(self):
        notes = (
            "| file | sha256 |\n"
            f"| actions-runner-osx-x64-{VERSION}.tar.gz | {'b' * 64} |\n"
            f"| {FILENAME} | {self.SHA.upper()} |\n"
        )
        self.assertEqual(runner_artifact.extract_sha256(notes, FILENAME, "linux", "x64"), self.SHA)

    def test_not_found(self):
        self.assertIsNone(runner_artifact.extract_sha256("No hashes this time.", FILENAME, "linux", "x64"))
        self.assertIsNone(runner_artifact.extract_sha256("", FILENAME, "linux", "x64"))


class TestArtifactFetcher(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.target = Path(self.tmp.name) / "actions-runner"

        self.config = Config.from_mapping({
            "RUNNER_OS": "linux",
            "RUNNER_ARCH": "x64",
            "RUNNER_DOWNLOAD_RETRIES": "0",
        })
        self.payload = build_tarball({
            "config.sh": b"#!/bin/bash\necho configure\n",
            "run.sh": b"#!/bin/bash\necho run\n",
            "bin/Runner.Listener": b"\x7fELF",
        })
        self.sha = hashlib.sha256(self.payload).hexdigest()

        self.github = GitHubClient(self.config)
        self.github.execute_api_call = MagicMock(return_value=self.release(self.sha))
        self.github.open_download = MagicMock(side_effect=lambda url: io.BytesIO(self.payload))

    def tearDown(self):
        self.tmp.cleanup()

    def release(self, sha):
        body = f"Runner release\n<!-- BEGIN SHA linux-x64 -->{sha}<!-- END SHA linux-x64 -->\n" if sha else "no hashes"
        return {"tag_name": f"v{VERSION}", "body": body}

    def final_dir(self):
        return self.target / f"actions-runner-linux-x64-{VERSION}"

    def test_fetch_success(self):
        fetcher = ArtifactFetcher(self.config, self.github)

        path, artifact = fetcher.fetch("latest", self.target)

        self.assertEqual(path, self.final_dir())
        self.assertTrue((path / "config.sh").exists())
        self.assertTrue((path / "bin" / "Runner.Listener").exists())
        self.assertEqual(artifact.version, VERSION)
        self.assertEqual(artifact.download_url,
                         f"https://github.com/actions/runner/releases/download/v{VERSION}/{FILENAME}")
        self.assertFalse((self.target / ".staging" / f"{FILENAME}.part").exists())
        self.github.execute_api_call.assert_called_once_with(
            "https://api.github.com/repos/actions/runner/releases/latest", retry=True
        )

    def test_pinned_version(self):
        fetcher = ArtifactFetcher(self.config, self.github)

        self.assertEqual(fetcher.fetch_and_verify("v2.319.1", self.target), self.final_dir())
        self.github.execute_api_call.assert_called_once_with(
            f"https://api.github.com/repos/actions/runner/releases/tags/v{VERSION}", retry=True
        )

    def test_single_byte_corruption(self):
        corrupted = bytearray(self.payload)
        corrupted[len(corrupted) // 2] ^= 0x01
        self.github.open_download = MagicMock(side_effect=lambda url: io.BytesIO(bytes(corrupted)))

        sibling = self.target / "keep-me"
        sibling.mkdir(parents=True)
        (sibling / "file").write_text("untouched")

        fetcher = ArtifactFetcher(self.config, self.github)
        with self.assertLogs('runner-ctl', level='ERROR'):
            with self.assertRaises(ChecksumMismatch):
                fetcher.fetch("latest", self.target)

        self.assertFalse(self.final_dir().exists())
        self.assertFalse((self.target / ".staging" / f"{FILENAME}.part").exists())
        self.assertEqual((sibling / "file").read_text(), "untouched")
        self.assertEqual(self.github.open_download.call_count, 1)

    def test_checksum_retries_redownload(self):
        corrupted = self.payload[:-1] + bytes([self.payload[-1] ^ 0xFF])
        downloads = [io.BytesIO(corrupted), io.BytesIO(self.payload)]
        self.github.open_download = MagicMock(side_effect=lambda url: downloads.pop(0))

        fetcher = ArtifactFetcher(self.config, self.github, checksum_retries=1)
        with self.assertLogs('runner-ctl', level='WARNING'):
            path, _ = fetcher.fetch("latest", self.target)

        self.assertTrue((path / "run.sh").exists())
        self.assertEqual(self.github.open_download.call_count, 2)

    def test_missing_hash_fails_closed(self):
        self.github.execute_api_call = MagicMock(return_value=self.release(None))
        fetcher = ArtifactFetcher(self.config, self.github)

        with self.assertRaises(ChecksumMismatch) as cm:
            fetcher.fetch("latest", self.target)

        self.assertIn("not found in release notes", str(cm.exception))
        self.github.open_download.assert_not_called()
        self.assertFalse(self.final_dir().exists())

    def test_existing_directory_is_replaced(self):
        stale = self.final_dir()
        stale.mkdir(parents=True)
        (stale / ".runner").write_text("{}")
        (stale / "leftover.txt").write_text("old")

        fetcher = ArtifactFetcher(self.config, self.github)
        with self.assertLogs('runner-ctl', level='WARNING'):
            path, _ = fetcher.fetch("latest", self.target)

        self.assertFalse((path / "leftover.txt").exists())
        self.assertFalse((path / ".runner").exists())
        self.assertTrue((path / "config.sh").exists())
        self.assertEqual([p.name for p in self.target.iterdir() if p.name.startswith(".stale-")], [])

    def test_interrupted_download(self):
        fetcher = ArtifactFetcher(self.config, self.github, interrupted=lambda: True)

        with self.assertRaises(Interrupted):
            fetcher.fetch("latest", self.target)
        self.assertFalse((self.target / ".staging" / f"{FILENAME}.part").exists())
        self.assertFalse(self.final_dir().exists())

    def test_download_http_error(self):
        self.github.open_download = MagicMock(side_effect=HTTPError("url", 404, "Not Found", {}, None))
        fetcher = ArtifactFetcher(self.config, self.github)

        with self.assertRaises(DownloadError) as cm:
            fetcher.fetch("latest", self.target)
        self.assertIn("404", str(cm.exception))
        self.assertEqual(self.github.open_download.call_count, 1)

    @patch('runner_artifact.tarfile.TarFile.extractall', side_effect=TypeError("unexpected keyword argument 'filter'"))
    def test_extract_failure_removes_temp_dir(self, _):
        fetcher = ArtifactFetcher(self.config, self.github)

        with self.assertRaises(ExtractError):
            fetcher.fetch("latest", self.target)

        self.assertEqual([p.name for p in self.target.iterdir() if p.name.startswith(".extract-")], [])
        self.assertFalse(self.final_dir().exists())


if __name__ == '__main__':
    unittest.main(verbosity=2)
