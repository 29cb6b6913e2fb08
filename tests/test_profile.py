from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from chatrelay.profile import (
    ProfileError,
    ensure_profile_directories,
    load_profile,
    read_secret,
)


def _write_profile(root: Path, name: str, body: str) -> None:
    profiles = root / "config" / "profiles"
    profiles.mkdir(parents=True, exist_ok=True)
    (profiles / f"{name}.yaml").write_text(body, encoding="utf-8")


class ProfileLoaderTests(unittest.TestCase):
    def test_defaults_and_paths(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            _write_profile(root, "home", "name: home\ndisplay_name: Home\nowner_id: 77\n")
            profile = load_profile("home", repo_root=root, data_root=root / "data")
            self.assertEqual(profile.owner_id, "77")
            self.assertEqual(profile.window_size, 10)
            self.assertEqual(profile.control_prefix, ".")
            self.assertEqual(profile.ai_timeout_seconds, 20)
            self.assertFalse(profile.backup.enabled)
            self.assertEqual(profile.paths.session_dir, root / "data" / "home" / "session")
            self.assertEqual(profile.paths.mirror_dir, root / "data" / "home" / "backup")

            ensure_profile_directories(profile)
            self.assertTrue(profile.paths.secrets_dir.is_dir())
            self.assertTrue(profile.paths.logs_dir.is_dir())
            self.assertFalse(profile.paths.mirror_dir.exists())

    def test_ai_timeout_is_clamped(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            _write_profile(
                root,
                "home",
                "name: home\ndisplay_name: Home\nowner_id: '1'\nai_timeout_seconds: 900\n",
            )
            profile = load_profile("home", repo_root=root, data_root=root)
            self.assertEqual(profile.ai_timeout_seconds, 120)

    def test_missing_required_keys(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            _write_profile(root, "home", "name: home\n")
            with self.assertRaises(ProfileError):
                load_profile("home", repo_root=root, data_root=root)

    def test_name_mismatch(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            _write_profile(root, "home", "name: other\ndisplay_name: X\nowner_id: '1'\n")
            with self.assertRaises(ProfileError):
                load_profile("home", repo_root=root, data_root=root)

    def test_backup_requires_remote(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            _write_profile(
                root,
                "home",
                "name: home\ndisplay_name: X\nowner_id: '1'\nbackup:\n  enabled: true\n",
            )
            with self.assertRaises(ProfileError):
                load_profile("home", repo_root=root, data_root=root)

    def test_read_secret(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            secrets = Path(tmpdir)
            (secrets / "token.txt").write_text("  abc \n", encoding="utf-8")
            (secrets / "empty.txt").write_text("\n", encoding="utf-8")
            self.assertEqual(read_secret(secrets, "token.txt"), "abc")
            self.assertIsNone(read_secret(secrets, "empty.txt"))
            self.assertIsNone(read_secret(secrets, "missing.txt"))

    def test_bundled_example_profile_loads(self) -> None:
        repo_root = Path(__file__).resolve().parent.parent
        with tempfile.TemporaryDirectory() as tmpdir:
            profile = load_profile("example", repo_root=repo_root, data_root=Path(tmpdir))
            self.assertEqual(profile.name, "example")
            self.assertEqual(profile.activate_keyword, "activateai")


if __name__ == "__main__":
    unittest.main()
