from __future__ import annotations

import base64
import tempfile
import unittest
from pathlib import Path

from chatrelay.credentials import CredentialStore, InvalidCredential
from support import creds_blob


class CredentialStoreTests(unittest.TestCase):
    def _store(self, tmpdir: str) -> CredentialStore:
        return CredentialStore(Path(tmpdir) / "session")

    def test_restore_twice_leaves_same_bytes(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = self._store(tmpdir)
            encoded = base64.b64encode(creds_blob()).decode("ascii")
            store.restore(encoded)
            first = store.read_bytes()
            store.restore(encoded)
            self.assertEqual(store.read_bytes(), first)
            self.assertEqual(first, creds_blob())

    def test_restore_accepts_wrapped_base64(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = self._store(tmpdir)
            encoded = base64.b64encode(creds_blob()).decode("ascii")
            wrapped = "\n".join(encoded[i : i + 20] for i in range(0, len(encoded), 20))
            store.restore(wrapped + "\n")
            self.assertEqual(store.load()["token"], "123:abc")

    def test_invalid_blob_never_replaces_existing_copy(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = self._store(tmpdir)
            store.restore_bytes(creds_blob())
            bad_inputs = [
                "not base64 !!",
                base64.b64encode(b"not json").decode("ascii"),
                base64.b64encode(b"[1, 2]").decode("ascii"),
                base64.b64encode(b'{"token": "x"}').decode("ascii"),
            ]
            for bad in bad_inputs:
                with self.subTest(bad=bad):
                    with self.assertRaises(InvalidCredential):
                        store.restore(bad)
                    self.assertEqual(store.read_bytes(), creds_blob())

    def test_save_writes_only_when_bytes_change(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = self._store(tmpdir)
            self.assertTrue(store.save(creds_blob()))
            self.assertFalse(store.save(creds_blob()))
            self.assertTrue(store.save(creds_blob(token="456:def")))
            self.assertEqual(store.load()["token"], "456:def")

    def test_save_rejects_non_json(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = self._store(tmpdir)
            with self.assertRaises(InvalidCredential):
                store.save(b"garbage")
            self.assertFalse(store.exists())

    def test_discard_removes_session_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = self._store(tmpdir)
            store.save(creds_blob())
            store.discard()
            self.assertFalse(store.exists())
            self.assertIsNone(store.load())
            store.discard()


if __name__ == "__main__":
    unittest.main()
