import sys
import unittest
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from routerbackup.core.errors import (
    ConnectionFailure,
    ConnectionKind,
    DuplicateNameError,
    ValidationError,
    error_text,
    sanitize_error,
)


class SanitizeErrorTests(unittest.TestCase):
    def test_redacts_password_assignments(self) -> None:
        cases = {
            "login failed password=hunter2 user=admin": "login failed password=*** user=admin",
            "Password: s3cret": "Password=***",
            "password='with space' rest": "password=*** rest",
            'password="quoted value", next': "password=***, next",
            "login failed password=***hunter2": "login failed password=***",
            "password = ***hunter2 again": "password=*** again",
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(expected, sanitize_error(raw))

    def test_is_idempotent(self) -> None:
        once = sanitize_error("auth error password=abc123; retry")

        self.assertEqual(once, sanitize_error(once))
        self.assertNotIn("abc123", once)
        self.assertEqual("password=***", sanitize_error("password=***"))

    def test_leaves_clean_text_alone(self) -> None:
        self.assertEqual("SSH connection timed out", sanitize_error("SSH connection timed out"))
        self.assertEqual("", sanitize_error(""))

    def test_error_text(self) -> None:
        self.assertEqual("unknown error", error_text(None))
        self.assertEqual("unknown error", error_text(RuntimeError("  ")))
        self.assertEqual("bad password=***", error_text(RuntimeError("bad password=top")))


class TaxonomyTests(unittest.TestCase):
    def test_auth_failures_are_not_transient(self) -> None:
        self.assertFalse(ConnectionFailure(ConnectionKind.AUTH_FAILED, "denied").is_transient)
        for kind in (ConnectionKind.TIMEOUT, ConnectionKind.RESET, ConnectionKind.UNREACHABLE):
            self.assertTrue(ConnectionFailure(kind, "x").is_transient)

    def test_validation_errors_are_value_errors(self) -> None:
        self.assertTrue(issubclass(DuplicateNameError, ValidationError))
        self.assertTrue(issubclass(ValidationError, ValueError))


if __name__ == "__main__":
    unittest.main()
