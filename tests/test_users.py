"""Tests for tollgate_users.py."""
import pytest

from tollgate_users import (
    InMemoryUserDirectory,
    UserRecord,
    hash_password,
    load_users,
    verify_credentials,
)


def _write(tmp_path, text):
    path = tmp_path / "users.yaml"
    path.write_text(text)
    return path


# ---------------------------------------------------------------------------
# Credential checks
# ---------------------------------------------------------------------------

class TestVerifyCredentials:
    def test_correct_password(self, users):
        user = verify_credentials(users, "u@x.com", "correct horse battery staple")
        assert user is not None
        assert user.identifier == "u@x.com"

    def test_identifier_case_and_whitespace_ignored(self, users):
        assert verify_credentials(users, "  U@X.com ", "correct horse battery staple") is not None

    def test_wrong_password(self, users):
        assert verify_credentials(users, "u@x.com", "wrong") is None

    def test_unknown_user(self, users):
        assert verify_credentials(users, "nobody@x.com", "correct horse battery staple") is None

    def test_corrupt_hash_is_a_failed_login(self):
        directory = InMemoryUserDirectory({"a@x.com": UserRecord("a@x.com", "not-a-hash")})
        assert verify_credentials(directory, "a@x.com", "pw") is None

    def test_hash_is_argon2_and_salted(self):
        first, second = hash_password("pw"), hash_password("pw")
        assert first.startswith("$argon2")
        assert first != second


# ---------------------------------------------------------------------------
# users.yaml loading
# ---------------------------------------------------------------------------

class TestLoadUsers:
    def test_valid_file(self, tmp_path):
        path = _write(tmp_path, f"""
users:
  Alice@Example.com:
    display_name: Alice
    password_hash: "{hash_password('s3cret')}"
""")
        directory = load_users(path)
        assert len(directory) == 1
        user = directory.lookup("alice@example.com")
        assert user.display_name == "Alice"
        assert verify_credentials(directory, "alice@example.com", "s3cret") == user

    def test_missing_file(self, tmp_path):
        with pytest.raises(SystemExit, match="User file not found"):
            load_users(tmp_path / "absent.yaml")

    def test_no_users_mapping(self, tmp_path):
        with pytest.raises(SystemExit, match="top-level 'users' mapping"):
            load_users(_write(tmp_path, "- just\n- a list\n"))

    def test_missing_password_hash(self, tmp_path):
        path = _write(tmp_path, "users:\n  bob@x.com:\n    display_name: Bob\n")
        with pytest.raises(SystemExit, match="password_hash"):
            load_users(path)

    def test_empty_users(self, tmp_path):
        with pytest.raises(SystemExit, match="No users defined"):
            load_users(_write(tmp_path, "users: {}\n"))
