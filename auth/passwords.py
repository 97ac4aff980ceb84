"""Password hashing with bcrypt."""

import secrets

import bcrypt

from auth.exceptions import WeakPasswordError


def _encode(password: str) -> bytes:
    # bcrypt only reads the first 72 bytes; newer releases raise instead of truncating
    return password.encode("utf-8")[:72]


class PasswordHasher:
    """Salted, deliberately slow password hashing.

    verify() is CPU-bound by design; callers on an event loop must run it
    in a worker thread.
    """

    MIN_LENGTH = 8
    MAX_LENGTH = 128

    def __init__(self, rounds: int = 12):
        """
        Args:
            rounds: bcrypt work factor (log2 of iterations)
        """
        self._rounds = rounds

    @property
    def rounds(self) -> int:
        return self._rounds

    def hash(self, password: str) -> str:
        """Hash a plaintext password.

        Raises:
            WeakPasswordError: If password doesn't meet requirements
        """
        self.validate_strength(password)
        salt = bcrypt.gensalt(rounds=self._rounds)
        return bcrypt.hashpw(_encode(password), salt).decode("utf-8")

    def random_hash(self) -> str:
        """Hash of a random secret nobody ever sees.

        Used for accounts auto-provisioned by magic link: they can only sign in
        by magic link until a password is explicitly set.
        """
        return self.hash(secrets.token_hex(32))

    def verify(self, password: str, password_hash: str) -> bool:
        """Check a password against a hash. Malformed hashes never verify."""
        try:
            return bcrypt.checkpw(
                _encode(password),
                password_hash.encode("utf-8"),
            )
        except (ValueError, TypeError):
            return False

    def validate_strength(self, password: str) -> None:
        """Raise WeakPasswordError unless 8 <= len(password) <= 128."""
        if not password:
            raise WeakPasswordError("Password cannot be empty")
        if len(password) < self.MIN_LENGTH:
            raise WeakPasswordError(f"Password must be at least {self.MIN_LENGTH} characters")
        if len(password) > self.MAX_LENGTH:
            raise WeakPasswordError(f"Password cannot exceed {self.MAX_LENGTH} characters")

    def needs_rehash(self, password_hash: str) -> bool:
        """True when the stored hash was made with a different work factor."""
        try:
            # bcrypt format: $2b$XX$...
            parts = password_hash.split("$")
            if len(parts) >= 3:
                return int(parts[2]) != self._rounds
        except ValueError:
            pass
        return True
