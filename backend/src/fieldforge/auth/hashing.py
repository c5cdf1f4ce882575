"""One-way hashing of refresh tokens."""

from passlib.context import CryptContext


class TokenHasher:
    """Salted, deliberately slow hashing for refresh tokens.

    Uses passlib's CryptContext with PBKDF2-SHA256, which hashes the whole
    input; refresh tokens exceed bcrypt's 72-byte limit.
    """

    def __init__(self, rounds: int | None = None):
        """Initialize the hasher.

        Args:
            rounds: PBKDF2 iteration count (passlib default when omitted)
        """
        options = {"pbkdf2_sha256__rounds": rounds} if rounds else {}
        self._context = CryptContext(
            schemes=["pbkdf2_sha256"],
            deprecated="auto",
            **options,
        )

    def hash(self, token: str) -> str:
        """Hash a raw token.

        Returns:
            Modular crypt string (algorithm, rounds, salt and digest)
        """
        return self._context.hash(token)

    def verify(self, token: str, token_hash: str) -> bool:
        """Verify a raw token against a stored hash.

        A malformed or unrecognized stored hash verifies as False.
        """
        try:
            return self._context.verify(token, token_hash)
        except (ValueError, TypeError):
            return False
