"""Password hashing and signed session tokens.

Passwords are hashed with werkzeug's PBKDF2-SHA256 at a fixed 600,000
iterations and a random 16 character salt. Session tokens are itsdangerous
timestamp-signed strings whose only payload is the account id; they are valid
for seven days.
"""
from datetime import timedelta
from functools import lru_cache

from itsdangerous import BadData, URLSafeTimedSerializer
from werkzeug.security import check_password_hash, generate_password_hash

PASSWORD_HASH_METHOD = "pbkdf2:sha256:600000"
PASSWORD_SALT_LENGTH = 16
TOKEN_MAX_AGE = timedelta(days=7)
TOKEN_SALT = "coloring-studio.auth-token"


def hash_password(password: str) -> str:
    return generate_password_hash(password, method=PASSWORD_HASH_METHOD, salt_length=PASSWORD_SALT_LENGTH)


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return check_password_hash(password_hash, password)
    except ValueError:
        # Unknown or corrupt hash format
        return False


@lru_cache(maxsize=1)
def _dummy_password_hash():
    return hash_password("not-a-real-password")


def burn_password_check(password: str) -> bool:
    """Spend the same hashing work as a real check when there is no account to check against."""
    check_password_hash(_dummy_password_hash(), password or "")
    return False


class TokenSigner:
    """Issues and verifies session tokens carrying an account id."""

    def __init__(self, secret_key: str, max_age: timedelta = TOKEN_MAX_AGE):
        if not secret_key:
            raise ValueError("secret_key is required")
        self.max_age = max_age
        self._serializer = URLSafeTimedSerializer(secret_key, salt=TOKEN_SALT)

    @property
    def max_age_seconds(self) -> int:
        return int(self.max_age.total_seconds())

    def issue(self, account_id: str) -> str:
        return self._serializer.dumps(str(account_id))

    def verify(self, token: str):
        """Return the account id, or None for any bad, expired or malformed token."""
        if not token:
            return None
        try:
            account_id = self._serializer.loads(token, max_age=self.max_age_seconds)
        except BadData:
            return None
        if not isinstance(account_id, str) or not account_id:
            return None
        return account_id
