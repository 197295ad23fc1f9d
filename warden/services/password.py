"""Password hashing, verification and strength rules (bcrypt)."""

import re
import secrets
import string
from dataclasses import dataclass, field

import bcrypt

from warden.config import get_settings

MIN_ROUNDS = 4
MAX_ROUNDS = 31
# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72
SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'
_HASH_ROUNDS_RE = re.compile(r"^\$2[aby]?\$(\d{2})\$")


@dataclass(frozen=True)
class PasswordRequirements:
    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special: bool = False


@dataclass
class PasswordValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


class PasswordHasher:
    """bcrypt wrapper with a fixed cost factor and a strength policy."""

    def __init__(self, rounds: int = 12, requirements: PasswordRequirements | None = None) -> None:
        if rounds < MIN_ROUNDS or rounds > MAX_ROUNDS:
            raise ValueError(f"BCRYPT_ROUNDS must be between {MIN_ROUNDS} and {MAX_ROUNDS}")
        self.rounds = rounds
        self.requirements = requirements or PasswordRequirements()

    def hash(self, plaintext: str) -> str:
        """Salted bcrypt hash at the configured cost."""
        return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plaintext: str, password_hash: str) -> bool:
        """Constant-time check; a malformed stored hash counts as a mismatch."""
        try:
            return bcrypt.checkpw(plaintext.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        """True when the stored hash was made with a different cost factor."""
        match = _HASH_ROUNDS_RE.match(password_hash)
        if not match:
            return True
        return int(match.group(1)) != self.rounds

    def validate(self, plaintext: str) -> PasswordValidation:
        """Check every rule and report all violations together."""
        req = self.requirements
        errors = []
        if len(plaintext) < req.min_length:
            errors.append(f"Password must be at least {req.min_length} characters long")
        if len(plaintext.encode("utf-8")) > MAX_PASSWORD_BYTES:
            errors.append(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long")
        if req.require_uppercase and not re.search(r"[A-Z]", plaintext):
            errors.append("Password must contain at least one uppercase letter")
        if req.require_lowercase and not re.search(r"[a-z]", plaintext):
            errors.append("Password must contain at least one lowercase letter")
        if req.require_numbers and not re.search(r"[0-9]", plaintext):
            errors.append("Password must contain at least one number")
        if req.require_special and not any(ch in SPECIAL_CHARACTERS for ch in plaintext):
            errors.append("Password must contain at least one special character")
        return PasswordValidation(valid=not errors, errors=errors)

    def generate_random_password(self, length: int = 16) -> str:
        """Random password with at least one upper, lower, digit and special character."""
        pools = [string.ascii_uppercase, string.ascii_lowercase, string.digits, "!@#$%^&*()"]
        if length < len(pools):
            raise ValueError(f"Password length must be at least {len(pools)}")
        alphabet = "".join(pools)
        chars = [secrets.choice(pool) for pool in pools]
        chars.extend(secrets.choice(alphabet) for _ in range(length - len(pools)))
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)


_password_hasher: PasswordHasher | None = None


def get_password_hasher() -> PasswordHasher:
    """Get singleton password hasher configured from settings."""
    global _password_hasher
    if _password_hasher is None:
        settings = get_settings()
        _password_hasher = PasswordHasher(
            rounds=settings.BCRYPT_ROUNDS,
            requirements=PasswordRequirements(
                min_length=settings.PASSWORD_MIN_LENGTH,
                require_uppercase=settings.PASSWORD_REQUIRE_UPPERCASE,
                require_lowercase=settings.PASSWORD_REQUIRE_LOWERCASE,
                require_numbers=settings.PASSWORD_REQUIRE_NUMBERS,
                require_special=settings.PASSWORD_REQUIRE_SPECIAL,
            ),
        )
    return _password_hasher
