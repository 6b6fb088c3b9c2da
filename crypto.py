import hmac
import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from config import SecurityConfig

# Initialize Argon2id (Resistant to GPU cracking and side-channel attacks)
ph = PasswordHasher(
    time_cost=SecurityConfig.ARGON2_TIME_COST,      # Protects against brute-force
    memory_cost=SecurityConfig.ARGON2_MEMORY_COST,  # 64MB - Protects against ASIC/FPGA
    parallelism=SecurityConfig.ARGON2_PARALLELISM,
    hash_len=SecurityConfig.ARGON2_HASH_LENGTH,
    salt_len=SecurityConfig.ARGON2_SALT_LENGTH,
)

_DIGITS = "0123456789"


def hash_password(password: str) -> str:
    """
    Hash a password with Argon2id.

    No complexity rules are applied: any non-empty password is accepted as-is.
    """
    if not password:
        raise ValueError("Password must not be empty")
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return ph.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (VerificationError, InvalidHashError):
        return False


def generate_session_id() -> str:
    """256-bit hex session identifier"""
    return secrets.token_hex(SecurityConfig.TOKEN_BYTES)


def generate_csrf_token() -> str:
    return secrets.token_hex(SecurityConfig.TOKEN_BYTES)


def generate_secure_token(length: int = 6) -> str:
    """Numeric one-time code of the given length"""
    return "".join(_DIGITS[secrets.randbelow(len(_DIGITS))] for _ in range(length))


def constant_time_equals(candidate: str, expected: str) -> bool:
    """
    Compare two user-influenced strings without leaking timing.

    Lengths are checked first so the comparison always runs on equal-length
    byte strings.
    """
    if candidate is None or expected is None:
        return False
    a = candidate.encode("utf-8")
    b = expected.encode("utf-8")
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


def verify_csrf_token(token: str, session_token: str) -> bool:
    return constant_time_equals(token, session_token)
