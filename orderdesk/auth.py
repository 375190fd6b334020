import time
from typing import Optional

import jwt
from passlib.context import CryptContext

# Use pbkdf2_sha256 as default to avoid bcrypt 72-byte limitation in some envs
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")

ALGORITHM = "HS256"
EXP_SECONDS = 60 * 60 * 24  # 1 day


def create_access_token(user_id: int, role: str, secret: str, email: str = "", expires_delta: Optional[int] = None) -> str:
    now = int(time.time())
    exp = now + (expires_delta or EXP_SECONDS)
    payload = {"sub": str(user_id), "role": role, "email": email, "iat": now, "exp": exp}
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_access_token(token: str, secret: str) -> dict:
    """Raises ``jwt.PyJWTError`` for expired, tampered or malformed tokens."""
    return jwt.decode(token, secret, algorithms=[ALGORITHM])


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)
