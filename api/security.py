# api/security.py

import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from dotenv import load_dotenv
from jose import JWTError, jwt
from passlib.context import CryptContext

load_dotenv()

# --- Environment Variables ---
SECRET_KEY = os.getenv("SECRET_KEY")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 720))
TOKEN_SCOPE = "tree"

# --- Password Hashing ---
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verifies a plaintext tree password against its stored hash."""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hashes a plaintext tree password."""
    return pwd_context.hash(password)


def _secret_key() -> str:
    key = os.getenv("SECRET_KEY") or SECRET_KEY
    if not key:
        raise RuntimeError("SECRET_KEY environment variable not set.")
    return key


# --- Tree access tokens ---
def create_tree_access_token(tree_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Issues the token a client holds after passing a tree's password gate.
    :param tree_id: The tree the token grants access to.
    :param expires_delta: Optional timedelta to set a custom expiration.
    :return: The encoded JWT as a string.
    """
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {"sub": tree_id, "scope": TOKEN_SCOPE, "exp": expire}
    return jwt.encode(to_encode, _secret_key(), algorithm=ALGORITHM)


def token_grants_tree(token: Optional[str], tree_id: str) -> bool:
    """True when `token` is a valid, unexpired access token for `tree_id`."""
    if not token:
        return False
    try:
        payload = jwt.decode(token, _secret_key(), algorithms=[ALGORITHM])
    except JWTError:
        return False
    return payload.get("sub") == tree_id and payload.get("scope") == TOKEN_SCOPE
