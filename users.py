"""
Accounts, credentials and notifications.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from database import create_document, get_db, get_documents
from errors import AuthenticationError, ConflictError, NotFoundError, StorageError, ValidationError
from schemas import Notification, User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/user/signin")


# Auth helpers

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return encoded_jwt


def decode_access_token(token: str) -> str:
    """Return the email a token was issued for."""
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError as e:
        raise AuthenticationError("Could not validate credentials") from e
    email = payload.get("sub")
    if email is None:
        raise AuthenticationError("Could not validate credentials")
    return email


def find_user(email: str) -> Optional[dict]:
    # addresses are stored lowercased
    user_docs = get_documents("user", {"email": email.lower()}, limit=1)
    return user_docs[0] if user_docs else None


def get_user(email: str) -> dict:
    user = find_user(email)
    if user is None:
        raise NotFoundError("user")
    return user


async def get_current_user(token: str = Depends(oauth2_scheme)):
    email = decode_access_token(token)
    user = find_user(email)
    if user is None:
        raise AuthenticationError("Could not validate credentials")
    return user


def _session(email: str) -> dict:
    return {"username": email, "token": create_access_token({"sub": email})}


def _require_credentials(email: Optional[str], password: Optional[str]) -> None:
    if not email or not password:
        raise ValidationError("All fields must be filled!")


def signup(email: str, password: str) -> dict:
    _require_credentials(email, password)
    email = email.lower()
    if find_user(email) is not None:
        raise ConflictError("There's already an account with this email!")

    try:
        user = User(email=email, password_hash=get_password_hash(password))
    except PydanticValidationError as e:
        raise ValidationError("Invalid email!") from e
    try:
        create_document("user", user)
    except StorageError as e:
        # two sign-ups for the same email raced past the lookup
        if isinstance(e.__cause__, DuplicateKeyError):
            raise ConflictError("There's already an account with this email!") from e
        raise
    logger.info("Created account %s", email)
    send_notification(email, "Welcome! Register a machine to get started.", "info")
    return _session(email)


def signin(email: str, password: str) -> dict:
    _require_credentials(email, password)
    email = email.lower()
    user = find_user(email)
    if user is None:
        logger.warning("Sign-in for unknown account %s", email)
        raise AuthenticationError("Invalid credentials")
    if not verify_password(password, user.get("password_hash", "")):
        logger.warning("Wrong password for %s", email)
        raise AuthenticationError("Invalid credentials")
    return _session(email)


def send_notification(email: str, message: str, type: str) -> None:
    """Push a notification onto a user's list. Delivery problems are logged, never raised."""
    notification = Notification(
        message=message,
        date=datetime.now().strftime("%m/%d/%Y"),
        type=type,
    )
    try:
        get_db().user.update_one({"email": email.lower()}, {"$push": {"notifications": notification.model_dump()}})
    except PyMongoError as e:
        logger.error("Error sending notification to %s: %s", email, e)
        return
    logger.debug("Notification sent to %s", email)


def get_notifications(email: str) -> dict:
    if not email:
        raise ValidationError("Email is required!")
    user = get_user(email)
    return {"notifications": user.get("notifications", [])}


def describe_user(user: dict) -> dict:
    notifications = user.get("notifications", [])
    return {
        "email": user["email"],
        "machines": user.get("machines", []),
        "unread": sum(1 for n in notifications if n.get("status", "unread") == "unread"),
    }
