from datetime import datetime, timedelta, timezone
from typing import Optional, Generic, TypeVar, Any
from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from jose import JWTError, jwt
import uuid

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://mongodb:27017"
    SECRET_KEY: str = "secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # Cookies set by the storefront; shared by every service reading the session
    AUTH_COOKIE_NAME: str = "auth-token"
    SESSION_COOKIE_NAME: str = "session-id"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    # tz_aware so datetimes read back compare against timezone.utc values
    return AsyncIOMotorClient(url, tz_aware=True)

# --- Session Tokens ---
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a session token carrying ``sub`` (user id) and optionally ``email``."""
    claims = data.copy()
    claims.setdefault("jti", str(uuid.uuid4()))
    claims["exp"] = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

def decode_token(token: str) -> Optional[dict]:
    """Decode a session token, returning None instead of raising when it is invalid or expired."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    """HTTP error with a stable machine-readable ``code``.

    ``details`` is optional structured context (e.g. a gateway's own error
    body) rendered next to the code.
    """
    code = "error"

    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None,
        details: Optional[Any] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.details = details

    def to_response(self) -> ErrorResponse:
        details = {"code": self.code}
        if self.details is not None:
            details["gateway"] = self.details
        return ErrorResponse(error=self.detail, details=details)

class NotFoundException(AppException):
    code = "not_found"

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class ServiceUnavailableException(AppException):
    code = "service_unavailable"

    def __init__(self, detail: str = "Service unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)

class UnauthorizedException(AppException):
    code = "not_authenticated"

    def __init__(self, detail: str = "Not authenticated"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)
