import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
import logging
from typing import Dict, Optional, Sequence, List

from dotenv import load_dotenv
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, status, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection

from chatter import MessagingEngine, init_messaging
from chatter.config import MessagingSettings
from chatter.crypto import MessageCipher
from chatter.generation import GroqGenerator
from chatter.logging_config import configure_logging
from chatter.stores import GridFSImageStore, MongoFriendRequestStore, MongoMessageStore, MongoUserDirectory


load_dotenv()


def get_env(name: str, default: Optional[str] = None) -> str:
    value = os.getenv(name, default)
    if value is None:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


SETTINGS = MessagingSettings.from_env()
configure_logging(SETTINGS.log_level)
logger = logging.getLogger("chatter.app")

MONGODB_URI = get_env("MONGODB_URI")
DB_NAME = os.getenv("DB_NAME", "chatter")
JWT_SECRET = get_env("JWT_SECRET", "change-me")
JWT_ALG = "HS256"
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "30"))
JWT_REFRESH_EXP_DAYS = int(os.getenv("JWT_REFRESH_EXP_DAYS", "7"))
PROJECT_NAME = os.getenv("APP_NAME", "Chatter")
ALLOWED_ORIGINS: Sequence[str] = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "").split(",")
    if origin.strip()
]
RATE_LIMIT_WINDOW_SEC = int(os.getenv("RATE_LIMIT_WINDOW_SEC", "60"))
RATE_LIMIT_MAX_ATTEMPTS = int(os.getenv("RATE_LIMIT_MAX_ATTEMPTS", "10"))
FAILED_ATTEMPTS: Dict[str, Dict[str, int]] = {}


client = MongoClient(MONGODB_URI)
db = client.get_database(DB_NAME)
users: Collection = db["users"]
users.create_index([("email", ASCENDING)], unique=True)
users.create_index([("pseudo", ASCENDING)], unique=True)

engine = MessagingEngine(
    users=MongoUserDirectory(users),
    messages=MongoMessageStore(db, MessageCipher(JWT_SECRET)),
    friend_requests=MongoFriendRequestStore(db),
    images=GridFSImageStore(db),
    generator=GroqGenerator(
        SETTINGS.groq_api_key,
        SETTINGS.groq_model,
        bot_name=SETTINGS.bot_pseudo,
        timeout=SETTINGS.groq_timeout_sec,
    ),
    settings=SETTINGS,
)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    await engine.ensure_bot_user()
    yield
    await engine.shutdown()


app = FastAPI(title=f"{PROJECT_NAME} API", lifespan=lifespan)

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(ALLOWED_ORIGINS),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

PASSWORD_REGEX = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[^A-Za-z0-9]).{8,}$"
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class SignupRequest(BaseModel):
    pseudo: str = Field(..., min_length=3, max_length=32)
    email: EmailStr
    display_name: str = Field(..., min_length=1, max_length=64)
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class RefreshRequest(BaseModel):
    refresh_token: str


class ProfileResponse(BaseModel):
    id: str
    pseudo: str
    email: EmailStr
    display_name: str
    friend_ids: List[str]
    created_at: datetime
    updated_at: datetime


class UserDirectoryEntry(BaseModel):
    id: str
    pseudo: str
    display_name: str
    is_bot: bool = False


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_jwt(sub: str, expires_delta: timedelta, token_type: str = "access") -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": sub, "iat": now, "exp": now + expires_delta, "type": token_type}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_jwt(token: str, expected_type: Optional[str] = None) -> str:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
        if expected_type and payload.get("type") != expected_type:
            raise HTTPException(status_code=401, detail="Invalid token type")
        return payload.get("sub")
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc


def issue_tokens(user_id: str) -> TokenResponse:
    access_token = create_jwt(sub=user_id, expires_delta=timedelta(minutes=JWT_EXP_MIN))
    refresh_token = create_jwt(
        sub=user_id, expires_delta=timedelta(days=JWT_REFRESH_EXP_DAYS), token_type="refresh"
    )
    return TokenResponse(access_token=access_token, refresh_token=refresh_token)


def is_rate_limited(key: str) -> bool:
    now_ts = int(datetime.now(timezone.utc).timestamp())
    window_start = now_ts - RATE_LIMIT_WINDOW_SEC
    bucket = FAILED_ATTEMPTS.get(key, {"ts": now_ts, "count": 0})
    # reset window if older
    if bucket["ts"] < window_start:
        bucket = {"ts": now_ts, "count": 0}
    FAILED_ATTEMPTS[key] = bucket
    return bucket["count"] >= RATE_LIMIT_MAX_ATTEMPTS


def increment_failure(key: str) -> None:
    now_ts = int(datetime.now(timezone.utc).timestamp())
    bucket = FAILED_ATTEMPTS.get(key, {"ts": now_ts, "count": 0})
    if now_ts - bucket["ts"] > RATE_LIMIT_WINDOW_SEC:
        bucket = {"ts": now_ts, "count": 0}
    bucket["count"] += 1
    bucket["ts"] = now_ts
    FAILED_ATTEMPTS[key] = bucket


def _find_user(user_id: Optional[str]):
    try:
        obj_id = ObjectId(user_id)
    except (InvalidId, TypeError):
        return None
    return users.find_one({"_id": obj_id})


@app.get("/health")
def health():
    return {"status": "ok", "service": PROJECT_NAME, "online": len(engine.online_user_ids())}


@app.post("/auth/register", status_code=201)
def register(payload: SignupRequest, background_tasks: BackgroundTasks):
    if len(payload.password.encode("utf-8")) > 72:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password too long (72 bytes max).",
        )
    if not PASSWORD_REGEX.match(payload.password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid password: at least 8 characters with lower case, upper case, digit and symbol",
        )
    names_allowed = all(
        engine.content_filter.is_allowed(name) for name in (payload.pseudo, payload.display_name)
    )
    if not names_allowed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Name contains inappropriate language. Please choose a different name.",
        )

    key = f"signup:{payload.email.lower()}"
    if is_rate_limited(key):
        raise HTTPException(status_code=429, detail="Too many attempts, try again later")

    existing = users.find_one(
        {"$or": [{"email": payload.email.lower()}, {"pseudo": payload.pseudo}]}
    )
    if existing:
        increment_failure(key)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Pseudo or email already in use",
        )

    now = datetime.now(timezone.utc)
    user_doc = {
        "pseudo": payload.pseudo,
        "email": payload.email.lower(),
        "display_name": payload.display_name,
        "password_hash": hash_password(payload.password),
        "is_bot": False,
        "friend_ids": [],
        "created_at": now,
        "updated_at": now,
    }
    user_id = str(users.insert_one(user_doc).inserted_id)
    background_tasks.add_task(engine.send_welcome, user_id)
    logger.info("user %s registered", payload.pseudo)

    return {"message": "Account created", "id": user_id}


@app.post("/auth/refresh", response_model=TokenResponse)
def refresh_tokens(payload: RefreshRequest):
    user_id = decode_jwt(payload.refresh_token, expected_type="refresh")
    user = _find_user(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return issue_tokens(user_id)


def authenticate_user(email: str, password: str):
    user = users.find_one({"email": email.lower(), "is_bot": {"$ne": True}})
    if not user:
        return None
    if not verify_password(password, user.get("password_hash")):
        return None
    return user


def get_current_user(token: str = Depends(oauth2_scheme)):
    user_id = decode_jwt(token, expected_type="access")
    user = _find_user(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def _ws_get_user(websocket: WebSocket):
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return None
    try:
        user = _find_user(decode_jwt(token, expected_type="access"))
    except HTTPException:
        user = None
    if not user:
        await websocket.close(code=4401)
        return None
    return user


@app.post("/auth/login", response_model=TokenResponse)
def login(form_data: OAuth2PasswordRequestForm = Depends(), request: Request = None):
    key = f"login:{request.client.host if request and request.client else 'unknown'}"
    if is_rate_limited(key):
        raise HTTPException(status_code=429, detail="Too many attempts, try again later")

    user = authenticate_user(form_data.username, form_data.password)
    if not user:
        increment_failure(key)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid credentials"
        )
    return issue_tokens(str(user["_id"]))


@app.get("/auth/me", response_model=ProfileResponse)
def me(current_user=Depends(get_current_user)):
    return ProfileResponse(
        id=str(current_user["_id"]),
        pseudo=current_user["pseudo"],
        email=current_user["email"],
        display_name=current_user["display_name"],
        friend_ids=[str(fid) for fid in current_user.get("friend_ids", [])],
        created_at=current_user["created_at"],
        updated_at=current_user["updated_at"],
    )


@app.get("/users/directory", response_model=List[UserDirectoryEntry])
def users_directory(current_user=Depends(get_current_user)):
    cursor = users.find(
        {"_id": {"$ne": current_user["_id"]}},
        {"pseudo": 1, "display_name": 1, "is_bot": 1},
    ).sort("display_name", ASCENDING)
    return [
        UserDirectoryEntry(
            id=str(doc["_id"]),
            pseudo=doc.get("pseudo") or "",
            display_name=doc.get("display_name") or doc.get("pseudo") or "User",
            is_bot=bool(doc.get("is_bot", False)),
        )
        for doc in cursor
    ]


init_messaging(
    app,
    engine=engine,
    get_current_user=get_current_user,
    ws_user_fetcher=_ws_get_user,
)
