import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.responses import RedirectResponse
from fastapi.middleware.cors import CORSMiddleware

from dataBase import close_db, get_store, init_db
from errors import Conflict, Forbidden, InvalidRequest, NotFound, Unauthorized, register_error_handlers
from models.auth_models import LoginUser, RegisterUser
from models.update_profile_model import UpdateUserProfile
from record_store import USERS, RecordStore
from routes import book_routes, trade_routes
from utils import create_access_token, get_current_user_id, hash_password, new_id, utcnow, verify_password

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    close_db()


app = FastAPI(title="BookSwap API", version="1.0.0", lifespan=lifespan)

allowed_origins = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=allowed_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)
app.include_router(book_routes)
app.include_router(trade_routes)


@app.get("/")
def root():
    return RedirectResponse(url="/docs")


def serialize_user(user) -> dict:
    return {k: v for k, v in user.items() if k != "password_hash"}


def issue_token(user) -> dict:
    token = create_access_token(data={"user_id": user["user_id"], "email": user["email"]})
    return {"access_token": token, "token_type": "bearer", "user": serialize_user(user)}


# Authentication Routes
@app.post("/auth/signup")
async def signup(user: RegisterUser, store: RecordStore = Depends(get_store)):
    if len(user.password) < MIN_PASSWORD_LENGTH:
        raise InvalidRequest(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

    email = user.email.lower()
    if await store.query_by_index(USERS, "email", email):
        raise Conflict("Email already registered")

    record = {
        "user_id": new_id(),
        "username": user.username,
        "email": email,
        "password_hash": hash_password(user.password),
        "shipping_address": None,
        "created_at": utcnow(),
    }
    await store.put(USERS, record)
    logger.info(f"User {record['user_id']} signed up")
    return {"message": "User created successfully", **issue_token(record)}


@app.post("/auth/login")
async def login(user: LoginUser, store: RecordStore = Depends(get_store)):
    matches = await store.query_by_index(USERS, "email", user.email.lower())
    existing_user = matches[0] if matches else None
    if not existing_user or not verify_password(user.password, existing_user.get("password_hash")):
        raise Unauthorized("Invalid email or password")
    return {"message": "Login successful", **issue_token(existing_user)}


@app.get("/auth/me")
async def get_me(user_id: str = Depends(get_current_user_id), store: RecordStore = Depends(get_store)):
    user = await store.get(USERS, user_id)
    if not user:
        raise NotFound("User not found")
    return serialize_user(user)


# User Routes
@app.get("/users/{user_id}")
async def get_user_profile(user_id: str, store: RecordStore = Depends(get_store)):
    user = await store.get(USERS, user_id)
    if not user:
        raise NotFound("User not found")
    return serialize_user(user)


@app.put("/users/{user_id}")
async def update_user_profile(
    user_id: str,
    updated_data: UpdateUserProfile,
    caller_id: str = Depends(get_current_user_id),
    store: RecordStore = Depends(get_store),
):
    if caller_id != user_id:
        raise Forbidden("You can only update your own settings")

    update_dict = updated_data.model_dump(exclude_unset=True)
    if not update_dict:
        raise InvalidRequest("No fields provided for update")

    user = await store.get(USERS, user_id)
    if not user:
        raise NotFound("User not found")
    user.update(update_dict)
    await store.put(USERS, user)
    return {"message": "Settings updated", "user": serialize_user(user)}
