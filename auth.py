import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Header, HTTPException
from jose import jwt, JWTError
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field

from database import db, create_document
from helpers import ok, serialize_doc, utcnow
from schemas import Role, User as UserSchema

logger = logging.getLogger(__name__)

# Security/JWT
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
REFRESH_TOKEN_SECRET = os.getenv("REFRESH_TOKEN_SECRET", "dev-refresh-secret-change-me")
JWT_ALG = "HS256"
ACCESS_TOKEN_MINUTES = int(os.getenv("ACCESS_TOKEN_MINUTES", "15"))
REFRESH_TOKEN_DAYS = int(os.getenv("REFRESH_TOKEN_DAYS", "7"))
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

router = APIRouter(prefix="/api/auth", tags=["auth"])


# Token helpers
def create_access_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", Role.CUSTOMER.value),
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_MINUTES),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def create_refresh_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "type": "refresh",
        "exp": datetime.now(timezone.utc) + timedelta(days=REFRESH_TOKEN_DAYS),
    }
    return jwt.encode(payload, REFRESH_TOKEN_SECRET, algorithm=JWT_ALG)


def issue_tokens(user: dict) -> dict:
    access_token = create_access_token(user)
    refresh_token = create_refresh_token(user)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"refresh_token": refresh_token}})
    return {"access_token": access_token, "refresh_token": refresh_token, "token_type": "bearer"}


def decode_refresh_token(token: str) -> Optional[dict]:
    try:
        payload = jwt.decode(token, REFRESH_TOKEN_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        return None
    if payload.get("type") != "refresh":
        return None
    return payload


def get_current_user(authorization: Optional[str] = Header(None)):
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    token = authorization.replace("Bearer ", "").strip()
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != "access" or not ObjectId.is_valid(payload.get("sub", "")):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": ObjectId(payload["sub"])})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token user")
    return user


def require_admin(user=Depends(get_current_user)):
    if user.get("role") != Role.ADMIN.value:
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user["name"],
        "email": user["email"],
        "role": user.get("role", Role.CUSTOMER.value),
    }


def create_user(name: str, email: str, password: str, role: Role = Role.CUSTOMER) -> dict:
    user = UserSchema(name=name, email=email, password_hash=pwd_context.hash(password), role=role)
    user_id = create_document("user", user)
    return db["user"].find_one({"_id": ObjectId(user_id)})


# Request models
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    current_password: Optional[str] = None
    new_password: Optional[str] = Field(None, min_length=6)


# Routes
@router.post("/register", status_code=201)
def register(req: RegisterRequest):
    if db["user"].find_one({"email": req.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    created = create_user(req.name, req.email, req.password)
    tokens = issue_tokens(created)
    logger.info("Registered customer %s", created["email"])
    return ok({"user": public_user(created), **tokens}, "User created successfully")


@router.post("/login")
def login(req: LoginRequest):
    user = db["user"].find_one({"email": req.email})
    if not user or not pwd_context.verify(req.password, user.get("password_hash", "")):
        logger.warning("Failed login for %s", req.email)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    tokens = issue_tokens(user)
    logger.info("Login for %s (%s)", user["email"], user.get("role"))
    return ok({"user": public_user(user), **tokens}, "Logged in successfully")


@router.post("/refresh")
def refresh(req: RefreshRequest):
    payload = decode_refresh_token(req.refresh_token)
    if not payload or not ObjectId.is_valid(payload.get("sub", "")):
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    user = db["user"].find_one({"_id": ObjectId(payload["sub"])})
    if not user or user.get("refresh_token") != req.refresh_token:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    return ok({"access_token": create_access_token(user), "token_type": "bearer"}, "Token refreshed successfully")


@router.post("/logout")
def logout(req: RefreshRequest):
    payload = decode_refresh_token(req.refresh_token)
    if payload and ObjectId.is_valid(payload.get("sub", "")):
        db["user"].update_one(
            {"_id": ObjectId(payload["sub"]), "refresh_token": req.refresh_token},
            {"$set": {"refresh_token": None}},
        )
    return ok(None, "Logged out successfully")


@router.get("/profile")
def get_profile(user=Depends(get_current_user)):
    return ok(serialize_doc(user), "Profile retrieved successfully")


@router.put("/profile")
def update_profile(req: ProfileUpdateRequest, user=Depends(get_current_user)):
    updates = {}
    if req.name is not None:
        updates["name"] = req.name.strip()
    if req.email is not None and req.email != user["email"]:
        if db["user"].find_one({"email": req.email}):
            raise HTTPException(status_code=400, detail="Email already registered")
        updates["email"] = req.email
    if req.new_password:
        if not req.current_password or not pwd_context.verify(req.current_password, user.get("password_hash", "")):
            raise HTTPException(status_code=400, detail="Current password is incorrect")
        updates["password_hash"] = pwd_context.hash(req.new_password)
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updated_at"] = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": updates})
    updated = db["user"].find_one({"_id": user["_id"]})
    return ok(serialize_doc(updated), "Profile updated successfully")
