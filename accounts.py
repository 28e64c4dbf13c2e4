"""
Registration, email OTP verification and login.

A user starts unverified with a 6 digit code stored on the user document
(and mirrored into `userotpverification`). Verifying with the latest,
unexpired code marks the user verified and clears the code. Only verified
users may log in.
"""
import re
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError

from database import as_utc, now_utc
from mailer import Mailer, MailerError
from schemas import SELLER_FIELDS, User, UserOTPVerification
from security import create_access_token, get_password_hash, verify_password

logger = logging.getLogger(__name__)

OTP_LENGTH = 6
OTP_TTL_MINUTES = 15
PASSWORD_MIN_LENGTH = 8
ROLES = ("user", "admin", "seller")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
# Nigerian mobile numbers, local (0...) or international (+234...) form
PHONE_RE = re.compile(r"^(?:(?:\+?234)|0)(?:70|71|80|81|90|91|809|817|818|908|909)\d{7,8}$")

# never leave the server
PRIVATE_FIELDS = ("passwordHash", "otp", "otpExpiry")


def generate_otp(length: int = OTP_LENGTH) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Emails are stored and looked up lowercased."""
    return email.strip().lower() if email else email


def validate_email(email: str) -> None:
    if not EMAIL_RE.match(email or ""):
        raise HTTPException(status_code=400, detail="Invalid email format")


def validate_phone(phone: str) -> None:
    if not PHONE_RE.match(phone or ""):
        raise HTTPException(status_code=400, detail="Invalid phone number format")


def ensure_unique(db, email: Optional[str] = None, phone: Optional[str] = None, exclude_id=None) -> None:
    clauses = []
    if email:
        clauses.append({"email": normalize_email(email)})
    if phone:
        clauses.append({"phone": phone})
    if not clauses:
        return
    filt: Dict[str, Any] = {"$or": clauses}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    if db["user"].find_one(filt):
        raise HTTPException(status_code=409, detail="User with this email or phone number already exists")


def build_user(data: Dict[str, Any], verified: bool = False) -> User:
    """Validate registration style input and return the user to persist."""
    role = data.get("role")
    required = ["name", "email", "password", "phone", "role", "state", "country"]
    if role == "seller":
        required.extend(SELLER_FIELDS)
    if any(not data.get(f) for f in required):
        raise HTTPException(status_code=400, detail="All fields are required")
    if role not in ROLES:
        raise HTTPException(status_code=400, detail=f"Role must be one of: {', '.join(ROLES)}")
    validate_email(data["email"])
    validate_phone(data["phone"])
    if len(data["password"]) < PASSWORD_MIN_LENGTH:
        raise HTTPException(status_code=400,
                            detail=f"Password must be at least {PASSWORD_MIN_LENGTH} characters")

    fields = {k: data.get(k) for k in ("name", "email", "phone", "role", "state", "country") + SELLER_FIELDS}
    fields["email"] = normalize_email(fields["email"])
    # pydantic ValidationError propagates and is reported as a 400
    return User(**fields, passwordHash=get_password_hash(data["password"]), isVerified=verified)


def _issue_otp(db, email: str) -> Dict[str, Any]:
    code = generate_otp()
    expiry = now_utc() + timedelta(minutes=OTP_TTL_MINUTES)
    record = UserOTPVerification(email=email, otp=code, expiryTime=expiry)
    db["userotpverification"].update_one({"email": email}, {"$set": record.model_dump()}, upsert=True)
    logger.info("Issued OTP for %s, expires %s", email, expiry.isoformat())
    return {"otp": code, "otpExpiry": expiry}


def register_user(db, mailer: Mailer, data: Dict[str, Any]) -> Dict[str, Any]:
    user = build_user(data)
    ensure_unique(db, email=user.email, phone=user.phone)

    doc = user.model_dump()
    doc.update(_issue_otp(db, user.email))
    doc["dateCreated"] = now_utc()
    try:
        user_id = db["user"].insert_one(doc).inserted_id
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="User with this information already exists")
    doc["_id"] = user_id

    try:
        mailer.send_otp(user.email, user.name, doc["otp"], OTP_TTL_MINUTES)
    except MailerError as e:
        logger.error("Could not send verification email to %s: %s", user.email, e)
        db["user"].delete_one({"_id": user_id})
        db["userotpverification"].delete_one({"email": user.email})
        raise HTTPException(status_code=500, detail="Could not send verification email, please try again")
    return doc


def verify_otp(db, email: Optional[str], code: Optional[str]) -> Dict[str, Any]:
    email = normalize_email(email)
    if not email or not code:
        raise HTTPException(status_code=400, detail="Email and OTP are required")
    user = db["user"].find_one({"email": email})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if not user.get("otp") or user["otp"] != code:
        raise HTTPException(status_code=400, detail="Invalid OTP")
    expiry = as_utc(user.get("otpExpiry"))
    if expiry is None or now_utc() >= expiry:
        raise HTTPException(status_code=400, detail="OTP has expired. Please request a new one")

    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"isVerified": True, "otp": None, "otpExpiry": None}},
    )
    db["userotpverification"].delete_one({"email": email})
    user.update({"isVerified": True, "otp": None, "otpExpiry": None})
    return user


def resend_otp(db, mailer: Mailer, email: Optional[str]) -> None:
    email = normalize_email(email)
    if not email:
        raise HTTPException(status_code=400, detail="Email is required")
    validate_email(email)
    user = db["user"].find_one({"email": email})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.get("isVerified"):
        raise HTTPException(status_code=400, detail="User already verified")

    issued = _issue_otp(db, email)
    db["user"].update_one({"_id": user["_id"]}, {"$set": issued})
    try:
        mailer.send_otp(email, user.get("name", ""), issued["otp"], OTP_TTL_MINUTES, resend=True)
    except MailerError as e:
        logger.error("Could not resend OTP to %s: %s", email, e)
        raise HTTPException(status_code=500, detail="An error occurred while resending OTP")


def login(db, email: Optional[str], password: Optional[str]) -> Dict[str, Any]:
    email = normalize_email(email)
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    user = db["user"].find_one({"email": email})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.get("isVerified"):
        raise HTTPException(status_code=401, detail="Please verify your email before logging in")
    if not verify_password(password, user.get("passwordHash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    token = create_access_token({
        "userId": str(user["_id"]),
        "email": user["email"],
        "role": user.get("role", "user"),
    })
    return {"userId": str(user["_id"]), "token": token}


def apply_profile_update(db, user: Dict[str, Any], data: Dict[str, Any], admin: bool = False) -> Dict[str, Any]:
    """Work out the `$set` for a profile edit. Blank values keep the current one."""
    changes: Dict[str, Any] = {}
    for field in ("name", "email", "phone", "state", "country"):
        if data.get(field):
            changes[field] = data[field]
    if "email" in changes:
        changes["email"] = normalize_email(changes["email"])
        validate_email(changes["email"])
    if "phone" in changes:
        validate_phone(changes["phone"])
    ensure_unique(db, email=changes.get("email"), phone=changes.get("phone"), exclude_id=user["_id"])

    role = user.get("role", "user")
    if admin:
        if data.get("role"):
            if data["role"] not in ROLES:
                raise HTTPException(status_code=400, detail=f"Role must be one of: {', '.join(ROLES)}")
            role = changes["role"] = data["role"]
        if data.get("isVerified") is not None:
            changes["isVerified"] = bool(data["isVerified"])

    if role == "seller":
        for field in SELLER_FIELDS:
            value = data.get(field) or user.get(field)
            if not value:
                raise HTTPException(status_code=400, detail=f"{field} is required for sellers")
            changes[field] = value
    elif user.get("role") == "seller":
        for field in SELLER_FIELDS:
            changes[field] = None
    return changes
