import logging
import secrets
from typing import Optional

import bcrypt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from errors import Conflict, NotAuthenticated, NotFound, PermissionDenied
from models import User, UserRole, utcnow
import schemas

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("first_name", "last_name", "email", "phone", "bio", "skills", "location", "avatar")


def get_password_hash(password: str) -> str:
    pwd_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    hashed_password = bcrypt.hashpw(pwd_bytes, salt)
    return hashed_password.decode('utf-8')

def verify_password(plain_password: str, hashed_password: str) -> bool:
    password_bytes = plain_password.encode('utf-8')
    hashed_bytes = hashed_password.encode('utf-8')
    return bcrypt.checkpw(password_bytes, hashed_bytes)


def calculate_profile_completion(user: User) -> int:
    """Percentage of filled profile fields, with half a field per verified contact."""
    completed = sum(1 for field in PROFILE_FIELDS if getattr(user, field))
    if user.email_verified_at:
        completed += 0.5
    if user.phone_verified_at:
        completed += 0.5
    return min(100, int(completed / len(PROFILE_FIELDS) * 100 + 0.5))


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email.lower(), User.deleted_at.is_(None)).first()

def get_user_by_id(db: Session, user_id: str) -> Optional[User]:
    return db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()

def get_active_user(db: Session, user_id: str) -> User:
    user = get_user_by_id(db, user_id)
    if not user or not user.is_active:
        raise NotFound("User not found")
    return user


def require_role(user: User, role: UserRole, message: str):
    if user.role != role:
        raise PermissionDenied(message)


def register_user(db: Session, data: schemas.UserCreate) -> User:
    email = data.email.lower()
    # Closed accounts keep their row, so the address stays taken
    if db.query(User).filter(User.email == email).first():
        raise Conflict("The email has already been taken.")

    user = User(
        first_name=data.first_name,
        last_name=data.last_name,
        email=email,
        phone=data.phone,
        location=data.location,
        hashed_password=get_password_hash(data.password),
        role=UserRole(data.role),
        currency=settings.DEFAULT_CURRENCY,
        skills=[],
    )
    user.profile_completion_score = calculate_profile_completion(user)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("The email has already been taken.")
    db.refresh(user)
    logger.info("Registered %s as %s", user.email, user.role.value)
    return user


def authenticate(db: Session, email: str, password: str) -> User:
    user = get_user_by_email(db, email)
    if not user or not verify_password(password, user.hashed_password):
        raise NotAuthenticated("The provided credentials are incorrect.")
    if not user.is_active:
        raise PermissionDenied("Account is deactivated")
    touch_last_seen(db, user)
    return user


def touch_last_seen(db: Session, user: User):
    user.last_seen_at = utcnow()
    db.commit()


def social_login(db: Session, data: schemas.SocialLoginRequest) -> User:
    """Find the user by provider identity, then by email, else create one."""
    user = db.query(User).filter(
        User.social_provider == data.provider,
        User.social_provider_id == data.provider_id,
        User.deleted_at.is_(None)
    ).first()

    if not user:
        user = get_user_by_email(db, data.email)
        if user:
            user.social_provider = data.provider
            user.social_provider_id = data.provider_id
        else:
            if not data.role:
                raise PermissionDenied("A role is required for new accounts")
            user = User(
                first_name=data.first_name,
                last_name=data.last_name,
                email=data.email.lower(),
                avatar=data.avatar,
                social_provider=data.provider,
                social_provider_id=data.provider_id,
                email_verified_at=utcnow(),
                hashed_password=get_password_hash(secrets.token_urlsafe(32)),
                role=UserRole(data.role),
                currency=settings.DEFAULT_CURRENCY,
                skills=[],
            )
            db.add(user)
            logger.info("Created %s from %s login", data.email, data.provider)
        user.profile_completion_score = calculate_profile_completion(user)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise Conflict("The email has already been taken.")
        db.refresh(user)

    if not user.is_active:
        raise PermissionDenied("Account is deactivated")
    touch_last_seen(db, user)
    return user


def update_profile(db: Session, user: User, data: schemas.ProfileUpdate) -> User:
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(user, field, value)
    user.profile_completion_score = calculate_profile_completion(user)
    db.commit()
    db.refresh(user)
    return user


def close_account(db: Session, user: User):
    user.is_active = False
    user.deleted_at = utcnow()
    db.commit()
    logger.info("Closed account %s", user.email)


def ensure_default_admin(db: Session) -> Optional[User]:
    admin = db.query(User).filter(User.role == UserRole.ADMIN).first()
    if admin:
        return None
    admin = User(
        first_name="Platform",
        last_name="Admin",
        email=settings.ADMIN_EMAIL,
        hashed_password=get_password_hash(settings.ADMIN_PASSWORD),
        role=UserRole.ADMIN,
        is_verified=True,
        skills=[],
    )
    db.add(admin)
    db.commit()
    logger.info("Created default admin %s", admin.email)
    return admin
