import logging
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from beacon.api.deps import get_current_user
from beacon.core.security import create_access_token, get_password_hash, verify_password
from beacon.core.config import settings
from beacon.schemas.auth import Token, UserRegister, UserOut, UserLogin
from beacon.db.session import get_db
from beacon.models.user import User

router = APIRouter()
logger = logging.getLogger(__name__)

def _authenticate(db: Session, email: str, password: str) -> User:
    """401 if the user is unknown or the password is wrong, 403 if blocked."""
    user = db.query(User).filter(User.email == email).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is blocked")
    if not verify_password(password, user.hashed_password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect credentials")
    return user

@router.post("/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    email = form_data.username.lower().strip()
    user = _authenticate(db, email, form_data.password)
    return {"access_token": create_access_token(subject=email, roles=[user.role]), "token_type": "bearer"}

@router.post("/login-json", response_model=Token)
def login_json(payload: UserLogin, db: Session = Depends(get_db)):
    """Same as /login with a JSON body."""
    email = payload.email.lower().strip()
    user = _authenticate(db, email, payload.password)
    return {"access_token": create_access_token(subject=email, roles=[user.role]), "token_type": "bearer"}

@router.post("/register", response_model=UserOut)
def register(payload: UserRegister, db: Session = Depends(get_db)):
    email = payload.email.lower()
    existing = db.query(User).filter(User.email == email).first()
    if existing:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")
    role = "admin" if email in settings.admin_emails else "user"
    user = User(email=email, full_name=payload.full_name, hashed_password=get_password_hash(payload.password), role=role, is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Registered user %s with role %s", user.id, role)
    return user

@router.get("/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)):
    return user
