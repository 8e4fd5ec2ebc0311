"""
User profile endpoints:
  POST /users      — create a user profile (open; tokens are issued elsewhere)
  GET  /users/{id} — fetch a user profile
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import AuthContext, get_auth_context
from app.database import get_db
from app.errors import NotFoundError, parse_id
from app.models import User
from app.schemas import UserCreate, UserResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(body: UserCreate, db: AsyncSession = Depends(get_db)):
    with tracer.start_as_current_span("create_user"):
        existing = await db.execute(
            select(User).where(User.username == body.username)
        )
        if existing.scalar_one_or_none():
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Username '{body.username}' already taken",
            )

        user = User(
            username=body.username,
            display_name=body.display_name,
            avatar=body.avatar,
        )
        db.add(user)
        await db.flush()  # get user_id before commit

        logger.info("Created user %s (id=%s)", user.username, user.user_id)
        return user


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user = await db.get(User, parse_id(user_id, "Invalid user ID"))
    if not user:
        raise NotFoundError("User not found")
    return user
