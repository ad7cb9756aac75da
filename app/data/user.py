import uuid
from typing import List, Optional

from sqlalchemy import Boolean, Column, DateTime, String, UUID, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.data.dbinit import Base, utcnow
from app.common.exception import IntegrityException, GeneralDataException
from app.common.site_enums import UserRole
import structlog


logger = structlog.get_logger()

class User(Base):
    __tablename__ = "app_user"
    user_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default=UserRole.OWNER.value)
    # Staff only: the owner they work for and the restaurant they are bound to
    owner_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    restaurant_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    phone = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    email_verified = Column(Boolean, nullable=False, default=False)
    created_dt = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_dt = Column(DateTime(timezone=True), onupdate=utcnow)


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> Optional[User]:
    """Get a single user by ID"""
    result = await db.execute(select(User).where(User.user_id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    """Get a single user by email"""
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def create_user(
    db: AsyncSession,
    *,
    email: str,
    hashed_password: str,
    full_name: str,
    role: UserRole,
    owner_id: Optional[uuid.UUID] = None,
    restaurant_id: Optional[uuid.UUID] = None,
    phone: Optional[str] = None,
    is_active: bool = False,
) -> User:
    """Create a new user"""
    try:
        db_user = User(
            email=email,
            hashed_password=hashed_password,
            full_name=full_name,
            role=role.value,
            owner_id=owner_id,
            restaurant_id=restaurant_id,
            phone=phone,
            is_active=is_active,
        )
        db.add(db_user)
        await db.flush()
        await db.refresh(db_user)
        return db_user
    except IntegrityError as e:
        logger.error(f"IntegrityError when creating user: {str(e)}")
        raise IntegrityException(
            "Integrity error when creating user",
            context={"detail": f"Email may already be registered: {email}"}
        ) from e
    except SQLAlchemyError as e:
        logger.error(f"Database error when creating user: {str(e)}")
        raise GeneralDataException(
            "Database error occured while creating user",
            context={"detail": str(e)}
        ) from e


async def set_user_active(
    db: AsyncSession,
    user_id: uuid.UUID,
    *,
    email_verified: Optional[bool] = None,
) -> bool:
    """Flag a user active. Returns False when no row matched."""
    values = {"is_active": True, "updated_dt": utcnow()}
    if email_verified is not None:
        values["email_verified"] = email_verified
    result = await db.execute(
        update(User).where(User.user_id == user_id).values(**values)
    )
    return result.rowcount > 0


async def list_staff_by_owner(db: AsyncSession, owner_id: uuid.UUID) -> List[User]:
    result = await db.execute(
        select(User)
        .where(User.owner_id == owner_id, User.role == UserRole.STAFF.value)
        .order_by(User.created_dt.asc())
    )
    return result.scalars().all()


async def count_staff_by_owner(db: AsyncSession, owner_id: uuid.UUID) -> int:
    """Staff accounts across every restaurant of the owner."""
    result = await db.execute(
        select(func.count())
        .select_from(User)
        .where(User.owner_id == owner_id, User.role == UserRole.STAFF.value)
    )
    return result.scalar_one()
