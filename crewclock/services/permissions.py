"""
Permission checks for attendance events and reports.
"""
import uuid
from typing import Optional
from sqlalchemy.orm import Session

from ..models.models import User, Business, BusinessMembership
from .errors import Forbidden, NotFound, Unauthorized


def is_admin(user: User) -> bool:
    """Check if user has the admin role."""
    return (user.role or "").lower() == "admin"


def is_worker(user: User) -> bool:
    return (user.role or "").lower() == "worker"


def actor_account_id(user: User) -> Optional[uuid.UUID]:
    return user.account_id


def require_active_actor(user: Optional[User]) -> User:
    if user is None:
        raise Unauthorized("Unauthorized")
    if not user.is_active:
        raise Forbidden("Your profile is inactive.", code="PROFILE_INACTIVE")
    return user


def get_active_membership(db: Session, business_id, user: User) -> Optional[BusinessMembership]:
    return (
        db.query(BusinessMembership)
        .filter(
            BusinessMembership.business_id == business_id,
            BusinessMembership.user_id == user.id,
            BusinessMembership.is_active == True,  # noqa: E712
        )
        .first()
    )


def require_business_access(db: Session, user: User, business_id) -> Business:
    """
    Check that `user` may act inside `business_id`.

    - The business must belong to the actor's account.
    - Admins bypass the membership check; everyone else needs an active membership.
    """
    if actor_account_id(user) is None:
        raise Forbidden("Your profile is not linked to an account.", code="ACCOUNT_CONTEXT_MISSING")

    business = db.query(Business).filter(Business.id == business_id).first()
    if business is None:
        raise NotFound("Business not found.", code="BUSINESS_NOT_FOUND", details={"business_id": str(business_id)})

    if business.account_id != actor_account_id(user):
        raise Forbidden(
            "You do not have access to the selected business.",
            code="BUSINESS_ACCESS_DENIED",
            details={"business_id": str(business_id)},
        )

    if not is_admin(user) and get_active_membership(db, business_id, user) is None:
        raise Forbidden("Active membership required for the selected business.", code="MEMBERSHIP_REQUIRED")

    return business


def can_view_reports(db: Session, user: User, business_id) -> bool:
    """Admins, and managers of this business (by profile role or membership role)."""
    if is_admin(user):
        return True
    membership = get_active_membership(db, business_id, user)
    if membership is None:
        return False
    return (membership.role or "").lower() == "manager" or (user.role or "").lower() == "manager"
