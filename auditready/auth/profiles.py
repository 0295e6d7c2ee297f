"""Versioned read-modify-write helpers for ``profiles`` rows."""
from typing import Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..core.logging import get_logger, mask_identifier
from ..models.profile import Profile
from .exceptions import MFAPreconditionError, NotAuthenticatedError

logger = get_logger(__name__)

T = TypeVar("T")

MAX_WRITE_ATTEMPTS = 3


def load_profile(db: Session, user_id: str) -> Profile:
    """Fresh read of a profile, bypassing the identity map."""
    profile = db.execute(
        select(Profile)
        .where(Profile.id == user_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not profile:
        raise NotAuthenticatedError("No user found")
    return profile


def update_profile(
    db: Session,
    user_id: str,
    apply: Callable[[Profile], T],
    attempts: int = MAX_WRITE_ATTEMPTS,
) -> T:
    """Apply a change to a freshly loaded profile and commit it.

    ``apply`` runs inside the same transaction as the profile update, so
    any other statements it issues commit or roll back together with it.
    The profile's version column turns a concurrent write into
    ``StaleDataError``; the change is then re-applied to the new state.
    """
    for attempt in range(1, attempts + 1):
        profile = load_profile(db, user_id)
        result = apply(profile)
        try:
            db.commit()
            return result
        except StaleDataError:
            db.rollback()
            logger.warning(
                "Concurrent profile update, retrying",
                {"user": mask_identifier(user_id), "attempt": attempt}
            )
    raise MFAPreconditionError("Your account was changed by another session. Please try again.")
