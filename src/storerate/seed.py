"""Demo accounts, stores and ratings for local development."""

import logging

from sqlalchemy.orm import Session

from .models.user import Role
from .schemas import StoreCreate, UserCreate
from .services import create_store, create_user, get_user_by_email, upsert_rating


logger = logging.getLogger(__name__)

ADMIN_EMAIL = "admin@system.com"


def seed_demo_data(session: Session) -> bool:
    """Populate an empty database; returns ``False`` when already seeded."""
    if get_user_by_email(session, ADMIN_EMAIL) is not None:
        return False

    create_user(
        session,
        UserCreate(
            name="System Administrator",
            email=ADMIN_EMAIL,
            password="AdminPassword1!",
            address="HQ Address, 123 Admin St",
            role=Role.ADMIN,
        ),
    )
    owner = create_user(
        session,
        UserCreate(
            name="Store Owner User Account",
            email="owner@store.com",
            password="OwnerPassword1!",
            address="Owner St, 456 Business Rd",
            role=Role.OWNER,
        ),
    )
    user = create_user(
        session,
        UserCreate(
            name="Normal User Test Account",
            email="user@test.com",
            password="UserPassword1!",
            address="User Ln, 789 Customer Ave",
            role=Role.USER,
        ),
    )

    gadgets = create_store(
        session,
        StoreCreate(
            name="Tech Gadgets Store Inc.",
            email="contact@techgadgets.com",
            address="101 Tech Blvd, Silicon Valley",
            owner_id=owner.id,
        ),
    )
    foods = create_store(
        session,
        StoreCreate(
            name="Organic Foods Market Hall",
            email="info@organicfoods.com",
            address="202 Green Way, Eco City",
            owner_id=owner.id,
        ),
    )

    upsert_rating(session, user.id, gadgets.id, 5)
    upsert_rating(session, user.id, foods.id, 4)
    logger.info("database seeded with demo data")
    return True
