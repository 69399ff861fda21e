from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from kars.db import Base
from kars.models import (
    Asset,
    AssetStatus,
    AttestationCampaign,
    CampaignStatus,
    CampaignTargetType,
    Company,
    User,
    UserRole,
)
from kars.security import create_access_token, hash_password

DEFAULT_PASSWORD = "Password123!"


def make_session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def override_get_db(session_factory: sessionmaker[Session]):
    def _override() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    return _override


def create_user(
    db: Session,
    *,
    email: str,
    role: UserRole = UserRole.EMPLOYEE,
    password: str = DEFAULT_PASSWORD,
    first_name: str = "Test",
    last_name: str = "User",
    manager_email: str | None = None,
    **extra: Any,
) -> User:
    user = User(
        email=email,
        password_hash=hash_password(password),
        name=f"{first_name} {last_name}",
        first_name=first_name,
        last_name=last_name,
        role=role,
        manager_first_name="Mia" if manager_email else None,
        manager_last_name="Manager" if manager_email else None,
        manager_email=manager_email,
        **extra,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def create_company(db: Session, name: str = "Acme") -> Company:
    company = Company(name=name)
    db.add(company)
    db.commit()
    db.refresh(company)
    return company


def create_asset(
    db: Session,
    *,
    employee_email: str,
    serial_number: str,
    asset_tag: str | None = None,
    owner: User | None = None,
    company: Company | None = None,
    manager_email: str | None = None,
    status: AssetStatus = AssetStatus.ACTIVE,
) -> Asset:
    asset = Asset(
        employee_first_name="Asset",
        employee_last_name="Owner",
        employee_email=employee_email,
        owner_id=owner.id if owner is not None else None,
        manager_email=manager_email,
        company_id=company.id if company is not None else None,
        asset_type="laptop",
        make="Dell",
        model="Latitude",
        serial_number=serial_number,
        asset_tag=asset_tag or f"TAG-{serial_number}",
        status=status,
    )
    db.add(asset)
    db.commit()
    db.refresh(asset)
    return asset


def create_campaign(
    db: Session,
    *,
    name: str = "Q1 Attestation",
    status: CampaignStatus = CampaignStatus.DRAFT,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    target_type: CampaignTargetType = CampaignTargetType.ALL,
    reminder_days: int = 7,
    escalation_days: int = 10,
    **extra: Any,
) -> AttestationCampaign:
    campaign = AttestationCampaign(
        name=name,
        status=status,
        start_date=start_date or datetime.now(timezone.utc),
        end_date=end_date,
        target_type=target_type,
        reminder_days=reminder_days,
        escalation_days=escalation_days,
        unregistered_reminder_days=extra.pop("unregistered_reminder_days", 7),
        **extra,
    )
    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    return campaign


def auth_headers(user: User) -> dict[str, str]:
    token, _expires_in, _claims = create_access_token(user)
    return {"Authorization": f"Bearer {token}"}


def sent_result(*recipients: str) -> dict[str, Any]:
    return {"mode": "sent", "sent": max(1, len(recipients)), "recipients": list(recipients)}
