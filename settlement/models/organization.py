"""Organization model for multi-tenancy."""

from enum import StrEnum

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement.models.base import Base, UUIDMixin, TimestampMixin


class OrganizationType(StrEnum):
    """Position of an organization in the resale chain."""

    PLATFORM = "platform"
    AGENCY = "agency"
    END_CUSTOMER = "end_customer"


class Organization(Base, UUIDMixin, TimestampMixin):
    """Tenant: the platform operator, a reselling agency, or an end customer."""

    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=OrganizationType.END_CUSTOMER.value,
    )

    # Only agencies may be parents
    parent_organization_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("organizations.id"),
        nullable=True,
        index=True,
    )

    # Connected account for transfers; set once agency onboarding completes
    settlement_account_ref: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    parent = relationship("Organization", remote_side="Organization.id")

    @property
    def is_agency(self) -> bool:
        return self.type == OrganizationType.AGENCY.value

    def __repr__(self) -> str:
        return f"<Organization {self.name} ({self.type})>"
