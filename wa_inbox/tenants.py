"""
Tenant resolution for webhook events.

Every Contact/Message write made on behalf of a webhook is scoped to the
profile returned here. Event handling depends only on the TenantResolver
interface, so the routing key can change without touching it.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.orm import Session

from wa_inbox.schemas import ChangeMetadata
from wa_inbox.storage import get_profile_by_phone_number_id, get_profiles_by_business_account_id

logger = logging.getLogger(__name__)


class TenantResolver(ABC):
    """Maps the routing data of a webhook change to the owning profile."""

    @abstractmethod
    def resolve(self, db: Session, entry_id: Optional[str], metadata: ChangeMetadata):
        """
        Returns:
            The owning Profile, or None when no tenant can be attributed
        """


class PhoneNumberIdResolver(TenantResolver):
    """Route by the receiving Cloud API phone number id (unique per profile)."""

    def resolve(self, db: Session, entry_id: Optional[str], metadata: ChangeMetadata):
        return get_profile_by_phone_number_id(db, metadata.phone_number_id)


class BusinessAccountIdResolver(TenantResolver):
    """
    Route by the WhatsApp Business Account id carried as the entry id.

    Several profiles may register numbers under one business account; such
    events are ambiguous and resolve to nobody.
    """

    def resolve(self, db: Session, entry_id: Optional[str], metadata: ChangeMetadata):
        if not entry_id:
            return None
        profiles = get_profiles_by_business_account_id(db, entry_id)
        if len(profiles) > 1:
            logger.warning(
                f"Business account {entry_id} maps to {len(profiles)} profiles, not routing"
            )
            return None
        return profiles[0] if profiles else None


RESOLVERS = {
    "phone_number_id": PhoneNumberIdResolver,
    "business_account_id": BusinessAccountIdResolver,
}


def get_tenant_resolver(strategy: str) -> TenantResolver:
    try:
        return RESOLVERS[strategy]()
    except KeyError:
        raise ValueError(f"Unknown tenant resolution strategy: {strategy}")
