"""
Outbound send path: record the message, hand it to the Cloud API, record the outcome.
"""

import logging
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wa_inbox.metrics import record_provider_send
from wa_inbox.provider import ProviderClient, ProviderError, describe_provider_error
from wa_inbox.storage import create_outbound_message, mark_message_failed, mark_message_sent
from wa_inbox.utils import normalize_phone_number

logger = logging.getLogger(__name__)


async def send_text_message(
    db: Session,
    provider: ProviderClient,
    profile,
    text: str,
    default_country_code: str,
    contact=None,
    to: Optional[str] = None,
) -> Tuple[object, Optional[str]]:
    """
    Send a text message on behalf of a profile.

    The recipient is `to` when given, otherwise the contact's phone number.
    Messages sent to a bare number are stored without a contact.

    The row is inserted as 'sending' first, then moved to 'sent' with the
    provider id, or to 'failed'.

    Returns:
        Tuple of (message, error)
        - (Message, None): accepted by the provider
        - (Message, str): send failed; str is a user-facing explanation
    """
    if to is None:
        to = contact.phone_number or contact.whatsapp_id
    to = normalize_phone_number(to, default_country_code)

    message = create_outbound_message(
        db,
        user_id=profile.id,
        contact_id=contact.id if contact is not None else None,
        content=text,
    )
    row_id = message.id

    try:
        provider_message_id = await provider.send_text(
            phone_number_id=profile.whatsapp_phone_number_id,
            access_token=profile.whatsapp_access_token,
            to=to,
            body=text,
        )
    except ProviderError as e:
        mark_message_failed(db, message)
        record_provider_send("failed")
        logger.warning(f"Outbound message {row_id} to {to} failed: {e.message}")
        return message, describe_provider_error(e)

    record_provider_send("sent")
    try:
        mark_message_sent(db, message, provider_message_id)
    except SQLAlchemyError:
        db.rollback()
        # Provider already accepted it; the row stays 'sending' until reconciled
        logger.exception(
            f"Outbound message {row_id} was accepted as {provider_message_id} but could not be marked sent"
        )
        raise

    logger.info(f"Outbound message {row_id} sent as {provider_message_id}")
    return message, None
