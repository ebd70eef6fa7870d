import csv
import io
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, HTTPException, status, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from wa_inbox.config import settings
from wa_inbox.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from wa_inbox.metrics import record_webhook_event, get_metrics, get_metrics_content_type
from wa_inbox.outbound import send_text_message
from wa_inbox.provider import ProviderClient
from wa_inbox.schemas import (
    ContactCreate,
    ContactImportResponse,
    ContactResponse,
    ContactsListResponse,
    ContactUpdate,
    ConversationResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    ProfileResponse,
    SendMessageRequest,
    SendToNumberRequest,
    WebhookEnvelope,
    WhatsAppConfigUpdate,
)
from wa_inbox.storage import (
    init_db,
    check_db_health,
    get_db,
    create_contact,
    get_contact_by_id,
    get_conversation,
    get_profile,
    list_contacts,
    update_contact,
    update_whatsapp_config,
)
from wa_inbox.tenants import TenantResolver, get_tenant_resolver
from wa_inbox.utils import display_phone_number, normalize_phone_number, verify_hub_signature
from wa_inbox.webhook import WebhookProcessor, verify_subscription


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="WhatsApp Inbox API",
    description="Multi-tenant WhatsApp Business inbox: Cloud API webhook plus contact and message endpoints",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "PATCH", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


def get_resolver() -> TenantResolver:
    return get_tenant_resolver(settings.TENANT_RESOLUTION)


def get_provider_client() -> ProviderClient:
    return ProviderClient(
        base_url=settings.WHATSAPP_API_BASE_URL,
        api_version=settings.WHATSAPP_API_VERSION,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
    )


def _get_profile_or_404(db: Session, profile_id: str):
    profile = get_profile(db, profile_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="profile not found")
    return profile


def _get_contact_or_404(db: Session, profile_id: str, contact_id: str):
    contact = get_contact_by_id(db, profile_id, contact_id)
    if contact is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
    return contact


def _get_configured_profile(db: Session, profile_id: str):
    profile = _get_profile_or_404(db, profile_id)
    if not profile.whatsapp_access_token or not profile.whatsapp_phone_number_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="WhatsApp is not configured. Please configure your WhatsApp API settings first.",
        )
    return profile


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WHATSAPP_VERIFY_TOKEN is set (non-empty)
    2. DB is reachable and all tables exist

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WHATSAPP_VERIFY_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WHATSAPP_VERIFY_TOKEN not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    request: Request,
    hub_mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """
    Subscription handshake from Meta.

    Echoes hub.challenge as text/plain when hub.mode is "subscribe" and
    hub.verify_token matches WHATSAPP_VERIFY_TOKEN; 403 otherwise.
    """
    if verify_subscription(hub_mode, hub_verify_token, settings.WHATSAPP_VERIFY_TOKEN):
        logger.info("Webhook verified successfully")
        log_webhook_data(request, result="verified")
        return PlainTextResponse(hub_challenge or "", status_code=status.HTTP_200_OK)

    logger.warning(f"Webhook verification failed (mode={hub_mode})")
    log_webhook_data(request, result="forbidden")
    return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)


@app.post(
    "/webhook",
    response_class=PlainTextResponse,
    responses={
        401: {"description": "Invalid X-Hub-Signature-256 (only when WHATSAPP_APP_SECRET is set)"},
        500: {"description": "Body could not be parsed; the provider will retry"},
    },
)
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    resolver: TenantResolver = Depends(get_resolver),
) -> PlainTextResponse:
    """
    Receive message and status notifications from the WhatsApp Cloud API.

    - 200 for every delivery that parses, whatever happened to its events;
      a non-2xx reply makes the provider resend the whole delivery
    - 500 when the body is not a valid webhook envelope
    """
    raw_body = await request.body()

    if settings.WHATSAPP_APP_SECRET:
        signature = request.headers.get("X-Hub-Signature-256")
        if not verify_hub_signature(raw_body, signature, settings.WHATSAPP_APP_SECRET):
            logger.error("Invalid X-Hub-Signature-256")
            record_webhook_event("delivery", "invalid_signature")
            log_webhook_data(request, result="invalid_signature")
            return PlainTextResponse("invalid signature", status_code=status.HTTP_401_UNAUTHORIZED)

    try:
        envelope = WebhookEnvelope.model_validate_json(raw_body)
    except ValidationError as e:
        logger.error(f"Unparseable webhook body: {e}")
        record_webhook_event("delivery", "parse_error")
        log_webhook_data(request, result="parse_error")
        return PlainTextResponse("Internal Server Error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    try:
        summary = WebhookProcessor(db, resolver).process(envelope)
    except Exception:
        logger.exception("Webhook processing aborted")
        log_webhook_data(request, result="error")
        return PlainTextResponse("Internal Server Error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    log_webhook_data(request, result="processed", summary=summary.as_log_fields())
    logger.info(
        f"Webhook processed: {summary.messages_stored} stored, {summary.statuses_applied} statuses applied"
    )
    return PlainTextResponse("OK", status_code=status.HTTP_200_OK)


# =============================================================================
# Profile Routes
# =============================================================================

@app.get(
    "/profiles/{profile_id}",
    response_model=ProfileResponse,
    responses={404: {"model": ErrorResponse}},
)
async def read_profile(profile_id: str, db: Session = Depends(get_db)) -> ProfileResponse:
    return ProfileResponse.from_profile(_get_profile_or_404(db, profile_id))


@app.put(
    "/profiles/{profile_id}/whatsapp-config",
    response_model=ProfileResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def save_whatsapp_config(
    profile_id: str,
    config: WhatsAppConfigUpdate,
    db: Session = Depends(get_db),
) -> ProfileResponse:
    """
    Save the Cloud API credentials for a profile.

    whatsapp_phone_number_id routes inbound webhooks to this profile, so it
    cannot be shared with another profile (409).
    """
    profile = _get_profile_or_404(db, profile_id)

    _, is_conflict = update_whatsapp_config(
        db,
        profile,
        access_token=config.whatsapp_access_token,
        phone_number_id=config.whatsapp_phone_number_id,
        business_account_id=config.whatsapp_business_account_id,
    )
    if is_conflict:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="phone number id already registered to another profile",
        )

    return ProfileResponse.from_profile(profile)


# =============================================================================
# Contact Routes
# =============================================================================

@app.get("/profiles/{profile_id}/contacts", response_model=ContactsListResponse)
async def read_contacts(
    profile_id: str,
    q: Annotated[str | None, Query(description="Case-insensitive search in name and phone")] = None,
    db: Session = Depends(get_db),
) -> ContactsListResponse:
    _get_profile_or_404(db, profile_id)
    contacts = list_contacts(db, profile_id, q=q)
    return ContactsListResponse(
        data=[ContactResponse.model_validate(c) for c in contacts],
        total=len(contacts),
    )


@app.post(
    "/profiles/{profile_id}/contacts",
    response_model=ContactResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def add_contact(
    profile_id: str,
    body: ContactCreate,
    db: Session = Depends(get_db),
) -> ContactResponse:
    """Add a contact; the phone is reduced to digits, 10-digit numbers get DEFAULT_COUNTRY_CODE."""
    _get_profile_or_404(db, profile_id)

    whatsapp_id = normalize_phone_number(body.phone, settings.DEFAULT_COUNTRY_CODE)
    contact, is_duplicate = create_contact(
        db,
        user_id=profile_id,
        whatsapp_id=whatsapp_id,
        phone_number=display_phone_number(whatsapp_id),
        name=body.name,
    )
    if is_duplicate:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="contact already exists")

    return ContactResponse.model_validate(contact)


@app.post(
    "/profiles/{profile_id}/contacts/import",
    response_model=ContactImportResponse,
    responses={404: {"model": ErrorResponse}},
)
async def import_contacts(
    profile_id: str,
    request: Request,
    db: Session = Depends(get_db),
) -> ContactImportResponse:
    """
    Bulk-add contacts from a CSV body of `name,phone` lines.

    Lines without both a name and a phone with digits (a header row, blanks)
    are skipped, as are contacts that already exist.
    """
    _get_profile_or_404(db, profile_id)

    raw = (await request.body()).decode("utf-8-sig", errors="replace")
    imported = 0
    skipped = 0
    for row in csv.reader(io.StringIO(raw)):
        cells = [cell.strip().strip('"') for cell in row]
        if len(cells) < 2 or not cells[0]:
            skipped += 1
            continue

        whatsapp_id = normalize_phone_number(cells[1], settings.DEFAULT_COUNTRY_CODE)
        if not whatsapp_id:
            skipped += 1
            continue

        _, is_duplicate = create_contact(
            db,
            user_id=profile_id,
            whatsapp_id=whatsapp_id,
            phone_number=display_phone_number(whatsapp_id),
            name=cells[0],
        )
        if is_duplicate:
            skipped += 1
        else:
            imported += 1

    logger.info(f"Contact import for {profile_id}: {imported} imported, {skipped} skipped")
    return ContactImportResponse(imported=imported, skipped=skipped)


@app.patch(
    "/profiles/{profile_id}/contacts/{contact_id}",
    response_model=ContactResponse,
    responses={404: {"model": ErrorResponse}},
)
async def edit_contact(
    profile_id: str,
    contact_id: str,
    body: ContactUpdate,
    db: Session = Depends(get_db),
) -> ContactResponse:
    contact = _get_contact_or_404(db, profile_id, contact_id)
    contact = update_contact(db, contact, name=body.name, profile_picture_url=body.profile_picture_url)
    return ContactResponse.model_validate(contact)


# =============================================================================
# Message Routes
# =============================================================================

@app.get(
    "/profiles/{profile_id}/contacts/{contact_id}/messages",
    response_model=ConversationResponse,
    responses={404: {"model": ErrorResponse}},
)
async def read_conversation(
    profile_id: str,
    contact_id: str,
    limit: Annotated[int, Query(ge=1, le=200, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """One contact's messages, oldest first."""
    _get_contact_or_404(db, profile_id, contact_id)
    messages, total = get_conversation(db, profile_id, contact_id, limit=limit, offset=offset)
    return ConversationResponse(
        data=[MessageResponse.model_validate(m) for m in messages],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.post(
    "/profiles/{profile_id}/contacts/{contact_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "WhatsApp is not configured"},
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse, "description": "WhatsApp API rejected the message"},
    },
)
async def send_message(
    profile_id: str,
    contact_id: str,
    body: SendMessageRequest,
    db: Session = Depends(get_db),
    provider: ProviderClient = Depends(get_provider_client),
) -> MessageResponse:
    """
    Send a text message to a contact.

    The message is stored as 'sending', then updated to 'sent' with the
    provider id, or to 'failed' (502 with an explanation).
    """
    profile = _get_configured_profile(db, profile_id)
    contact = _get_contact_or_404(db, profile_id, contact_id)

    message, error = await send_text_message(
        db,
        provider,
        profile,
        body.text,
        default_country_code=settings.DEFAULT_COUNTRY_CODE,
        contact=contact,
    )
    if error:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error)

    return MessageResponse.model_validate(message)


@app.post(
    "/profiles/{profile_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "WhatsApp is not configured"},
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse, "description": "WhatsApp API rejected the message"},
    },
)
async def send_message_to_number(
    profile_id: str,
    body: SendToNumberRequest,
    db: Session = Depends(get_db),
    provider: ProviderClient = Depends(get_provider_client),
) -> MessageResponse:
    """
    Send a text message to any phone number, e.g. to test the configuration.

    No contact is created; the stored message has no contact_id.
    """
    profile = _get_configured_profile(db, profile_id)

    message, error = await send_text_message(
        db,
        provider,
        profile,
        body.text,
        default_country_code=settings.DEFAULT_COUNTRY_CODE,
        to=body.to,
    )
    if error:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error)

    return MessageResponse.model_validate(message)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
