"""
Inbound pickup request webhooks.

Parses ``crm.pickup.requested`` and ``ehr.pickup.requested`` payloads into
pickup request drafts. EHR payloads are signed: the HMAC-SHA256 signature
over the canonical payload JSON is verified before any field is trusted.
"""

import hashlib
import hmac
import json
import logging
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError
from pydantic.alias_generators import to_snake

from labops.app.core.config import settings
from labops.app.core.exceptions import GovernanceException, invalid_signature, validation_failed
from labops.app.schemas.events import CrmPickupRequestedEvent, EhrPickupWebhook
from labops.app.schemas.logistics import PackageSpecs, PickupRequestDraft

logger = logging.getLogger(__name__)


def canonical_json(payload: Mapping[str, Any]) -> bytes:
    """Byte form the signature is computed over: sorted keys, no whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def sign_payload(payload: Mapping[str, Any], secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_json(payload), hashlib.sha256).hexdigest()


def verify_hmac_signature(body: bytes, secret: str, signature: Optional[str]) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def _reject(source: str, reason: str) -> GovernanceException:
    logger.warning("Webhook Rejected", extra={"webhook_source": source, "reason": reason})
    return GovernanceException(invalid_signature(source))


def parse_crm_pickup(raw: Mapping[str, Any]) -> PickupRequestDraft:
    """
    Convert a ``crm.pickup.requested`` event into a pickup request draft.
    
    Raises:
        GovernanceException: VALIDATION_FAILED when the event is malformed
    """
    try:
        event = CrmPickupRequestedEvent.model_validate(raw)
    except ValidationError as exc:
        raise GovernanceException(
            validation_failed("pickup", f"Invalid crm.pickup.requested payload: {exc.error_count()} error(s)")
        ) from exc
    
    payload = event.payload
    package_specs = None
    if payload.package_specs:
        package_specs = PackageSpecs.model_validate(
            {to_snake(key): value for key, value in payload.package_specs.items()}
        )
    return PickupRequestDraft(
        lab_id=payload.lab_id,
        clinic_id=payload.clinic_id,
        window_start=payload.window_start,
        window_end=payload.window_end,
        package_count=payload.package_count,
        package_specs=package_specs,
        associated_case_ids=payload.associated_case_ids,
        is_rush=payload.is_rush,
        notes=payload.notes,
        source="crm",
        external_reference=payload.request_id,
        requested_by=payload.requested_by.model_dump() if payload.requested_by else None,
    )


def _at(day: str, hour_minute: str) -> datetime:
    hours, minutes = (int(part) for part in hour_minute.split(":"))
    return datetime.combine(date.fromisoformat(day), time(hours, minutes), tzinfo=timezone.utc)


def parse_ehr_pickup(raw: Mapping[str, Any], secrets: Optional[Dict[str, str]] = None) -> PickupRequestDraft:
    """
    Verify and convert an ``ehr.pickup.requested`` webhook.
    
    The secret is selected by the payload's ``ehrSystem`` tag; nothing else in
    the payload is read until the signature has been verified.
    
    Args:
        raw: Webhook body as received (camelCase keys)
        secrets: Per-EHR-system secrets (defaults to settings.ehr_webhook_secrets)
        
    Raises:
        GovernanceException: INVALID_SIGNATURE for unsigned or mis-signed
            payloads; VALIDATION_FAILED for malformed ones
    """
    secrets = settings.ehr_webhook_secrets if secrets is None else secrets
    signature = raw.get("signature")
    payload = raw.get("payload")
    if not signature:
        raise _reject("ehr", "missing signature")
    if not isinstance(payload, Mapping):
        raise _reject("ehr", "missing payload")
    
    secret = secrets.get(str(payload.get("ehrSystem")))
    if not secret:
        raise _reject("ehr", "unknown EHR system")
    if not verify_hmac_signature(canonical_json(payload), secret, signature):
        raise _reject("ehr", "signature mismatch")
    
    try:
        webhook = EhrPickupWebhook.model_validate(raw)
        window_start = _at(webhook.payload.requested_pickup_date, webhook.payload.time_window.start)
        window_end = _at(webhook.payload.requested_pickup_date, webhook.payload.time_window.end)
    except ValidationError as exc:
        raise GovernanceException(
            validation_failed("pickup", f"Invalid ehr.pickup.requested payload: {exc.error_count()} error(s)")
        ) from exc
    except ValueError as exc:
        raise GovernanceException(validation_failed("pickup", f"Invalid pickup date or time window: {exc}")) from exc
    
    body = webhook.payload
    notes = "\n".join(part for part in (body.description, body.special_instructions) if part) or None
    return PickupRequestDraft(
        lab_id=body.lab_id,
        clinic_id=body.clinic_id,
        window_start=window_start,
        window_end=window_end,
        package_count=body.package_count,
        is_rush=body.is_rush,
        notes=notes,
        source="ehr",
        external_reference=body.external_reference,
        patient_id=body.patient_id,
    )
