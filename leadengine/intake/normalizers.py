from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, ClassVar

from pydantic import BaseModel, Field

logger = logging.getLogger("leadengine.intake.normalizers")

SOURCE_ALIASES = {
    "facebook": "meta",
    "fb": "meta",
    "instagram": "meta",
    "tik_tok": "tiktok",
    "web": "website",
    "website_form": "website",
    "property-finder": "property_finder",
    "propertyfinder": "property_finder",
    "pf": "property_finder",
    "whatsapp_business": "whatsapp",
}

_NAME_KEYS = ("full_name", "name")
_PHONE_KEYS = ("phone_number", "phone", "mobile")
_EMAIL_KEYS = ("email", "email_address")


class CanonicalLeadInput(BaseModel):
    source: str
    family: str = "generic"
    requires_phone: bool = False
    external_id: str = ""
    name: str = ""
    phone: str = ""
    email: str = ""
    campaign_name: str = ""
    ad_set_name: str = ""
    ad_name: str = ""
    form_id: str = ""
    form_name: str = ""
    listing_reference: str = ""
    agent_reference: str = ""
    message: str = ""
    provider_created_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def canonical_source(source: str) -> str:
    key = (source or "").strip().lower()
    return SOURCE_ALIASES.get(key, key.replace("-", "_")) or "generic"


def text(value: Any) -> str:
    if value is None or isinstance(value, (dict, bool)):
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        for item in value:
            candidate = text(item)
            if candidate:
                return candidate
        return ""
    return str(value).strip()


def pick(record: Any, *keys: str) -> str:
    if not isinstance(record, dict):
        return ""
    for key in keys:
        candidate = text(record.get(key))
        if candidate:
            return candidate
    return ""


def nested(record: Any, *path: str) -> Any:
    current = record
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def compose_name(record: Any) -> str:
    direct = pick(record, *_NAME_KEYS)
    if direct:
        return direct
    first = pick(record, "first_name", "firstname", "firstName")
    last = pick(record, "last_name", "lastname", "lastName")
    return " ".join(part for part in (first, last) if part)


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
            seconds = float(value)
            if seconds > 1e12:
                seconds = seconds / 1000.0
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        if isinstance(value, str) and value.strip():
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
    except (ValueError, OverflowError, OSError):
        return None
    return None


def as_records(payload: Any, *batch_keys: str) -> list[Any]:
    if isinstance(payload, list):
        return list(payload)
    if isinstance(payload, dict):
        for key in batch_keys:
            batch = payload.get(key)
            if isinstance(batch, list):
                return list(batch)
            if isinstance(batch, dict):
                return [batch]
        return [payload]
    if payload is None:
        return []
    return [payload]


def leftovers(record: Any, consumed: set[str]) -> dict[str, Any]:
    if not isinstance(record, dict):
        return {}
    return {str(key): value for key, value in record.items() if key not in consumed and value not in (None, "")}


class Normalizer:
    family: ClassVar[str] = "generic"
    requires_phone: ClassVar[bool] = False
    batch_keys: ClassVar[tuple[str, ...]] = ("leads", "data")

    def __init__(self, source: str) -> None:
        self.source = source

    def records(self, payload: Any) -> list[Any]:
        return as_records(payload, *self.batch_keys)

    def normalize(self, payload: Any) -> list[CanonicalLeadInput]:
        return [self.normalize_record(record) for record in self.records(payload)]

    def normalize_record(self, record: Any) -> CanonicalLeadInput:
        consumed = {
            "external_id", "lead_id", "id", "full_name", "name", "first_name", "last_name",
            "phone_number", "phone", "mobile", "email", "email_address", "campaign_name",
            "form_id", "form_name", "message", "created_time", "created_at",
        }
        return self.build(
            external_id=pick(record, "external_id", "lead_id", "id"),
            name=compose_name(record),
            phone=pick(record, *_PHONE_KEYS),
            email=pick(record, *_EMAIL_KEYS),
            campaign_name=pick(record, "campaign_name"),
            form_id=pick(record, "form_id"),
            form_name=pick(record, "form_name"),
            message=pick(record, "message"),
            provider_created_at=parse_timestamp(
                nested(record, "created_time") or nested(record, "created_at")
            ),
            metadata=leftovers(record, consumed),
        )

    def build(self, **fields: Any) -> CanonicalLeadInput:
        return CanonicalLeadInput(source=self.source, family=self.family, requires_phone=self.requires_phone, **fields)


class GenericNormalizer(Normalizer):
    pass


class MetaLeadAdsNormalizer(Normalizer):
    """Facebook/Instagram lead ads, either webhook `entry[].changes[]` or Graph `data[]` lead objects."""

    family = "ad_lead_form"

    def records(self, payload: Any) -> list[Any]:
        if isinstance(payload, dict) and isinstance(payload.get("entry"), list):
            collected: list[Any] = []
            for entry in payload["entry"]:
                changes = entry.get("changes") if isinstance(entry, dict) else None
                if not isinstance(changes, list):
                    continue
                for change in changes:
                    if isinstance(change, dict) and change.get("field") == "leadgen":
                        collected.append(change.get("value"))
            return collected
        return as_records(payload, "data")

    def normalize_record(self, record: Any) -> CanonicalLeadInput:
        fields: dict[str, str] = {}
        field_data = nested(record, "field_data")
        if isinstance(field_data, list):
            for item in field_data:
                key = pick(item, "name")
                if key:
                    fields[key] = text(nested(item, "values"))

        metadata = {key: value for key, value in fields.items() if key not in {*_NAME_KEYS, *_PHONE_KEYS, *_EMAIL_KEYS, "first_name", "last_name"}}
        for key in ("page_id", "ad_id", "adgroup_id", "adset_id", "campaign_id"):
            value = pick(record, key)
            if value:
                metadata[key] = value

        return self.build(
            external_id=pick(record, "leadgen_id", "id"),
            name=compose_name(fields),
            phone=pick(fields, *_PHONE_KEYS),
            email=pick(fields, *_EMAIL_KEYS),
            campaign_name=pick(record, "campaign_name"),
            ad_set_name=pick(record, "adset_name", "adgroup_name"),
            ad_name=pick(record, "ad_name"),
            form_id=pick(record, "form_id"),
            form_name=pick(record, "form_name"),
            provider_created_at=parse_timestamp(nested(record, "created_time")),
            metadata=metadata,
        )


class TikTokLeadNormalizer(Normalizer):
    family = "ad_lead_form"
    batch_keys = ("lead", "leads", "data")

    def normalize_record(self, record: Any) -> CanonicalLeadInput:
        fields: dict[str, Any] = {}
        user_info = nested(record, "user_info")
        if isinstance(user_info, dict):
            fields.update(user_info)
        form_data = nested(record, "form_data")
        if isinstance(form_data, dict):
            fields.update(form_data)
        elif isinstance(form_data, list):
            for item in form_data:
                key = pick(item, "field_name", "name")
                if key:
                    fields[key] = text(nested(item, "value"))

        consumed = {*_NAME_KEYS, *_PHONE_KEYS, *_EMAIL_KEYS, "first_name", "last_name"}
        return self.build(
            external_id=pick(record, "lead_id", "id"),
            name=compose_name(fields),
            phone=pick(fields, *_PHONE_KEYS),
            email=pick(fields, *_EMAIL_KEYS),
            campaign_name=pick(record, "campaign_name"),
            ad_set_name=pick(record, "adgroup_name"),
            ad_name=pick(record, "ad_name"),
            form_id=pick(record, "form_id", "page_id"),
            form_name=pick(record, "form_name"),
            provider_created_at=parse_timestamp(nested(record, "create_time") or nested(record, "created_time")),
            metadata=leftovers(fields, consumed),
        )


class LinkedInLeadGenNormalizer(Normalizer):
    family = "ad_lead_form"
    batch_keys = ("elements", "leads", "data")

    _QUESTION_MAP = {
        "firstname": "first_name",
        "lastname": "last_name",
        "fullname": "full_name",
        "email": "email",
        "emailaddress": "email",
        "phone": "phone",
        "phonenumber": "phone_number",
        "mobile": "mobile",
    }

    def normalize_record(self, record: Any) -> CanonicalLeadInput:
        fields: dict[str, str] = {}
        answers = nested(record, "formResponse", "answers")
        if isinstance(answers, list):
            for answer in answers:
                question = pick(answer, "questionId", "name")
                if not question:
                    continue
                value = text(nested(answer, "answerDetails", "textQuestionAnswer", "answer"))
                key = self._QUESTION_MAP.get(question.replace("_", "").lower(), question)
                fields[key] = value

        consumed = set(self._QUESTION_MAP.values())
        return self.build(
            external_id=pick(record, "id", "leadId"),
            name=compose_name(fields),
            phone=pick(fields, *_PHONE_KEYS),
            email=pick(fields, *_EMAIL_KEYS),
            campaign_name=pick(record, "campaignName", "campaign_name"),
            form_id=pick(record, "formId", "versionedLeadGenFormUrn"),
            form_name=pick(record, "formName"),
            provider_created_at=parse_timestamp(nested(record, "submittedAt") or nested(record, "createdAt")),
            metadata=leftovers(fields, consumed),
        )


class WebsiteFormNormalizer(Normalizer):
    family = "web_form"
    batch_keys = ("submissions",)

    _INTERNAL_FIELDS = ("_page_url", "_referrer", "_timestamp")

    def normalize(self, payload: Any) -> list[CanonicalLeadInput]:
        results: list[CanonicalLeadInput] = []
        for record in self.records(payload):
            if pick(record, "_honeypot"):
                logger.info("website_honeypot_triggered", extra={"source": self.source})
                continue
            results.append(self.normalize_record(record))
        return results

    def normalize_record(self, record: Any) -> CanonicalLeadInput:
        metadata: dict[str, Any] = {}
        for key in self._INTERNAL_FIELDS:
            value = pick(record, key)
            if value:
                metadata[key.lstrip("_")] = value
        consumed = {
            "submission_id", "id", "full_name", "name", "first_name", "last_name", "phone",
            "phone_number", "tel", "mobile", "email", "message", "utm_campaign", "form_id",
            "form_name", "_honeypot", *self._INTERNAL_FIELDS,
        }
        metadata.update(leftovers(record, consumed))
        return self.build(
            external_id=pick(record, "submission_id", "id"),
            name=compose_name(record),
            phone=pick(record, "phone_number", "phone", "tel", "mobile"),
            email=pick(record, "email"),
            campaign_name=pick(record, "utm_campaign"),
            form_id=pick(record, "form_id"),
            form_name=pick(record, "form_name"),
            message=pick(record, "message"),
            provider_created_at=parse_timestamp(nested(record, "_timestamp")),
            metadata=metadata,
        )


class PropertyFinderNormalizer(Normalizer):
    family = "listing_portal"
    requires_phone = True
    batch_keys = ("leads", "data", "lead", "enquiry")

    def normalize_record(self, record: Any) -> CanonicalLeadInput:
        client = nested(record, "client")
        consumed = {
            "lead_id", "enquiry_id", "reference", "name", "contact_name", "client", "phone",
            "mobile", "contact_phone", "email", "contact_email", "listing_id", "property_reference",
            "property", "agent_id", "agent", "message", "comments", "created_at",
        }
        return self.build(
            external_id=pick(record, "lead_id", "enquiry_id", "reference"),
            name=pick(record, "name", "contact_name") or pick(client, "name"),
            phone=pick(record, "phone", "mobile", "contact_phone") or pick(client, "phone"),
            email=pick(record, "email", "contact_email") or pick(client, "email"),
            listing_reference=pick(record, "listing_id", "property_reference")
            or pick(nested(record, "property"), "reference", "id"),
            agent_reference=pick(record, "agent_id") or pick(nested(record, "agent"), "id"),
            message=pick(record, "message", "comments"),
            provider_created_at=parse_timestamp(nested(record, "created_at")),
            metadata=leftovers(record, consumed),
        )


class ClassifiedsPortalNormalizer(Normalizer):
    """Bayut and Dubizzle share the classifieds enquiry layout."""

    family = "listing_portal"
    requires_phone = True
    batch_keys = ("leads", "data", "enquiry")

    def normalize_record(self, record: Any) -> CanonicalLeadInput:
        consumed = {
            "enquiry_id", "lead_id", "id", "customer_name", "name", "customer_phone", "phone",
            "mobile", "customer_email", "email", "listing_id", "property_id", "agent_id",
            "message", "created_at",
        }
        return self.build(
            external_id=pick(record, "enquiry_id", "lead_id", "id"),
            name=pick(record, "customer_name", "name"),
            phone=pick(record, "customer_phone", "phone", "mobile"),
            email=pick(record, "customer_email", "email"),
            listing_reference=pick(record, "listing_id", "property_id"),
            agent_reference=pick(record, "agent_id"),
            message=pick(record, "message"),
            provider_created_at=parse_timestamp(nested(record, "created_at")),
            metadata=leftovers(record, consumed),
        )


class WhatsAppNormalizer(Normalizer):
    """WhatsApp Cloud API message webhooks; one lead per chat contact."""

    family = "chat"

    def records(self, payload: Any) -> list[Any]:
        if not (isinstance(payload, dict) and isinstance(payload.get("entry"), list)):
            return as_records(payload, "contacts")
        collected: list[Any] = []
        for entry in payload["entry"]:
            changes = entry.get("changes") if isinstance(entry, dict) else None
            if not isinstance(changes, list):
                continue
            for change in changes:
                value = nested(change, "value")
                contacts = nested(value, "contacts")
                if not isinstance(contacts, list):
                    continue
                messages = nested(value, "messages")
                by_sender: dict[str, Any] = {}
                if isinstance(messages, list):
                    for message in messages:
                        sender = pick(message, "from")
                        if sender and sender not in by_sender:
                            by_sender[sender] = message
                for contact in contacts:
                    wa_id = pick(contact, "wa_id")
                    collected.append({"contact": contact, "message": by_sender.get(wa_id)})
        return collected

    def normalize_record(self, record: Any) -> CanonicalLeadInput:
        contact = nested(record, "contact")
        if contact is None:
            contact = record
        message = nested(record, "message")
        wa_id = pick(contact, "wa_id", "phone")
        metadata: dict[str, Any] = {}
        message_id = pick(message, "id")
        if message_id:
            metadata["message_id"] = message_id
        return self.build(
            external_id=wa_id,
            name=pick(nested(contact, "profile"), "name") or pick(contact, "name"),
            phone=wa_id,
            message=text(nested(message, "text", "body")),
            provider_created_at=parse_timestamp(nested(message, "timestamp")),
            metadata=metadata,
        )


NORMALIZERS: dict[str, type[Normalizer]] = {
    "meta": MetaLeadAdsNormalizer,
    "tiktok": TikTokLeadNormalizer,
    "linkedin": LinkedInLeadGenNormalizer,
    "website": WebsiteFormNormalizer,
    "property_finder": PropertyFinderNormalizer,
    "bayut": ClassifiedsPortalNormalizer,
    "dubizzle": ClassifiedsPortalNormalizer,
    "whatsapp": WhatsAppNormalizer,
    "generic": GenericNormalizer,
}

PORTAL_SOURCES = frozenset(name for name, cls in NORMALIZERS.items() if cls.family == "listing_portal")


def get_normalizer(source: str) -> Normalizer:
    canonical = canonical_source(source)
    normalizer_cls = NORMALIZERS.get(canonical, GenericNormalizer)
    return normalizer_cls(canonical)


def normalize(source: str, payload: Any) -> list[CanonicalLeadInput]:
    return get_normalizer(source).normalize(payload)
