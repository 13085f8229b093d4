import logging

import requests

import config
from db.models import Contact, utcnow

logger = logging.getLogger(__name__)


class ContactSyncError(RuntimeError):
    """Raised when the external contact directory can't be read."""


def normalize_contact(raw: dict, synced_at=None) -> Contact:
    if not isinstance(raw, dict):
        raise ContactSyncError(f"Contact entry is not an object: {raw!r}")
    return Contact(
        name=str(raw.get("name") or "").strip(),
        external_id=str(raw.get("id") or ""),
        phone=raw.get("phone") or "",
        email=raw.get("email") or "",
        company=raw.get("company") or "",
        photo=raw.get("photo") or None,
        synced_at=synced_at or utcnow(),
    )


def fetch_directory(url: str = config.CONTACTS_URL, timeout: float = config.CONTACTS_TIMEOUT_SECS,
                    session=None) -> list[dict]:
    """GET the directory. Expects ``{"success": true, "contacts": [...]}``."""
    http = session or requests
    try:
        response = http.get(url, timeout=timeout)
        response.raise_for_status()
        data = response.json()
    except requests.RequestException as e:
        raise ContactSyncError(f"Could not reach contact directory: {e}") from e
    except ValueError as e:
        raise ContactSyncError(f"Contact directory returned invalid JSON: {e}") from e

    if not data.get("success"):
        raise ContactSyncError(data.get("error") or "Failed to sync contacts")
    contacts = data.get("contacts") or []
    logger.info("Fetched %d contacts from %s", len(contacts), url)
    return contacts
